from __future__ import annotations


class ReflectionGateError(Exception):
    """Base class for reflection gate errors."""


class CandidateRejection(ReflectionGateError):
    """A single learning candidate was rejected by the pipeline."""

    stage = "schema"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StructuralValidationError(CandidateRejection):
    """Candidate failed a deterministic field check."""

    stage = "schema"

    def __init__(self, reasons: list[str]):
        super().__init__("; ".join(reasons))
        self.reasons = list(reasons)


class QualityRejection(CandidateRejection):
    """Candidate did not claim a recognized write gate criterion."""

    stage = "write_gate"


class DuplicateRejection(CandidateRejection):
    """Candidate summary overlaps an existing active learning."""

    stage = "duplicate"

    def __init__(self, reason: str, duplicate_of: str | None = None):
        super().__init__(reason)
        self.duplicate_of = duplicate_of


class StateError(ReflectionGateError):
    """Base class for session state failures."""


class StateUnreadable(StateError):
    """Session file exists but cannot be read."""


class StateCorrupt(StateError):
    """Session file is not a valid session record."""


class InvalidTransition(StateError):
    """Requested transition is not allowed from the current status."""


class EventLogError(ReflectionGateError):
    """Base class for event log failures."""


class LogUnreadable(EventLogError):
    """Event log cannot be opened for reading."""


class LogCorrupt(EventLogError):
    """Event log record is not valid JSON."""


class LogUnwritable(EventLogError):
    """Event log cannot be appended to."""


class BackendUnavailable(ReflectionGateError):
    """Learning storage backend failed or is unreachable."""


class ParseFailure(ReflectionGateError):
    """Payload is not valid structured data."""


class ReflectionFailed(ReflectionGateError):
    """No candidate in a reflection batch passed structural validation."""

    def __init__(self, message: str, rejected: list | None = None):
        super().__init__(message)
        self.rejected = list(rejected or [])
