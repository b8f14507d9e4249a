"""Append-only JSONL event log.

Each line is one self-describing record with a ``schema_version`` and a
``kind``. Independent writers only ever append whole lines, so logs from
different sessions or machines merge without conflicts. Readers skip lines
they cannot parse.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import LogUnreadable, LogUnwritable
from .fsutil import atomic_write_text
from .models import RejectedCandidate, SkipDecider, UtcDatetime, utcnow

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1

# Field names used by version-0 records.
_LEGACY_KEYS = {"v": "schema_version", "ts": "timestamp", "event": "kind"}


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = EVENT_SCHEMA_VERSION
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class SurfacedEvent(_Event):
    kind: Literal["surfaced"] = "surfaced"
    learning_id: str
    session_id: str = ""
    score: Optional[float] = None


class ReferencedEvent(_Event):
    kind: Literal["referenced"] = "referenced"
    learning_id: str
    session_id: str = ""
    ticket_id: Optional[str] = None


class DismissedEvent(_Event):
    kind: Literal["dismissed"] = "dismissed"
    learning_id: str
    session_id: str = ""


class CorrectedEvent(_Event):
    kind: Literal["corrected"] = "corrected"
    learning_id: str
    session_id: str = ""
    superseded_by: Optional[str] = None


class LearningMeta(BaseModel):
    """Learning attributes carried by a reflection record."""

    model_config = ConfigDict(extra="ignore")

    id: str
    summary: str = ""
    category: Optional[str] = None
    scope: Optional[str] = None
    criteria: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    created_at: Optional[UtcDatetime] = None
    ticket_id: Optional[str] = None


class ReflectionEvent(_Event):
    kind: Literal["reflection"] = "reflection"
    session_id: str = ""
    candidates: int = 0
    accepted: int = 0
    categories: list[str] = Field(default_factory=list)
    ticket_id: Optional[str] = None
    backend: str = ""
    learnings: list[LearningMeta] = Field(default_factory=list)
    rejected: list[RejectedCandidate] = Field(default_factory=list)


class SkipEvent(_Event):
    kind: Literal["skip"] = "skip"
    session_id: str = ""
    reason: str = ""
    decider: SkipDecider = SkipDecider.AGENT
    lines_changed: Optional[int] = None
    ticket_id: Optional[str] = None
    context_files: list[str] = Field(default_factory=list)


class ArchivedEvent(_Event):
    kind: Literal["archived"] = "archived"
    learning_id: str
    reason: str = "manual"


class RestoredEvent(_Event):
    kind: Literal["restored"] = "restored"
    learning_id: str


class CheckpointEvent(_Event):
    """Folded aggregate standing in for rotated-out records."""

    kind: Literal["checkpoint"] = "checkpoint"
    covers_until: UtcDatetime
    records: int = 0
    aggregate: dict[str, Any] = Field(default_factory=dict)


StatsEvent = Annotated[
    Union[
        SurfacedEvent,
        ReferencedEvent,
        DismissedEvent,
        CorrectedEvent,
        ReflectionEvent,
        SkipEvent,
        ArchivedEvent,
        RestoredEvent,
        CheckpointEvent,
    ],
    Field(discriminator="kind"),
]
_event_adapter: TypeAdapter = TypeAdapter(StatsEvent)
EVENT_KINDS = frozenset(
    ["surfaced", "referenced", "dismissed", "corrected", "reflection", "skip", "archived", "restored", "checkpoint"]
)


def migrate_record(record: dict[str, Any]) -> dict[str, Any]:
    """Bring an older record to the current shape, in memory only."""
    if "schema_version" in record:
        return record
    migrated = dict(record)
    for old, new in _LEGACY_KEYS.items():
        if old in migrated and new not in migrated:
            migrated[new] = migrated.pop(old)
    migrated.setdefault("schema_version", 0)
    return migrated


def parse_event(record: dict[str, Any]):
    """Validate one decoded record. Returns None for kinds this reader does not know.

    Raises pydantic.ValidationError for a known kind with unusable fields.
    """
    record = migrate_record(record)
    if record.get("kind") not in EVENT_KINDS:
        return None
    return _event_adapter.validate_python(record)


@dataclass
class LogSnapshot:
    events: list = field(default_factory=list)
    line_count: int = 0
    skipped: int = 0


class EventLog:
    """Append-only JSONL log at ``path``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, event) -> None:
        line = (event.model_dump_json() + "\n").encode("utf-8")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a+b") as fh:
                # Terminate a partial last line so the new record stays readable.
                if fh.seek(0, os.SEEK_END) > 0:
                    fh.seek(-1, os.SEEK_END)
                    if fh.read(1) != b"\n":
                        line = b"\n" + line
                fh.write(line)
        except OSError as exc:
            raise LogUnwritable(f"{self.path}: {exc}") from exc

    def _read_lines(self) -> list[str]:
        try:
            with open(self.path, encoding="utf-8", errors="replace") as fh:
                return [line for line in fh if line.strip()]
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise LogUnreadable(f"{self.path}: {exc}") from exc

    def count_lines(self) -> int:
        return len(self._read_lines())

    def read(self) -> LogSnapshot:
        lines = self._read_lines()
        snapshot = LogSnapshot(line_count=len(lines))
        for number, line in enumerate(lines, start=1):
            event = self._parse_line(line, number)
            if event is None:
                snapshot.skipped += 1
                continue
            snapshot.events.append(event)
        return snapshot

    def _parse_line(self, line: str, number: int):
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed line %d in %s", number, self.path)
            return None
        if not isinstance(record, dict):
            logger.warning("Skipping non-object line %d in %s", number, self.path)
            return None
        try:
            event = parse_event(record)
        except ValidationError as exc:
            logger.warning("Skipping invalid record on line %d in %s: %s", number, self.path, exc.error_count())
            return None
        if event is None:
            logger.debug("Ignoring unknown event kind %r on line %d", record.get("kind"), number)
        return event

    def rotate(self, older_than_days: int, now: datetime | None = None) -> int:
        """Fold records older than the cutoff into one leading checkpoint.

        Returns how many records were folded. Lines that cannot be parsed
        are kept as they are.
        """
        from .cache import StatsCache

        now = now or utcnow()
        cutoff = now - timedelta(days=older_than_days)
        lines = self._read_lines()
        old_events: list = []
        kept: list[str] = []
        for number, line in enumerate(lines, start=1):
            event = self._parse_line(line, number)
            if event is not None and event.timestamp < cutoff:
                old_events.append(event)
            else:
                kept.append(line if line.endswith("\n") else line + "\n")
        if not old_events or (len(old_events) == 1 and isinstance(old_events[0], CheckpointEvent)):
            return 0

        folded = StatsCache.from_events(old_events, line_count=len(old_events))
        records = sum(e.records if isinstance(e, CheckpointEvent) else 1 for e in old_events)
        checkpoint = CheckpointEvent(
            timestamp=max(e.timestamp for e in old_events),
            covers_until=cutoff,
            records=records,
            aggregate=folded.checkpoint_payload(),
        )
        text = checkpoint.model_dump_json() + "\n" + "".join(kept)
        try:
            atomic_write_text(self.path, text)
        except OSError as exc:
            raise LogUnwritable(f"{self.path}: {exc}") from exc
        logger.info("Rotated %d records older than %s into a checkpoint", len(old_events), cutoff.isoformat())
        return len(old_events)
