"""Gate state machine with circuit-breaker safety.

The gate decides whether a session may end. Once a work unit closes, an
exit attempt is blocked until a reflection is submitted or an explicit
skip is recorded. The circuit breaker forces approval after ``max_blocks``
consecutive blocks within one session and cooldown window so an agent can
never be wedged.
"""
from __future__ import annotations

from datetime import datetime

from .config import Config
from .errors import InvalidTransition
from .models import (
    GateDecision,
    GateState,
    GateStatus,
    ReflectionResult,
    SkipDecider,
    SkipDecision,
    TicketCloseIntent,
    TicketContext,
    utcnow,
)

BLOCK_MESSAGE = (
    "Reflection required. Run `reflection-gate reflect` to capture learnings "
    "or `reflection-gate skip <reason>` to skip."
)
FORCED_MESSAGE = "Circuit breaker tripped after {blocks} blocks. Reflection skipped."


class Gate:
    """Transitions over a session's ``GateState``; mutates it in place."""

    def __init__(self, state: GateState, config: Config, session_id: str, now: datetime | None = None):
        self.state = state
        self.config = config
        self.session_id = session_id
        self.now = now or utcnow()

    @property
    def status(self) -> GateStatus:
        return self.state.status

    def _require(self, action: str, *allowed: GateStatus) -> None:
        if self.state.status not in allowed:
            raise InvalidTransition(f"cannot {action} in {self.state.status.value} state")

    def detect_ticket(self, ticket: TicketContext) -> None:
        self._require("detect ticket", GateStatus.IDLE)
        self.state.ticket = ticket
        self.state.status = GateStatus.ACTIVE

    def enable_session_gate(self, diff_size: int) -> None:
        self._require("enable session gate", GateStatus.IDLE)
        self.state.cached_diff_size = diff_size
        self.state.status = GateStatus.PENDING

    def record_close_intent(self, intent: TicketCloseIntent) -> None:
        self.state.ticket_close_intent = intent

    def confirm_ticket_close(self) -> None:
        self._require("confirm ticket close", GateStatus.ACTIVE)
        self.state.ticket_close_intent = None
        self.state.status = GateStatus.PENDING

    def ticket_close_failed(self) -> None:
        self._require("revert ticket close", GateStatus.ACTIVE)
        self.state.ticket_close_intent = None

    def abandon_ticket(self) -> None:
        self._require("abandon ticket", GateStatus.ACTIVE)
        self.state.ticket_close_intent = None
        self.state.ticket = None
        self.state.status = GateStatus.IDLE

    def reset_for_new_ticket(self) -> None:
        """Terminal -> Idle so a later work unit in the same session is gated again."""
        if not self.state.status.is_terminal():
            raise InvalidTransition(f"cannot reset for new ticket in {self.state.status.value} state")
        self.state.reflection = None
        self.state.skip = None
        self.state.ticket = None
        self.state.ticket_close_intent = None
        self.state.status = GateStatus.IDLE

    def skip(self, reason: str, decider: SkipDecider) -> SkipDecision:
        if not self.state.status.requires_reflection():
            raise InvalidTransition(f"cannot skip in {self.state.status.value} state")
        decision = SkipDecision(
            reason=reason,
            decider=decider,
            lines_changed=self.state.cached_diff_size,
            decided_at=self.now,
        )
        self.state.skip = decision
        self.state.status = GateStatus.SKIPPED
        self.reset_circuit_breaker()
        return decision

    def complete_reflection(self, result: ReflectionResult) -> None:
        if not self.state.status.requires_reflection():
            raise InvalidTransition(f"cannot complete reflection in {self.state.status.value} state")
        self.state.reflection = result
        self.state.status = GateStatus.REFLECTED
        self.reset_circuit_breaker()

    def evaluate_auto_skip(self, diff_size: int | None) -> str | None:
        """Reason string when the change is too small to gate, else None.

        An unknown diff size never auto-skips.
        """
        gate_config = self.config.gate
        if not gate_config.auto_skip_enabled or diff_size is None:
            return None
        threshold = gate_config.auto_skip_line_threshold
        if diff_size < threshold:
            return f"auto: {diff_size} lines changed (threshold: {threshold})"
        return None

    def should_reset_circuit_breaker(self) -> bool:
        last_session = self.state.last_blocked_session_id
        if last_session is not None and last_session != self.session_id:
            return True
        last_blocked = self.state.last_blocked_at
        if last_blocked is not None:
            elapsed = (self.now - last_blocked).total_seconds()
            if elapsed >= self.config.circuit_breaker.cooldown_seconds:
                return True
        return False

    def reset_circuit_breaker(self) -> None:
        self.state.block_count = 0
        self.state.circuit_breaker_tripped = False
        self.state.last_blocked_session_id = None
        self.state.last_blocked_at = None

    def exit_attempt(self, diff_size: int | None = None) -> GateDecision:
        """Decide whether the session may end right now."""
        if diff_size is not None:
            self.state.cached_diff_size = diff_size
        status = self.state.status

        if status.is_terminal() or status == GateStatus.ACTIVE:
            return GateDecision.approve()

        if status == GateStatus.IDLE:
            if not self._session_gate_applies():
                return GateDecision.approve()
            self.enable_session_gate(self.state.cached_diff_size)

        if self.state.status == GateStatus.PENDING:
            reason = self.evaluate_auto_skip(self.state.cached_diff_size)
            if reason is not None:
                self.skip(reason, SkipDecider.AUTO_THRESHOLD)
                return GateDecision.approve(reason)

        return self._block_or_trip()

    def _session_gate_applies(self) -> bool:
        diff_size = self.state.cached_diff_size
        if self.state.ticket is not None or diff_size is None:
            return False
        if diff_size < self.config.gate.auto_skip_line_threshold:
            return False
        if self.state.circuit_breaker_tripped:
            if not self.should_reset_circuit_breaker():
                return False
            self.reset_circuit_breaker()
        return True

    def _block_or_trip(self) -> GateDecision:
        if self.should_reset_circuit_breaker():
            self.reset_circuit_breaker()
        max_blocks = self.config.circuit_breaker.max_blocks
        if self.state.block_count >= max_blocks:
            self.state.circuit_breaker_tripped = True
            self.state.status = GateStatus.IDLE
            return GateDecision.forced(FORCED_MESSAGE.format(blocks=self.state.block_count))
        self.state.block_count += 1
        self.state.last_blocked_session_id = self.session_id
        self.state.last_blocked_at = self.now
        self.state.status = GateStatus.BLOCKED
        return GateDecision.block(BLOCK_MESSAGE)
