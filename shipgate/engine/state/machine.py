"""Workflow finite-state machine and transition guards."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class WorkflowState(str, Enum):
    """Phases of the delivery lifecycle."""

    IDLE = "IDLE"
    PRD_LOADED = "PRD_LOADED"
    INTERVIEWING = "INTERVIEWING"
    LOCKED = "LOCKED"
    BOOTSTRAPPED = "BOOTSTRAPPED"
    HARDENED = "HARDENED"
    REFRESHED = "REFRESHED"
    PLANNING = "PLANNING"
    IMPLEMENTING = "IMPLEMENTING"
    REVIEWING = "REVIEWING"
    TESTING = "TESTING"
    SHIPPED = "SHIPPED"
    DEBUGGING = "DEBUGGING"
    CHANGE_REQUEST = "CHANGE_REQUEST"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @classmethod
    def parse(cls, value: str | WorkflowState) -> WorkflowState:
        """Return the state for a name, case-insensitively."""
        if isinstance(value, WorkflowState):
            return value
        try:
            return cls(value.strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unknown workflow state: {value}") from exc


class StateTransitionError(ValueError):
    """Raised when a requested transition violates the machine's guards."""


S = WorkflowState

ESCAPE_STATES: frozenset[WorkflowState] = frozenset(
    {S.PAUSED, S.FAILED, S.ABORTED, S.CHANGE_REQUEST}
)
BUILD_FLOW_STATES: frozenset[WorkflowState] = frozenset(
    {S.PLANNING, S.IMPLEMENTING, S.REVIEWING, S.TESTING}
)

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    S.IDLE: frozenset({S.PRD_LOADED}),
    S.PRD_LOADED: frozenset({S.INTERVIEWING, S.LOCKED}),
    S.INTERVIEWING: frozenset({S.PRD_LOADED, S.LOCKED}),
    S.LOCKED: frozenset({S.BOOTSTRAPPED, S.CHANGE_REQUEST}),
    S.BOOTSTRAPPED: frozenset({S.HARDENED, S.CHANGE_REQUEST}),
    S.HARDENED: frozenset({S.REFRESHED, S.PLANNING, S.CHANGE_REQUEST}),
    S.REFRESHED: frozenset({S.PLANNING, S.CHANGE_REQUEST}),
    S.PLANNING: frozenset({S.IMPLEMENTING, S.CHANGE_REQUEST}),
    S.IMPLEMENTING: frozenset({S.REVIEWING, S.PLANNING, S.CHANGE_REQUEST}),
    S.REVIEWING: frozenset({S.TESTING, S.IMPLEMENTING, S.PLANNING, S.CHANGE_REQUEST}),
    S.TESTING: frozenset({S.SHIPPED, S.DEBUGGING, S.CHANGE_REQUEST}),
    S.SHIPPED: frozenset({S.PLANNING, S.CHANGE_REQUEST, S.PRD_LOADED}),
    S.DEBUGGING: frozenset({S.TESTING, S.IMPLEMENTING, S.CHANGE_REQUEST}),
    S.CHANGE_REQUEST: frozenset({S.PRD_LOADED, S.INTERVIEWING, S.LOCKED, S.ABORTED}),
    # A paused project may resume into whatever phase it was paused from.
    S.PAUSED: frozenset(state for state in WorkflowState if state is not S.PAUSED),
    S.FAILED: frozenset({S.PLANNING, S.IMPLEMENTING, S.DEBUGGING, S.ABORTED}),
    S.ABORTED: frozenset({S.IDLE}),
}

# States whose presence implies hardening already happened.
HARDENED_STATES: frozenset[WorkflowState] = frozenset(
    {
        S.HARDENED,
        S.REFRESHED,
        S.PLANNING,
        S.IMPLEMENTING,
        S.REVIEWING,
        S.TESTING,
        S.SHIPPED,
        S.DEBUGGING,
        S.PAUSED,
        S.FAILED,
        S.CHANGE_REQUEST,
    }
)


@dataclass(frozen=True)
class TransitionContext:
    """Ephemeral flags recomputed for every transition attempt."""

    has_lock: bool = False
    is_hardened: bool = False
    hash_mismatch: bool = False

    def merged(
        self,
        *,
        has_lock: bool | None = None,
        is_hardened: bool | None = None,
        hash_mismatch: bool | None = None,
    ) -> TransitionContext:
        """Return a copy with the given flags overridden."""
        return TransitionContext(
            has_lock=self.has_lock if has_lock is None else has_lock,
            is_hardened=self.is_hardened if is_hardened is None else is_hardened,
            hash_mismatch=self.hash_mismatch if hash_mismatch is None else hash_mismatch,
        )

    def to_dict(self) -> dict[str, bool]:
        """Return JSON-serializable flags."""
        return {
            "hasLock": self.has_lock,
            "isHardened": self.is_hardened,
            "hashMismatch": self.hash_mismatch,
        }


@dataclass(frozen=True)
class TransitionDecision:
    """Result of a transition check."""

    allowed: bool
    reason: str | None = None


def check_entry_guards(next_state: WorkflowState, context: TransitionContext) -> TransitionDecision:
    """Apply the lock and hardening preconditions for entering ``next_state``."""
    if next_state is S.BOOTSTRAPPED and not context.has_lock:
        return TransitionDecision(False, "Cannot bootstrap without LOCKED state/lock artifacts.")
    if next_state in BUILD_FLOW_STATES and not context.is_hardened:
        return TransitionDecision(False, "Cannot enter build flow before HARDENED state.")
    return TransitionDecision(True)


def can_transition(
    current: WorkflowState,
    next_state: WorkflowState,
    context: TransitionContext | None = None,
) -> TransitionDecision:
    """Decide whether ``current -> next_state`` is legal under ``context``."""
    ctx = context or TransitionContext()

    if ctx.hash_mismatch and next_state is not S.CHANGE_REQUEST:
        return TransitionDecision(False, "Hash mismatch requires transition to CHANGE_REQUEST.")

    if next_state in ESCAPE_STATES:
        return TransitionDecision(True)

    # Leaving PAUSED skips the lock and hardening guards so any phase can be
    # restored with an empty context. Callers resuming into a phase other than
    # the one that was paused apply check_entry_guards themselves.
    if current is S.PAUSED:
        return TransitionDecision(True)

    guard = check_entry_guards(next_state, ctx)
    if not guard.allowed:
        return guard

    if next_state not in TRANSITIONS[current]:
        return TransitionDecision(
            False, f"Invalid transition: {current.value} -> {next_state.value}"
        )
    return TransitionDecision(True)


def assert_transition(
    current: WorkflowState,
    next_state: WorkflowState,
    context: TransitionContext | None = None,
) -> None:
    """Raise StateTransitionError when the transition is not allowed."""
    decision = can_transition(current, next_state, context)
    if not decision.allowed:
        raise StateTransitionError(decision.reason or "Transition rejected.")
