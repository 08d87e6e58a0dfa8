"""Workflow state machine and persistence exports."""

from shipgate.engine.state.machine import (
    ESCAPE_STATES,
    TRANSITIONS,
    StateTransitionError,
    TransitionContext,
    TransitionDecision,
    WorkflowState,
    assert_transition,
    can_transition,
    check_entry_guards,
)

__all__ = [
    "ESCAPE_STATES",
    "TRANSITIONS",
    "StateTransitionError",
    "TransitionContext",
    "TransitionDecision",
    "WorkflowState",
    "assert_transition",
    "can_transition",
    "check_entry_guards",
]
