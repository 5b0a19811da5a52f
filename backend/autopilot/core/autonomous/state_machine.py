"""
Session State Machine
=====================

Transition table for autonomous sessions and per-story phases.

Forward path::

    IDLE -> ANALYZING -> DISCOVERING -> PLANNING -> EXECUTING <-> REVIEWING
         -> PR_CREATION -> PR_MONITORING <-> PR_FIXING
         -> PR_MERGING -> COMPLETING -> DONE

BLOCKED is reachable from any non-terminal state and PAUSED from any
non-terminal, non-BLOCKED state. Nothing leaves DONE.
"""

from autopilot.core.exceptions import InvalidTransitionError
from autopilot.core.models import SessionState

S = SessionState

FORWARD_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.IDLE: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.DISCOVERING}),
    S.DISCOVERING: frozenset({S.PLANNING}),
    S.PLANNING: frozenset({S.EXECUTING, S.COMPLETING}),          # COMPLETING: empty queue
    S.EXECUTING: frozenset({S.REVIEWING}),
    S.REVIEWING: frozenset({S.EXECUTING, S.PR_CREATION}),
    S.PR_CREATION: frozenset({S.PR_MONITORING}),
    S.PR_MONITORING: frozenset({S.PR_FIXING, S.PR_MERGING, S.COMPLETING}),  # COMPLETING: auto_merge off
    S.PR_FIXING: frozenset({S.PR_MONITORING}),
    S.PR_MERGING: frozenset({S.COMPLETING}),
    S.COMPLETING: frozenset({S.DONE, S.EXECUTING, S.DISCOVERING}),
    S.DONE: frozenset(),
    S.BLOCKED: frozenset(),
    S.PAUSED: frozenset(),
}

WORKING_STATES = frozenset(set(FORWARD_TRANSITIONS) - {S.DONE, S.BLOCKED, S.PAUSED})


def is_terminal(state: SessionState) -> bool:
    return state == S.DONE


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    """Whether ``from_state -> to_state`` is allowed."""
    if is_terminal(from_state):
        return False
    if to_state == S.DONE and from_state != S.COMPLETING:
        return True                       # Explicit stop
    if to_state == S.BLOCKED:
        return from_state != S.BLOCKED
    if to_state == S.PAUSED:
        return from_state not in (S.BLOCKED, S.PAUSED)
    if from_state in (S.BLOCKED, S.PAUSED):
        return to_state in WORKING_STATES  # Unblock / resume
    return to_state in FORWARD_TRANSITIONS[from_state]


def validate_transition(from_state: SessionState, to_state: SessionState) -> None:
    """
    Raises:
        InvalidTransitionError: If the transition is not in the table
    """
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)


def allowed_targets(state: SessionState) -> list[SessionState]:
    return [target for target in SessionState if can_transition(state, target)]
