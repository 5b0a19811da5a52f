"""
Autopilot - Exceptions
======================

Domain exceptions raised by the autonomous controller.

Structural failures (cycles, claim conflicts, illegal transitions) fail fast
and are reported to the operator. Agent runtime errors carry a
``recoverable`` flag so transient failures can be retried with backoff.
"""

from typing import Optional, Sequence


class AutopilotError(Exception):
    """Base exception for all controller errors."""


class ConfigurationError(AutopilotError):
    """Invalid session or application configuration."""


# ==========================================================================
# Planning
# ==========================================================================

class PlanningError(AutopilotError):
    """Work planning failed."""


class EpicNotFoundError(PlanningError):
    """No epic matched the requested pattern."""


class CyclicDependencyError(PlanningError):
    """Story dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


class UnknownDependencyError(PlanningError):
    """A story depends on a story that was not discovered."""

    def __init__(self, story_id: str, dependency: str) -> None:
        self.story_id = story_id
        self.dependency = dependency
        super().__init__(f"Story {story_id} depends on unknown story {dependency}")


# ==========================================================================
# Session Lifecycle
# ==========================================================================

class SessionNotFoundError(AutopilotError):
    """Session does not exist."""

    def __init__(self, session_id: object) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionAlreadyRunningError(AutopilotError):
    """A decision loop is already running for this session."""


class InvalidTransitionError(AutopilotError):
    """State transition not allowed by the session state machine."""

    def __init__(self, from_state: object, to_state: object) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition {getattr(from_state, 'value', from_state)} -> "
            f"{getattr(to_state, 'value', to_state)}"
        )


class StoryAlreadyClaimedError(AutopilotError):
    """Another active session already owns this story."""

    def __init__(self, epic_id: str, story_id: str, owner: Optional[object] = None) -> None:
        self.epic_id = epic_id
        self.story_id = story_id
        self.owner = owner
        super().__init__(f"Story {epic_id}/{story_id} is already claimed by session {owner}")


# ==========================================================================
# Agent Runtime
# ==========================================================================

class AgentRuntimeError(AutopilotError):
    """
    Base exception for agent runtime failures.

    ``recoverable`` marks errors worth retrying (network blips, timeouts).
    """

    def __init__(
        self,
        message: str,
        agent_id: Optional[str] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.recoverable = recoverable


class AgentSpawnError(AgentRuntimeError):
    """Agent could not be started."""


class AgentTimeoutError(AgentRuntimeError):
    """Agent produced no message within the allowed window."""

    def __init__(self, message: str, agent_id: Optional[str] = None) -> None:
        super().__init__(message, agent_id=agent_id, recoverable=True)


class AgentRateLimitError(AgentRuntimeError):
    """Agent runtime reported a rate limit."""

    def __init__(
        self,
        message: str = "Rate limited",
        agent_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, agent_id=agent_id, recoverable=True)
        self.retry_after = retry_after


# ==========================================================================
# Collaborators
# ==========================================================================

class CodeHostError(AutopilotError):
    """Code-hosting platform request failed."""


class RecoveryError(AutopilotError):
    """Recovery action could not be applied."""
