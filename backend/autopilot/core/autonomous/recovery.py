"""
Recovery Engine
===============

Applies a bounded, ordered ladder of recovery actions to stuck-agent
detections. One attempt per ``recover`` call; the next rung is taken only
after the previous attempt was observed not to resolve the detection.

Ladder per stuck type (critical detections skip PAUSE_ALERT)::

    TURN_LIMIT_APPROACHING      pause_alert, fork_retry
    NO_PROGRESS                 pause_alert, model_escalation, spawn_fixer, fork_retry
    CI_TIMEOUT                  pause_alert, model_escalation, spawn_fixer, fork_retry
    REVIEW_DELAY                pause_alert, model_escalation
    MERGE_CONFLICT              pause_alert, spawn_fixer, fork_retry
    RATE_LIMITED                pause_alert
    CONTEXT_LIMIT_APPROACHING   pause_alert, fork_retry

Once the per-type cap of ladder attempts is used (or the ladder runs out)
the next attempt is ESCALATE_TO_PARENT, which is terminal and resolves the
detection.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from autopilot.core.autonomous.store import SessionStore
from autopilot.core.config import settings
from autopilot.core.exceptions import RecoveryError
from autopilot.core.models import (
    AgentType,
    RecoveryActionType,
    RecoveryAttempt,
    RecoveryOutcome,
    StuckAgentDetection,
    StuckSeverity,
    StuckType,
)

logger = structlog.get_logger()

A = RecoveryActionType


class RecoveryExecutor(ABC):
    """Carries out recovery actions. Implemented by the controller."""

    @abstractmethod
    async def pause_alert(self, detection: StuckAgentDetection) -> dict[str, Any]:
        pass

    @abstractmethod
    async def escalate_model(self, detection: StuckAgentDetection) -> dict[str, Any]:
        """Restart the agent's work at the next model tier."""
        pass

    @abstractmethod
    async def spawn_fixer(self, detection: StuckAgentDetection, agent_type: AgentType) -> dict[str, Any]:
        """Spawn a remediation agent scoped to the failure."""
        pass

    @abstractmethod
    async def fork_retry(self, detection: StuckAgentDetection) -> dict[str, Any]:
        """Abandon the stuck agent and start a fresh context."""
        pass

    @abstractmethod
    async def escalate_to_parent(self, detection: StuckAgentDetection, reason: str) -> dict[str, Any]:
        """Block the affected story for a human."""
        pass


class RecoveryEngine:
    """
    Ordered strategy lists with per-type caps.

    New strategies are appended to ``STRATEGIES`` without touching the
    detector.
    """

    STRATEGIES: dict[StuckType, list[RecoveryActionType]] = {
        StuckType.TURN_LIMIT_APPROACHING: [A.PAUSE_ALERT, A.FORK_RETRY],
        StuckType.NO_PROGRESS: [A.PAUSE_ALERT, A.MODEL_ESCALATION, A.SPAWN_FIXER, A.FORK_RETRY],
        StuckType.CI_TIMEOUT: [A.PAUSE_ALERT, A.MODEL_ESCALATION, A.SPAWN_FIXER, A.FORK_RETRY],
        StuckType.REVIEW_DELAY: [A.PAUSE_ALERT, A.MODEL_ESCALATION],
        StuckType.MERGE_CONFLICT: [A.PAUSE_ALERT, A.SPAWN_FIXER, A.FORK_RETRY],
        StuckType.RATE_LIMITED: [A.PAUSE_ALERT],
        StuckType.CONTEXT_LIMIT_APPROACHING: [A.PAUSE_ALERT, A.FORK_RETRY],
    }

    # Types whose retry is owned by the runtime's bounded backoff. Their ladder
    # never reaches EscalateToParent; an exhausted backoff fails the story instead.
    BACKOFF_ONLY = frozenset({StuckType.RATE_LIMITED})

    # Failing check keyword -> fixer agent
    FIXER_KEYWORDS = [
        (("lint", "format", "style", "ruff", "eslint"), AgentType.LINT_FIXER),
        (("build", "compile", "tsc", "typecheck"), AgentType.BUILD_FIXER),
        (("test", "pytest", "jest", "spec"), AgentType.TEST_FIXER),
    ]

    def __init__(
        self,
        store: SessionStore,
        executor: RecoveryExecutor,
        max_attempts: Optional[dict[StuckType, int]] = None,
    ):
        self.store = store
        self.executor = executor
        self.max_attempts = {
            StuckType.CI_TIMEOUT: settings.RECOVERY_CI_TIMEOUT_MAX_ATTEMPTS,
            StuckType.MERGE_CONFLICT: settings.RECOVERY_MERGE_CONFLICT_MAX_ATTEMPTS,
            StuckType.RATE_LIMITED: settings.RECOVERY_RATE_LIMITED_MAX_ATTEMPTS,
        }
        self.max_attempts.update(max_attempts or {})

    # ----------------------------------------------------------------------
    # Policy
    # ----------------------------------------------------------------------

    def cap_for(self, stuck_type: StuckType) -> int:
        return self.max_attempts.get(stuck_type, settings.RECOVERY_MAX_ATTEMPTS)

    def ladder(self, stuck_type: StuckType, severity: StuckSeverity) -> list[RecoveryActionType]:
        steps = list(self.STRATEGIES[stuck_type])
        if severity == StuckSeverity.CRITICAL and len(steps) > 1:
            steps = [s for s in steps if s != A.PAUSE_ALERT]
        return steps

    def next_action(
        self,
        stuck_type: StuckType,
        severity: StuckSeverity,
        attempts_made: int,
    ) -> RecoveryActionType:
        """The rung for attempt number ``attempts_made + 1``."""
        steps = self.ladder(stuck_type, severity)
        if stuck_type in self.BACKOFF_ONLY:
            return steps[min(attempts_made, len(steps) - 1)]
        if attempts_made >= self.cap_for(stuck_type) or attempts_made >= len(steps):
            return A.ESCALATE_TO_PARENT
        return steps[attempts_made]

    def is_exhausted(self, stuck_type: StuckType, attempts_made: int) -> bool:
        """True once a backoff-only detection has used its ladder attempts."""
        return stuck_type in self.BACKOFF_ONLY and attempts_made >= self.cap_for(stuck_type)

    def fixer_for(self, detection: StuckAgentDetection) -> AgentType:
        if detection.stuck_type == StuckType.MERGE_CONFLICT:
            return AgentType.CONFLICT_RESOLVER
        failing = " ".join(detection.details.get("failed_checks", []) + detection.details.get("pending_checks", []))
        failing = failing.lower()
        for keywords, agent_type in self.FIXER_KEYWORDS:
            if any(k in failing for k in keywords):
                return agent_type
        return AgentType.DEBUGGER

    # ----------------------------------------------------------------------
    # Recovery
    # ----------------------------------------------------------------------

    async def recover(self, detection: StuckAgentDetection) -> RecoveryAttempt:
        """
        Apply the next rung of the ladder to ``detection``.

        Raises:
            RecoveryError: If the detection is already resolved or escalated
        """
        if detection.resolved:
            raise RecoveryError(f"Detection {detection.id} is already resolved")

        attempts = await self.store.recovery_attempts(detection.id)
        if attempts and attempts[-1].action_type == A.ESCALATE_TO_PARENT:
            raise RecoveryError(f"Detection {detection.id} was already escalated")

        action = self.next_action(detection.stuck_type, detection.severity, len(attempts))
        now = datetime.now(timezone.utc)

        attempt = RecoveryAttempt(
            detection_id=detection.id,
            agent_id=detection.agent_id,
            session_id=detection.session_id,
            attempt_number=len(attempts) + 1,
            action_type=action,
            outcome=RecoveryOutcome.IN_PROGRESS,
            started_at=now,
            details={},
        )
        async with self.store.transaction():
            # Reaching here means the previous rung did not resolve the detection
            for previous in attempts:
                if previous.outcome == RecoveryOutcome.IN_PROGRESS:
                    previous.outcome = RecoveryOutcome.FAILED
                    previous.completed_at = now
            self.store.add(attempt)

        logger.info(
            "Recovery attempt",
            detection_id=str(detection.id),
            agent_id=detection.agent_id,
            stuck_type=detection.stuck_type.value,
            attempt=attempt.attempt_number,
            action=action.value,
        )

        try:
            details = await self._execute(action, detection, len(attempts))
        except Exception as e:
            async with self.store.transaction():
                attempt.outcome = RecoveryOutcome.FAILED
                attempt.error_message = str(e)
                attempt.completed_at = datetime.now(timezone.utc)
            logger.error(
                "Recovery action failed",
                detection_id=str(detection.id),
                action=action.value,
                error=str(e),
            )
            return attempt

        async with self.store.transaction():
            attempt.details = dict(details or {})
            if action == A.ESCALATE_TO_PARENT:
                attempt.outcome = RecoveryOutcome.SUCCESS
                attempt.completed_at = datetime.now(timezone.utc)
                detection.resolved = True
                detection.resolved_at = attempt.completed_at
                detection.resolution = "escalated to parent"
        return attempt

    async def _execute(
        self,
        action: RecoveryActionType,
        detection: StuckAgentDetection,
        attempts_made: int,
    ) -> dict[str, Any]:
        if action == A.PAUSE_ALERT:
            return await self.executor.pause_alert(detection)
        if action == A.MODEL_ESCALATION:
            return await self.executor.escalate_model(detection)
        if action == A.SPAWN_FIXER:
            return await self.executor.spawn_fixer(detection, self.fixer_for(detection))
        if action == A.FORK_RETRY:
            return await self.executor.fork_retry(detection)
        reason = (
            f"{detection.stuck_type.value} unresolved after {attempts_made} recovery attempts"
        )
        return await self.executor.escalate_to_parent(detection, reason)

    # ----------------------------------------------------------------------
    # Resolution
    # ----------------------------------------------------------------------

    async def mark_resolved(self, detection: StuckAgentDetection, resolution: str) -> None:
        """The condition cleared: close the detection and credit the running attempt."""
        attempts = await self.store.recovery_attempts(detection.id)
        now = datetime.now(timezone.utc)
        async with self.store.transaction():
            detection.resolved = True
            detection.resolved_at = now
            detection.resolution = resolution
            for attempt in attempts:
                if attempt.outcome == RecoveryOutcome.IN_PROGRESS:
                    attempt.outcome = RecoveryOutcome.SUCCESS
                    attempt.completed_at = now
        logger.info(
            "Stuck detection resolved",
            detection_id=str(detection.id),
            agent_id=detection.agent_id,
            resolution=resolution,
        )

    async def resolve_manually(self, detection_id: UUID, note: Optional[str] = None) -> StuckAgentDetection:
        """
        Operator resolution; running attempts are cancelled.

        Raises:
            RecoveryError: If the detection does not exist
        """
        detection = await self.store.get_detection(detection_id)
        if detection is None:
            raise RecoveryError(f"Detection {detection_id} not found")

        attempts = await self.store.recovery_attempts(detection.id)
        now = datetime.now(timezone.utc)
        async with self.store.transaction():
            detection.resolved = True
            detection.resolved_at = now
            detection.resolution = f"manual: {note}" if note else "manual"
            for attempt in attempts:
                if attempt.outcome == RecoveryOutcome.IN_PROGRESS:
                    attempt.outcome = RecoveryOutcome.CANCELLED
                    attempt.completed_at = now
        logger.info("Stuck detection resolved manually", detection_id=str(detection_id))
        return detection
