"""
Autopilot - Recovery Engine Tests
=================================
"""

from typing import Optional
from uuid import uuid4

import pytest

from autopilot.core.autonomous.recovery import RecoveryEngine
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.config import SessionConfig
from autopilot.core.exceptions import RecoveryError
from autopilot.core.models import (
    AgentType,
    AutonomousSession,
    RecoveryActionType as A,
    RecoveryOutcome,
    StuckAgentDetection,
    StuckSeverity,
    StuckType,
)

from fakes import RecordingExecutor


@pytest.fixture
async def session(store: SessionStore) -> AutonomousSession:
    return await store.create_session("*", SessionConfig())


async def make_detection(
    store: SessionStore,
    session: AutonomousSession,
    stuck_type: StuckType,
    severity: StuckSeverity,
    details: Optional[dict] = None,
) -> StuckAgentDetection:
    detection = StuckAgentDetection(
        agent_id="agent-1",
        session_id=session.id,
        story_id="epic-001-auth/story-1",
        stuck_type=stuck_type,
        severity=severity,
        details=details or {},
    )
    await store.save(detection)
    return detection


def unsaved(stuck_type: StuckType, **details) -> StuckAgentDetection:
    return StuckAgentDetection(
        agent_id="agent-1",
        session_id=uuid4(),
        stuck_type=stuck_type,
        severity=StuckSeverity.WARNING,
        details=details,
    )


# ==========================================================================
# Policy
# ==========================================================================

class TestPolicy:
    """Tests for the ladders and caps."""

    @pytest.fixture
    def engine(self) -> RecoveryEngine:
        return RecoveryEngine(store=None, executor=RecordingExecutor())

    def test_warning_ladder_starts_with_pause_alert(self, engine: RecoveryEngine):
        steps = [engine.next_action(StuckType.NO_PROGRESS, StuckSeverity.WARNING, n) for n in range(4)]

        assert steps == [A.PAUSE_ALERT, A.MODEL_ESCALATION, A.SPAWN_FIXER, A.ESCALATE_TO_PARENT]

    def test_critical_ladder_skips_pause_alert(self, engine: RecoveryEngine):
        """CI timeout is capped at two ladder attempts."""
        steps = [engine.next_action(StuckType.CI_TIMEOUT, StuckSeverity.CRITICAL, n) for n in range(3)]

        assert steps == [A.MODEL_ESCALATION, A.SPAWN_FIXER, A.ESCALATE_TO_PARENT]

    def test_merge_conflict_ladder(self, engine: RecoveryEngine):
        steps = [engine.next_action(StuckType.MERGE_CONFLICT, StuckSeverity.CRITICAL, n) for n in range(3)]

        assert steps == [A.SPAWN_FIXER, A.FORK_RETRY, A.ESCALATE_TO_PARENT]

    def test_rate_limit_never_escalates(self, engine: RecoveryEngine):
        """Rate limits get one alert; the runtime's backoff owns the retries."""
        assert engine.cap_for(StuckType.RATE_LIMITED) == 1
        steps = [
            engine.next_action(StuckType.RATE_LIMITED, severity, n)
            for severity in StuckSeverity
            for n in range(4)
        ]

        assert set(steps) == {A.PAUSE_ALERT}
        assert not engine.is_exhausted(StuckType.RATE_LIMITED, 0)
        assert engine.is_exhausted(StuckType.RATE_LIMITED, 1)
        assert not engine.is_exhausted(StuckType.CI_TIMEOUT, 5)

    def test_short_ladder_escalates_when_exhausted(self, engine: RecoveryEngine):
        assert engine.next_action(StuckType.REVIEW_DELAY, StuckSeverity.WARNING, 2) == A.ESCALATE_TO_PARENT

    def test_custom_caps(self):
        engine = RecoveryEngine(store=None, executor=RecordingExecutor(), max_attempts={StuckType.NO_PROGRESS: 1})

        assert engine.next_action(StuckType.NO_PROGRESS, StuckSeverity.WARNING, 1) == A.ESCALATE_TO_PARENT

    @pytest.mark.parametrize(
        "detection,fixer",
        [
            (unsaved(StuckType.MERGE_CONFLICT, conflicting_files=["a.py"]), AgentType.CONFLICT_RESOLVER),
            (unsaved(StuckType.CI_TIMEOUT, failed_checks=["eslint"]), AgentType.LINT_FIXER),
            (unsaved(StuckType.CI_TIMEOUT, pending_checks=["build"]), AgentType.BUILD_FIXER),
            (unsaved(StuckType.CI_TIMEOUT, failed_checks=["unit-tests"]), AgentType.TEST_FIXER),
            (unsaved(StuckType.NO_PROGRESS), AgentType.DEBUGGER),
        ],
    )
    def test_fixer_for(self, engine: RecoveryEngine, detection: StuckAgentDetection, fixer: AgentType):
        assert engine.fixer_for(detection) == fixer


# ==========================================================================
# Attempts
# ==========================================================================

class TestRecover:
    """Tests for applying the ladder to persisted detections."""

    async def test_ci_timeout_ladder_to_escalation(self, store: SessionStore, session: AutonomousSession):
        """Two ladder attempts, then escalation resolves the detection."""
        executor = RecordingExecutor()
        engine = RecoveryEngine(store, executor)
        detection = await make_detection(
            store, session, StuckType.CI_TIMEOUT, StuckSeverity.CRITICAL, {"pending_checks": ["build"]}
        )

        first = await engine.recover(detection)
        assert first.action_type == A.MODEL_ESCALATION
        assert first.attempt_number == 1
        assert first.outcome == RecoveryOutcome.IN_PROGRESS

        second = await engine.recover(detection)
        assert second.action_type == A.SPAWN_FIXER
        assert first.outcome == RecoveryOutcome.FAILED

        third = await engine.recover(detection)
        assert third.action_type == A.ESCALATE_TO_PARENT
        assert third.outcome == RecoveryOutcome.SUCCESS
        assert detection.resolved
        assert detection.resolution == "escalated to parent"

        assert executor.calls == [
            ("escalate_model", None),
            ("spawn_fixer", AgentType.BUILD_FIXER),
            ("escalate_to_parent", "ci_timeout unresolved after 2 recovery attempts"),
        ]

        with pytest.raises(RecoveryError):
            await engine.recover(detection)

    async def test_executor_failure_marks_attempt_failed(self, store: SessionStore, session: AutonomousSession):
        engine = RecoveryEngine(store, RecordingExecutor(fail_on="pause_alert"))
        detection = await make_detection(store, session, StuckType.NO_PROGRESS, StuckSeverity.WARNING)

        attempt = await engine.recover(detection)

        assert attempt.outcome == RecoveryOutcome.FAILED
        assert attempt.error_message == "pause_alert failed"
        assert not detection.resolved

        following = await engine.recover(detection)
        assert following.action_type == A.MODEL_ESCALATION
        assert following.attempt_number == 2

    async def test_mark_resolved_credits_running_attempt(self, store: SessionStore, session: AutonomousSession):
        engine = RecoveryEngine(store, RecordingExecutor())
        detection = await make_detection(store, session, StuckType.TURN_LIMIT_APPROACHING, StuckSeverity.WARNING)
        attempt = await engine.recover(detection)

        await engine.mark_resolved(detection, "condition cleared")

        assert detection.resolved
        assert attempt.outcome == RecoveryOutcome.SUCCESS
        assert attempt.completed_at is not None

    async def test_resolve_manually(self, store: SessionStore, session: AutonomousSession):
        engine = RecoveryEngine(store, RecordingExecutor())
        detection = await make_detection(store, session, StuckType.REVIEW_DELAY, StuckSeverity.WARNING)
        attempt = await engine.recover(detection)

        resolved = await engine.resolve_manually(detection.id, note="reviewer pinged")

        assert resolved is detection
        assert detection.resolution == "manual: reviewer pinged"
        assert attempt.outcome == RecoveryOutcome.CANCELLED

    async def test_resolve_unknown_detection(self, store: SessionStore):
        with pytest.raises(RecoveryError):
            await RecoveryEngine(store, RecordingExecutor()).resolve_manually(uuid4())
