"""
Autopilot - Autonomous Controller Tests
=======================================

End-to-end session runs against scripted agents, an in-memory code host
and a real epics directory.
"""

from pathlib import Path

import pytest

from autopilot.core.autonomous.agent_runtime import AgentHandle
from autopilot.core.autonomous.collaborators import CiCheck
from autopilot.core.autonomous.controller import AutonomousController
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.stuck_detector import StuckMonitor
from autopilot.core.autonomous.work_planner import WorkPlanner
from autopilot.core.config import SessionConfig
from autopilot.core.exceptions import ConfigurationError, InvalidTransitionError
from autopilot.core.models import (
    AgentStatus,
    AgentType,
    CiConclusion,
    ContinuationReason,
    EdgeCaseType,
    ModelTier,
    SessionState,
    StuckAgentDetection,
    StuckSeverity,
    StuckType,
    WorkItemStatus,
)

from fakes import (
    COMPLETE_OUTPUT,
    FakeAgentRuntime,
    FakeCodeHost,
    FakeWorktreeManager,
    tick_criteria,
    write_epic,
)


BLOCKED_OUTPUT = "I cannot reach the auth service.\nSTATUS: BLOCKED\nBLOCKER: missing API key"
CHANGES_OUTPUT = "VERDICT: CHANGES_REQUESTED\nsrc/auth/login.py:12: [HIGH] Password compared with ==\nSTATUS: REVIEW_FAILED"

BILLING_EPIC = """\
# Epic: Billing

### Story 1: Invoice totals
**Acceptance Criteria:**
- [ ] Totals include tax
- [ ] Totals are rounded to cents
"""

CYCLIC_EPIC = """\
# Epic: Cyclic

### Story 1: A
**Depends on:** story-2

**Acceptance Criteria:**
- [ ] A works

### Story 2: B
**Depends on:** story-1

**Acceptance Criteria:**
- [ ] B works
"""


async def no_sleep(seconds: float) -> None:
    return None


def build_controller(
    store: SessionStore,
    planner: WorkPlanner,
    runtime: FakeAgentRuntime,
    code_host: FakeCodeHost = None,
    notifications: list = None,
) -> AutonomousController:
    async def notify(event: dict) -> None:
        if notifications is not None:
            notifications.append(event)

    return AutonomousController(
        store,
        runtime=runtime,
        code_host=code_host,
        worktrees=FakeWorktreeManager(),
        planner=planner,
        monitor=StuckMonitor(store, poll_interval=3600),
        sleep=no_sleep,
        notification_callback=notify,
    )


# ==========================================================================
# Happy Path
# ==========================================================================

class TestHappyPath:
    """Stories flow from planning to DONE."""

    async def test_run_without_code_host(
        self,
        controller: AutonomousController,
        store: SessionStore,
        runtime: FakeAgentRuntime,
        worktrees: FakeWorktreeManager,
        notifications: list,
    ):
        """Both stories are implemented, reviewed and completed in dependency order."""
        session = await controller.start("epic-001*")
        assert session.state == SessionState.PLANNING
        assert session.work_queue == ["epic-001-auth/story-1", "epic-001-auth/story-2"]

        await controller.run(session.id)

        assert session.state == SessionState.DONE
        assert session.completed_at is not None
        assert session.completed_items == ["epic-001-auth/story-1", "epic-001-auth/story-2"]
        assert session.metric("stories_completed") == 2
        assert session.metric("reviews_passed") == 2
        assert session.metric("agents_spawned") == 4

        items = await store.work_items(session.id)
        assert [i.status for i in items] == [WorkItemStatus.COMPLETED, WorkItemStatus.COMPLETED]
        assert [i.phase for i in items] == [SessionState.DONE, SessionState.DONE]

        implementers = runtime.spawned_of(AgentType.IMPLEMENTER)
        assert len(implementers) == 2
        assert len(runtime.spawned_of(AgentType.REVIEWER)) == 2
        first_task = runtime.spawned[0][1]
        assert first_task.startswith("Implement story epic-001-auth/story-1: Login endpoint")
        assert "src/auth/login.py" in first_task

        agents = await store.agents(session.id)
        assert {a.status for a in agents} == {AgentStatus.COMPLETED}
        assert worktrees.removed == ["wt-1", "wt-2"]
        assert await store.claims(session.id) == []

        events = [n["type"] for n in notifications]
        assert events.count("story_completed") == 2
        assert events[-1] == "session_done"

    async def test_transitions_are_audited(self, controller: AutonomousController, store: SessionStore):
        session = await controller.start("epic-001*")
        await controller.run(session.id)

        story_path = [
            t.to_state for t in await store.transitions(session.id)
            if t.story_id == "epic-001-auth/story-1"
        ]

        assert story_path == [
            SessionState.EXECUTING,
            SessionState.REVIEWING,
            SessionState.PR_CREATION,
            SessionState.PR_MONITORING,
            SessionState.COMPLETING,
            SessionState.DONE,
        ]

    async def test_run_with_code_host_merges_pull_requests(
        self, store: SessionStore, planner: WorkPlanner
    ):
        host = FakeCodeHost()
        controller = build_controller(store, planner, FakeAgentRuntime(), code_host=host)
        try:
            session = await controller.start("epic-001*")
            await controller.run(session.id)
        finally:
            await controller.shutdown()

        assert session.state == SessionState.DONE
        assert host.merged == [1, 2]
        assert host.created[0].title == "epic-001-auth/story-1: Login endpoint"
        assert host.created[0].head == "autopilot/epic-001-auth/story-1"
        items = await store.work_items(session.id)
        assert [i.pr_number for i in items] == [1, 2]

    async def test_ci_failure_is_fixed_by_continuation(self, store: SessionStore, planner: WorkPlanner):
        """A failing check sends the failure back to the same agent, then re-reviews."""
        host = FakeCodeHost(checks=[CiCheck("build", CiConclusion.SUCCESS), CiCheck("tests", CiConclusion.FAILURE)])

        def fix_tests(handle: AgentHandle, prompt: str) -> str:
            host.checks = [CiCheck("build", CiConclusion.SUCCESS), CiCheck("tests", CiConclusion.SUCCESS)]
            return COMPLETE_OUTPUT

        runtime = FakeAgentRuntime({AgentType.IMPLEMENTER: [COMPLETE_OUTPUT, fix_tests]})
        controller = build_controller(store, planner, runtime, code_host=host)
        try:
            session = await controller.start("epic-001*")
            await controller.run(session.id)
        finally:
            await controller.shutdown()

        assert session.state == SessionState.DONE
        story = await store.get_work_item(session.id, "epic-001-auth/story-1")
        assert story.fix_iterations == 1
        assert "- 'tests' failed" in runtime.continued[0][1]
        continuations = await store.continuations(session_id=session.id)
        assert continuations[0].reason == ContinuationReason.TEST_FAILURES
        assert continuations[0].agent_id == story.agent_id

    async def test_unmet_criteria_continue_until_ticked(
        self, store: SessionStore, planner: WorkPlanner, epics_dir: Path
    ):
        path = write_epic(epics_dir, "epic-002-billing", BILLING_EPIC)
        runtime = FakeAgentRuntime({AgentType.IMPLEMENTER: [COMPLETE_OUTPUT, tick_criteria(path)]})
        controller = build_controller(store, planner, runtime)
        try:
            session = await controller.start("epic-002*")
            await controller.run(session.id)
        finally:
            await controller.shutdown()

        assert session.state == SessionState.DONE
        story = await store.get_work_item(session.id, "epic-002-billing/story-1")
        assert story.criteria_iterations == 1
        assert all(c["done"] for c in story.acceptance_criteria)
        assert "- [ ] Totals include tax" in runtime.continued[0][1]
        assert len(runtime.spawned_of(AgentType.IMPLEMENTER)) == 1

    async def test_dry_run_persists_nothing(self, controller: AutonomousController, store: SessionStore):
        session = await controller.start("epic-001*", SessionConfig(dry_run=True))

        assert session.state == SessionState.DONE
        assert session.work_queue == ["epic-001-auth/story-1", "epic-001-auth/story-2"]
        assert await store.work_items(session.id) == []

    def test_preview(self, controller: AutonomousController):
        plan = controller.preview("epic-001*")

        assert plan.dry_run
        assert [p.full_id for p in plan.work_queue] == ["epic-001-auth/story-1", "epic-001-auth/story-2"]


# ==========================================================================
# Blocking & Unblocking
# ==========================================================================

class TestBlocking:
    """Escalations block one story; dependents wait on it."""

    async def run_blocked(self, store: SessionStore, planner: WorkPlanner):
        runtime = FakeAgentRuntime({AgentType.IMPLEMENTER: [BLOCKED_OUTPUT, COMPLETE_OUTPUT]})
        controller = build_controller(store, planner, runtime)
        session = await controller.start("epic-001*")
        await controller.run(session.id)
        return controller, session, runtime

    async def test_blocked_signal_blocks_story_and_dependents(self, store: SessionStore, planner: WorkPlanner):
        controller, session, _ = await self.run_blocked(store, planner)
        try:
            status = await controller.status(session.id)
        finally:
            await controller.shutdown()

        assert status.state == SessionState.BLOCKED
        assert "missing API key" in status.blocked_reason
        by_id = {i["story_id"]: i for i in status.work_items}
        assert by_id["epic-001-auth/story-1"]["status"] == "blocked"
        assert by_id["epic-001-auth/story-1"]["blocked_reason"] == "missing API key"
        assert by_id["epic-001-auth/story-2"]["status"] == "blocked_by_dependency"
        agents = await store.agents(session.id)
        assert [a.status for a in agents] == [AgentStatus.FAILED]

    async def test_retry_resumes_story(self, store: SessionStore, planner: WorkPlanner):
        controller, session, runtime = await self.run_blocked(store, planner)
        try:
            await controller.unblock(session.id, "retry")
            assert session.state == SessionState.EXECUTING
            assert session.blocked_reason is None
            assert controller.is_running(session.id)

            await controller.join(session.id)
        finally:
            await controller.shutdown()

        assert session.state == SessionState.DONE
        story = await store.get_work_item(session.id, "epic-001-auth/story-1")
        assert story.retry_count == 1
        assert story.status == WorkItemStatus.COMPLETED
        first, retried = runtime.spawned_of(AgentType.IMPLEMENTER)[:2]
        assert retried.agent_id != first.agent_id
        assert "Attempt 2. The previous attempt was blocked: missing API key" in runtime.spawned[1][1]

    async def test_skip_satisfies_dependents(self, store: SessionStore, planner: WorkPlanner):
        controller, session, _ = await self.run_blocked(store, planner)
        try:
            await controller.unblock(session.id, "skip", story_id="epic-001-auth/story-1")
            await controller.join(session.id)
        finally:
            await controller.shutdown()

        items = {i.full_id: i.status for i in await store.work_items(session.id)}
        assert items == {
            "epic-001-auth/story-1": WorkItemStatus.SKIPPED,
            "epic-001-auth/story-2": WorkItemStatus.COMPLETED,
        }
        assert session.state == SessionState.DONE
        assert session.metric("stories_completed") == 1

    async def test_escalate_further_fails_story_and_dependents(self, store: SessionStore, planner: WorkPlanner):
        controller, session, _ = await self.run_blocked(store, planner)
        try:
            await controller.unblock(session.id, "escalate_further")
            await controller.join(session.id)
        finally:
            await controller.shutdown()

        items = await store.work_items(session.id)
        assert {i.status for i in items} == {WorkItemStatus.FAILED}
        assert session.state == SessionState.DONE
        assert session.metric("stories_failed") == 2
        assert session.success_rate == 0.0

    async def test_unblock_requires_blocked_story(self, controller: AutonomousController):
        session = await controller.start("epic-001*")

        with pytest.raises(InvalidTransitionError):
            await controller.unblock(session.id, "retry")
        with pytest.raises(ValueError):
            await controller.unblock(session.id, "shrug")

    async def test_review_ping_pong_escalates(self, store: SessionStore, planner: WorkPlanner):
        """The fourth change request blocks the story instead of continuing again."""
        runtime = FakeAgentRuntime({AgentType.REVIEWER: [CHANGES_OUTPUT]})
        controller = build_controller(store, planner, runtime)
        try:
            session = await controller.start("epic-001*")
            await controller.run(session.id)
        finally:
            await controller.shutdown()

        story = await store.get_work_item(session.id, "epic-001-auth/story-1")
        assert story.status == WorkItemStatus.BLOCKED
        assert story.blocked_reason == "review ping-pong"
        assert story.review_iterations == 4
        assert len(runtime.spawned_of(AgentType.REVIEWER)) == 4
        assert len(runtime.continued) == 3
        assert session.metric("reviews_failed") == 4
        edge_cases = [e.edge_case_type for e in await store.edge_cases(session.id)]
        assert EdgeCaseType.REVIEW_PING_PONG in edge_cases

    async def test_cycle_blocks_session_until_skipped(
        self, controller: AutonomousController, store: SessionStore, epics_dir: Path
    ):
        write_epic(epics_dir, "epic-003-cyclic", CYCLIC_EPIC)

        session = await controller.start("epic-003*")

        assert session.state == SessionState.BLOCKED
        assert session.blocked_reason.startswith("Cyclic dependency:")
        assert await store.work_items(session.id) == []

        await controller.unblock(session.id, "skip")

        assert session.state == SessionState.DONE

    async def test_unknown_pattern_blocks_then_escalates(self, controller: AutonomousController):
        session = await controller.start("epic-999*")

        assert session.state == SessionState.BLOCKED
        assert "epic-999*" in session.blocked_reason

        await controller.unblock(session.id, "escalate_further")

        assert session.state == SessionState.DONE
        assert session.error_message is not None


# ==========================================================================
# Control Surface
# ==========================================================================

class TestControl:
    """Pause, resume, stop and status."""

    async def test_paused_session_runs_again_after_resume(
        self, controller: AutonomousController, store: SessionStore, runtime: FakeAgentRuntime
    ):
        """A paused session does not run; resuming it relaunches the loop."""
        session = await controller.start("epic-001*")

        await controller.pause(session.id, reason="lunch")
        assert session.state == SessionState.PAUSED
        assert session.pause_reason == "lunch"

        await controller.run(session.id)
        assert runtime.spawned == []
        assert not controller.is_running(session.id)

        await controller.resume(session.id)
        assert session.state == SessionState.PLANNING
        assert session.pause_reason is None
        assert controller.is_running(session.id)

        await controller.join(session.id)

        assert session.state == SessionState.DONE
        assert not controller.is_running(session.id)
        assert len(runtime.spawned_of(AgentType.IMPLEMENTER)) == 2
        assert {i.status for i in await store.work_items(session.id)} == {WorkItemStatus.COMPLETED}

        with pytest.raises(InvalidTransitionError):
            await controller.resume(session.id)

    async def test_stop_is_terminal(self, controller: AutonomousController, store: SessionStore):
        session = await controller.start("epic-001*")

        await controller.stop(session.id)

        assert session.state == SessionState.DONE
        assert session.completed_at is not None
        with pytest.raises(InvalidTransitionError):
            await controller.stop(session.id)
        with pytest.raises(InvalidTransitionError):
            await controller.pause(session.id)

    async def test_status_after_run(self, controller: AutonomousController):
        session = await controller.start("epic-001*")
        await controller.run(session.id)

        status = await controller.status(session.id)

        assert status.state == SessionState.DONE
        assert not status.running
        assert status.success_rate == 1.0
        assert status.review_pass_rate == 1.0
        assert status.stuck_agents == 0
        assert [i["status"] for i in status.work_items] == ["completed", "completed"]
        assert "executing" in status.state_durations

    async def test_run_requires_runtime(self, store: SessionStore, planner: WorkPlanner):
        controller = AutonomousController(store, planner=planner, monitor=StuckMonitor(store, poll_interval=3600))
        session = await controller.start("epic-001*")

        with pytest.raises(ConfigurationError):
            await controller.run(session.id)
        with pytest.raises(ConfigurationError):
            controller.launch(session.id)


# ==========================================================================
# Recovery Executor
# ==========================================================================

class TestRecoveryActions:
    """The controller carries out recovery actions on real stories."""

    async def detection_for_story(self, controller: AutonomousController, store: SessionStore):
        session = await controller.start("epic-001*")
        await controller.run(session.id)
        story = await store.get_work_item(session.id, "epic-001-auth/story-1")
        detection = StuckAgentDetection(
            agent_id=story.agent_id,
            session_id=session.id,
            story_id=story.full_id,
            stuck_type=StuckType.NO_PROGRESS,
            severity=StuckSeverity.WARNING,
            details={"turns_without_progress": 5},
        )
        await store.save(detection)
        return story, detection

    async def test_escalate_model_raises_tier(self, controller: AutonomousController, store: SessionStore):
        story, detection = await self.detection_for_story(controller, store)
        record = await store.get_agent(detection.agent_id)

        result = await controller.escalate_model(detection)

        assert result["from_tier"] == record.tier.value
        assert story.tier_override == controller.selector.escalate(record.tier)
        assert ModelTier(result["to_tier"]) == story.tier_override

    async def test_fork_retry_reports_abandoned_agent(self, controller: AutonomousController, store: SessionStore):
        _, detection = await self.detection_for_story(controller, store)

        result = await controller.fork_retry(detection)

        assert result == {"abandoned_agent_id": detection.agent_id}

    async def test_pause_alert_notifies(
        self, controller: AutonomousController, store: SessionStore, notifications: list
    ):
        _, detection = await self.detection_for_story(controller, store)

        assert await controller.pause_alert(detection) == {"alerted": True}

        alert = notifications[-1]
        assert alert["type"] == "stuck_agent"
        assert alert["stuck_type"] == "no_progress"
        assert alert["story_id"] == "epic-001-auth/story-1"

    async def test_escalate_to_parent_notifies(
        self, controller: AutonomousController, store: SessionStore, notifications: list
    ):
        _, detection = await self.detection_for_story(controller, store)

        await controller.escalate_to_parent(detection, "no_progress unresolved after 3 recovery attempts")

        assert notifications[-1]["type"] == "escalated_to_parent"
        assert notifications[-1]["reason"] == "no_progress unresolved after 3 recovery attempts"
