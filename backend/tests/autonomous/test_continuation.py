"""
Autopilot - Agent Continuation & Runtime Tests
==============================================
"""

import pytest

from autopilot.core.autonomous.agent_runtime import (
    AgentHandle,
    AgentMessage,
    ResilientAgentRuntime,
    collect_turn,
)
from autopilot.core.autonomous.continuation import (
    REASON_PREFIXES,
    STATUS_REMINDER,
    ContinuationBuilder,
    ContinuationManager,
)
from autopilot.core.autonomous.signal_parser import ParsedSignal
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.work_evaluator import parse_review_output
from autopilot.core.config import SessionConfig
from autopilot.core.exceptions import (
    AgentRateLimitError,
    AgentSpawnError,
    AgentTimeoutError,
)
from autopilot.core.models import (
    AgentType,
    ContinuationReason,
    ContinuationStatus,
    StatusSignal,
)

from fakes import COMPLETE_OUTPUT, FakeAgentRuntime, Stall


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def stream(*messages: AgentMessage):
    for message in messages:
        yield message


# ==========================================================================
# Builder
# ==========================================================================

class TestContinuationBuilder:
    """Tests for continuation message composition."""

    def test_criteria_message(self):
        message = ContinuationBuilder.for_criteria(["Logout revokes the token"])

        assert message.startswith(REASON_PREFIXES[ContinuationReason.INCOMPLETE_CRITERIA])
        assert "- [ ] Logout revokes the token" in message
        assert message.endswith(STATUS_REMINDER)

    def test_review_message_orders_issues_by_severity(self):
        review = parse_review_output(
            "VERDICT: CHANGES_REQUESTED\n[LOW] Missing docstring\nsrc/auth.py:42: [CRITICAL] SQL injection"
        )

        message = ContinuationBuilder.for_review(review)

        assert message.startswith("Code review feedback received:")
        assert "Verdict: changes_requested" in message
        assert message.index("[CRITICAL] src/auth.py:42: SQL injection") < message.index("[LOW] Missing docstring")

    def test_failures_message(self):
        message = ContinuationBuilder.for_failures(["tests", "lint"], "- CI check 'tests' is failing")

        assert message.startswith("Tests failed with the following errors:")
        assert "- 'tests' failed" in message
        assert "- 'lint' failed" in message

    def test_conflicts_and_task_messages(self):
        conflicts = ContinuationBuilder.for_conflicts(["src/a.py"])
        task = ContinuationBuilder.for_task("Rebase onto main.")

        assert conflicts.startswith("Additional task requested:")
        assert "- src/a.py" in conflicts
        assert "Rebase onto main." in task


# ==========================================================================
# Manager
# ==========================================================================

class TestContinuationManager:
    """Continuations reuse the agent's context and identity."""

    async def test_apply_keeps_agent_identity(self, store: SessionStore):
        session = await store.create_session("*", SessionConfig())
        fake = FakeAgentRuntime({AgentType.IMPLEMENTER: [COMPLETE_OUTPUT]})
        runtime = ResilientAgentRuntime(fake)
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "Implement login", "sonnet")
        manager = ContinuationManager(store, runtime)

        continuation, turn = await manager.apply(
            session.id,
            handle,
            ContinuationReason.INCOMPLETE_CRITERIA,
            ContinuationBuilder.for_criteria(["Login works"]),
            story_id="epic-001-auth/story-1",
        )

        assert continuation.agent_id == handle.agent_id
        assert continuation.status == ContinuationStatus.COMPLETED
        assert continuation.result_signal == "COMPLETE"
        assert continuation.started_at is not None
        assert continuation.completed_at is not None
        assert turn.agent_id == handle.agent_id
        assert [agent_id for agent_id, _ in fake.continued] == [handle.agent_id]
        assert len(fake.spawned) == 1
        assert await store.agents(session.id) == []
        assert len(await store.continuations(agent_id=handle.agent_id)) == 1

    async def test_apply_failure_is_recorded_and_raised(self, store: SessionStore):
        session = await store.create_session("*", SessionConfig())
        fake = FakeAgentRuntime({AgentType.IMPLEMENTER: [RuntimeError("agent crashed")]})
        runtime = ResilientAgentRuntime(fake)
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "Implement login", "sonnet")
        manager = ContinuationManager(store, runtime)

        with pytest.raises(RuntimeError):
            await manager.apply(session.id, handle, ContinuationReason.TEST_FAILURES, "fix it")

        continuation = (await store.continuations(session_id=session.id))[0]
        assert continuation.status == ContinuationStatus.FAILED
        assert continuation.error_message == "agent crashed"

    async def test_cancel_only_pending(self, store: SessionStore):
        session = await store.create_session("*", SessionConfig())
        runtime = ResilientAgentRuntime(FakeAgentRuntime())
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")
        manager = ContinuationManager(store, runtime)
        done, _ = await manager.apply(session.id, handle, ContinuationReason.ADDITIONAL_TASK, "more")

        await manager.cancel(done)

        assert done.status == ContinuationStatus.COMPLETED


# ==========================================================================
# Runtime
# ==========================================================================

class TestCollectTurn:
    """Tests for folding a message stream into a turn."""

    async def test_counts_and_signal(self):
        handle = AgentHandle.new(AgentType.IMPLEMENTER, "sonnet")

        turn = await collect_turn(handle, stream(
            AgentMessage(role="assistant", content="Working on it.", tokens=10),
            AgentMessage(role="tool", tool_name="edit_file", modifies_files=True, tokens=5),
            AgentMessage(role="tool", tool_name="run_tests", content="1 failed", is_error=True),
            AgentMessage(role="assistant", content="STATUS: COMPLETE", tokens=20),
        ))

        assert handle.agent_id.startswith("agent-")
        assert turn.turns == 2
        assert turn.tool_calls == 2
        assert turn.file_modifications == 1
        assert turn.tokens == 35
        assert turn.errors == ["1 failed"]
        assert turn.final_message == "STATUS: COMPLETE"
        assert isinstance(turn.signal, ParsedSignal)
        assert turn.signal.signal == StatusSignal.COMPLETE


class TestResilientRuntime:
    """Retries, rate limits and idle timeouts."""

    async def test_spawn_retries_transient_errors(self):
        sleep = SleepRecorder()
        fake = FakeAgentRuntime(spawn_failures=[ConnectionError("connection reset"), TimeoutError("timed out")])
        runtime = ResilientAgentRuntime(fake, spawn_retries=3, initial_delay=1.0, max_delay=30.0, sleep=sleep)

        handle = await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")

        assert handle.agent_type == AgentType.IMPLEMENTER
        assert sleep.delays == [1.0, 2.0]

    async def test_spawn_gives_up_on_permanent_error(self):
        fake = FakeAgentRuntime(spawn_failures=[ValueError("invalid model")])
        runtime = ResilientAgentRuntime(fake, sleep=SleepRecorder())

        with pytest.raises(AgentSpawnError):
            await runtime.spawn(AgentType.IMPLEMENTER, "task", "nope")

    async def test_spawn_retries_exhausted(self):
        failures = [ConnectionError("connection refused") for _ in range(3)]
        runtime = ResilientAgentRuntime(
            FakeAgentRuntime(spawn_failures=failures), spawn_retries=2, sleep=SleepRecorder()
        )

        with pytest.raises(AgentSpawnError):
            await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")

    async def test_rate_limit_is_retried(self):
        sleep = SleepRecorder()
        notified = []

        async def on_rate_limit(handle, error):
            notified.append(error.retry_after)

        fake = FakeAgentRuntime({AgentType.IMPLEMENTER: [AgentRateLimitError(retry_after=12.0), COMPLETE_OUTPUT]})
        runtime = ResilientAgentRuntime(fake, sleep=sleep, on_rate_limit=on_rate_limit)
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")

        turn = await runtime.run_turn(handle)

        assert turn.signal.signal == StatusSignal.COMPLETE
        assert sleep.delays == [12.0]
        assert notified == [12.0]

    async def test_rate_limit_retries_exhausted(self):
        sleep = SleepRecorder()
        fake = FakeAgentRuntime({AgentType.IMPLEMENTER: [AgentRateLimitError()]})
        runtime = ResilientAgentRuntime(
            fake, rate_limit_retries=2, rate_limit_base=5.0, rate_limit_max=300.0, sleep=sleep
        )
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")

        with pytest.raises(AgentRateLimitError) as exc_info:
            await runtime.run_turn(handle, message="continue")

        assert exc_info.value.agent_id == handle.agent_id
        assert sleep.delays == [5.0, 10.0]
        assert len(fake.continued) == 3

    async def test_idle_timeout(self):
        fake = FakeAgentRuntime({AgentType.IMPLEMENTER: [Stall(seconds=1.0)]})
        runtime = ResilientAgentRuntime(fake, message_timeout=0.05)
        handle = await runtime.spawn(AgentType.IMPLEMENTER, "task", "sonnet")

        with pytest.raises(AgentTimeoutError):
            await runtime.run_turn(handle)

    async def test_terminate_delegates(self):
        fake = FakeAgentRuntime()
        runtime = ResilientAgentRuntime(fake)
        handle = await runtime.spawn(AgentType.REVIEWER, "review", "sonnet")

        await runtime.terminate(handle)
        await runtime.terminate(handle)

        assert fake.terminated == [handle.agent_id]
