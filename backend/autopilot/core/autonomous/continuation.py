"""
Agent Continuation
==================

Resumes an already-spawned agent in its existing conversational context
instead of spawning a fresh one. A continuation never creates a new agent
identity: the AgentContinuation row points at the same agent_id and no
AgentRecord is written.

Continuations for one agent are serialized so two messages are never
interleaved into one context.
"""

import asyncio
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence
from uuid import UUID

import structlog

from autopilot.core.autonomous.agent_runtime import (
    AgentHandle,
    MessageCallback,
    ResilientAgentRuntime,
    TurnResult,
)
from autopilot.core.autonomous.signal_parser import ParsedSignal
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.work_evaluator import ReviewIssue, ReviewReport
from autopilot.core.models import (
    AgentContinuation,
    ContinuationReason,
    ContinuationStatus,
)

logger = structlog.get_logger()


REASON_PREFIXES = {
    ContinuationReason.REVIEW_FEEDBACK: "Code review feedback received:",
    ContinuationReason.TEST_FAILURES: "Tests failed with the following errors:",
    ContinuationReason.INCOMPLETE_CRITERIA: "The following acceptance criteria are not yet complete:",
    ContinuationReason.ADDITIONAL_TASK: "Additional task requested:",
}

STATUS_REMINDER = (
    "When you are finished, end your reply with a STATUS line "
    "(STATUS: COMPLETE, NEEDS_REVIEW, BLOCKED, WAITING, CI_FIXED or CONFLICT_RESOLVED)."
)


def full_message(reason: ContinuationReason, body: str) -> str:
    """Prefix ``body`` with the reason header and append the STATUS reminder."""
    return f"{REASON_PREFIXES[reason]}\n\n{body.strip()}\n\n{STATUS_REMINDER}"


class ContinuationBuilder:
    """Composes continuation messages. Pure formatting, no I/O."""

    def __init__(self, reason: ContinuationReason):
        self.reason = reason
        self.lines: list[str] = []

    def add_line(self, line: str) -> "ContinuationBuilder":
        if line:
            self.lines.append(line)
        return self

    def add_criterion(self, criterion: str) -> "ContinuationBuilder":
        return self.add_line(f"- [ ] {criterion}")

    def add_issue(self, issue: ReviewIssue) -> "ContinuationBuilder":
        return self.add_line(f"- {issue.describe()}")

    def add_failure(self, name: str, detail: Optional[str] = None) -> "ContinuationBuilder":
        return self.add_line(f"- '{name}' failed: {detail}" if detail else f"- '{name}' failed")

    def build(self) -> str:
        return full_message(self.reason, "\n".join(self.lines))

    # ----------------------------------------------------------------------
    # Canned messages
    # ----------------------------------------------------------------------

    @classmethod
    def for_criteria(cls, unmet: Iterable[str], feedback: Optional[str] = None) -> str:
        builder = cls(ContinuationReason.INCOMPLETE_CRITERIA)
        for criterion in unmet:
            builder.add_criterion(criterion)
        if feedback:
            builder.add_line("").add_line(feedback)
        builder.add_line("Mark each criterion done in the story file once it is implemented.")
        return builder.build()

    @classmethod
    def for_review(cls, review: ReviewReport) -> str:
        builder = cls(ContinuationReason.REVIEW_FEEDBACK)
        builder.add_line(f"Verdict: {review.verdict.value}")
        for issue in sorted(review.issues, key=lambda i: -i.severity.rank):
            builder.add_issue(issue)
        if review.feedback:
            builder.add_line(review.feedback.strip())
        return builder.build()

    @classmethod
    def for_failures(
        cls,
        failed_checks: Sequence[str],
        feedback: Optional[str] = None,
    ) -> str:
        builder = cls(ContinuationReason.TEST_FAILURES)
        for name in failed_checks:
            builder.add_failure(name)
        if feedback:
            builder.add_line(feedback)
        return builder.build()

    @classmethod
    def for_conflicts(cls, conflicting_files: Sequence[str]) -> str:
        builder = cls(ContinuationReason.ADDITIONAL_TASK)
        builder.add_line("The pull request has merge conflicts with the base branch. Rebase and resolve them.")
        for path in conflicting_files:
            builder.add_line(f"- {path}")
        return builder.build()

    @classmethod
    def for_task(cls, task: str) -> str:
        return cls(ContinuationReason.ADDITIONAL_TASK).add_line(task).build()


class ContinuationManager:
    """
    Applies continuations through the runtime and records their lifecycle.

    pending -> executing -> completed | failed; ``cancel`` marks a pending
    continuation cancelled.
    """

    def __init__(self, store: SessionStore, runtime: ResilientAgentRuntime):
        self.store = store
        self.runtime = runtime
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        if agent_id not in self._locks:
            self._locks[agent_id] = asyncio.Lock()
        return self._locks[agent_id]

    async def apply(
        self,
        session_id: UUID,
        handle: AgentHandle,
        reason: ContinuationReason,
        message: str,
        story_id: Optional[str] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> tuple[AgentContinuation, TurnResult]:
        """Send ``message`` to the agent behind ``handle`` and collect its reply."""
        async with self._lock_for(handle.agent_id):
            continuation = AgentContinuation(
                agent_id=handle.agent_id,
                session_id=session_id,
                story_id=story_id,
                reason=reason,
                continuation_message=message,
                status=ContinuationStatus.PENDING,
            )
            await self.store.save(continuation)

            async with self.store.transaction():
                continuation.status = ContinuationStatus.EXECUTING
                continuation.started_at = datetime.now(timezone.utc)

            logger.info(
                "Continuing agent",
                agent_id=handle.agent_id,
                session_id=str(session_id),
                story_id=story_id,
                reason=reason.value,
            )

            try:
                turn = await self.runtime.run_turn(handle, message=message, on_message=on_message)
            except Exception as e:
                async with self.store.transaction():
                    continuation.status = ContinuationStatus.FAILED
                    continuation.error_message = str(e)
                    continuation.completed_at = datetime.now(timezone.utc)
                logger.error("Continuation failed", agent_id=handle.agent_id, error=str(e))
                raise

            async with self.store.transaction():
                continuation.status = ContinuationStatus.COMPLETED
                continuation.completed_at = datetime.now(timezone.utc)
                if isinstance(turn.signal, ParsedSignal):
                    continuation.result_signal = turn.signal.signal.value

            return continuation, turn

    async def cancel(self, continuation: AgentContinuation) -> None:
        if continuation.status != ContinuationStatus.PENDING:
            return
        async with self.store.transaction():
            continuation.status = ContinuationStatus.CANCELLED
            continuation.completed_at = datetime.now(timezone.utc)
