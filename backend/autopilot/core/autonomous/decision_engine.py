"""
Decision Engine
===============

Turns (session snapshot, parsed signal, evaluation) into exactly one
control decision. ``evaluate`` is a pure function of its three inputs:
no I/O, no clock, no hidden state.

Priority order:

1. BLOCKED or Unparseable              -> Escalate
2. WAITING / REVIEW_PENDING            -> Wait (backoff), Escalate past the cap
3. Unmet acceptance criteria           -> ContinueAgent(incomplete criteria)
4. Work ready, no current review       -> TriggerReview
5. Review ChangesRequested             -> ContinueAgent(review feedback), Escalate past the cap
   Review NeedsDiscussion              -> Escalate
6. CI / build / lint failing           -> ContinueAgent(test failures), Escalate past the cap
   CI pending or mergeability unknown  -> Wait
   PR not mergeable                    -> ContinueAgent(resolve conflicts)
   Approved, green, mergeable          -> CompleteWork
   Approved, green, no PR yet          -> CompleteWork (the PR step follows)
7. Otherwise                           -> SpawnAgent for the next queued item
"""

from dataclasses import dataclass
from typing import Optional, Union

from autopilot.core.autonomous.backoff import backoff_delay
from autopilot.core.autonomous.continuation import ContinuationBuilder
from autopilot.core.autonomous.signal_parser import ParsedSignal, ParseResult, Unparseable
from autopilot.core.autonomous.work_evaluator import Evaluation
from autopilot.core.config import settings
from autopilot.core.models import (
    ContinuationReason,
    ReviewVerdict,
    SessionState,
    StatusSignal,
)


# ==========================================================================
# Decisions
# ==========================================================================

@dataclass(frozen=True)
class SpawnAgent:
    story_id: Optional[str]


@dataclass(frozen=True)
class ContinueAgent:
    message: str
    reason: ContinuationReason


@dataclass(frozen=True)
class TriggerReview:
    story_id: Optional[str]


@dataclass(frozen=True)
class CompleteWork:
    story_id: Optional[str]


@dataclass(frozen=True)
class Escalate:
    reason: str
    blocker: str = "unknown"


@dataclass(frozen=True)
class Wait:
    duration: float
    dependency: Optional[str] = None


Decision = Union[SpawnAgent, ContinueAgent, TriggerReview, CompleteWork, Escalate, Wait]


# ==========================================================================
# Inputs
# ==========================================================================

@dataclass(frozen=True)
class SessionSnapshot:
    """The slice of session and work-item state a decision depends on."""
    state: SessionState
    story_id: Optional[str] = None
    next_story_id: Optional[str] = None
    review_iterations: int = 0          # ChangesRequested verdicts so far, including the latest
    fix_iterations: int = 0
    criteria_iterations: int = 0
    wait_attempts: int = 0
    max_review_iterations: int = 3
    max_fix_iterations: int = 3
    max_criteria_iterations: int = 3
    wait_base_seconds: float = 30.0
    wait_max_seconds: float = 600.0
    wait_max_attempts: int = 6

    @classmethod
    def with_defaults(cls, state: SessionState, **kwargs) -> "SessionSnapshot":
        """Snapshot with caps and backoff taken from application settings."""
        defaults = dict(
            max_review_iterations=settings.MAX_REVIEW_ITERATIONS,
            max_fix_iterations=settings.MAX_FIX_ITERATIONS,
            max_criteria_iterations=settings.MAX_CRITERIA_ITERATIONS,
            wait_base_seconds=settings.WAIT_BASE_SECONDS,
            wait_max_seconds=settings.WAIT_MAX_SECONDS,
            wait_max_attempts=settings.WAIT_MAX_ATTEMPTS,
        )
        defaults.update(kwargs)
        return cls(state=state, **defaults)


WORK_READY_SIGNALS = frozenset({
    StatusSignal.COMPLETE,
    StatusSignal.NEEDS_REVIEW,
    StatusSignal.CI_FIXED,
    StatusSignal.CONFLICT_RESOLVED,
    StatusSignal.REVIEW_PASSED,
    StatusSignal.REVIEW_FAILED,
})

WAIT_SIGNALS = frozenset({StatusSignal.WAITING, StatusSignal.REVIEW_PENDING})


# ==========================================================================
# Engine
# ==========================================================================

class DecisionEngine:
    """Stateless; one instance can be shared by every session."""

    def evaluate(
        self,
        session: SessionSnapshot,
        signal: Optional[ParseResult],
        evaluation: Optional[Evaluation] = None,
    ) -> Decision:
        # 1. Fail closed on declared or assumed blockers
        if isinstance(signal, Unparseable):
            return Escalate(reason=signal.reason, blocker="no_status_signal")
        if isinstance(signal, ParsedSignal) and signal.signal == StatusSignal.BLOCKED:
            blocker = signal.get("BLOCKER") or signal.get("REASON") or signal.detail or "agent declared blocked"
            return Escalate(reason=blocker, blocker=signal.get("BLOCKER_TYPE", "agent_blocked"))

        # No agent output yet: start (or restart) work
        if signal is None:
            return SpawnAgent(story_id=session.story_id or session.next_story_id)

        # 2. External dependency
        if signal.signal in WAIT_SIGNALS:
            dependency = signal.get("WAITING_FOR") or signal.get("DEPENDENCY") or signal.detail
            return self._wait(session, dependency or signal.signal.value.lower())

        evaluation = evaluation or Evaluation()

        # 3. Acceptance criteria
        if evaluation.unmet_criteria:
            if session.criteria_iterations >= session.max_criteria_iterations:
                return Escalate(
                    reason=f"acceptance criteria still unmet after {session.criteria_iterations} continuations",
                    blocker="incomplete_criteria",
                )
            return ContinueAgent(
                message=ContinuationBuilder.for_criteria(evaluation.unmet_criteria),
                reason=ContinuationReason.INCOMPLETE_CRITERIA,
            )

        # 4. Review the current revision before anything else
        if signal.signal in WORK_READY_SIGNALS and not evaluation.has_review:
            return TriggerReview(story_id=session.story_id)

        # 5. Review verdict
        verdict = evaluation.review_verdict
        if verdict == ReviewVerdict.CHANGES_REQUESTED:
            if session.review_iterations > session.max_review_iterations:
                return Escalate(reason="review ping-pong", blocker="review_ping_pong")
            return ContinueAgent(
                message=ContinuationBuilder.for_review(evaluation.review),
                reason=ContinuationReason.REVIEW_FEEDBACK,
            )
        if verdict == ReviewVerdict.NEEDS_DISCUSSION:
            return Escalate(reason="review needs discussion", blocker="needs_discussion")

        # 6. CI, build, lint and mergeability
        if (
            evaluation.ci_failing
            or not evaluation.build_ok
            or not evaluation.lint_ok
            or signal.signal == StatusSignal.CI_STILL_FAILING
        ):
            if session.fix_iterations >= session.max_fix_iterations:
                return Escalate(
                    reason=f"CI still failing after {session.fix_iterations} fix attempts",
                    blocker="ci_failure",
                )
            return ContinueAgent(
                message=ContinuationBuilder.for_failures(evaluation.failed_checks, evaluation.feedback or None),
                reason=ContinuationReason.TEST_FAILURES,
            )

        if evaluation.ci_pending:
            return self._wait(session, "ci")
        if evaluation.has_pr and evaluation.mergeable is None:
            return self._wait(session, "mergeability")

        if evaluation.mergeable is False:
            if session.fix_iterations >= session.max_fix_iterations:
                return Escalate(reason="merge conflicts persist", blocker="merge_conflict")
            return ContinueAgent(
                message=ContinuationBuilder.for_conflicts(evaluation.conflicting_files),
                reason=ContinuationReason.ADDITIONAL_TASK,
            )

        # Before a PR exists, approval and green CI complete the review step
        pr_ready = evaluation.mergeable is True or not evaluation.has_pr
        if evaluation.review_approved and evaluation.ci_green and pr_ready:
            return CompleteWork(story_id=session.story_id)

        # 7. Nothing left to do for the current story
        return SpawnAgent(story_id=session.next_story_id)

    @staticmethod
    def _wait(session: SessionSnapshot, dependency: str) -> Decision:
        if session.wait_attempts >= session.wait_max_attempts:
            return Escalate(
                reason=f"waited {session.wait_attempts} times for {dependency}",
                blocker="wait_timeout",
            )
        duration = backoff_delay(session.wait_attempts, session.wait_base_seconds, session.wait_max_seconds)
        return Wait(duration=duration, dependency=dependency)
