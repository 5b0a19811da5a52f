"""
Autopilot - Database Models
===========================

SQLAlchemy models for autonomous sessions and everything the controller
records while driving them: work items, story claims, agents,
continuations, evaluations, stuck detections, recovery attempts, review
and CI results, edge cases and the state transition audit.
"""

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from autopilot.core.config import SessionConfig
from autopilot.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (SQLite drops tzinfo) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Enums - Session Lifecycle
# ==========================================================================

class SessionState(str, enum.Enum):
    """States of the autonomous session state machine."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    DISCOVERING = "discovering"
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    PR_CREATION = "pr_creation"
    PR_MONITORING = "pr_monitoring"
    PR_FIXING = "pr_fixing"
    PR_MERGING = "pr_merging"
    COMPLETING = "completing"
    DONE = "done"
    BLOCKED = "blocked"        # Side state: waiting for manual unblock
    PAUSED = "paused"          # Side state: frozen between decisions


class UnblockAction(str, enum.Enum):
    """Operator actions for a blocked session or story."""
    RETRY = "retry"
    SKIP = "skip"
    ESCALATE_FURTHER = "escalate_further"


class WorkItemStatus(str, enum.Enum):
    """Status of a queued story."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    BLOCKED_BY_DEPENDENCY = "blocked_by_dependency"
    SKIPPED = "skipped"


# ==========================================================================
# Enums - Agents
# ==========================================================================

class StatusSignal(str, enum.Enum):
    """Signals an agent reports on its terminal STATUS line."""
    COMPLETE = "COMPLETE"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    BLOCKED = "BLOCKED"
    WAITING = "WAITING"
    CI_FIXED = "CI_FIXED"
    CI_STILL_FAILING = "CI_STILL_FAILING"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    REVIEW_PASSED = "REVIEW_PASSED"
    REVIEW_FAILED = "REVIEW_FAILED"
    REVIEW_PENDING = "REVIEW_PENDING"


class AgentType(str, enum.Enum):
    """Kinds of agents the controller spawns."""
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    TEST_FIXER = "test_fixer"
    LINT_FIXER = "lint_fixer"
    BUILD_FIXER = "build_fixer"
    CONFLICT_RESOLVER = "conflict_resolver"
    DEBUGGER = "debugger"


class AgentStatus(str, enum.Enum):
    """Lifecycle of a spawned agent."""
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"    # Replaced by a fork retry


class ModelTier(str, enum.Enum):
    """Capability/cost class of the underlying model."""
    FAST = "fast"
    STANDARD = "standard"
    PREMIUM = "premium"


class TaskComplexity(str, enum.Enum):
    """Complexity class derived from the weighted complexity score."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class ContinuationReason(str, enum.Enum):
    """Why an existing agent context is being resumed."""
    REVIEW_FEEDBACK = "review_feedback"
    TEST_FAILURES = "test_failures"
    INCOMPLETE_CRITERIA = "incomplete_criteria"
    ADDITIONAL_TASK = "additional_task"


class ContinuationStatus(str, enum.Enum):
    """Lifecycle of a continuation request."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ==========================================================================
# Enums - Evaluation
# ==========================================================================

class ReviewVerdict(str, enum.Enum):
    """Verdict of a code review."""
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    NEEDS_DISCUSSION = "needs_discussion"


class ReviewIssueSeverity(str, enum.Enum):
    """Severity of a single review issue."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NITPICK = "nitpick"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def blocks_merge(self) -> bool:
        return self in (ReviewIssueSeverity.CRITICAL, ReviewIssueSeverity.HIGH)


_SEVERITY_RANK = {
    ReviewIssueSeverity.CRITICAL: 4,
    ReviewIssueSeverity.HIGH: 3,
    ReviewIssueSeverity.MEDIUM: 2,
    ReviewIssueSeverity.LOW: 1,
    ReviewIssueSeverity.NITPICK: 0,
}


class CiConclusion(str, enum.Enum):
    """Conclusion of a CI check (or aggregate)."""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class EvaluationStatus(str, enum.Enum):
    """Overall work evaluation outcome."""
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


# ==========================================================================
# Enums - Stuck Detection & Recovery
# ==========================================================================

class StuckType(str, enum.Enum):
    """Stall conditions watched by the stuck detector."""
    TURN_LIMIT_APPROACHING = "turn_limit_approaching"
    NO_PROGRESS = "no_progress"
    CI_TIMEOUT = "ci_timeout"
    REVIEW_DELAY = "review_delay"
    MERGE_CONFLICT = "merge_conflict"
    RATE_LIMITED = "rate_limited"
    CONTEXT_LIMIT_APPROACHING = "context_limit_approaching"


class StuckSeverity(str, enum.Enum):
    """Severity of a stuck detection."""
    WARNING = "warning"
    CRITICAL = "critical"


class RecoveryActionType(str, enum.Enum):
    """Rungs of the recovery ladder."""
    PAUSE_ALERT = "pause_alert"
    MODEL_ESCALATION = "model_escalation"
    SPAWN_FIXER = "spawn_fixer"
    FORK_RETRY = "fork_retry"
    ESCALATE_TO_PARENT = "escalate_to_parent"


class RecoveryOutcome(str, enum.Enum):
    """Observed outcome of a recovery attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class EdgeCaseType(str, enum.Enum):
    """Anomalies handled by the controller and logged for learning."""
    DELAYED_CI_REVIEW = "delayed_ci_review"
    MERGE_CONFLICT = "merge_conflict"
    FLAKY_TEST = "flaky_test"
    SERVICE_DOWNTIME = "service_downtime"
    DEPENDENCY_FAILURE = "dependency_failure"
    REVIEW_PING_PONG = "review_ping_pong"
    CONTEXT_OVERFLOW = "context_overflow"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class EdgeCaseResolution(str, enum.Enum):
    """How an edge case ended."""
    PENDING = "pending"
    RESOLVED = "resolved"
    RETRIED = "retried"
    ESCALATED = "escalated"
    BLOCKED = "blocked"
    IGNORED = "ignored"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    # Server-generated timestamps are loaded on flush (no lazy load under asyncio)
    __mapper_args__ = {"eager_defaults": True}

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Session
# ==========================================================================

class AutonomousSession(Base, TimestampMixin):
    """
    One autonomous run over a matched set of epics.

    Mutated only by the controller; every state change is mirrored by a
    SessionTransition row committed before the next decision.
    """

    __tablename__ = "autonomous_sessions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    pattern: Mapped[str] = mapped_column(
        String(255),
        default="*",
        nullable=False,
    )  # Epic id pattern: *, exact, prefix*, *suffix

    # State machine
    state: Mapped[SessionState] = mapped_column(
        Enum(SessionState),
        default=SessionState.IDLE,
        nullable=False,
        index=True,
    )
    previous_state: Mapped[Optional[SessionState]] = mapped_column(
        Enum(SessionState),
        nullable=True,
    )  # Restored on resume / unblock

    config: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Focus
    current_epic_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    current_story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    current_agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Work tracking (full story ids, "epic-id/story-n")
    work_queue: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    completed_items: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    metrics: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Reasons
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pause_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    METRIC_KEYS = (
        "stories_completed",
        "stories_failed",
        "reviews_passed",
        "reviews_failed",
        "total_iterations",
        "agents_spawned",
        "tokens_used",
    )

    @property
    def session_config(self) -> SessionConfig:
        return SessionConfig.model_validate(self.config or {})

    @property
    def is_terminal(self) -> bool:
        return self.state == SessionState.DONE

    def record_metric(self, key: str, amount: int = 1) -> None:
        """Increment a metric counter (reassigns the JSON dict so the change is tracked)."""
        metrics = dict(self.metrics or {})
        metrics[key] = metrics.get(key, 0) + amount
        self.metrics = metrics

    def metric(self, key: str) -> int:
        return (self.metrics or {}).get(key, 0)

    @property
    def success_rate(self) -> float:
        done = self.metric("stories_completed")
        total = done + self.metric("stories_failed")
        return done / total if total else 0.0

    @property
    def review_pass_rate(self) -> float:
        passed = self.metric("reviews_passed")
        total = passed + self.metric("reviews_failed")
        return passed / total if total else 0.0

    def __repr__(self) -> str:
        return f"<AutonomousSession {self.id} [{self.state.value}]>"


class SessionTransition(Base, TimestampMixin):
    """Audit record of a single state transition."""

    __tablename__ = "session_transitions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    from_state: Mapped[SessionState] = mapped_column(Enum(SessionState), nullable=False)
    to_state: Mapped[SessionState] = mapped_column(Enum(SessionState), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SessionTransition {self.from_state.value} -> {self.to_state.value}>"


# ==========================================================================
# Work Items
# ==========================================================================

class WorkItem(Base, TimestampMixin):
    """
    A queued story with its acceptance criteria and dependency set.

    ``phase`` tracks where this story is in the EXECUTING..COMPLETING part
    of the state machine; ``resume_phase`` is restored on unblock.
    """

    __tablename__ = "work_items"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    epic_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    story_id: Mapped[str] = mapped_column(String(100), nullable=False)
    full_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    source_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    acceptance_criteria: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )  # [{"text": ..., "done": bool}]
    dependencies: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )  # Full ids
    referenced_files: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    dependency_depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Progress
    status: Mapped[WorkItemStatus] = mapped_column(
        Enum(WorkItemStatus),
        default=WorkItemStatus.PENDING,
        nullable=False,
        index=True,
    )
    phase: Mapped[Optional[SessionState]] = mapped_column(Enum(SessionState), nullable=True)
    resume_phase: Mapped[Optional[SessionState]] = mapped_column(Enum(SessionState), nullable=True)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Loop counters
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_iterations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fix_iterations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    criteria_iterations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    wait_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Last agent turn
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_signal: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Model tier pinned by recovery (model escalation)
    tier_override: Mapped[Optional[ModelTier]] = mapped_column(Enum(ModelTier), nullable=True)

    # Code hosting
    branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    worktree_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def unmet_criteria(self) -> list[str]:
        return [c["text"] for c in (self.acceptance_criteria or []) if not c.get("done")]

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WorkItemStatus.COMPLETED,
            WorkItemStatus.FAILED,
            WorkItemStatus.SKIPPED,
        )

    def __repr__(self) -> str:
        return f"<WorkItem {self.full_id} [{self.status.value}]>"


class StoryClaim(Base, TimestampMixin):
    """
    Ownership of a story by one non-terminal session.

    The unique constraint is the database-level guard against two
    sessions processing the same story.
    """

    __tablename__ = "story_claims"
    __table_args__ = (
        UniqueConstraint("epic_id", "story_id", name="uq_story_claims_epic_story"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    epic_id: Mapped[str] = mapped_column(String(100), nullable=False)
    story_id: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<StoryClaim {self.epic_id}/{self.story_id}>"


# ==========================================================================
# Agents
# ==========================================================================

class AgentRecord(Base, TimestampMixin):
    """A spawned agent. Continuations never create a new row."""

    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    agent_type: Mapped[AgentType] = mapped_column(Enum(AgentType), nullable=False)
    tier: Mapped[ModelTier] = mapped_column(Enum(ModelTier), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus),
        default=AgentStatus.ACTIVE,
        nullable=False,
    )
    selection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Usage
    turns_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_turns: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    context_window: Mapped[int] = mapped_column(Integer, default=200_000, nullable=False)

    worktree_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<AgentRecord {self.agent_id} [{self.agent_type.value}]>"


class AgentContinuation(Base, TimestampMixin):
    """A message appended to an existing agent context."""

    __tablename__ = "agent_continuations"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reason: Mapped[ContinuationReason] = mapped_column(Enum(ContinuationReason), nullable=False)
    continuation_message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ContinuationStatus] = mapped_column(
        Enum(ContinuationStatus),
        default=ContinuationStatus.PENDING,
        nullable=False,
    )
    result_signal: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<AgentContinuation {self.agent_id} [{self.reason.value}]>"


# ==========================================================================
# Evaluation
# ==========================================================================

class WorkEvaluation(Base, TimestampMixin):
    """Point-in-time judgement of a declared completion. Never updated."""

    __tablename__ = "work_evaluations"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    signal: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[EvaluationStatus] = mapped_column(Enum(EvaluationStatus), nullable=False)

    criteria_met: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    criteria_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ci_status: Mapped[Optional[CiConclusion]] = mapped_column(Enum(CiConclusion), nullable=True)
    review_verdict: Mapped[Optional[ReviewVerdict]] = mapped_column(Enum(ReviewVerdict), nullable=True)
    build_status: Mapped[str] = mapped_column(String(20), default="skipped", nullable=False)
    lint_status: Mapped[str] = mapped_column(String(20), default="skipped", nullable=False)
    mergeable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    failed_checks: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WorkEvaluation {self.story_id} [{self.status.value}]>"


class CodeReviewResult(Base, TimestampMixin):
    """Review verdict for one story revision; issues bucketed by severity."""

    __tablename__ = "code_review_results"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    seq: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    iteration: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    verdict: Mapped[ReviewVerdict] = mapped_column(Enum(ReviewVerdict), nullable=False)
    issues: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="agent", nullable=False)

    def issues_by_severity(self) -> dict[str, list[dict]]:
        buckets: dict[str, list[dict]] = {s.value: [] for s in ReviewIssueSeverity}
        for issue in self.issues or []:
            buckets.setdefault(issue.get("severity", "medium"), []).append(issue)
        return buckets

    def __repr__(self) -> str:
        return f"<CodeReviewResult {self.story_id} [{self.verdict.value}]>"


class CiCheckResult(Base, TimestampMixin):
    """CI conclusion for one check name, appended on every change."""

    __tablename__ = "ci_check_results"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    check_name: Mapped[str] = mapped_column(String(255), nullable=False)
    conclusion: Mapped[CiConclusion] = mapped_column(Enum(CiConclusion), nullable=False)
    details_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reported_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CiCheckResult {self.check_name} [{self.conclusion.value}]>"


# ==========================================================================
# Stuck Detection & Recovery
# ==========================================================================

class StuckAgentDetection(Base, TimestampMixin):
    """A stall condition observed on an active agent."""

    __tablename__ = "stuck_agent_detections"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stuck_type: Mapped[StuckType] = mapped_column(Enum(StuckType), nullable=False)
    severity: Mapped[StuckSeverity] = mapped_column(Enum(StuckSeverity), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    suggested_action: Mapped[Optional[RecoveryActionType]] = mapped_column(
        Enum(RecoveryActionType),
        nullable=True,
    )
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<StuckAgentDetection {self.agent_id} {self.stuck_type.value} [{self.severity.value}]>"


class RecoveryAttempt(Base, TimestampMixin):
    """One rung of the recovery ladder applied to a detection."""

    __tablename__ = "recovery_attempts"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    detection_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("stuck_agent_detections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    session_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[RecoveryActionType] = mapped_column(Enum(RecoveryActionType), nullable=False)
    outcome: Mapped[RecoveryOutcome] = mapped_column(
        Enum(RecoveryOutcome),
        default=RecoveryOutcome.IN_PROGRESS,
        nullable=False,
    )
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<RecoveryAttempt #{self.attempt_number} {self.action_type.value} [{self.outcome.value}]>"


class EdgeCaseEvent(Base, TimestampMixin):
    """Catch-all log of handled anomalies."""

    __tablename__ = "edge_case_events"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    edge_case_type: Mapped[EdgeCaseType] = mapped_column(Enum(EdgeCaseType), nullable=False, index=True)
    session_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("autonomous_sessions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    story_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    action: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resolution: Mapped[EdgeCaseResolution] = mapped_column(
        Enum(EdgeCaseResolution),
        default=EdgeCaseResolution.PENDING,
        nullable=False,
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<EdgeCaseEvent {self.edge_case_type.value} [{self.resolution.value}]>"
