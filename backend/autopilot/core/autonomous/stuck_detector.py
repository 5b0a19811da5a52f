"""
Stuck Agent Detection
=====================

Watches every agent the controller considers active for seven stall
conditions:

- TURN_LIMIT_APPROACHING: turns_used >= 80% of max_turns (warning)
- NO_PROGRESS: no file change for N turns (warning), 2N turns (critical),
  or no output at all for the idle window (warning)
- CI_TIMEOUT: CI pending with no status update for 30 minutes (critical)
- REVIEW_DELAY: no review within the review window (warning)
- MERGE_CONFLICT: PR not mergeable with conflicting files (critical)
- RATE_LIMITED: runtime reported a rate limit (warning)
- CONTEXT_LIMIT_APPROACHING: tokens >= 90% of the context window (warning)

``StuckDetector.check`` is pure. ``StuckMonitor`` runs it on a background
loop, persists detections (one open detection per agent and type), hands
them to the recovery engine, and resolves them when the condition clears.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from autopilot.core.autonomous.agent_runtime import TurnResult
from autopilot.core.autonomous.recovery import RecoveryEngine
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.config import settings
from autopilot.core.models import (
    RecoveryActionType,
    StuckAgentDetection,
    StuckSeverity,
    StuckType,
    as_utc,
)

logger = structlog.get_logger()


# ==========================================================================
# Activity Snapshot
# ==========================================================================

@dataclass
class AgentActivity:
    """Live counters for one active agent, updated by the controller."""
    agent_id: str
    session_id: UUID
    story_id: Optional[str] = None
    max_turns: int = 100
    context_window: int = 200_000

    turns_used: int = 0
    tokens_used: int = 0
    turns_since_progress: int = 0
    last_output_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_text: Optional[str] = None

    # CI
    ci_pending: bool = False
    pending_checks: tuple[str, ...] = ()
    last_push_at: Optional[datetime] = None
    last_ci_update_at: Optional[datetime] = None

    # Review
    review_requested_at: Optional[datetime] = None

    # PR
    mergeable: Optional[bool] = None
    conflicting_files: tuple[str, ...] = ()

    # Runtime
    rate_limited: bool = False
    retry_after: Optional[float] = None

    def record_turn(self, turn: TurnResult, now: Optional[datetime] = None) -> None:
        """
        Fold a finished turn into the counters.

        A turn is progress when it modified files or produced new output;
        repeating the previous turn's text verbatim is not new output.
        """
        now = now or datetime.now(timezone.utc)
        self.turns_used += turn.turns
        self.tokens_used += turn.tokens
        text = turn.text.strip()
        new_output = bool(text) and text != self.last_text

        if turn.file_modifications:
            self.turns_since_progress = 0
            self.last_push_at = now
        elif new_output:
            self.turns_since_progress = 0
        else:
            self.turns_since_progress += max(turn.turns, 1)
        if text:
            self.last_output_at = now
            self.last_text = text
        self.rate_limited = False
        self.retry_after = None

    def record_output(self, modifies_files: bool = False, now: Optional[datetime] = None) -> None:
        """A single streamed message."""
        self.last_output_at = now or datetime.now(timezone.utc)
        if modifies_files:
            self.turns_since_progress = 0


@dataclass(frozen=True)
class StuckFinding:
    stuck_type: StuckType
    severity: StuckSeverity
    details: dict[str, Any] = field(default_factory=dict)


_SEVERITY_ORDER = {StuckSeverity.WARNING: 0, StuckSeverity.CRITICAL: 1}


# ==========================================================================
# Detector
# ==========================================================================

class StuckDetector:
    """Independent rules over an AgentActivity. No I/O."""

    def __init__(
        self,
        turn_ratio: Optional[float] = None,
        context_ratio: Optional[float] = None,
        no_progress_turns: Optional[int] = None,
        no_output_minutes: Optional[float] = None,
        ci_timeout_minutes: Optional[float] = None,
        review_delay_minutes: Optional[float] = None,
    ):
        self.turn_ratio = turn_ratio if turn_ratio is not None else settings.STUCK_TURN_WARNING_RATIO
        self.context_ratio = context_ratio if context_ratio is not None else settings.STUCK_CONTEXT_WARNING_RATIO
        self.no_progress_turns = no_progress_turns or settings.STUCK_NO_PROGRESS_TURNS
        self.no_output = timedelta(minutes=no_output_minutes or settings.STUCK_NO_OUTPUT_MINUTES)
        self.ci_timeout = timedelta(minutes=ci_timeout_minutes or settings.STUCK_CI_TIMEOUT_MINUTES)
        self.review_delay = timedelta(minutes=review_delay_minutes or settings.STUCK_REVIEW_DELAY_MINUTES)

    def check(self, activity: AgentActivity, now: Optional[datetime] = None) -> list[StuckFinding]:
        now = now or datetime.now(timezone.utc)
        findings = [
            self.check_turn_limit(activity),
            self.check_no_progress(activity, now),
            self.check_ci_timeout(activity, now),
            self.check_review_delay(activity, now),
            self.check_merge_conflict(activity),
            self.check_rate_limited(activity),
            self.check_context_limit(activity),
        ]
        return [f for f in findings if f is not None]

    def check_turn_limit(self, activity: AgentActivity) -> Optional[StuckFinding]:
        threshold = self.turn_ratio * activity.max_turns
        if activity.max_turns and activity.turns_used >= threshold:
            return StuckFinding(
                StuckType.TURN_LIMIT_APPROACHING,
                StuckSeverity.WARNING,
                {"turns_used": activity.turns_used, "max_turns": activity.max_turns},
            )
        return None

    def check_no_progress(self, activity: AgentActivity, now: datetime) -> Optional[StuckFinding]:
        turns = activity.turns_since_progress
        if turns >= 2 * self.no_progress_turns:
            return StuckFinding(StuckType.NO_PROGRESS, StuckSeverity.CRITICAL, {"turns_without_progress": turns})
        if turns >= self.no_progress_turns:
            return StuckFinding(StuckType.NO_PROGRESS, StuckSeverity.WARNING, {"turns_without_progress": turns})

        idle = now - as_utc(activity.last_output_at)
        if idle > self.no_output and not activity.ci_pending and activity.review_requested_at is None:
            return StuckFinding(
                StuckType.NO_PROGRESS,
                StuckSeverity.WARNING,
                {"idle_seconds": int(idle.total_seconds())},
            )
        return None

    def check_ci_timeout(self, activity: AgentActivity, now: datetime) -> Optional[StuckFinding]:
        if not activity.ci_pending:
            return None
        since = activity.last_ci_update_at or activity.last_push_at
        if since is None:
            return None
        waited = now - as_utc(since)
        if waited > self.ci_timeout:
            return StuckFinding(
                StuckType.CI_TIMEOUT,
                StuckSeverity.CRITICAL,
                {"pending_minutes": int(waited.total_seconds() // 60), "pending_checks": list(activity.pending_checks)},
            )
        return None

    def check_review_delay(self, activity: AgentActivity, now: datetime) -> Optional[StuckFinding]:
        if activity.review_requested_at is None:
            return None
        waited = now - as_utc(activity.review_requested_at)
        if waited > self.review_delay:
            return StuckFinding(
                StuckType.REVIEW_DELAY,
                StuckSeverity.WARNING,
                {"waiting_minutes": int(waited.total_seconds() // 60)},
            )
        return None

    def check_merge_conflict(self, activity: AgentActivity) -> Optional[StuckFinding]:
        if activity.mergeable is False and activity.conflicting_files:
            return StuckFinding(
                StuckType.MERGE_CONFLICT,
                StuckSeverity.CRITICAL,
                {"conflicting_files": list(activity.conflicting_files)},
            )
        return None

    def check_rate_limited(self, activity: AgentActivity) -> Optional[StuckFinding]:
        if activity.rate_limited:
            return StuckFinding(StuckType.RATE_LIMITED, StuckSeverity.WARNING, {"retry_after": activity.retry_after})
        return None

    def check_context_limit(self, activity: AgentActivity) -> Optional[StuckFinding]:
        if activity.context_window and activity.tokens_used >= self.context_ratio * activity.context_window:
            return StuckFinding(
                StuckType.CONTEXT_LIMIT_APPROACHING,
                StuckSeverity.WARNING,
                {"tokens_used": activity.tokens_used, "context_window": activity.context_window},
            )
        return None


# ==========================================================================
# Monitor
# ==========================================================================

class StuckMonitor:
    """
    Background watchdog over the active-agent registry.

    Runs independently of the decision loops; a slow recovery action for
    one agent never blocks a story driver.
    """

    def __init__(
        self,
        store: SessionStore,
        recovery: Optional[RecoveryEngine] = None,
        detector: Optional[StuckDetector] = None,
        poll_interval: Optional[float] = None,
        observe_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.recovery = recovery
        self.detector = detector or StuckDetector()
        self.poll_interval = poll_interval if poll_interval is not None else settings.STUCK_POLL_INTERVAL_SECONDS
        self.observe = timedelta(
            seconds=observe_seconds if observe_seconds is not None else settings.RECOVERY_OBSERVE_SECONDS
        )
        self.clock = clock
        self.agents: dict[str, AgentActivity] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ----------------------------------------------------------------------
    # Registry
    # ----------------------------------------------------------------------

    def register(self, activity: AgentActivity) -> AgentActivity:
        self.agents[activity.agent_id] = activity
        return activity

    def unregister(self, agent_id: str) -> Optional[AgentActivity]:
        return self.agents.pop(agent_id, None)

    def get(self, agent_id: str) -> Optional[AgentActivity]:
        return self.agents.get(agent_id)

    async def release(self, agent_id: str, resolution: str = "agent finished") -> None:
        """Stop watching an agent and close its open detections."""
        self.unregister(agent_id)
        for detection in await self.store.detections(agent_id=agent_id, resolved=False):
            await self._resolve(detection, resolution)

    # ----------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Stuck monitor started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stuck monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.scan_once()
            except Exception as e:
                logger.error("Stuck monitor error", error=str(e))
            await asyncio.sleep(self.poll_interval)

    # ----------------------------------------------------------------------
    # Scan
    # ----------------------------------------------------------------------

    async def scan_once(self, now: Optional[datetime] = None) -> list[StuckAgentDetection]:
        """Check every registered agent once; returns detections opened or escalated."""
        now = now or self.clock()
        touched: list[StuckAgentDetection] = []

        for activity in list(self.agents.values()):
            findings = self.detector.check(activity, now)
            found_types = {f.stuck_type for f in findings}

            for finding in findings:
                detection = await self._upsert(activity, finding, now)
                touched.append(detection)
                if self.recovery is not None and await self._due_for_recovery(detection, now):
                    await self.recovery.recover(detection)

            # Conditions that cleared since the last scan
            for detection in await self.store.detections(agent_id=activity.agent_id, resolved=False):
                if detection.stuck_type not in found_types:
                    await self._resolve(detection, "condition cleared")

        return touched

    async def _upsert(self, activity: AgentActivity, finding: StuckFinding, now: datetime) -> StuckAgentDetection:
        existing = await self.store.open_detection(activity.agent_id, finding.stuck_type)
        if existing is not None:
            if _SEVERITY_ORDER[finding.severity] > _SEVERITY_ORDER[existing.severity]:
                async with self.store.transaction():
                    existing.severity = finding.severity
                    existing.details = dict(finding.details)
                logger.warning(
                    "Stuck detection escalated",
                    agent_id=activity.agent_id,
                    stuck_type=finding.stuck_type.value,
                    severity=finding.severity.value,
                )
            return existing

        suggested = self._suggested_action(finding)
        detection = StuckAgentDetection(
            agent_id=activity.agent_id,
            session_id=activity.session_id,
            story_id=activity.story_id,
            stuck_type=finding.stuck_type,
            severity=finding.severity,
            details=dict(finding.details),
            suggested_action=suggested,
            detected_at=now,
        )
        await self.store.save(detection)
        logger.warning(
            "Stuck agent detected",
            agent_id=activity.agent_id,
            session_id=str(activity.session_id),
            story_id=activity.story_id,
            stuck_type=finding.stuck_type.value,
            severity=finding.severity.value,
        )
        return detection

    def _suggested_action(self, finding: StuckFinding) -> Optional[RecoveryActionType]:
        if self.recovery is None:
            return None
        return self.recovery.next_action(finding.stuck_type, finding.severity, 0)

    async def _due_for_recovery(self, detection: StuckAgentDetection, now: datetime) -> bool:
        if detection.resolved:
            return False
        attempts = await self.store.recovery_attempts(detection.id)
        if not attempts:
            return True
        last = attempts[-1]
        if last.action_type == RecoveryActionType.ESCALATE_TO_PARENT:
            return False
        if self.recovery.is_exhausted(detection.stuck_type, len(attempts)):
            # The runtime keeps backing off; it raises once its retries run out
            return False
        return now - as_utc(last.started_at) >= self.observe

    async def _resolve(self, detection: StuckAgentDetection, resolution: str) -> None:
        if self.recovery is not None:
            await self.recovery.mark_resolved(detection, resolution)
            return
        async with self.store.transaction():
            detection.resolved = True
            detection.resolved_at = self.clock()
            detection.resolution = resolution
