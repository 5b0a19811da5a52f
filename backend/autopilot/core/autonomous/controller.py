"""
Autonomous Controller
=====================

Owns autonomous sessions end to end: plans the work queue, drives each
story through implementation, review, CI and pull-request merge, applies
Decision Engine output as state transitions, and runs the stuck monitor
and recovery ladder alongside the story drivers.

Control surface: start, run, status, pause, resume, stop, unblock,
list_stuck_agents. Every transition is committed before the next
decision, so ``run`` after a crash resumes from the persisted phases.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog

from autopilot.core.autonomous.agent_runtime import (
    AgentHandle,
    AgentMessage,
    AgentRuntime,
    ResilientAgentRuntime,
    TurnResult,
)
from autopilot.core.autonomous.collaborators import (
    CodeHostClient,
    PullRequestInfo,
    PullRequestRequest,
    WorktreeManager,
)
from autopilot.core.autonomous.continuation import ContinuationBuilder, ContinuationManager
from autopilot.core.autonomous.decision_engine import (
    WAIT_SIGNALS,
    WORK_READY_SIGNALS,
    CompleteWork,
    ContinueAgent,
    Decision,
    DecisionEngine,
    Escalate,
    SessionSnapshot,
    SpawnAgent,
    TriggerReview,
    Wait,
)
from autopilot.core.autonomous.edge_cases import EdgeCaseHandler
from autopilot.core.autonomous.recovery import RecoveryEngine, RecoveryExecutor
from autopilot.core.autonomous.signal_parser import ParsedSignal, ParseResult
from autopilot.core.autonomous.state_machine import (
    WORKING_STATES,
    can_transition,
    validate_transition,
)
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.stuck_detector import AgentActivity, StuckMonitor
from autopilot.core.autonomous.work_evaluator import (
    Evaluation,
    ReviewReport,
    WorkEvaluator,
    parse_review_output,
)
from autopilot.core.autonomous.work_planner import DependencyGraph, ExecutionPlan, WorkPlanner
from autopilot.core.autonomous.model_selector import ModelSelection, ModelSelector
from autopilot.core.config import SessionConfig, settings
from autopilot.core.exceptions import (
    AgentRuntimeError,
    ConfigurationError,
    CyclicDependencyError,
    EpicNotFoundError,
    InvalidTransitionError,
    PlanningError,
    SessionAlreadyRunningError,
    StoryAlreadyClaimedError,
)
from autopilot.core.models import (
    AgentRecord,
    AgentStatus,
    AgentType,
    AutonomousSession,
    ContinuationReason,
    EdgeCaseResolution,
    EdgeCaseType,
    ModelTier,
    ReviewVerdict,
    SessionState,
    SessionTransition,
    StatusSignal,
    StuckAgentDetection,
    UnblockAction,
    WorkItem,
    WorkItemStatus,
)

logger = structlog.get_logger()

S = SessionState

# Phase a retried story resumes from
RESUME_PHASES = {
    S.PLANNING: S.EXECUTING,
    S.EXECUTING: S.EXECUTING,
    S.REVIEWING: S.EXECUTING,
    S.PR_CREATION: S.PR_CREATION,
    S.PR_MONITORING: S.PR_MONITORING,
    S.PR_FIXING: S.PR_MONITORING,
    S.PR_MERGING: S.PR_MONITORING,
    S.COMPLETING: S.COMPLETING,
}

OPEN_STATUSES = (WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS)

SIGNAL_PROTOCOL = (
    "End your final message with a status block, for example:\n"
    "STATUS: COMPLETE\n"
    "SUMMARY: what you changed\n\n"
    "Use STATUS: NEEDS_REVIEW when ready for review, STATUS: BLOCKED with a BLOCKER: line "
    "when you cannot proceed, and STATUS: WAITING with WAITING_FOR: when an external "
    "dependency must finish first."
)

REVIEW_PROTOCOL = (
    "Report your review in this format:\n"
    "VERDICT: APPROVED | CHANGES_REQUESTED | NEEDS_DISCUSSION\n"
    "ITERATION: <n>\n"
    "One line per issue: path/to/file.py:42: [CRITICAL|HIGH|MEDIUM|LOW|NITPICK] description\n"
    "FEEDBACK_FOR_AGENT: |\n"
    "  instructions for the implementer\n\n"
    "STATUS: REVIEW_PASSED or STATUS: REVIEW_FAILED"
)


@dataclass
class StoryContext:
    """In-memory driver state for one story; everything else lives in the store."""
    item: WorkItem
    handle: Optional[AgentHandle] = None
    record: Optional[AgentRecord] = None
    signal: Optional[ParseResult] = None
    evaluated_revision: int = -1


@dataclass
class SessionStatus:
    session_id: UUID
    state: SessionState
    pattern: str
    running: bool
    current_epic_id: Optional[str]
    current_story_id: Optional[str]
    current_agent_id: Optional[str]
    metrics: dict[str, int]
    success_rate: float
    review_pass_rate: float
    state_durations: dict[str, float]
    work_items: list[dict[str, Any]] = field(default_factory=list)
    stuck_agents: int = 0
    blocked_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AutonomousController(RecoveryExecutor):
    """
    Drives autonomous sessions.

    Usage:
        controller = AutonomousController(store, runtime, code_host, worktrees)
        session = await controller.start("epic-002*")
        await controller.run(session.id)
    """

    def __init__(
        self,
        store: SessionStore,
        runtime: Optional[AgentRuntime] = None,
        code_host: Optional[CodeHostClient] = None,
        worktrees: Optional[WorktreeManager] = None,
        planner: Optional[WorkPlanner] = None,
        selector: Optional[ModelSelector] = None,
        engine: Optional[DecisionEngine] = None,
        monitor: Optional[StuckMonitor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notification_callback: Optional[Callable[[dict], Awaitable[None]]] = None,
    ):
        self.store = store
        self.code_host = code_host
        self.worktrees = worktrees
        self.planner = planner or WorkPlanner()
        self.selector = selector or ModelSelector()
        self.engine = engine or DecisionEngine()
        self.notification_callback = notification_callback
        self._sleep = sleep

        self.runtime: Optional[ResilientAgentRuntime] = None
        self.continuations: Optional[ContinuationManager] = None
        if runtime is not None:
            self.attach_runtime(runtime)

        self.edge_cases = EdgeCaseHandler(store)
        self.recovery = RecoveryEngine(store, self)
        self.monitor = monitor or StuckMonitor(store, self.recovery)
        if self.monitor.recovery is None:
            self.monitor.recovery = self.recovery

        self._running: set[UUID] = set()
        self._handles: dict[str, AgentHandle] = {}
        self._restarts: dict[str, str] = {}
        self._escalations: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()
        self._tasks: dict[UUID, asyncio.Task] = {}

    def attach_runtime(self, runtime: AgentRuntime) -> None:
        if not isinstance(runtime, ResilientAgentRuntime):
            runtime = ResilientAgentRuntime(runtime, sleep=self._sleep)
        if runtime.on_rate_limit is None:
            runtime.on_rate_limit = self._on_rate_limit
        self.runtime = runtime
        self.continuations = ContinuationManager(self.store, runtime)

    # ==========================================================================
    # Control Surface
    # ==========================================================================

    async def start(self, pattern: str = "*", config: Optional[SessionConfig] = None) -> AutonomousSession:
        """Create a session and plan its work queue. Planning failures block the session."""
        config = config or SessionConfig(epic_pattern=pattern)
        session = await self.store.create_session(pattern, config)
        async with self.store.transaction():
            session.started_at = datetime.now(timezone.utc)
        await self._plan_session(session)
        return session

    def preview(self, pattern: str = "*") -> ExecutionPlan:
        """Dry-run plan; nothing is persisted."""
        return self.planner.plan(pattern, dry_run=True)

    async def run(self, session_id: UUID) -> AutonomousSession:
        """
        Drive a session until every story is terminal or blocked, or until paused or stopped.

        Raises:
            ConfigurationError: If no agent runtime is attached
            SessionAlreadyRunningError: If a loop is already running for the session
        """
        if self.runtime is None:
            raise ConfigurationError("No agent runtime configured")
        if session_id in self._running:
            raise SessionAlreadyRunningError(f"Session {session_id} is already running")

        self._running.add(session_id)
        try:
            session = await self.store.get_session(session_id)
            await self.store.refresh(session)
            if session.state in (S.IDLE, S.ANALYZING, S.DISCOVERING):
                await self._plan_session(session)
            if not self._is_active(session):
                return session

            await self._abandon_orphans(session)
            await self.monitor.start()
            logger.info("Session run started", session_id=str(session.id), state=session.state.value)

            await self._run_queue(session)
            await self._finalize(session)
            return session
        finally:
            self._running.discard(session_id)
            if not self._running:
                await self.monitor.stop()

    def launch(self, session_id: UUID) -> asyncio.Task:
        """Run a session in the background; used by the API."""
        if self.runtime is None:
            raise ConfigurationError("No agent runtime configured")
        if self.is_running(session_id):
            raise SessionAlreadyRunningError(f"Session {session_id} is already running")

        task = asyncio.create_task(self.run(session_id))
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_run_done(session_id, t))
        return task

    def is_running(self, session_id: UUID) -> bool:
        """Whether a control loop drives the session, or is about to."""
        task = self._tasks.get(session_id)
        return session_id in self._running or (task is not None and not task.done())

    async def join(self, session_id: UUID) -> None:
        """Wait for the background run of a session, if one is in flight."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _relaunch(self, session: AutonomousSession) -> bool:
        """Start a background run for a session left active with nothing driving it."""
        if self.runtime is None or not self._is_active(session) or self.is_running(session.id):
            return False
        self.launch(session.id)
        logger.info("Session run relaunched", session_id=str(session.id), state=session.state.value)
        return True

    def _on_run_done(self, session_id: UUID, task: asyncio.Task) -> None:
        self._tasks.pop(session_id, None)
        if task.cancelled():
            logger.warning("Session run cancelled", session_id=str(session_id))
        elif task.exception() is not None:
            logger.error("Session run failed", session_id=str(session_id), error=str(task.exception()))

    async def shutdown(self) -> None:
        """Cancel background runs and fixers; persisted state is left for the next ``run``."""
        tasks = [*self._tasks.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.monitor.stop()

    async def status(self, session_id: UUID) -> SessionStatus:
        session = await self.store.get_session(session_id)
        await self.store.refresh(session)
        items = await self.store.work_items(session_id)
        stuck = await self.store.detections(session_id=session_id, resolved=False)
        return SessionStatus(
            session_id=session.id,
            state=session.state,
            pattern=session.pattern,
            running=self.is_running(session.id),
            current_epic_id=session.current_epic_id,
            current_story_id=session.current_story_id,
            current_agent_id=session.current_agent_id,
            metrics=dict(session.metrics or {}),
            success_rate=session.success_rate,
            review_pass_rate=session.review_pass_rate,
            state_durations=await self.store.state_durations(session_id),
            work_items=[
                {
                    "story_id": i.full_id,
                    "title": i.title,
                    "status": i.status.value,
                    "phase": i.phase.value if i.phase else None,
                    "blocked_reason": i.blocked_reason if i.status == WorkItemStatus.BLOCKED else None,
                    "pr_number": i.pr_number,
                }
                for i in items
            ],
            stuck_agents=len(stuck),
            blocked_reason=session.blocked_reason,
            pause_reason=session.pause_reason,
            error_message=session.error_message,
            started_at=session.started_at,
            completed_at=session.completed_at,
        )

    async def pause(self, session_id: UUID, reason: Optional[str] = None) -> AutonomousSession:
        """Freeze the session between decisions."""
        session = await self.store.get_session(session_id)
        await self.store.refresh(session)
        await self._transition_session(session, S.PAUSED, reason or "paused by operator")
        async with self.store.transaction():
            session.pause_reason = reason
        return session

    async def resume(self, session_id: UUID) -> AutonomousSession:
        """Return a paused session to its working state; with a runtime attached its loop is relaunched."""
        session = await self.store.get_session(session_id)
        await self.store.refresh(session)
        target = session.previous_state if session.previous_state in WORKING_STATES else S.EXECUTING
        if session.state != S.PAUSED:
            raise InvalidTransitionError(session.state, target)
        await self._transition_session(session, target, "resumed by operator")
        async with self.store.transaction():
            session.pause_reason = None
        self._relaunch(session)
        return session

    async def stop(self, session_id: UUID, reason: str = "stopped by operator") -> AutonomousSession:
        """Terminal stop: agents are terminated and story claims released."""
        session = await self.store.get_session(session_id)
        await self.store.refresh(session)
        if session.is_terminal:
            raise InvalidTransitionError(session.state, S.DONE)

        await self._transition_session(session, S.DONE, reason)
        async with self.store.transaction():
            session.completed_at = datetime.now(timezone.utc)
            session.current_agent_id = None

        for record in await self.store.agents(session_id):
            if record.status != AgentStatus.ACTIVE:
                continue
            handle = self._handles.get(record.agent_id)
            if handle is not None:
                await self._retire(handle, record, AgentStatus.ABANDONED)
            else:
                async with self.store.transaction():
                    record.status = AgentStatus.ABANDONED

        await self.store.release_claims(session_id)
        await self._notify("session_stopped", session, reason=reason)
        return session

    async def unblock(
        self,
        session_id: UUID,
        action: str,
        story_id: Optional[str] = None,
    ) -> AutonomousSession:
        """
        Apply an operator action to blocked stories (all, or ``story_id``) and the session.

        Actions: retry (resume one step back), skip (treat as done), escalate_further (fail).
        A session left active is run again in the background when a runtime is attached.
        """
        action = UnblockAction(action)
        session = await self.store.get_session(session_id)
        await self.store.refresh(session)
        items = await self.store.work_items(session_id)

        targets = [
            i for i in items
            if i.status == WorkItemStatus.BLOCKED and (story_id is None or i.full_id == story_id)
        ]
        if story_id is not None and not targets:
            current = next((i.phase for i in items if i.full_id == story_id), None)
            raise InvalidTransitionError(current or "unknown", "unblocked")
        if not targets and session.state != S.BLOCKED:
            raise InvalidTransitionError(session.state, "unblocked")

        for item in targets:
            await self._unblock_story(session, item, action, items)

        if session.state == S.BLOCKED:
            planning_block = session.previous_state in (S.IDLE, S.ANALYZING, S.DISCOVERING)
            if planning_block and action != UnblockAction.RETRY:
                await self._transition_session(session, S.DONE, f"planning block: {action.value}")
                async with self.store.transaction():
                    session.completed_at = datetime.now(timezone.utc)
                    if action == UnblockAction.ESCALATE_FURTHER:
                        session.error_message = session.blocked_reason
                await self.store.release_claims(session_id)
            else:
                target = session.previous_state if session.previous_state in WORKING_STATES else S.EXECUTING
                await self._transition_session(session, target, f"unblocked: {action.value}")
                async with self.store.transaction():
                    session.blocked_reason = None

        logger.info("Session unblocked", session_id=str(session_id), action=action.value, stories=len(targets))
        self._relaunch(session)
        return session

    async def list_stuck_agents(self, session_id: Optional[UUID] = None) -> list[StuckAgentDetection]:
        return await self.store.detections(session_id=session_id, resolved=False)

    async def resolve_detection(self, detection_id: UUID, note: Optional[str] = None) -> StuckAgentDetection:
        return await self.recovery.resolve_manually(detection_id, note)

    # ==========================================================================
    # Planning
    # ==========================================================================

    async def _plan_session(self, session: AutonomousSession) -> None:
        config = session.session_config
        epics = None
        try:
            if session.state == S.IDLE:
                await self._transition_session(session, S.ANALYZING, "session started")

            if session.state == S.ANALYZING:
                epics = self.planner.load_epics()
                matched = [e for e in epics if self.planner.matches_pattern(e.id, session.pattern)]
                if not matched:
                    raise EpicNotFoundError(f"No epics match pattern '{session.pattern}'")
                await self._transition_session(session, S.DISCOVERING, f"{len(matched)} epics matched")

            if session.state == S.DISCOVERING:
                plan = self.planner.plan(session.pattern, dry_run=config.dry_run, epics=epics)
                if plan.has_cycle:
                    raise CyclicDependencyError(plan.cycle)
                await self._persist_plan(session, plan)
                await self._transition_session(session, S.PLANNING, plan.summary())
        except PlanningError as e:
            logger.error("Planning failed", session_id=str(session.id), error=str(e))
            await self.edge_cases.handle(
                str(e),
                session_id=session.id,
                context={"pattern": session.pattern},
                resolution=EdgeCaseResolution.BLOCKED,
            )
            await self._block_session(session, str(e))
            return

        if session.state != S.PLANNING:
            return
        if config.dry_run:
            await self._transition_session(session, S.DONE, "dry run")
            async with self.store.transaction():
                session.completed_at = datetime.now(timezone.utc)
        elif not session.work_queue:
            await self._transition_session(session, S.COMPLETING, "empty work queue")
            await self._transition_session(session, S.DONE, "nothing to do")
            async with self.store.transaction():
                session.completed_at = datetime.now(timezone.utc)

    async def _persist_plan(self, session: AutonomousSession, plan: ExecutionPlan) -> None:
        queue = [p.full_id for p in plan.work_queue]
        existing = {i.full_id for i in await self.store.work_items(session.id)}
        async with self.store.transaction():
            if not plan.dry_run:
                for planned in plan.work_queue:
                    if planned.full_id in existing:
                        continue
                    self.store.add(WorkItem(
                        session_id=session.id,
                        epic_id=planned.epic_id,
                        story_id=planned.story_id,
                        full_id=planned.full_id,
                        title=planned.title,
                        source_path=planned.source_path,
                        acceptance_criteria=[c.to_dict() for c in planned.criteria],
                        dependencies=list(planned.dependencies),
                        referenced_files=list(planned.referenced_files),
                        dependency_depth=planned.dependency_depth,
                        position=planned.position,
                        status=WorkItemStatus.PENDING,
                        phase=S.PLANNING,
                    ))
            session.work_queue = queue

    # ==========================================================================
    # Session Loop
    # ==========================================================================

    @staticmethod
    def _is_active(session: AutonomousSession) -> bool:
        return session.state not in (S.PAUSED, S.BLOCKED, S.DONE)

    async def _abandon_orphans(self, session: AutonomousSession) -> None:
        """Agents left ACTIVE by a previous process have no addressable context."""
        for record in await self.store.agents(session.id):
            if record.status == AgentStatus.ACTIVE and record.agent_id not in self._handles:
                async with self.store.transaction():
                    record.status = AgentStatus.ABANDONED
                logger.info("Orphaned agent abandoned", agent_id=record.agent_id)

    async def _run_queue(self, session: AutonomousSession) -> None:
        """Greedily drive ready stories, at most ``max_agents`` at a time."""
        max_agents = session.session_config.max_agents
        tasks: dict[str, asyncio.Task] = {}

        while True:
            await self.store.refresh(session)
            active = self._is_active(session)

            if active:
                items = await self.store.work_items(session.id)
                satisfied = {
                    i.full_id for i in items
                    if i.status in (WorkItemStatus.COMPLETED, WorkItemStatus.SKIPPED)
                }
                for item in items:
                    if len(tasks) >= max_agents:
                        break
                    if item.full_id in tasks or item.status not in OPEN_STATUSES:
                        continue
                    if not all(dep in satisfied for dep in item.dependencies):
                        continue
                    tasks[item.full_id] = asyncio.create_task(self._drive_story(session, item))

            if not tasks:
                return

            done, _ = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_COMPLETED)
            for full_id, task in list(tasks.items()):
                if task in done:
                    del tasks[full_id]
                    task.result()

    async def _finalize(self, session: AutonomousSession) -> None:
        await self.store.refresh(session)
        if not self._is_active(session):
            return

        items = await self.store.work_items(session.id)
        open_items = [i for i in items if not i.is_terminal]

        if not open_items:
            if can_transition(session.state, S.COMPLETING):
                await self._transition_session(session, S.COMPLETING, "all stories finished")
            await self._transition_session(session, S.DONE, "session complete")
            async with self.store.transaction():
                session.completed_at = datetime.now(timezone.utc)
                session.current_agent_id = None
            await self.store.release_claims(session.id)
            logger.info(
                "Session complete",
                session_id=str(session.id),
                completed=session.metric("stories_completed"),
                failed=session.metric("stories_failed"),
            )
            await self._notify("session_done", session)
            return

        blocked = [i for i in open_items if i.status == WorkItemStatus.BLOCKED]
        waiting = [i for i in open_items if i.status == WorkItemStatus.BLOCKED_BY_DEPENDENCY]
        reasons = "; ".join(f"{i.full_id}: {i.blocked_reason}" for i in blocked)
        await self._block_session(
            session,
            f"{len(blocked)} stories blocked, {len(waiting)} waiting on them. {reasons}".strip(),
        )

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def _transition_session(
        self,
        session: AutonomousSession,
        to_state: SessionState,
        reason: Optional[str] = None,
    ) -> None:
        from_state = session.state
        if from_state == to_state:
            return
        validate_transition(from_state, to_state)
        async with self.store.transaction():
            if to_state in (S.PAUSED, S.BLOCKED):
                session.previous_state = from_state
            session.state = to_state
            self.store.add(SessionTransition(
                session_id=session.id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
            ))
        logger.info(
            "Session transition",
            session_id=str(session.id),
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )

    async def _transition_story(
        self,
        session: AutonomousSession,
        item: WorkItem,
        to_state: SessionState,
        reason: Optional[str] = None,
    ) -> None:
        """Move a story's phase; working phases are mirrored onto the session."""
        from_state = item.phase or S.PLANNING
        if from_state == to_state:
            return
        validate_transition(from_state, to_state)
        async with self.store.transaction():
            item.phase = to_state
            self.store.add(SessionTransition(
                session_id=session.id,
                story_id=item.full_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
            ))
            if to_state in WORKING_STATES and session.state in WORKING_STATES:
                session.state = to_state
                session.current_epic_id = item.epic_id
                session.current_story_id = item.full_id
        logger.info(
            "Story transition",
            session_id=str(session.id),
            story_id=item.full_id,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )

    async def _block_session(self, session: AutonomousSession, reason: str) -> None:
        await self._transition_session(session, S.BLOCKED, reason)
        async with self.store.transaction():
            session.blocked_reason = reason
        await self._notify("session_blocked", session, reason=reason)

    # ==========================================================================
    # Story Driver
    # ==========================================================================

    async def _drive_story(self, session: AutonomousSession, item: WorkItem) -> None:
        ctx = StoryContext(item=item)
        try:
            await self.store.claim_story(session.id, item.epic_id, item.story_id)
        except StoryAlreadyClaimedError as e:
            await self.edge_cases.handle(
                str(e),
                session_id=session.id,
                story_id=item.full_id,
                resolution=EdgeCaseResolution.BLOCKED,
            )
            await self._block_story(session, ctx, str(e))
            return

        started = False
        while True:
            try:
                if not started:
                    await self._start_story(session, ctx)
                    started = True
                if not await self._step(session, ctx):
                    return
            except Exception as e:
                if item.full_id in self._restarts or item.full_id in self._escalations:
                    # Turn cut short by recovery; the next step acts on it
                    logger.info("Agent turn interrupted by recovery", story_id=item.full_id, error=str(e))
                    continue
                await self._fail_story(session, ctx, e)
                return

    async def _fail_story(self, session: AutonomousSession, ctx: StoryContext, error: Exception) -> None:
        item = ctx.item
        await self.store.refresh(session)
        logger.error(
            "Story driver failed",
            session_id=str(session.id),
            story_id=item.full_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        if not self._is_active(session) or item.is_terminal:
            return
        await self.edge_cases.handle(
            str(error),
            session_id=session.id,
            agent_id=ctx.handle.agent_id if ctx.handle else None,
            story_id=item.full_id,
            context={"phase": item.phase.value if item.phase else None, "retry_count": item.retry_count},
            resolution=EdgeCaseResolution.BLOCKED,
        )
        await self._block_story(session, ctx, f"{type(error).__name__}: {error}")

    async def _start_story(self, session: AutonomousSession, ctx: StoryContext) -> None:
        item = ctx.item
        if item.status == WorkItemStatus.PENDING:
            async with self.store.transaction():
                item.status = WorkItemStatus.IN_PROGRESS
                item.phase = item.phase or S.PLANNING
                item.branch = item.branch or f"autopilot/{item.epic_id}/{item.story_id}"
            if self.worktrees is not None and not item.worktree_ref:
                ref = await self.worktrees.create(item.full_id, item.branch)
                async with self.store.transaction():
                    item.worktree_ref = ref
            await self._transition_story(session, item, S.EXECUTING, "story started")
            return

        # Resuming after a restart or an unblock
        if item.phase in (None, S.PLANNING):
            await self._transition_story(session, item, S.EXECUTING, "story resumed")
        if item.last_signal in {s.value for s in StatusSignal}:
            ctx.signal = ParsedSignal(signal=StatusSignal(item.last_signal))
        logger.info("Story resumed", story_id=item.full_id, phase=item.phase.value, signal=item.last_signal)

    async def _step(self, session: AutonomousSession, ctx: StoryContext) -> bool:
        """One decision for one story; False when the driver should exit."""
        item = ctx.item
        await self.store.refresh(session)
        if not self._is_active(session) or item.is_terminal:
            return False

        if item.full_id in self._escalations:
            reason = self._escalations.pop(item.full_id)
            await self.edge_cases.handle(
                reason,
                session_id=session.id,
                story_id=item.full_id,
                resolution=EdgeCaseResolution.ESCALATED,
            )
            await self._block_story(session, ctx, reason)
            return False
        if item.full_id in self._restarts:
            await self._fork(session, ctx, self._restarts.pop(item.full_id))
            return True

        if item.phase == S.PR_CREATION:
            await self._open_pull_request(session, ctx)
            return True
        if item.phase == S.PR_MERGING:
            if self.code_host is None or item.pr_number is None:
                await self._transition_story(session, item, S.COMPLETING, "nothing to merge")
                return True
            return await self._merge(session, ctx)
        if item.phase == S.COMPLETING:
            await self._finish_story(session, ctx)
            return False

        evaluation = await self._evaluate(session, ctx)
        snapshot = SessionSnapshot.with_defaults(
            state=item.phase,
            story_id=item.full_id,
            review_iterations=item.review_iterations,
            fix_iterations=item.fix_iterations,
            criteria_iterations=item.criteria_iterations,
            wait_attempts=item.wait_attempts,
        )
        decision = self.engine.evaluate(snapshot, ctx.signal, evaluation)
        logger.info(
            "Decision",
            session_id=str(session.id),
            story_id=item.full_id,
            state=item.phase.value,
            signal=ctx.signal.signal.value if isinstance(ctx.signal, ParsedSignal) else None,
            decision=type(decision).__name__,
        )
        return await self._apply(session, ctx, decision)

    async def _apply(self, session: AutonomousSession, ctx: StoryContext, decision: Decision) -> bool:
        item = ctx.item
        if not isinstance(decision, Wait) and item.wait_attempts:
            async with self.store.transaction():
                item.wait_attempts = 0

        if isinstance(decision, SpawnAgent):
            if ctx.signal is None:
                await self._spawn_implementer(session, ctx)
                return True
            await self._block_story(session, ctx, "no actionable decision for story")
            return False

        if isinstance(decision, ContinueAgent):
            await self._continue(session, ctx, decision)
            return True

        if isinstance(decision, TriggerReview):
            await self._review(session, ctx)
            return True

        if isinstance(decision, CompleteWork):
            await self._complete(session, ctx)
            return not item.is_terminal and item.status != WorkItemStatus.BLOCKED

        if isinstance(decision, Escalate):
            await self.edge_cases.handle(
                decision.reason,
                session_id=session.id,
                agent_id=ctx.handle.agent_id if ctx.handle else None,
                story_id=item.full_id,
                context={
                    "blocker": decision.blocker,
                    "review_iterations": item.review_iterations,
                    "retry_count": item.retry_count,
                },
                resolution=EdgeCaseResolution.ESCALATED,
            )
            await self._block_story(session, ctx, decision.reason)
            return False

        if isinstance(decision, Wait):
            await self._wait(session, ctx, decision)
            return True

        raise TypeError(f"Unknown decision: {decision!r}")

    # ==========================================================================
    # Agents
    # ==========================================================================

    async def _spawn(
        self,
        session: AutonomousSession,
        item: WorkItem,
        agent_type: AgentType,
        task: str,
        selection: ModelSelection,
        parent_agent_id: Optional[str] = None,
    ) -> tuple[AgentHandle, AgentRecord]:
        config = session.session_config
        handle = await self.runtime.spawn(agent_type, task, selection.model, item.worktree_ref)
        record = AgentRecord(
            agent_id=handle.agent_id,
            session_id=session.id,
            story_id=item.full_id,
            agent_type=agent_type,
            tier=selection.tier,
            model=selection.model,
            status=AgentStatus.ACTIVE,
            selection_reason=selection.reason,
            max_turns=config.max_turns,
            context_window=settings.AGENT_CONTEXT_WINDOW,
            worktree_ref=item.worktree_ref,
            parent_agent_id=parent_agent_id,
        )
        async with self.store.transaction():
            self.store.add(record)
            session.record_metric("agents_spawned")
            session.current_agent_id = handle.agent_id
            if agent_type == AgentType.IMPLEMENTER:
                item.agent_id = handle.agent_id

        self._handles[handle.agent_id] = handle
        self.monitor.register(AgentActivity(
            agent_id=handle.agent_id,
            session_id=session.id,
            story_id=item.full_id,
            max_turns=config.max_turns,
            context_window=settings.AGENT_CONTEXT_WINDOW,
        ))
        logger.info(
            "Agent spawned",
            session_id=str(session.id),
            story_id=item.full_id,
            agent_id=handle.agent_id,
            agent_type=agent_type.value,
            model=selection.model,
            tier=selection.tier.value,
        )
        return handle, record

    async def _spawn_implementer(
        self,
        session: AutonomousSession,
        ctx: StoryContext,
        extra: Optional[str] = None,
    ) -> None:
        item = ctx.item
        review = await self.store.latest_review(session.id, item.full_id)
        selection = self.selector.select(
            item,
            retry_count=item.retry_count,
            review_severity=review.highest_severity if review else None,
            override=session.session_config.model,
            minimum_tier=item.tier_override,
        )
        ctx.handle, ctx.record = await self._spawn(
            session,
            item,
            AgentType.IMPLEMENTER,
            self._implementation_task(item, extra),
            selection,
        )
        turn = await self.runtime.run_turn(ctx.handle, on_message=self._on_message)
        await self._record_turn(session, ctx, turn)

    async def _record_turn(self, session: AutonomousSession, ctx: StoryContext, turn: TurnResult) -> None:
        item, record = ctx.item, ctx.record
        activity = self.monitor.get(record.agent_id)
        if activity is not None:
            activity.record_turn(turn)
        async with self.store.transaction():
            record.turns_used += turn.turns
            record.tokens_used += turn.tokens
            session.record_metric("tokens_used", turn.tokens)
            item.revision += 1
            item.last_signal = turn.signal.signal.value if isinstance(turn.signal, ParsedSignal) else None
            item.last_output = turn.text[-10_000:] if turn.text else None
        ctx.signal = turn.signal
        logger.info(
            "Agent turn finished",
            story_id=item.full_id,
            agent_id=record.agent_id,
            turns=turn.turns,
            tokens=turn.tokens,
            signal=item.last_signal,
            revision=item.revision,
        )

    async def _retire(self, handle: AgentHandle, record: AgentRecord, status: AgentStatus) -> None:
        self._handles.pop(handle.agent_id, None)
        await self._terminate(handle)
        async with self.store.transaction():
            record.status = status
        await self.monitor.release(handle.agent_id, f"agent {status.value}")

    async def _terminate(self, handle: AgentHandle) -> None:
        try:
            await self.runtime.terminate(handle)
        except AgentRuntimeError as e:
            logger.warning("Agent terminate failed", agent_id=handle.agent_id, error=str(e))

    async def _on_message(self, handle: AgentHandle, message: AgentMessage) -> None:
        activity = self.monitor.get(handle.agent_id)
        if activity is not None:
            activity.record_output(modifies_files=message.modifies_files)

    async def _on_rate_limit(self, handle: AgentHandle, error: Exception) -> None:
        activity = self.monitor.get(handle.agent_id)
        if activity is None:
            return
        activity.rate_limited = True
        activity.retry_after = getattr(error, "retry_after", None)
        await self.edge_cases.record(
            EdgeCaseType.RATE_LIMIT,
            session_id=activity.session_id,
            agent_id=handle.agent_id,
            story_id=activity.story_id,
            error=str(error),
            resolution=EdgeCaseResolution.RETRIED,
        )

    # ==========================================================================
    # Decisions
    # ==========================================================================

    async def _continue(self, session: AutonomousSession, ctx: StoryContext, decision: ContinueAgent) -> None:
        item = ctx.item
        if item.phase == S.REVIEWING:
            await self._transition_story(session, item, S.EXECUTING, decision.reason.value)
        elif item.phase == S.PR_MONITORING:
            await self._transition_story(session, item, S.PR_FIXING, decision.reason.value)

        async with self.store.transaction():
            if decision.reason == ContinuationReason.INCOMPLETE_CRITERIA:
                item.criteria_iterations += 1
            elif decision.reason in (ContinuationReason.TEST_FAILURES, ContinuationReason.ADDITIONAL_TASK):
                item.fix_iterations += 1
            session.record_metric("total_iterations")

        if ctx.handle is None:
            await self._spawn_implementer(session, ctx, extra=decision.message)
            return

        _, turn = await self.continuations.apply(
            session.id,
            ctx.handle,
            decision.reason,
            decision.message,
            story_id=item.full_id,
            on_message=self._on_message,
        )
        await self._record_turn(session, ctx, turn)

    async def _review(self, session: AutonomousSession, ctx: StoryContext) -> None:
        item = ctx.item
        if item.phase == S.EXECUTING:
            await self._transition_story(session, item, S.REVIEWING, "work ready for review")
        elif item.phase == S.PR_FIXING:
            await self._transition_story(session, item, S.PR_MONITORING, "fixes ready for review")

        implementer = self.monitor.get(ctx.handle.agent_id) if ctx.handle else None
        if implementer is not None:
            implementer.review_requested_at = datetime.now(timezone.utc)

        selection = self.selector.select(item, override=session.session_config.model)
        handle, record = await self._spawn(
            session,
            item,
            AgentType.REVIEWER,
            self._review_task(item),
            selection,
            parent_agent_id=ctx.handle.agent_id if ctx.handle else None,
        )
        try:
            turn = await self.runtime.run_turn(handle, on_message=self._on_message)
        except Exception:
            await self._retire(handle, record, AgentStatus.FAILED)
            raise
        await self._retire(handle, record, AgentStatus.COMPLETED)

        report = parse_review_output(turn.text, revision=item.revision)
        await self.store.record_review(session.id, item.full_id, report, agent_id=handle.agent_id)
        async with self.store.transaction():
            record.turns_used += turn.turns
            record.tokens_used += turn.tokens
            session.record_metric("tokens_used", turn.tokens)
            if report.verdict == ReviewVerdict.APPROVED:
                item.review_iterations = 0
                session.record_metric("reviews_passed")
            elif report.verdict == ReviewVerdict.CHANGES_REQUESTED:
                item.review_iterations += 1
                session.record_metric("reviews_failed")

        if implementer is not None:
            implementer.review_requested_at = None
        logger.info(
            "Review recorded",
            story_id=item.full_id,
            verdict=report.verdict.value,
            issues=len(report.issues),
            revision=item.revision,
            iteration=item.review_iterations,
        )

    async def _complete(self, session: AutonomousSession, ctx: StoryContext) -> None:
        item = ctx.item
        if item.phase == S.EXECUTING:
            await self._transition_story(session, item, S.REVIEWING, "approved")
        if item.phase == S.PR_FIXING:
            await self._transition_story(session, item, S.PR_MONITORING, "approved")

        if item.phase == S.REVIEWING:
            await self._transition_story(session, item, S.PR_CREATION, "criteria met, CI green, review approved")
            await self._open_pull_request(session, ctx)
            return

        if item.phase == S.PR_MONITORING:
            config = session.session_config
            if config.auto_merge and self.code_host is not None and item.pr_number is not None:
                await self._transition_story(session, item, S.PR_MERGING, f"merging #{item.pr_number}")
                await self._merge(session, ctx)
                return
            reason = "auto-merge disabled" if not config.auto_merge else "no code host configured"
            await self._transition_story(session, item, S.COMPLETING, reason)
            await self._finish_story(session, ctx)

    async def _wait(self, session: AutonomousSession, ctx: StoryContext, decision: Wait) -> None:
        item = ctx.item
        if item.wait_attempts == 0 and decision.dependency in ("ci", "mergeability", "review_pending"):
            await self.edge_cases.record(
                EdgeCaseType.DELAYED_CI_REVIEW,
                session_id=session.id,
                story_id=item.full_id,
                error=f"waiting for {decision.dependency}",
                resolution=EdgeCaseResolution.RETRIED,
            )
        async with self.store.transaction():
            item.wait_attempts += 1

        logger.info(
            "Waiting",
            story_id=item.full_id,
            dependency=decision.dependency,
            seconds=decision.duration,
            attempt=item.wait_attempts,
        )
        await self._sleep(decision.duration)

        # The agent itself declared the wait: ask it to re-check
        if isinstance(ctx.signal, ParsedSignal) and ctx.signal.signal in WAIT_SIGNALS:
            message = ContinuationBuilder.for_task(
                f"The wait for {decision.dependency} has elapsed. Check again and report your status."
            )
            if ctx.handle is None:
                await self._spawn_implementer(session, ctx, extra=message)
                return
            _, turn = await self.continuations.apply(
                session.id,
                ctx.handle,
                ContinuationReason.ADDITIONAL_TASK,
                message,
                story_id=item.full_id,
                on_message=self._on_message,
            )
            await self._record_turn(session, ctx, turn)

    # ==========================================================================
    # Evaluation
    # ==========================================================================

    async def _evaluate(self, session: AutonomousSession, ctx: StoryContext) -> Evaluation:
        item = ctx.item

        refreshed = self.planner.refresh_criteria(item.source_path, item.story_id)
        if refreshed is not None:
            criteria = [c.to_dict() for c in refreshed]
            if criteria != item.acceptance_criteria:
                async with self.store.transaction():
                    item.acceptance_criteria = criteria

        checks = []
        ci_changed = 0
        pull_request: Optional[PullRequestInfo] = None
        if self.code_host is not None and item.branch:
            reported = await self.code_host.list_ci_checks(item.branch)
            if reported:
                ci_changed = await self.store.record_ci_checks(session.id, item.full_id, reported)
            checks = await self.store.latest_ci_checks(session.id, item.full_id)
        if self.code_host is not None and item.pr_number is not None:
            pull_request = await self.code_host.get_pull_request(item.pr_number)
            await self._sync_host_reviews(session, item)

        review = await self.store.latest_review(session.id, item.full_id)
        evaluator = WorkEvaluator(session.session_config.required_checks)
        evaluation = evaluator.evaluate(
            item.acceptance_criteria,
            checks,
            review,
            revision=item.revision,
            pull_request=pull_request,
            signal=ctx.signal,
        )
        self._update_activity(ctx, evaluation, pull_request, ci_changed)

        signal = ctx.signal
        if (
            isinstance(signal, ParsedSignal)
            and signal.signal in WORK_READY_SIGNALS
            and ctx.evaluated_revision != item.revision
        ):
            record = evaluator.to_record(
                evaluation,
                session.id,
                item.full_id,
                agent_id=item.agent_id,
                signal=signal.signal.value,
            )
            await self.store.save(record)
            ctx.evaluated_revision = item.revision
            logger.info(
                "Work evaluated",
                story_id=item.full_id,
                status=evaluation.status.value,
                criteria=f"{evaluation.criteria_met}/{evaluation.criteria_total}",
                ci=evaluation.ci_status.value if evaluation.ci_status else None,
            )
        return evaluation

    async def _sync_host_reviews(self, session: AutonomousSession, item: WorkItem) -> None:
        """Record change requests submitted on the pull request by external reviewers."""
        reviews = await self.code_host.list_reviews(item.pr_number)
        requested = [r for r in reviews if (r.state or "").lower() == "changes_requested"]
        seen = await self.store.count_reviews(session.id, item.full_id, source="code_host")
        for comment in requested[seen:]:
            report = ReviewReport(
                verdict=ReviewVerdict.CHANGES_REQUESTED,
                feedback=comment.body,
                revision=item.revision,
            )
            await self.store.record_review(session.id, item.full_id, report, source="code_host")
            async with self.store.transaction():
                item.review_iterations += 1
                session.record_metric("reviews_failed")
            logger.info("External review recorded", story_id=item.full_id, author=comment.author)

    def _update_activity(
        self,
        ctx: StoryContext,
        evaluation: Evaluation,
        pull_request: Optional[PullRequestInfo],
        ci_changed: int,
    ) -> None:
        if ctx.handle is None:
            return
        activity = self.monitor.get(ctx.handle.agent_id)
        if activity is None:
            return
        now = datetime.now(timezone.utc)
        activity.ci_pending = evaluation.ci_pending
        activity.pending_checks = evaluation.pending_checks
        if ci_changed:
            activity.last_ci_update_at = now
        if pull_request is not None:
            activity.mergeable = pull_request.mergeable
            activity.conflicting_files = tuple(pull_request.conflicting_files)
            if pull_request.pushed_at is not None:
                activity.last_push_at = pull_request.pushed_at

    # ==========================================================================
    # Pull Requests
    # ==========================================================================

    async def _open_pull_request(self, session: AutonomousSession, ctx: StoryContext) -> None:
        item = ctx.item
        if self.code_host is None:
            await self._transition_story(session, item, S.PR_MONITORING, "no code host configured")
            return

        if item.pr_number is None:
            pull_request = await self.code_host.create_pull_request(PullRequestRequest(
                title=f"{item.full_id}: {item.title}",
                head=item.branch,
                body=self._pull_request_body(item),
                labels=["autopilot"],
            ))
            async with self.store.transaction():
                item.pr_number = pull_request.number
            if ctx.handle is not None and (activity := self.monitor.get(ctx.handle.agent_id)):
                activity.last_push_at = datetime.now(timezone.utc)
            logger.info("Pull request opened", story_id=item.full_id, pr_number=pull_request.number)

        await self._transition_story(session, item, S.PR_MONITORING, f"pull request #{item.pr_number}")

    async def _merge(self, session: AutonomousSession, ctx: StoryContext) -> bool:
        item = ctx.item
        pull_request = await self.code_host.get_pull_request(item.pr_number)
        merged = pull_request.is_merged or await self.code_host.merge_pull_request(item.pr_number)
        if not merged:
            await self.edge_cases.handle(
                f"Pull request #{item.pr_number} cannot be merged",
                session_id=session.id,
                story_id=item.full_id,
                context={"pr_number": item.pr_number},
                resolution=EdgeCaseResolution.ESCALATED,
            )
            await self._block_story(session, ctx, f"Pull request #{item.pr_number} could not be merged")
            return False

        await self._transition_story(session, item, S.COMPLETING, f"pull request #{item.pr_number} merged")
        await self._finish_story(session, ctx)
        return False

    async def _finish_story(self, session: AutonomousSession, ctx: StoryContext) -> None:
        item = ctx.item
        if ctx.handle is not None and ctx.record is not None:
            await self._retire(ctx.handle, ctx.record, AgentStatus.COMPLETED)
        if self.worktrees is not None and item.worktree_ref:
            await self.worktrees.remove(item.worktree_ref)

        async with self.store.transaction():
            item.status = WorkItemStatus.COMPLETED
            item.completed_at = datetime.now(timezone.utc)
            item.worktree_ref = None
            if item.full_id not in (session.completed_items or []):
                session.completed_items = [*(session.completed_items or []), item.full_id]
            session.record_metric("stories_completed")
            if session.current_story_id == item.full_id:
                session.current_agent_id = None

        await self._transition_story(session, item, S.DONE, "story complete")
        logger.info("Story completed", session_id=str(session.id), story_id=item.full_id, pr_number=item.pr_number)
        await self._notify("story_completed", session, story_id=item.full_id)

    # ==========================================================================
    # Blocking
    # ==========================================================================

    async def _block_story(self, session: AutonomousSession, ctx: StoryContext, reason: str) -> None:
        """Escalation is terminal for this story only; dependents wait on it."""
        item = ctx.item
        if ctx.handle is not None and ctx.record is not None and ctx.record.status == AgentStatus.ACTIVE:
            await self._retire(ctx.handle, ctx.record, AgentStatus.FAILED)
        ctx.handle = ctx.record = None

        async with self.store.transaction():
            if item.phase != S.BLOCKED:
                item.resume_phase = item.phase
            item.status = WorkItemStatus.BLOCKED
            item.blocked_reason = reason
        await self._transition_story(session, item, S.BLOCKED, reason)

        items = await self.store.work_items(session.id)
        graph = self._graph(items)
        by_id = {i.full_id: i for i in items}
        async with self.store.transaction():
            for dependent_id in graph.dependents_of(item.full_id):
                dependent = by_id[dependent_id]
                if dependent.status == WorkItemStatus.PENDING:
                    dependent.status = WorkItemStatus.BLOCKED_BY_DEPENDENCY
                    dependent.blocked_reason = f"Dependency {item.full_id} is blocked"

        logger.warning("Story blocked", session_id=str(session.id), story_id=item.full_id, reason=reason)
        await self._notify("story_blocked", session, story_id=item.full_id, reason=reason)

    async def _unblock_story(
        self,
        session: AutonomousSession,
        item: WorkItem,
        action: UnblockAction,
        items: list[WorkItem],
    ) -> None:
        graph = self._graph(items)
        by_id = {i.full_id: i for i in items}
        dependents = [by_id[d] for d in graph.dependents_of(item.full_id)]

        if action == UnblockAction.RETRY:
            target = RESUME_PHASES.get(item.resume_phase, S.EXECUTING)
            await self._transition_story(session, item, target, "retry requested")
            async with self.store.transaction():
                item.status = WorkItemStatus.IN_PROGRESS
                item.retry_count += 1
                item.review_iterations = 0
                item.fix_iterations = 0
                item.criteria_iterations = 0
                item.wait_attempts = 0
                item.last_signal = None
            await self._release_dependents(item, dependents, by_id, graph)

        elif action == UnblockAction.SKIP:
            await self._transition_story(session, item, S.DONE, "skipped by operator")
            async with self.store.transaction():
                item.status = WorkItemStatus.SKIPPED
                item.completed_at = datetime.now(timezone.utc)
            await self._release_dependents(item, dependents, by_id, graph)

        else:
            await self._transition_story(session, item, S.DONE, "escalated further")
            async with self.store.transaction():
                item.status = WorkItemStatus.FAILED
                session.record_metric("stories_failed")
                for dependent in dependents:
                    if not dependent.is_terminal:
                        dependent.status = WorkItemStatus.FAILED
                        dependent.blocked_reason = f"Dependency {item.full_id} failed"
                        session.record_metric("stories_failed")

        logger.info("Story unblocked", story_id=item.full_id, action=action.value)

    async def _release_dependents(
        self,
        item: WorkItem,
        dependents: list[WorkItem],
        by_id: dict[str, WorkItem],
        graph: DependencyGraph,
    ) -> None:
        """Dependents go back to PENDING unless another of their dependencies is still blocked."""
        async with self.store.transaction():
            for dependent in dependents:
                if dependent.status != WorkItemStatus.BLOCKED_BY_DEPENDENCY:
                    continue
                still_blocked = any(
                    by_id[d].status == WorkItemStatus.BLOCKED
                    for d in self._ancestors(dependent.full_id, graph)
                    if d != item.full_id
                )
                if not still_blocked:
                    dependent.status = WorkItemStatus.PENDING
                    dependent.blocked_reason = None

    @staticmethod
    def _graph(items: list[WorkItem]) -> DependencyGraph:
        known = {i.full_id for i in items}
        graph = DependencyGraph()
        for i in items:
            graph.add(i.full_id, [d for d in i.dependencies if d in known])
        return graph

    @staticmethod
    def _ancestors(full_id: str, graph: DependencyGraph) -> set[str]:
        seen: set[str] = set()
        stack = list(graph.dependencies_of(full_id))
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(graph.dependencies_of(node))
        return seen

    # ==========================================================================
    # Recovery Executor
    # ==========================================================================

    async def pause_alert(self, detection: StuckAgentDetection) -> dict[str, Any]:
        logger.warning(
            "Stuck agent alert",
            agent_id=detection.agent_id,
            story_id=detection.story_id,
            stuck_type=detection.stuck_type.value,
            severity=detection.severity.value,
        )
        if self.notification_callback:
            await self.notification_callback({
                "type": "stuck_agent",
                "session_id": str(detection.session_id),
                "agent_id": detection.agent_id,
                "story_id": detection.story_id,
                "stuck_type": detection.stuck_type.value,
                "severity": detection.severity.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
        return {"alerted": True}

    async def escalate_model(self, detection: StuckAgentDetection) -> dict[str, Any]:
        item = await self._detection_item(detection)
        record = await self.store.get_agent(detection.agent_id)
        current = record.tier if record is not None else ModelTier.STANDARD
        target = self.selector.escalate(current)
        async with self.store.transaction():
            item.tier_override = target
        await self._request_restart(item, detection.agent_id, f"model escalation {current.value} -> {target.value}")
        return {"from_tier": current.value, "to_tier": target.value}

    async def spawn_fixer(self, detection: StuckAgentDetection, agent_type: AgentType) -> dict[str, Any]:
        item = await self._detection_item(detection)
        session = await self.store.get_session(detection.session_id)
        selection = self.selector.select(
            item,
            override=session.session_config.model,
            minimum_tier=item.tier_override,
        )
        handle, record = await self._spawn(
            session,
            item,
            agent_type,
            self._fixer_task(item, detection, agent_type),
            selection,
            parent_agent_id=detection.agent_id,
        )
        task = asyncio.create_task(self._run_fixer(session, handle, record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return {"fixer_agent_id": handle.agent_id, "agent_type": agent_type.value}

    async def fork_retry(self, detection: StuckAgentDetection) -> dict[str, Any]:
        item = await self._detection_item(detection)
        await self._request_restart(item, detection.agent_id, f"fork retry after {detection.stuck_type.value}")
        return {"abandoned_agent_id": detection.agent_id}

    async def escalate_to_parent(self, detection: StuckAgentDetection, reason: str) -> dict[str, Any]:
        if detection.story_id:
            self._escalations[detection.story_id] = reason
        handle = self._handles.get(detection.agent_id)
        if handle is not None:
            await self._terminate(handle)
        await self._notify_detection("escalated_to_parent", detection, reason)
        return {"reason": reason}

    async def _detection_item(self, detection: StuckAgentDetection) -> WorkItem:
        item = await self.store.get_work_item(detection.session_id, detection.story_id or "")
        if item is None:
            raise AgentRuntimeError(f"No work item for agent {detection.agent_id}", agent_id=detection.agent_id)
        return item

    async def _request_restart(self, item: WorkItem, agent_id: str, reason: str) -> None:
        """The story driver forks a fresh agent at its next step; the stuck turn is cut short."""
        self._restarts[item.full_id] = reason
        handle = self._handles.get(agent_id)
        if handle is not None and handle.agent_type == AgentType.IMPLEMENTER:
            await self._terminate(handle)
        logger.info("Agent restart requested", story_id=item.full_id, agent_id=agent_id, reason=reason)

    async def _fork(self, session: AutonomousSession, ctx: StoryContext, reason: str) -> None:
        item = ctx.item
        if ctx.handle is not None and ctx.record is not None:
            await self._retire(ctx.handle, ctx.record, AgentStatus.ABANDONED)
        ctx.handle = ctx.record = None

        summary = (item.last_output or "").strip()[-2000:]
        extra = f"A previous agent on this story was replaced ({reason})."
        if summary:
            extra += f" Its last output was:\n\n{summary}"
        async with self.store.transaction():
            session.record_metric("total_iterations")
        await self._spawn_implementer(session, ctx, extra=extra)

    async def _run_fixer(self, session: AutonomousSession, handle: AgentHandle, record: AgentRecord) -> None:
        try:
            turn = await self.runtime.run_turn(handle, on_message=self._on_message)
        except AgentRuntimeError as e:
            logger.error("Fixer agent failed", agent_id=handle.agent_id, error=str(e))
            await self.edge_cases.handle(
                str(e),
                session_id=session.id,
                agent_id=handle.agent_id,
                story_id=record.story_id,
                resolution=EdgeCaseResolution.PENDING,
            )
            await self._retire(handle, record, AgentStatus.FAILED)
            return

        async with self.store.transaction():
            record.turns_used += turn.turns
            record.tokens_used += turn.tokens
            session.record_metric("tokens_used", turn.tokens)
        await self._retire(handle, record, AgentStatus.COMPLETED)
        logger.info(
            "Fixer agent finished",
            agent_id=handle.agent_id,
            story_id=record.story_id,
            signal=turn.signal.signal.value if isinstance(turn.signal, ParsedSignal) else None,
        )

    # ==========================================================================
    # Prompts
    # ==========================================================================

    @staticmethod
    def _implementation_task(item: WorkItem, extra: Optional[str] = None) -> str:
        lines = [f"Implement story {item.full_id}: {item.title}", "", "Acceptance criteria:"]
        for criterion in item.acceptance_criteria or []:
            mark = "x" if criterion.get("done") else " "
            lines.append(f"- [{mark}] {criterion.get('text', '')}")
        if item.referenced_files:
            lines += ["", "Relevant files: " + ", ".join(item.referenced_files)]
        if item.source_path:
            lines += ["", f"Tick each criterion in {item.source_path} once it is implemented."]
        if item.retry_count and item.blocked_reason:
            lines += ["", f"Attempt {item.retry_count + 1}. The previous attempt was blocked: {item.blocked_reason}"]
        if extra:
            lines += ["", extra]
        lines += ["", SIGNAL_PROTOCOL]
        return "\n".join(lines)

    @staticmethod
    def _review_task(item: WorkItem) -> str:
        criteria = "\n".join(f"- {c.get('text', '')}" for c in item.acceptance_criteria or [])
        return (
            f"Review the changes for story {item.full_id}: {item.title}"
            f"{f' on branch {item.branch}' if item.branch else ''}.\n\n"
            f"Acceptance criteria:\n{criteria}\n\n"
            f"Revision: {item.revision}. Previous change requests: {item.review_iterations}.\n\n"
            f"{REVIEW_PROTOCOL}"
        )

    @staticmethod
    def _fixer_task(item: WorkItem, detection: StuckAgentDetection, agent_type: AgentType) -> str:
        details = "\n".join(f"- {k}: {v}" for k, v in (detection.details or {}).items())
        return (
            f"You are a {agent_type.value.replace('_', ' ')} for story {item.full_id}: {item.title}.\n"
            f"The implementing agent is stuck ({detection.stuck_type.value}).\n{details}\n\n"
            "Fix only this problem, commit, and report.\n\n"
            f"{SIGNAL_PROTOCOL}"
        )

    @staticmethod
    def _pull_request_body(item: WorkItem) -> str:
        criteria = "\n".join(
            f"- [{'x' if c.get('done') else ' '}] {c.get('text', '')}" for c in item.acceptance_criteria or []
        )
        return f"Story `{item.full_id}`\n\n## Acceptance Criteria\n{criteria}\n"

    # ==========================================================================
    # Notifications
    # ==========================================================================

    async def _notify(self, event: str, session: AutonomousSession, **data) -> None:
        if not self.notification_callback:
            return
        await self.notification_callback({
            "type": event,
            "session_id": str(session.id),
            "state": session.state.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        })

    async def _notify_detection(self, event: str, detection: StuckAgentDetection, reason: str) -> None:
        if not self.notification_callback:
            return
        await self.notification_callback({
            "type": event,
            "session_id": str(detection.session_id),
            "agent_id": detection.agent_id,
            "story_id": detection.story_id,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
