"""
Session Store
=============

Single-writer access to the persisted controller records.

All reads and writes go through one asyncio.Lock around one AsyncSession,
so concurrent story drivers, the stuck monitor and recovery never
interleave on the same database transaction. Every write is committed
before the caller makes its next decision.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, InvalidRequestError
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.core.autonomous.collaborators import CiCheck
from autopilot.core.autonomous.work_evaluator import ReviewIssue, ReviewReport
from autopilot.core.config import SessionConfig
from autopilot.core.exceptions import SessionNotFoundError, StoryAlreadyClaimedError
from autopilot.core.models import (
    AgentContinuation,
    AgentRecord,
    AutonomousSession,
    CiCheckResult,
    CodeReviewResult,
    EdgeCaseEvent,
    RecoveryAttempt,
    SessionState,
    SessionTransition,
    StoryClaim,
    StuckAgentDetection,
    StuckType,
    WorkItem,
    as_utc,
)

logger = structlog.get_logger()


class SessionStore:
    """
    Transactional repository for sessions and everything hanging off them.

    Usage:
        async with store.transaction():
            session.state = SessionState.PLANNING
            store.add(transition)
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._lock = asyncio.Lock()

    # ==========================================================================
    # Transactions
    # ==========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Serialized unit of work: commit on success, roll back on error."""
        async with self._lock:
            try:
                yield self.db
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                await self._reload_tracked()
                raise

    async def _reload_tracked(self) -> None:
        """Rollback expires every instance; reload them so attribute access stays sync-safe."""
        for obj in list(self.db.identity_map.values()):
            try:
                await self.db.refresh(obj)
            except InvalidRequestError:
                self.db.expunge(obj)
        await self.db.commit()

    def add(self, *objects) -> None:
        """Stage objects; call inside ``transaction()``."""
        self.db.add_all(objects)

    async def save(self, *objects) -> None:
        async with self.transaction():
            self.db.add_all(objects)

    # ==========================================================================
    # Sessions
    # ==========================================================================

    async def create_session(self, pattern: str, config: SessionConfig) -> AutonomousSession:
        session = AutonomousSession(
            pattern=pattern,
            state=SessionState.IDLE,
            config=config.model_dump(),
            work_queue=[],
            completed_items=[],
            metrics={key: 0 for key in AutonomousSession.METRIC_KEYS},
        )
        await self.save(session)
        logger.info("Session created", session_id=str(session.id), pattern=pattern)
        return session

    async def get_session(self, session_id: UUID) -> AutonomousSession:
        async with self.transaction():
            session = await self.db.get(AutonomousSession, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(self, state: Optional[SessionState] = None) -> list[AutonomousSession]:
        query = select(AutonomousSession).order_by(AutonomousSession.created_at)
        if state is not None:
            query = query.where(AutonomousSession.state == state)
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def transitions(self, session_id: UUID) -> list[SessionTransition]:
        query = (
            select(SessionTransition)
            .where(SessionTransition.session_id == session_id)
            .order_by(SessionTransition.occurred_at)
        )
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def state_durations(self, session_id: UUID, now: Optional[datetime] = None) -> dict[str, float]:
        """Seconds spent in each session state, from the transition audit."""
        transitions = await self.transitions(session_id)
        now = now or datetime.now(timezone.utc)
        durations: dict[str, float] = {}
        for current, following in zip(transitions, transitions[1:] + [None]):
            start = as_utc(current.occurred_at)
            end = as_utc(following.occurred_at) if following is not None else now
            seconds = max((end - start).total_seconds(), 0.0)
            key = current.to_state.value
            durations[key] = durations.get(key, 0.0) + seconds
        return durations

    # ==========================================================================
    # Work Items
    # ==========================================================================

    async def work_items(self, session_id: UUID) -> list[WorkItem]:
        query = select(WorkItem).where(WorkItem.session_id == session_id).order_by(WorkItem.position)
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def get_work_item(self, session_id: UUID, full_id: str) -> Optional[WorkItem]:
        query = select(WorkItem).where(WorkItem.session_id == session_id, WorkItem.full_id == full_id)
        async with self.transaction():
            result = await self.db.execute(query)
            return result.scalar_one_or_none()

    # ==========================================================================
    # Story Claims
    # ==========================================================================

    async def claim_story(self, session_id: UUID, epic_id: str, story_id: str) -> StoryClaim:
        """
        Claim a story for a session.

        Raises:
            StoryAlreadyClaimedError: If another non-terminal session owns it
        """
        async with self._lock:
            query = select(StoryClaim).where(StoryClaim.epic_id == epic_id, StoryClaim.story_id == story_id)
            existing = (await self.db.execute(query)).scalar_one_or_none()
            if existing is not None:
                if existing.session_id == session_id:
                    await self.db.commit()
                    return existing
                owner = await self.db.get(AutonomousSession, existing.session_id)
                if owner is not None and owner.state != SessionState.DONE:
                    await self.db.commit()
                    raise StoryAlreadyClaimedError(epic_id, story_id, existing.session_id)
                # Stale claim left by a finished session
                await self.db.delete(existing)
                await self.db.flush()

            claim = StoryClaim(epic_id=epic_id, story_id=story_id, session_id=session_id)
            self.db.add(claim)
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                await self._reload_tracked()
                raise StoryAlreadyClaimedError(epic_id, story_id) from e

        logger.info("Story claimed", session_id=str(session_id), story_id=f"{epic_id}/{story_id}")
        return claim

    async def release_claim(self, session_id: UUID, epic_id: str, story_id: str) -> None:
        async with self.transaction():
            await self.db.execute(
                delete(StoryClaim).where(
                    StoryClaim.session_id == session_id,
                    StoryClaim.epic_id == epic_id,
                    StoryClaim.story_id == story_id,
                )
            )

    async def release_claims(self, session_id: UUID) -> None:
        async with self.transaction():
            await self.db.execute(delete(StoryClaim).where(StoryClaim.session_id == session_id))

    async def claims(self, session_id: Optional[UUID] = None) -> list[StoryClaim]:
        query = select(StoryClaim)
        if session_id is not None:
            query = query.where(StoryClaim.session_id == session_id)
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    # ==========================================================================
    # Agents & Continuations
    # ==========================================================================

    async def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        async with self.transaction():
            result = await self.db.execute(select(AgentRecord).where(AgentRecord.agent_id == agent_id))
            return result.scalar_one_or_none()

    async def agents(self, session_id: UUID) -> list[AgentRecord]:
        query = select(AgentRecord).where(AgentRecord.session_id == session_id).order_by(AgentRecord.created_at)
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def continuations(
        self,
        session_id: Optional[UUID] = None,
        agent_id: Optional[str] = None,
    ) -> list[AgentContinuation]:
        query = select(AgentContinuation).order_by(AgentContinuation.created_at)
        if session_id is not None:
            query = query.where(AgentContinuation.session_id == session_id)
        if agent_id is not None:
            query = query.where(AgentContinuation.agent_id == agent_id)
        async with self.transaction():
            result = await self.db.execute(query)
            return list(result.scalars().all())

    # ==========================================================================
    # Reviews & CI
    # ==========================================================================

    async def record_review(
        self,
        session_id: UUID,
        story_id: str,
        report: ReviewReport,
        agent_id: Optional[str] = None,
        source: str = "agent",
    ) -> CodeReviewResult:
        async with self.transaction():
            seq = await self._next_seq(CodeReviewResult, session_id, story_id)
            record = CodeReviewResult(
                session_id=session_id,
                story_id=story_id,
                agent_id=agent_id,
                seq=seq,
                revision=report.revision,
                iteration=report.iteration or seq,
                verdict=report.verdict,
                issues=[issue.to_dict() for issue in report.issues],
                feedback=report.feedback,
                source=source,
            )
            self.db.add(record)
        return record

    async def latest_review(self, session_id: UUID, story_id: str) -> Optional[ReviewReport]:
        query = (
            select(CodeReviewResult)
            .where(CodeReviewResult.session_id == session_id, CodeReviewResult.story_id == story_id)
            .order_by(CodeReviewResult.seq.desc())
            .limit(1)
        )
        async with self.transaction():
            record = (await self.db.execute(query)).scalar_one_or_none()
        if record is None:
            return None
        return ReviewReport(
            verdict=record.verdict,
            issues=tuple(ReviewIssue.from_dict(i) for i in record.issues or []),
            feedback=record.feedback,
            iteration=record.iteration,
            revision=record.revision,
        )

    async def count_reviews(self, session_id: UUID, story_id: str, source: Optional[str] = None) -> int:
        query = select(func.count(CodeReviewResult.id)).where(
            CodeReviewResult.session_id == session_id,
            CodeReviewResult.story_id == story_id,
        )
        if source is not None:
            query = query.where(CodeReviewResult.source == source)
        async with self.transaction():
            return (await self.db.execute(query)).scalar() or 0

    async def record_ci_checks(self, session_id: UUID, story_id: str, checks: Iterable[CiCheck]) -> int:
        """Append CI results whose conclusion changed since the last record; returns rows added."""
        latest = {c.name: c for c in await self.latest_ci_checks(session_id, story_id)}
        added = 0
        async with self.transaction():
            seq = await self._next_seq(CiCheckResult, session_id, story_id)
            for check in checks:
                previous = latest.get(check.name)
                if previous is not None and previous.conclusion == check.conclusion:
                    continue
                self.db.add(CiCheckResult(
                    session_id=session_id,
                    story_id=story_id,
                    seq=seq + added,
                    check_name=check.name,
                    conclusion=check.conclusion,
                    details_url=check.details_url,
                    summary=check.summary,
                    reported_at=check.updated_at,
                ))
                added += 1
        return added

    async def latest_ci_checks(self, session_id: UUID, story_id: str) -> list[CiCheck]:
        query = (
            select(CiCheckResult)
            .where(CiCheckResult.session_id == session_id, CiCheckResult.story_id == story_id)
            .order_by(CiCheckResult.seq)
        )
        async with self.transaction():
            rows = list((await self.db.execute(query)).scalars().all())
        latest: dict[str, CiCheck] = {}
        for row in rows:
            latest[row.check_name] = CiCheck(
                name=row.check_name,
                conclusion=row.conclusion,
                updated_at=as_utc(row.reported_at),
                details_url=row.details_url,
                summary=row.summary,
            )
        return list(latest.values())

    async def _next_seq(self, model, session_id: UUID, story_id: str) -> int:
        query = select(func.max(model.seq)).where(model.session_id == session_id, model.story_id == story_id)
        current = (await self.db.execute(query)).scalar()
        return (current or 0) + 1

    # ==========================================================================
    # Stuck Detections & Recovery
    # ==========================================================================

    async def open_detection(self, agent_id: str, stuck_type: StuckType) -> Optional[StuckAgentDetection]:
        query = select(StuckAgentDetection).where(
            StuckAgentDetection.agent_id == agent_id,
            StuckAgentDetection.stuck_type == stuck_type,
            StuckAgentDetection.resolved.is_(False),
        )
        async with self.transaction():
            return (await self.db.execute(query)).scalars().first()

    async def get_detection(self, detection_id: UUID) -> Optional[StuckAgentDetection]:
        async with self.transaction():
            return await self.db.get(StuckAgentDetection, detection_id)

    async def detections(
        self,
        session_id: Optional[UUID] = None,
        agent_id: Optional[str] = None,
        resolved: Optional[bool] = None,
    ) -> list[StuckAgentDetection]:
        query = select(StuckAgentDetection).order_by(StuckAgentDetection.detected_at)
        if session_id is not None:
            query = query.where(StuckAgentDetection.session_id == session_id)
        if agent_id is not None:
            query = query.where(StuckAgentDetection.agent_id == agent_id)
        if resolved is not None:
            query = query.where(StuckAgentDetection.resolved.is_(resolved))
        async with self.transaction():
            return list((await self.db.execute(query)).scalars().all())

    async def recovery_attempts(self, detection_id: UUID) -> list[RecoveryAttempt]:
        query = (
            select(RecoveryAttempt)
            .where(RecoveryAttempt.detection_id == detection_id)
            .order_by(RecoveryAttempt.attempt_number)
        )
        async with self.transaction():
            return list((await self.db.execute(query)).scalars().all())

    # ==========================================================================
    # Edge Cases
    # ==========================================================================

    async def edge_cases(self, session_id: UUID) -> list[EdgeCaseEvent]:
        query = select(EdgeCaseEvent).where(EdgeCaseEvent.session_id == session_id).order_by(EdgeCaseEvent.created_at)
        async with self.transaction():
            return list((await self.db.execute(query)).scalars().all())

    async def refresh(self, *objects) -> None:
        """Re-read objects from the database (after another writer changed them)."""
        async with self.transaction():
            for obj in objects:
                await self.db.refresh(obj)
