"""
Edge Case Handler
=================

Classifies anomalies hit while driving a session and records them as
EdgeCaseEvents, with the recommended handling, for later pattern learning.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from autopilot.core.autonomous.store import SessionStore
from autopilot.core.models import EdgeCaseEvent, EdgeCaseResolution, EdgeCaseType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EdgeCaseAction:
    """Recommended handling for an edge-case type."""
    kind: str                           # wait, spawn_resolver, retry, block, escalate, summarize, backoff, log
    max_retries: int = 0
    delay_seconds: float = 0.0
    detail: Optional[str] = None


class EdgeCaseHandler:
    """
    Detect and log edge cases.

    Classification is by error message first, then by context hints
    (``retry_count``, ``review_iterations``).
    """

    RECOMMENDED_ACTIONS = {
        EdgeCaseType.DELAYED_CI_REVIEW: EdgeCaseAction("wait", delay_seconds=300, detail="up to 2 hours"),
        EdgeCaseType.MERGE_CONFLICT: EdgeCaseAction("spawn_resolver", detail="conflict_resolver"),
        EdgeCaseType.FLAKY_TEST: EdgeCaseAction("retry", max_retries=3, delay_seconds=30),
        EdgeCaseType.SERVICE_DOWNTIME: EdgeCaseAction("wait", delay_seconds=120, detail="up to 30 minutes"),
        EdgeCaseType.DEPENDENCY_FAILURE: EdgeCaseAction("block", detail="Dependent story failed"),
        EdgeCaseType.REVIEW_PING_PONG: EdgeCaseAction("escalate", detail="Review iteration limit exceeded"),
        EdgeCaseType.CONTEXT_OVERFLOW: EdgeCaseAction("summarize", detail="fork with summarized context"),
        EdgeCaseType.RATE_LIMIT: EdgeCaseAction("backoff", delay_seconds=60),
        EdgeCaseType.TIMEOUT: EdgeCaseAction("retry", max_retries=2, delay_seconds=60),
        EdgeCaseType.AUTH_ERROR: EdgeCaseAction("escalate", detail="Authentication or permission error"),
        EdgeCaseType.NETWORK_ERROR: EdgeCaseAction("retry", max_retries=5, delay_seconds=10),
        EdgeCaseType.UNKNOWN: EdgeCaseAction("log"),
    }

    # Ordered: first match wins
    MESSAGE_PATTERNS = [
        (EdgeCaseType.MERGE_CONFLICT, ("merge conflict", "cannot be merged")),
        (EdgeCaseType.RATE_LIMIT, ("rate limit", "rate_limit", "429")),
        (EdgeCaseType.TIMEOUT, ("timeout", "timed out")),
        (EdgeCaseType.FLAKY_TEST, ("flaky", "intermittent")),
        (EdgeCaseType.DELAYED_CI_REVIEW, ("pending review", "review not ready", "copilot")),
        (EdgeCaseType.SERVICE_DOWNTIME, ("service unavailable", "502", "503", "504")),
        (EdgeCaseType.DEPENDENCY_FAILURE, ("dependency", "depends on", "prerequisite failed")),
        (EdgeCaseType.REVIEW_PING_PONG, ("ping-pong", "changes requested", "review iteration")),
        (EdgeCaseType.CONTEXT_OVERFLOW, ("context window", "context length", "token limit", "too long")),
        (EdgeCaseType.AUTH_ERROR, ("unauthorized", "forbidden", "401", "403")),
        (EdgeCaseType.NETWORK_ERROR, ("network", "connection", "dns")),
    ]

    def __init__(self, store: SessionStore):
        self.store = store

    def detect(self, error: str, context: Optional[dict[str, Any]] = None) -> EdgeCaseType:
        """Classify an error message."""
        context = context or {}
        low = (error or "").lower()

        for edge_type, needles in self.MESSAGE_PATTERNS:
            if any(needle in low for needle in needles):
                return edge_type

        if "test" in low and "fail" in low and context.get("retry_count"):
            return EdgeCaseType.FLAKY_TEST
        if context.get("review_iterations", 0) > context.get("max_review_iterations", 3):
            return EdgeCaseType.REVIEW_PING_PONG
        return EdgeCaseType.UNKNOWN

    def recommended_action(self, edge_type: EdgeCaseType) -> EdgeCaseAction:
        return self.RECOMMENDED_ACTIONS[edge_type]

    async def record(
        self,
        edge_type: EdgeCaseType,
        session_id: Optional[UUID] = None,
        agent_id: Optional[str] = None,
        story_id: Optional[str] = None,
        error: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        resolution: EdgeCaseResolution = EdgeCaseResolution.PENDING,
        retry_count: int = 0,
    ) -> EdgeCaseEvent:
        action = self.recommended_action(edge_type)
        event = EdgeCaseEvent(
            edge_case_type=edge_type,
            session_id=session_id,
            agent_id=agent_id,
            story_id=story_id,
            error_message=error,
            context=dict(context or {}),
            action=action.kind,
            resolution=resolution,
            retry_count=retry_count,
        )
        if resolution != EdgeCaseResolution.PENDING:
            event.resolved_at = datetime.now(timezone.utc)
        await self.store.save(event)
        logger.info(f"Edge case {edge_type.value} recorded for {story_id or agent_id or session_id}: {action.kind}")
        return event

    async def handle(
        self,
        error: str,
        session_id: Optional[UUID] = None,
        agent_id: Optional[str] = None,
        story_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        resolution: EdgeCaseResolution = EdgeCaseResolution.PENDING,
    ) -> EdgeCaseEvent:
        """Detect then record in one step."""
        context = context or {}
        edge_type = self.detect(error, context)
        return await self.record(
            edge_type,
            session_id=session_id,
            agent_id=agent_id,
            story_id=story_id,
            error=error,
            context=context,
            resolution=resolution,
            retry_count=int(context.get("retry_count", 0) or 0),
        )

    async def resolve(
        self,
        event: EdgeCaseEvent,
        resolution: EdgeCaseResolution,
        notes: Optional[str] = None,
    ) -> None:
        async with self.store.transaction():
            event.resolution = resolution
            event.resolution_notes = notes
            event.resolved_at = datetime.now(timezone.utc)
            created = event.created_at
            if created is not None:
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                event.duration_seconds = (event.resolved_at - created).total_seconds()
