"""
Autopilot - Pydantic Schemas
============================

Request and response schemas for the autonomous control API.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from autopilot.core.config import SessionConfig
from autopilot.core.models import (
    RecoveryActionType,
    SessionState,
    StuckSeverity,
    StuckType,
    UnblockAction,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorResponse(BaseSchema):
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    status: str
    version: str
    environment: str
    database: str


# ==========================================================================
# Sessions
# ==========================================================================

class StartSessionRequest(BaseSchema):
    """Start a session over the epics matching ``pattern``."""

    pattern: str = Field(default="*", min_length=1, max_length=255)
    config: Optional[SessionConfig] = None
    run: bool = Field(default=False, description="Start the control loop immediately")


class SessionResponse(BaseSchema):
    id: UUID
    pattern: str
    state: SessionState
    previous_state: Optional[SessionState] = None
    config: dict[str, Any]
    current_epic_id: Optional[str] = None
    current_story_id: Optional[str] = None
    current_agent_id: Optional[str] = None
    work_queue: list[str] = []
    completed_items: list[str] = []
    metrics: dict[str, int] = {}
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    blocked_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    running: bool = False


class WorkItemSummary(BaseSchema):
    story_id: str
    title: str
    status: str
    phase: Optional[str] = None
    blocked_reason: Optional[str] = None
    pr_number: Optional[int] = None


class SessionStatusResponse(BaseSchema):
    session_id: UUID
    state: SessionState
    pattern: str
    running: bool
    current_epic_id: Optional[str] = None
    current_story_id: Optional[str] = None
    current_agent_id: Optional[str] = None
    metrics: dict[str, int]
    success_rate: float
    review_pass_rate: float
    state_durations: dict[str, float]
    work_items: list[WorkItemSummary]
    stuck_agents: int
    blocked_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PauseRequest(BaseSchema):
    reason: Optional[str] = Field(default=None, max_length=1000)


class StopRequest(BaseSchema):
    reason: str = Field(default="stopped by operator", max_length=1000)


class UnblockRequest(BaseSchema):
    action: UnblockAction
    story_id: Optional[str] = None


# ==========================================================================
# Planning
# ==========================================================================

class PlannedItemResponse(BaseSchema):
    full_id: str
    title: str
    dependencies: list[str]
    dependency_depth: int
    position: int
    criteria_count: int


class PlanResponse(BaseSchema):
    epics: list[str]
    work_queue: list[PlannedItemResponse]
    cycle: Optional[list[str]] = None
    summary: str


# ==========================================================================
# Stuck Agents
# ==========================================================================

class StuckAgentResponse(BaseSchema):
    id: UUID
    agent_id: str
    session_id: UUID
    story_id: Optional[str] = None
    stuck_type: StuckType
    severity: StuckSeverity
    details: dict[str, Any]
    suggested_action: Optional[RecoveryActionType] = None
    detected_at: datetime
    resolved: bool


class ResolveDetectionRequest(BaseSchema):
    note: Optional[str] = Field(default=None, max_length=1000)
