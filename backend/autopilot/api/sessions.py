"""
Autonomous Sessions API Routes
==============================

Operator control surface for autonomous sessions.

Endpoints:
- POST   /api/v1/autonomous/sessions                     - Start (plan) a session
- GET    /api/v1/autonomous/sessions                     - List sessions
- GET    /api/v1/autonomous/sessions/{id}                - Session record
- GET    /api/v1/autonomous/sessions/{id}/status         - Progress, metrics, stories
- POST   /api/v1/autonomous/sessions/{id}/run            - Start the control loop
- POST   /api/v1/autonomous/sessions/{id}/pause          - Pause between decisions
- POST   /api/v1/autonomous/sessions/{id}/resume         - Resume a paused session
- POST   /api/v1/autonomous/sessions/{id}/stop           - Terminal stop
- POST   /api/v1/autonomous/sessions/{id}/unblock        - retry | skip | escalate_further
- GET    /api/v1/autonomous/stuck                        - Unresolved stuck detections
- POST   /api/v1/autonomous/stuck/{id}/resolve           - Resolve a detection manually
- GET    /api/v1/autonomous/plan                         - Dry-run plan for a pattern
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from autopilot.core.autonomous.controller import AutonomousController
from autopilot.core.exceptions import ConfigurationError
from autopilot.core.models import AutonomousSession, SessionState
from autopilot.core.schemas import (
    PauseRequest,
    PlannedItemResponse,
    PlanResponse,
    ResolveDetectionRequest,
    SessionResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StopRequest,
    StuckAgentResponse,
    UnblockRequest,
    WorkItemSummary,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/autonomous", tags=["autonomous"])


def get_controller(request: Request) -> AutonomousController:
    """The application-wide controller created in the lifespan handler."""
    return request.app.state.controller


def session_response(controller: AutonomousController, session: AutonomousSession) -> SessionResponse:
    response = SessionResponse.model_validate(session)
    return response.model_copy(update={"running": controller.is_running(session.id)})


# ==========================================================================
# Sessions
# ==========================================================================

@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    data: StartSessionRequest,
    controller: AutonomousController = Depends(get_controller),
):
    """Create a session and plan its work queue; optionally start running it."""
    config = data.config.model_copy(update={"epic_pattern": data.pattern}) if data.config else None
    session = await controller.start(data.pattern, config)
    logger.info("Session started via API", session_id=str(session.id), pattern=data.pattern)

    if data.run and session.state == SessionState.PLANNING:
        try:
            controller.launch(session.id)
        except ConfigurationError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return session_response(controller, session)


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    state: Optional[SessionState] = None,
    controller: AutonomousController = Depends(get_controller),
):
    return await controller.store.list_sessions(state)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    controller: AutonomousController = Depends(get_controller),
):
    session = await controller.store.get_session(session_id)
    await controller.store.refresh(session)
    return session_response(controller, session)


@router.get("/sessions/{session_id}/status", response_model=SessionStatusResponse)
async def session_status(
    session_id: UUID,
    controller: AutonomousController = Depends(get_controller),
):
    result = await controller.status(session_id)
    return SessionStatusResponse(
        session_id=result.session_id,
        state=result.state,
        pattern=result.pattern,
        running=result.running,
        current_epic_id=result.current_epic_id,
        current_story_id=result.current_story_id,
        current_agent_id=result.current_agent_id,
        metrics=result.metrics,
        success_rate=result.success_rate,
        review_pass_rate=result.review_pass_rate,
        state_durations=result.state_durations,
        work_items=[WorkItemSummary(**item) for item in result.work_items],
        stuck_agents=result.stuck_agents,
        blocked_reason=result.blocked_reason,
        pause_reason=result.pause_reason,
        error_message=result.error_message,
        started_at=result.started_at,
        completed_at=result.completed_at,
    )


@router.post("/sessions/{session_id}/run", response_model=SessionResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_session(
    session_id: UUID,
    controller: AutonomousController = Depends(get_controller),
):
    """Start the control loop in the background."""
    session = await controller.store.get_session(session_id)
    try:
        controller.launch(session_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return session_response(controller, session)


@router.post("/sessions/{session_id}/pause", response_model=SessionResponse)
async def pause_session(
    session_id: UUID,
    data: Optional[PauseRequest] = None,
    controller: AutonomousController = Depends(get_controller),
):
    session = await controller.pause(session_id, data.reason if data else None)
    return session_response(controller, session)


@router.post("/sessions/{session_id}/resume", response_model=SessionResponse)
async def resume_session(
    session_id: UUID,
    controller: AutonomousController = Depends(get_controller),
):
    """Resume a paused session; its loop restarts when an agent runtime is configured."""
    session = await controller.resume(session_id)
    return session_response(controller, session)


@router.post("/sessions/{session_id}/stop", response_model=SessionResponse)
async def stop_session(
    session_id: UUID,
    data: Optional[StopRequest] = None,
    controller: AutonomousController = Depends(get_controller),
):
    session = await controller.stop(session_id, data.reason if data else "stopped by operator")
    return session_response(controller, session)


@router.post("/sessions/{session_id}/unblock", response_model=SessionResponse)
async def unblock_session(
    session_id: UUID,
    data: UnblockRequest,
    controller: AutonomousController = Depends(get_controller),
):
    session = await controller.unblock(session_id, data.action, story_id=data.story_id)
    return session_response(controller, session)


# ==========================================================================
# Stuck Agents
# ==========================================================================

@router.get("/stuck", response_model=list[StuckAgentResponse])
async def list_stuck_agents(
    session_id: Optional[UUID] = None,
    controller: AutonomousController = Depends(get_controller),
):
    return await controller.list_stuck_agents(session_id)


@router.post("/stuck/{detection_id}/resolve", response_model=StuckAgentResponse)
async def resolve_stuck_agent(
    detection_id: UUID,
    data: Optional[ResolveDetectionRequest] = None,
    controller: AutonomousController = Depends(get_controller),
):
    return await controller.resolve_detection(detection_id, data.note if data else None)


# ==========================================================================
# Planning
# ==========================================================================

@router.get("/plan", response_model=PlanResponse)
async def preview_plan(
    pattern: str = Query(default="*", min_length=1),
    controller: AutonomousController = Depends(get_controller),
):
    """Dry-run plan; nothing is persisted."""
    plan = controller.preview(pattern)
    return PlanResponse(
        epics=plan.epics,
        work_queue=[
            PlannedItemResponse(
                full_id=item.full_id,
                title=item.title,
                dependencies=item.dependencies,
                dependency_depth=item.dependency_depth,
                position=item.position,
                criteria_count=item.criteria_count,
            )
            for item in plan.work_queue
        ],
        cycle=plan.cycle,
        summary=plan.summary(),
    )
