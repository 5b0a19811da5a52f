"""
Autopilot - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.api.main import app
from autopilot.api.sessions import get_controller
from autopilot.core.autonomous.controller import AutonomousController
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.stuck_detector import StuckMonitor
from autopilot.core.autonomous.work_planner import WorkPlanner
from autopilot.core.database import create_engine, create_session_factory, drop_db, init_db

from fakes import AUTH_EPIC, FakeAgentRuntime, FakeWorktreeManager, write_epic


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    engine = create_engine(TEST_DATABASE_URL)
    await init_db(engine)

    async with create_session_factory(engine)() as session:
        yield session

    await drop_db(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(db_session: AsyncSession) -> SessionStore:
    return SessionStore(db_session)


# ==========================================================================
# Epic Fixtures
# ==========================================================================

@pytest.fixture
def epics_dir(tmp_path: Path) -> Path:
    """Epics directory holding one two-story epic with every criterion already met."""
    directory = tmp_path / "epics"
    directory.mkdir()
    write_epic(directory, "epic-001-auth", AUTH_EPIC)
    return directory


@pytest.fixture
def planner(epics_dir: Path) -> WorkPlanner:
    return WorkPlanner(epics_dir=epics_dir)


# ==========================================================================
# Controller Fixtures
# ==========================================================================

async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def runtime() -> FakeAgentRuntime:
    return FakeAgentRuntime()


@pytest.fixture
def worktrees() -> FakeWorktreeManager:
    return FakeWorktreeManager()


@pytest.fixture
def notifications() -> list[dict]:
    return []


@pytest_asyncio.fixture
async def controller(
    store: SessionStore,
    runtime: FakeAgentRuntime,
    worktrees: FakeWorktreeManager,
    planner: WorkPlanner,
    notifications: list[dict],
) -> AsyncGenerator[AutonomousController, None]:
    async def notify(event: dict) -> None:
        notifications.append(event)

    controller = AutonomousController(
        store,
        runtime=runtime,
        worktrees=worktrees,
        planner=planner,
        monitor=StuckMonitor(store, poll_interval=3600),
        sleep=no_sleep,
        notification_callback=notify,
    )
    yield controller
    await controller.shutdown()


# ==========================================================================
# API Client
# ==========================================================================

@pytest_asyncio.fixture
async def api_controller(store: SessionStore, planner: WorkPlanner) -> AsyncGenerator[AutonomousController, None]:
    """Controller without an agent runtime, as the API creates it."""
    controller = AutonomousController(store, planner=planner, monitor=StuckMonitor(store, poll_interval=3600))
    yield controller
    await controller.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(api_controller: AutonomousController) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with the controller override.
    """
    app.dependency_overrides[get_controller] = lambda: api_controller

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
