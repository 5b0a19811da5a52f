"""
Autopilot - Control API Tests
=============================
"""

from uuid import UUID, uuid4

from httpx import AsyncClient

from autopilot.core.autonomous.controller import AutonomousController
from autopilot.core.models import StuckAgentDetection, StuckSeverity, StuckType


BASE = "/api/v1/autonomous"


async def start(client: AsyncClient, pattern: str = "epic-001*") -> dict:
    response = await client.post(f"{BASE}/sessions", json={"pattern": pattern})
    assert response.status_code == 201
    return response.json()


# ==========================================================================
# Sessions
# ==========================================================================

class TestSessionEndpoints:
    """Tests for session lifecycle endpoints."""

    async def test_start_session(self, client: AsyncClient):
        """Starting a session plans its work queue."""
        data = await start(client)

        assert data["state"] == "planning"
        assert data["pattern"] == "epic-001*"
        assert data["work_queue"] == ["epic-001-auth/story-1", "epic-001-auth/story-2"]
        assert data["config"]["epic_pattern"] == "epic-001*"

    async def test_start_with_config(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/sessions",
            json={"pattern": "epic-001*", "config": {"max_agents": 2, "dry_run": True}},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "done"
        assert data["config"]["max_agents"] == 2
        assert data["config"]["epic_pattern"] == "epic-001*"

    async def test_start_rejects_unknown_config_keys(self, client: AsyncClient):
        response = await client.post(f"{BASE}/sessions", json={"config": {"max_agent": 2}})

        assert response.status_code == 422

    async def test_start_and_run_without_runtime(self, client: AsyncClient):
        response = await client.post(f"{BASE}/sessions", json={"pattern": "epic-001*", "run": True})

        assert response.status_code == 503

    async def test_list_and_filter(self, client: AsyncClient):
        first = await start(client)
        await client.post(f"{BASE}/sessions/{first['id']}/stop")
        second = await start(client)

        everything = await client.get(f"{BASE}/sessions")
        done = await client.get(f"{BASE}/sessions", params={"state": "done"})

        assert {s["id"] for s in everything.json()} == {first["id"], second["id"]}
        assert [s["id"] for s in done.json()] == [first["id"]]

    async def test_get_session(self, client: AsyncClient):
        created = await start(client)

        response = await client.get(f"{BASE}/sessions/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    async def test_unknown_session(self, client: AsyncClient):
        response = await client.get(f"{BASE}/sessions/{uuid4()}/status")

        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_FOUND"

    async def test_status(self, client: AsyncClient):
        created = await start(client)

        response = await client.get(f"{BASE}/sessions/{created['id']}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "planning"
        assert data["running"] is False
        assert data["success_rate"] == 0.0
        assert [i["story_id"] for i in data["work_items"]] == [
            "epic-001-auth/story-1",
            "epic-001-auth/story-2",
        ]
        assert data["work_items"][0]["status"] == "pending"
        assert "planning" in data["state_durations"]

    async def test_run_without_runtime(self, client: AsyncClient):
        created = await start(client)

        response = await client.post(f"{BASE}/sessions/{created['id']}/run")

        assert response.status_code == 503


# ==========================================================================
# Control
# ==========================================================================

class TestControlEndpoints:
    """Tests for pause, resume, stop and unblock."""

    async def test_pause_and_resume(self, client: AsyncClient):
        created = await start(client)

        paused = await client.post(f"{BASE}/sessions/{created['id']}/pause", json={"reason": "deploy freeze"})
        assert paused.status_code == 200
        assert paused.json()["state"] == "paused"
        assert paused.json()["pause_reason"] == "deploy freeze"

        resumed = await client.post(f"{BASE}/sessions/{created['id']}/resume")
        assert resumed.status_code == 200
        assert resumed.json()["state"] == "planning"
        # Without an agent runtime nothing drives the resumed session
        assert resumed.json()["running"] is False

    async def test_resume_when_not_paused(self, client: AsyncClient):
        created = await start(client)

        response = await client.post(f"{BASE}/sessions/{created['id']}/resume")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_stop_twice(self, client: AsyncClient):
        created = await start(client)

        first = await client.post(f"{BASE}/sessions/{created['id']}/stop", json={"reason": "wrong epic"})
        second = await client.post(f"{BASE}/sessions/{created['id']}/stop")

        assert first.status_code == 200
        assert first.json()["state"] == "done"
        assert second.status_code == 409

    async def test_unblock_when_not_blocked(self, client: AsyncClient):
        created = await start(client)

        response = await client.post(f"{BASE}/sessions/{created['id']}/unblock", json={"action": "retry"})

        assert response.status_code == 409

    async def test_unblock_invalid_action(self, client: AsyncClient):
        created = await start(client)

        response = await client.post(f"{BASE}/sessions/{created['id']}/unblock", json={"action": "ignore"})

        assert response.status_code == 422

    async def test_unblock_planning_block(self, client: AsyncClient):
        """A session blocked during planning can be closed by skipping."""
        created = await start(client, pattern="epic-999*")
        assert created["state"] == "blocked"

        response = await client.post(f"{BASE}/sessions/{created['id']}/unblock", json={"action": "skip"})

        assert response.status_code == 200
        assert response.json()["state"] == "done"


# ==========================================================================
# Planning & Stuck Agents
# ==========================================================================

class TestPlanAndStuckEndpoints:
    """Tests for the dry-run plan and stuck agent endpoints."""

    async def test_plan(self, client: AsyncClient):
        response = await client.get(f"{BASE}/plan", params={"pattern": "epic-001*"})

        assert response.status_code == 200
        data = response.json()
        assert data["epics"] == ["epic-001-auth"]
        assert [i["full_id"] for i in data["work_queue"]] == ["epic-001-auth/story-1", "epic-001-auth/story-2"]
        assert data["work_queue"][1]["dependencies"] == ["epic-001-auth/story-1"]
        assert data["work_queue"][0]["criteria_count"] == 2
        assert data["cycle"] is None
        assert data["summary"] == "Execution Plan: 1 epics, 2 stories, 1 dependencies"

    async def test_plan_unknown_pattern(self, client: AsyncClient):
        response = await client.get(f"{BASE}/plan", params={"pattern": "epic-999*"})

        assert response.status_code == 422
        assert response.json()["code"] == "PLANNING_FAILED"

    async def test_stuck_agents_and_resolve(self, client: AsyncClient, api_controller: AutonomousController):
        created = await start(client)
        detection = StuckAgentDetection(
            agent_id="agent-1",
            session_id=UUID(created["id"]),
            story_id="epic-001-auth/story-1",
            stuck_type=StuckType.REVIEW_DELAY,
            severity=StuckSeverity.WARNING,
            details={"waiting_minutes": 75},
        )
        await api_controller.store.save(detection)

        listed = await client.get(f"{BASE}/stuck")
        assert listed.status_code == 200
        assert [d["stuck_type"] for d in listed.json()] == ["review_delay"]

        resolved = await client.post(f"{BASE}/stuck/{detection.id}/resolve", json={"note": "reviewer pinged"})
        assert resolved.status_code == 200
        assert resolved.json()["resolved"] is True

        assert (await client.get(f"{BASE}/stuck")).json() == []

    async def test_resolve_unknown_detection(self, client: AsyncClient):
        response = await client.post(f"{BASE}/stuck/{uuid4()}/resolve")

        assert response.status_code == 404
        assert response.json()["code"] == "DETECTION_NOT_FOUND"


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
