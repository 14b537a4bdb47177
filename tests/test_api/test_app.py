"""Tests for application wiring, the health check and the MCP tools."""

from __future__ import annotations

import uuid

import pytest

from escrow_engine.api.routes import health
from escrow_engine.mcp_server import tools


class TestCreateApp:
    @pytest.mark.asyncio
    async def test_routes_registered(self, app) -> None:
        paths = {getattr(route, "path", None) for route in app.routes}

        assert "/health" in paths
        assert "/api/v1/challenges" in paths
        assert "/api/v1/challenges/{challenge_id}/accept" in paths
        assert "/api/v1/admin/sweep" in paths
        assert "/mcp" in paths

    @pytest.mark.asyncio
    async def test_title(self, app) -> None:
        assert app.title == "Escrow Challenge Engine"


class TestHealth:
    @pytest.mark.asyncio
    async def test_ok_without_redis(self, client, engine, monkeypatch) -> None:
        monkeypatch.setattr(health, "_get_engine", lambda: engine)
        monkeypatch.setattr(health, "get_redis_or_none", lambda: None)

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["database"] == "healthy"
        assert response.json()["redis"] == "not configured"

    @pytest.mark.asyncio
    async def test_redis_outage_degrades(self, client, engine, monkeypatch) -> None:
        class DownRedis:
            async def ping(self) -> bool:
                raise ConnectionError("refused")

        monkeypatch.setattr(health, "_get_engine", lambda: engine)
        monkeypatch.setattr(health, "get_redis_or_none", lambda: DownRedis())

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["redis"].startswith("unhealthy")


@pytest.fixture
def mcp_tools(session_factory, recorder, trust_scores, monkeypatch):
    monkeypatch.setattr(tools, "_get_session_factory", lambda: session_factory)
    monkeypatch.setitem(tools.collaborators, "event_emitter", recorder)
    monkeypatch.setitem(tools.collaborators, "trust_scores", trust_scores)
    return tools


class TestMcpTools:
    @pytest.mark.asyncio
    async def test_status_of_open_challenge(self, mcp_tools, session, open_challenge) -> None:
        challenge = await open_challenge()
        await session.commit()

        result = await mcp_tools.get_challenge_status(str(challenge.id))

        assert result["challenge"]["status"] == "AWAITING_COUNTERPARTY"
        assert result["thresholds"]["stake_currency"] == "ETH"

    @pytest.mark.asyncio
    async def test_invalid_id(self, mcp_tools) -> None:
        result = await mcp_tools.get_challenge_status("not-a-uuid")

        assert result["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_challenge_returns_error_dict(self, mcp_tools) -> None:
        result = await mcp_tools.evaluate_traffic_light(str(uuid.uuid4()))

        assert result["error"] == "CHALLENGE_NOT_FOUND"
        assert result["kind"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_evaluate_and_stake_history(
        self, mcp_tools, session, open_challenge, stake_confirmed
    ) -> None:
        challenge = await open_challenge()
        await stake_confirmed(challenge, "alice")
        stake = await stake_confirmed(challenge, "bob")
        await session.commit()

        light = await mcp_tools.evaluate_traffic_light(str(challenge.id))
        history = await mcp_tools.get_stake_history(str(stake.id))

        assert light["state"] == "GREEN"
        assert history["status"] == "CONFIRMED"
        assert [e["event_type"] for e in history["events"]] == [
            "DEPOSIT_INITIATED",
            "DEPOSIT_CONFIRMED",
        ]

    @pytest.mark.asyncio
    async def test_run_timeout_sweep(self, mcp_tools) -> None:
        report = await mcp_tools.run_timeout_sweep()

        assert report["processed"] == 0
