"""Fixtures for the HTTP surface.

The application is built with ``create_app`` and pointed at the in-memory
test database through dependency overrides. ASGITransport does not run the
lifespan, so collaborators are placed on ``app.state`` directly.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest_asyncio

from escrow_engine.api.deps import get_app_settings, get_session_factory
from escrow_engine.main import create_app


@pytest_asyncio.fixture
async def app(session_factory, settings, recorder, trust_scores, confirmations):
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.state.event_emitter = recorder
    app.state.trust_scores = trust_scores
    app.state.confirmations = confirmations
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
