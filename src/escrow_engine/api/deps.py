"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the unit of work
factory, collaborators held on ``app.state``, the acting user and settings.

Routes open the unit of work themselves (``async with uow() as work:``) so
the transaction commits before the response is built.
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request

from escrow_engine.config import Settings, get_settings
from escrow_engine.infrastructure.database.engine import _get_session_factory
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.infrastructure.unit_of_work import unit_of_work

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.collaborators import (
        ConfirmationSource,
        EventEmitter,
        TrustScoreProvider,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the process-wide session factory."""
    return _get_session_factory()


def get_event_emitter(request: Request) -> EventEmitter:
    return getattr(request.app.state, "event_emitter", None) or NullEventEmitter()


def get_trust_scores(request: Request) -> TrustScoreProvider | None:
    return getattr(request.app.state, "trust_scores", None)


def get_confirmation_source(request: Request) -> ConfirmationSource | None:
    return getattr(request.app.state, "confirmations", None)


def get_uow_factory(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    emitter: EventEmitter = Depends(get_event_emitter),
):  # noqa: ANN201
    """Provide a zero-argument callable opening a unit of work."""
    return partial(unit_of_work, factory, emitter)


def get_actor_id(
    x_user_id: str = Header(..., alias="X-User-ID", min_length=1, max_length=64),
) -> str:
    """Identity of the caller, as asserted by the upstream gateway."""
    return x_user_id


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
