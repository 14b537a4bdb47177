"""Unit of work: one database transaction plus the events it produced.

    async with unit_of_work(factory, emitter) as uow:
        ledger = StakeLedger(uow.session, events=uow.events)
        await ledger.lock(stake_id)

On success the session commits and the buffered events are published; on any
error the session rolls back, the events are dropped and the error propagates.
A PostgreSQL serialization failure is re-raised as ConcurrencyConflictError so
callers see the same retryable kind as a lost optimistic-lock race.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_engine.domain.exceptions import ConcurrencyConflictError
from escrow_engine.infrastructure.database.engine import is_serialization_failure
from escrow_engine.infrastructure.events import DeferredEventEmitter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.collaborators import EventEmitter


@dataclass
class UnitOfWork:
    session: AsyncSession
    events: DeferredEventEmitter


@asynccontextmanager
async def unit_of_work(
    factory: async_sessionmaker[AsyncSession],
    emitter: EventEmitter,
) -> AsyncIterator[UnitOfWork]:
    events = DeferredEventEmitter(emitter)
    async with factory() as session:
        try:
            yield UnitOfWork(session=session, events=events)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            events.discard()
            if is_serialization_failure(exc):
                raise ConcurrencyConflictError("Transaction", "-", "serializable") from exc
            raise
    await events.flush()
