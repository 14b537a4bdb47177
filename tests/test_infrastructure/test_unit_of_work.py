"""Tests for the unit of work: commit-then-publish, rollback-then-discard."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError

from escrow_engine.domain.exceptions import ConcurrencyConflictError
from escrow_engine.infrastructure.database.engine import is_serialization_failure
from escrow_engine.infrastructure.database.repositories import ChallengeRepository
from escrow_engine.infrastructure.unit_of_work import unit_of_work
from escrow_engine.services.challenge_service import ChallengeLifecycle


class _SerializationFailure(Exception):
    pgcode = "40001"


class _UniqueViolation(Exception):
    pgcode = "23505"


class _AsyncpgStyleFailure(Exception):
    sqlstate = "40001"


def _dbapi_error(orig: Exception) -> DBAPIError:
    return DBAPIError("UPDATE challenges SET status=...", {}, orig)


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_commit_then_publish(self, session_factory, recorder, settings) -> None:
        async with unit_of_work(session_factory, recorder) as uow:
            lifecycle = ChallengeLifecycle(uow.session, events=uow.events, settings=settings)
            challenge = await lifecycle.create_challenge(
                creator_id="alice", mode="SOLO", title="Meditate"
            )
            assert uow.events.pending_count == 1
            assert recorder.events == []

        assert recorder.types == ["challenge.created"]
        async with session_factory() as fresh:
            assert await ChallengeRepository(fresh).get_by_id(challenge.id) is not None

    @pytest.mark.asyncio
    async def test_error_rolls_back_and_discards(self, session_factory, recorder, settings) -> None:
        with pytest.raises(RuntimeError, match="boom"):
            async with unit_of_work(session_factory, recorder) as uow:
                lifecycle = ChallengeLifecycle(uow.session, events=uow.events, settings=settings)
                challenge = await lifecycle.create_challenge(
                    creator_id="alice", mode="SOLO", title="Meditate"
                )
                raise RuntimeError("boom")

        assert recorder.events == []
        async with session_factory() as fresh:
            assert await ChallengeRepository(fresh).get_by_id(challenge.id) is None

    @pytest.mark.asyncio
    async def test_serialization_failure_becomes_conflict(self, session_factory, recorder) -> None:
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            async with unit_of_work(session_factory, recorder):
                raise _dbapi_error(_SerializationFailure())

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, DBAPIError)

    @pytest.mark.asyncio
    async def test_other_database_errors_propagate(self, session_factory, recorder) -> None:
        with pytest.raises(DBAPIError):
            async with unit_of_work(session_factory, recorder):
                raise _dbapi_error(_UniqueViolation())


class TestIsSerializationFailure:
    def test_psycopg_style_code(self) -> None:
        assert is_serialization_failure(_dbapi_error(_SerializationFailure()))

    def test_asyncpg_style_code(self) -> None:
        assert is_serialization_failure(_dbapi_error(_AsyncpgStyleFailure()))

    def test_other_errors(self) -> None:
        assert not is_serialization_failure(_dbapi_error(_UniqueViolation()))
        assert not is_serialization_failure(RuntimeError("40001"))
