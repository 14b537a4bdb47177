"""Timeout Sweeper — forces accept, response and dispute deadlines.

One sweep:
    1. Reads up to ``sweep_batch_size`` overdue ENFORCED/GATEKEEPER challenges,
       explicit deadlines first.
    2. Processes each one in its own unit of work, re-reading it first so a
       challenge that moved since the scan is skipped, not clobbered.
    3. Reports what happened in a SweepReport.

A challenge another writer changed mid-sweep raises ConcurrencyConflictError;
it is counted as a conflict and picked up by the next sweep if still overdue.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.enums import ChallengeStatus
from escrow_engine.domain.exceptions import ConcurrencyConflictError
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    CompletionRepository,
    EnforcedTermsRepository,
)
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.infrastructure.unit_of_work import unit_of_work
from escrow_engine.logging_config import get_logger
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.dispute_service import DisputeResolver

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.domain.collaborators import EventEmitter
    from escrow_engine.domain.policies import TimeoutPolicy
    from escrow_engine.infrastructure.database.orm_models import Challenge
    from escrow_engine.infrastructure.unit_of_work import UnitOfWork

logger = get_logger(__name__)

EXPIRED = "expired"
CANCELLED = "cancelled"
CONFLICT = "conflict"
FAILED = "failed"
SKIPPED = "skipped"

# A first completion moves INTENT_LOCKED to AWAITING_RESOLUTION; the response
# deadline keeps running until every party has completed.
_RESPONDING_STATUSES = (ChallengeStatus.INTENT_LOCKED, ChallengeStatus.AWAITING_RESOLUTION)


@dataclass
class SweepOutcome:
    challenge_id: str
    action: str
    reason: str | None = None
    stakes_released: int = 0


@dataclass
class SweepReport:
    processed: int = 0
    expired: int = 0
    cancelled: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    stakes_released: int = 0
    duration_ms: int = 0
    outcomes: list[SweepOutcome] = field(default_factory=list)

    def add(self, outcome: SweepOutcome) -> None:
        self.processed += 1
        self.stakes_released += outcome.stakes_released
        if outcome.action == EXPIRED:
            self.expired += 1
        elif outcome.action == CANCELLED:
            self.cancelled += 1
        elif outcome.action == CONFLICT:
            self.conflicts += 1
        elif outcome.action == FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict:
        return asdict(self)


class TimeoutSweeper:
    """Periodically invoked by the worker, the admin API or an MCP tool."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: EventEmitter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._emitter = emitter or NullEventEmitter()
        self._settings = settings or get_settings()

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or datetime.now(UTC)
        started = time.monotonic()
        report = SweepReport()
        defaults = self._settings.default_timeouts

        async with unit_of_work(self._session_factory, self._emitter) as uow:
            candidates = await ChallengeRepository(uow.session).find_timeout_candidates(
                now,
                default_accept_timeout=timedelta(seconds=defaults.accept_seconds),
                default_response_timeout=timedelta(seconds=defaults.response_seconds),
                limit=self._settings.sweep_batch_size,
            )
            challenge_ids = [c.id for c in candidates]

        for challenge_id in challenge_ids:
            report.add(await self._sweep_one(challenge_id, now))

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "sweeper.completed",
            processed=report.processed,
            expired=report.expired,
            cancelled=report.cancelled,
            conflicts=report.conflicts,
            failed=report.failed,
            stakes_released=report.stakes_released,
            duration_ms=report.duration_ms,
        )
        return report

    async def _sweep_one(self, challenge_id: uuid.UUID, now: datetime) -> SweepOutcome:
        try:
            async with unit_of_work(self._session_factory, self._emitter) as uow:
                return await self._process(uow, challenge_id, now)
        except ConcurrencyConflictError as exc:
            logger.info("sweeper.conflict", challenge_id=str(challenge_id), error=exc.message)
            return SweepOutcome(str(challenge_id), CONFLICT, reason=exc.message)
        except Exception as exc:
            logger.exception("sweeper.challenge_failed", challenge_id=str(challenge_id))
            return SweepOutcome(str(challenge_id), FAILED, reason=str(exc))

    async def _process(
        self, uow: UnitOfWork, challenge_id: uuid.UUID, now: datetime
    ) -> SweepOutcome:
        challenge = await ChallengeRepository(uow.session).get_by_id(challenge_id)
        if challenge is None:
            return SweepOutcome(str(challenge_id), SKIPPED, reason="not found")

        policy = await self._policy_for(uow.session, challenge)
        lifecycle = ChallengeLifecycle(uow.session, events=uow.events, settings=self._settings)
        status = challenge.challenge_status

        if status == ChallengeStatus.AWAITING_COUNTERPARTY:
            deadline = challenge.expires_at or challenge.created_at + timedelta(
                seconds=policy.accept_seconds
            )
            if deadline <= now:
                released = await lifecycle.force_close(
                    challenge, ChallengeStatus.EXPIRED, reason="accept timeout", now=now
                )
                return SweepOutcome(str(challenge.id), EXPIRED, "accept timeout", len(released))

        elif status in _RESPONDING_STATUSES:
            locked_at = challenge.intent_locked_at or challenge.created_at
            deadline = challenge.response_deadline_at or locked_at + timedelta(
                seconds=policy.response_seconds
            )
            if deadline <= now and not await self._all_completed(uow.session, challenge):
                released = await lifecycle.force_close(
                    challenge, ChallengeStatus.CANCELLED, reason="response timeout", now=now
                )
                return SweepOutcome(str(challenge.id), CANCELLED, "response timeout", len(released))

        elif status == ChallengeStatus.DISPUTED:
            deadline = challenge.dispute_deadline_at
            if deadline is not None and deadline <= now:
                resolver = DisputeResolver(uow.session, events=uow.events, settings=self._settings)
                released = await resolver.auto_resolve_on_timeout(challenge, now)
                return SweepOutcome(str(challenge.id), CANCELLED, "dispute timeout", len(released))

        return SweepOutcome(str(challenge.id), SKIPPED, reason=f"not overdue ({status.value})")

    async def _policy_for(self, session: AsyncSession, challenge: Challenge) -> TimeoutPolicy:
        config = await EnforcedTermsRepository(session).get_config(challenge.id)
        return config.to_policy() if config else self._settings.default_timeouts

    async def _all_completed(self, session: AsyncSession, challenge: Challenge) -> bool:
        parties = {p for p in (challenge.creator_id, challenge.counterparty_id) if p}
        completed = await CompletionRepository(session).completed_users(challenge.id)
        return parties <= completed
