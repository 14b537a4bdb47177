"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status columns are never assigned on the ORM object. They are written with a
conditional UPDATE whose WHERE clause repeats the status the caller read; if
another writer got there first the UPDATE matches no row and
ConcurrencyConflictError is raised instead of overwriting.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, or_, select, update

from escrow_engine.domain.enums import (
    ChallengeMode,
    ChallengeStatus,
    DisputeStatus,
    StakeStatus,
)
from escrow_engine.domain.exceptions import ConcurrencyConflictError
from escrow_engine.infrastructure.database.orm_models import (
    Challenge,
    ChallengeCompletion,
    ChallengeEvent,
    Dispute,
    EnforcedConfig,
    EnforcedThreshold,
    Stake,
    StakeEvent,
    TrafficLightEvaluation,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.enums import EventType, StakeEventType, TrafficLightState

# Modes the timeout sweeper looks after.
SWEPT_MODES = (ChallengeMode.ENFORCED.value, ChallengeMode.GATEKEEPER.value)


class ChallengeRepository:
    """Data access for challenges."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, challenge: Challenge) -> Challenge:
        self._session.add(challenge)
        await self._session.flush()
        return challenge

    async def get_by_id(self, challenge_id: uuid.UUID) -> Challenge | None:
        """Fetch a challenge, always re-reading its row from the database."""
        result = await self._session.execute(
            select(Challenge)
            .where(Challenge.id == challenge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Challenge]:
        result = await self._session.execute(
            select(Challenge)
            .where(or_(Challenge.creator_id == user_id, Challenge.counterparty_id == user_id))
            .order_by(Challenge.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def transition_status(
        self,
        challenge: Challenge,
        expected: ChallengeStatus,
        new: ChallengeStatus,
        **fields: object,
    ) -> Challenge:
        """Conditionally move ``challenge`` from ``expected`` to ``new``.

        Call AFTER state machine validation. Extra column values in ``fields``
        are written by the same statement.

        Raises:
            ConcurrencyConflictError: The stored status is no longer ``expected``.
        """
        result = await self._session.execute(
            update(Challenge)
            .where(Challenge.id == challenge.id, Challenge.status == expected.value)
            .values(status=new.value, updated_at=datetime.now(UTC), **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Challenge", str(challenge.id), expected.value)
        await self._session.refresh(challenge)
        return challenge

    async def find_timeout_candidates(
        self,
        now: datetime,
        default_accept_timeout: timedelta,
        default_response_timeout: timedelta,
        limit: int,
    ) -> list[Challenge]:
        """Challenges whose accept, response or dispute deadline has passed.

        Rows with an explicit deadline come first, earliest deadline first.
        Rows without one fall back to the default timeout measured from
        creation (or from intent lock) and follow, oldest first.
        """
        awaiting = Challenge.status == ChallengeStatus.AWAITING_COUNTERPARTY.value
        locked = Challenge.status.in_(
            (ChallengeStatus.INTENT_LOCKED.value, ChallengeStatus.AWAITING_RESOLUTION.value)
        )
        disputed = Challenge.status == ChallengeStatus.DISPUTED.value

        deadline = case(
            (awaiting, Challenge.expires_at),
            (locked, Challenge.response_deadline_at),
            else_=Challenge.dispute_deadline_at,
        )
        explicit = await self._session.execute(
            select(Challenge)
            .where(
                Challenge.mode.in_(SWEPT_MODES),
                or_(
                    and_(awaiting, Challenge.expires_at <= now),
                    and_(locked, Challenge.response_deadline_at <= now),
                    and_(disputed, Challenge.dispute_deadline_at <= now),
                ),
            )
            .order_by(deadline.asc(), Challenge.created_at.asc())
            .limit(limit)
        )
        candidates = list(explicit.scalars().all())

        remaining = limit - len(candidates)
        if remaining <= 0:
            return candidates

        started = case((locked, Challenge.intent_locked_at), else_=Challenge.created_at)
        implicit = await self._session.execute(
            select(Challenge)
            .where(
                Challenge.mode.in_(SWEPT_MODES),
                or_(
                    and_(
                        awaiting,
                        Challenge.expires_at.is_(None),
                        Challenge.created_at <= now - default_accept_timeout,
                    ),
                    and_(
                        locked,
                        Challenge.response_deadline_at.is_(None),
                        Challenge.intent_locked_at <= now - default_response_timeout,
                    ),
                ),
            )
            .order_by(started.asc())
            .limit(remaining)
        )
        candidates.extend(implicit.scalars().all())
        return candidates


class EnforcedTermsRepository:
    """Data access for ENFORCED thresholds and configs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self, threshold: EnforcedThreshold, config: EnforcedConfig
    ) -> tuple[EnforcedThreshold, EnforcedConfig]:
        self._session.add_all([threshold, config])
        await self._session.flush()
        return threshold, config

    async def get_threshold(self, challenge_id: uuid.UUID) -> EnforcedThreshold | None:
        result = await self._session.execute(
            select(EnforcedThreshold).where(EnforcedThreshold.challenge_id == challenge_id)
        )
        return result.scalar_one_or_none()

    async def get_config(self, challenge_id: uuid.UUID) -> EnforcedConfig | None:
        result = await self._session.execute(
            select(EnforcedConfig)
            .where(EnforcedConfig.challenge_id == challenge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_current_light(
        self,
        challenge_id: uuid.UUID,
        state: TrafficLightState,
        evaluated_at: datetime,
    ) -> None:
        """Point the config at the newest evaluation (projection of the audit log)."""
        await self._session.execute(
            update(EnforcedConfig)
            .where(EnforcedConfig.challenge_id == challenge_id)
            .values(
                traffic_light_state=state.value,
                last_evaluation_at=evaluated_at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )


class StakeRepository:
    """Data access for stakes and their append-only event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, stake: Stake) -> Stake:
        self._session.add(stake)
        await self._session.flush()
        return stake

    async def get_by_id(self, stake_id: uuid.UUID) -> Stake | None:
        result = await self._session.execute(
            select(Stake).where(Stake.id == stake_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, challenge_id: uuid.UUID, user_id: str) -> Stake | None:
        result = await self._session.execute(
            select(Stake)
            .where(Stake.challenge_id == challenge_id, Stake.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_challenge(
        self,
        challenge_id: uuid.UUID,
        statuses: tuple[StakeStatus, ...] | None = None,
    ) -> list[Stake]:
        stmt = select(Stake).where(Stake.challenge_id == challenge_id)
        if statuses:
            stmt = stmt.where(Stake.status.in_([s.value for s in statuses]))
        result = await self._session.execute(
            stmt.order_by(Stake.created_at.asc()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def transition_status(
        self,
        stake: Stake,
        expected: StakeStatus,
        new: StakeStatus,
        **fields: object,
    ) -> Stake:
        """Conditionally move ``stake`` from ``expected`` to ``new``.

        Raises:
            ConcurrencyConflictError: The stored status is no longer ``expected``.
        """
        result = await self._session.execute(
            update(Stake)
            .where(Stake.id == stake.id, Stake.status == expected.value)
            .values(status=new.value, updated_at=datetime.now(UTC), **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Stake", str(stake.id), expected.value)
        await self._session.refresh(stake)
        return stake

    async def record_event(
        self,
        stake_id: uuid.UUID,
        event_type: StakeEventType,
        tx_hash: str | None = None,
        details: dict | None = None,
    ) -> StakeEvent:
        """Append a stake audit event. This is the ONLY write allowed on stake_events."""
        evt = StakeEvent(
            stake_id=stake_id,
            event_type=event_type.value,
            tx_hash=tx_hash,
            details=details,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_events(self, stake_id: uuid.UUID) -> list[StakeEvent]:
        result = await self._session.execute(
            select(StakeEvent)
            .where(StakeEvent.stake_id == stake_id)
            .order_by(StakeEvent.created_at.asc())
        )
        return list(result.scalars().all())


class TrafficLightRepository:
    """Data access for the append-only evaluation log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, evaluation: TrafficLightEvaluation) -> TrafficLightEvaluation:
        self._session.add(evaluation)
        await self._session.flush()
        return evaluation

    async def latest(self, challenge_id: uuid.UUID) -> TrafficLightEvaluation | None:
        result = await self._session.execute(
            select(TrafficLightEvaluation)
            .where(TrafficLightEvaluation.challenge_id == challenge_id)
            .order_by(TrafficLightEvaluation.evaluated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def history(
        self, challenge_id: uuid.UUID, limit: int = 10
    ) -> list[TrafficLightEvaluation]:
        """Newest evaluations first."""
        result = await self._session.execute(
            select(TrafficLightEvaluation)
            .where(TrafficLightEvaluation.challenge_id == challenge_id)
            .order_by(TrafficLightEvaluation.evaluated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class DisputeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_pending(self, challenge_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute)
            .where(
                Dispute.challenge_id == challenge_id,
                Dispute.status == DisputeStatus.PENDING.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_challenge(self, challenge_id: uuid.UUID) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.challenge_id == challenge_id)
            .order_by(Dispute.created_at.asc())
        )
        return list(result.scalars().all())

    async def resolve(
        self,
        dispute: Dispute,
        winner_id: str | None,
        resolution: str,
        resolved_at: datetime,
    ) -> Dispute:
        """Conditionally close a PENDING dispute."""
        result = await self._session.execute(
            update(Dispute)
            .where(Dispute.id == dispute.id, Dispute.status == DisputeStatus.PENDING.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                winner_id=winner_id,
                resolution=resolution,
                resolved_at=resolved_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Dispute", str(dispute.id), DisputeStatus.PENDING.value)
        await self._session.refresh(dispute)
        return dispute


class CompletionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, challenge_id: uuid.UUID, user_id: str) -> ChallengeCompletion:
        """Record that ``user_id`` completed; recording twice is a no-op."""
        result = await self._session.execute(
            select(ChallengeCompletion).where(
                ChallengeCompletion.challenge_id == challenge_id,
                ChallengeCompletion.user_id == user_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing
        completion = ChallengeCompletion(challenge_id=challenge_id, user_id=user_id)
        self._session.add(completion)
        await self._session.flush()
        return completion

    async def completed_users(self, challenge_id: uuid.UUID) -> set[str]:
        result = await self._session.execute(
            select(ChallengeCompletion.user_id).where(
                ChallengeCompletion.challenge_id == challenge_id
            )
        )
        return set(result.scalars().all())


class EventRepository:
    """Data access for the append-only challenge audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        challenge_id: uuid.UUID,
        event_type: EventType,
        old_status: ChallengeStatus | None,
        new_status: ChallengeStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> ChallengeEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = ChallengeEvent(
            challenge_id=challenge_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_challenge(self, challenge_id: uuid.UUID) -> list[ChallengeEvent]:
        """Fetch all events for a challenge in chronological order."""
        result = await self._session.execute(
            select(ChallengeEvent)
            .where(ChallengeEvent.challenge_id == challenge_id)
            .order_by(ChallengeEvent.created_at.asc())
        )
        return list(result.scalars().all())
