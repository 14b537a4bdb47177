"""Dispute Resolver — opens disputes and redistributes stakes when they close.

Resolution runs entirely inside the caller's transaction:

    1. PENDING dispute -> RESOLVED (conditional on it still being PENDING)
    2. Winner's custodied stake -> RELEASED
    3. Loser's custodied stake  -> SLASHED (or TRANSFERRED, per settings)
    4. Challenge DISPUTED -> COMPLETED

If any step fails the unit of work rolls all of them back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.enums import (
    ChallengeStatus,
    EventType,
    LoserDisposition,
    WebhookEventType,
)
from escrow_engine.domain.exceptions import (
    ChallengeNotFoundError,
    ConcurrencyConflictError,
    DisputeNotFoundError,
    InvalidStateError,
    InvalidStateTransitionError,
    NotAPartyError,
    ValidationError,
)
from escrow_engine.infrastructure.database.orm_models import Dispute
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    DisputeRepository,
    EnforcedTermsRepository,
    StakeRepository,
)
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.logging_config import get_logger
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.stake_ledger import CUSTODIED_STATUSES

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.collaborators import EventEmitter
    from escrow_engine.infrastructure.database.orm_models import Challenge, Stake

logger = get_logger(__name__)

TIMEOUT_RESOLUTION = "Dispute timed out without a decision; stakes returned"

_DISPUTABLE_STATUSES = (ChallengeStatus.INTENT_LOCKED, ChallengeStatus.AWAITING_RESOLUTION)


@dataclass
class DisputeOutcome:
    """What a resolution did to the dispute, the challenge and each stake."""

    dispute: Dispute
    challenge: Challenge
    winner_stakes: list[Stake] = field(default_factory=list)
    loser_stakes: list[Stake] = field(default_factory=list)
    disposition: LoserDisposition = LoserDisposition.SLASH


class DisputeResolver:
    def __init__(
        self,
        session: AsyncSession,
        events: EventEmitter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._events = events or NullEventEmitter()
        self._settings = settings or get_settings()
        self._challenge_repo = ChallengeRepository(session)
        self._terms_repo = EnforcedTermsRepository(session)
        self._dispute_repo = DisputeRepository(session)
        self._stake_repo = StakeRepository(session)
        self._lifecycle = ChallengeLifecycle(session, events=self._events, settings=self._settings)

    async def raise_dispute(
        self,
        challenge_id: uuid.UUID,
        raiser_id: str,
        reason: str,
        evidence: dict | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Open a dispute and move the challenge to DISPUTED."""
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)

        if not challenge.is_party(raiser_id):
            raise NotAPartyError(str(challenge_id), raiser_id)
        if challenge.challenge_status not in _DISPUTABLE_STATUSES:
            raise InvalidStateTransitionError(challenge.status, ChallengeStatus.DISPUTED.value)

        config = await self._terms_repo.get_config(challenge.id)
        policy = config.to_policy() if config else self._settings.default_timeouts
        deadline = now + timedelta(seconds=policy.dispute_seconds)

        try:
            dispute = await self._dispute_repo.create(
                Dispute(
                    challenge_id=challenge.id,
                    raised_by=raiser_id,
                    reason=reason,
                    evidence=evidence,
                    created_at=now,
                )
            )
        except IntegrityError as err:
            # Another dispute went PENDING first
            raise ConcurrencyConflictError(
                "Challenge", str(challenge_id), challenge.status
            ) from err

        if challenge.challenge_status == ChallengeStatus.INTENT_LOCKED:
            await self._lifecycle.apply_transition(
                challenge,
                ChallengeStatus.AWAITING_RESOLUTION,
                raiser_id,
                event_type=EventType.STATUS_CHANGED,
                metadata={"dispute_id": str(dispute.id)},
            )
        await self._lifecycle.apply_transition(
            challenge,
            ChallengeStatus.DISPUTED,
            raiser_id,
            event_type=EventType.DISPUTE_RAISED,
            metadata={"dispute_id": str(dispute.id), "reason": reason},
            dispute_deadline_at=deadline,
        )

        await self._events.emit(
            WebhookEventType.DISPUTE_RAISED.value,
            str(challenge.id),
            {
                "dispute_id": str(dispute.id),
                "raised_by": raiser_id,
                "reason": reason,
                "deadline": deadline.isoformat(),
            },
        )
        logger.info(
            "dispute.raised",
            challenge_id=str(challenge.id),
            dispute_id=str(dispute.id),
            raised_by=raiser_id,
        )
        return dispute

    async def resolve_dispute(
        self,
        challenge_id: uuid.UUID,
        winner_id: str,
        resolution: str,
        actor: str = "ADMIN",
        now: datetime | None = None,
    ) -> DisputeOutcome:
        """Award the dispute to ``winner_id`` and settle both stakes."""
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)

        if challenge.challenge_status != ChallengeStatus.DISPUTED:
            raise InvalidStateError(
                f"Challenge {challenge_id} is not disputed (status {challenge.status})",
                code="CHALLENGE_NOT_DISPUTED",
            )
        if not challenge.is_party(winner_id):
            raise ValidationError(
                f"Winner {winner_id} is not a party to challenge {challenge_id}",
                code="DISPUTE_WINNER_NOT_PARTY",
            )
        dispute = await self._get_pending_or_raise(challenge.id)
        disposition = self._settings.dispute_loser_disposition

        dispute = await self._dispute_repo.resolve(dispute, winner_id, resolution, now)

        outcome = DisputeOutcome(dispute=dispute, challenge=challenge, disposition=disposition)
        ledger = self._lifecycle.ledger
        reason = f"dispute {dispute.id} resolved"
        for stake in await self._stake_repo.list_by_challenge(
            challenge.id, statuses=CUSTODIED_STATUSES
        ):
            if stake.user_id == winner_id:
                outcome.winner_stakes.append(await ledger.release(stake.id, reason=reason))
            elif disposition == LoserDisposition.TRANSFER:
                outcome.loser_stakes.append(await ledger.transfer(stake.id, reason=reason))
            else:
                outcome.loser_stakes.append(
                    await ledger.slash(
                        stake.id,
                        reason=reason,
                        details={"dispute_id": str(dispute.id), "winner_id": winner_id},
                    )
                )

        await self._lifecycle.apply_transition(
            challenge,
            ChallengeStatus.COMPLETED,
            actor,
            event_type=EventType.DISPUTE_RESOLVED,
            metadata={"dispute_id": str(dispute.id), "winner_id": winner_id},
            resolved_at=now,
        )

        await self._events.emit(
            WebhookEventType.DISPUTE_RESOLVED.value,
            str(challenge.id),
            {
                "dispute_id": str(dispute.id),
                "winner_id": winner_id,
                "resolution": resolution,
                "disposition": disposition.value,
            },
        )
        logger.info(
            "dispute.resolved",
            challenge_id=str(challenge.id),
            dispute_id=str(dispute.id),
            winner_id=winner_id,
            disposition=disposition.value,
        )
        return outcome

    async def auto_resolve_on_timeout(self, challenge: Challenge, now: datetime) -> list[Stake]:
        """Close an expired dispute with no winner and cancel the challenge.

        Returns the stakes handed back to their depositors.
        """
        dispute = await self._dispute_repo.get_pending(challenge.id)
        if dispute is not None:
            await self._dispute_repo.resolve(dispute, None, TIMEOUT_RESOLUTION, now)

        released = await self._lifecycle.force_close(
            challenge, ChallengeStatus.CANCELLED, reason="dispute timeout", now=now
        )

        await self._events.emit(
            WebhookEventType.DISPUTE_RESOLVED.value,
            str(challenge.id),
            {
                "dispute_id": str(dispute.id) if dispute else None,
                "winner_id": None,
                "resolution": TIMEOUT_RESOLUTION,
            },
        )
        logger.info(
            "dispute.timed_out",
            challenge_id=str(challenge.id),
            stakes_released=len(released),
        )
        return released

    async def list_disputes(self, challenge_id: uuid.UUID) -> list[Dispute]:
        await self._get_challenge_or_raise(challenge_id)
        return await self._dispute_repo.list_by_challenge(challenge_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_challenge_or_raise(self, challenge_id: uuid.UUID) -> Challenge:
        challenge = await self._challenge_repo.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return challenge

    async def _get_pending_or_raise(self, challenge_id: uuid.UUID) -> Dispute:
        dispute = await self._dispute_repo.get_pending(challenge_id)
        if dispute is None:
            raise DisputeNotFoundError(str(challenge_id))
        return dispute
