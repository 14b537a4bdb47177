"""Challenge Lifecycle — core business logic for the challenge state machine.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Stake ledger (locking and releasing collateral)
    - Traffic light evaluator (gate in front of INTENT_LOCKED)
    - Repositories (conditional status writes + audit trail)

REST routes, MCP tools, the dispute resolver and the timeout sweeper all call
into this service, so every status change goes through apply_transition().
Nothing here commits; the caller's unit of work owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.enums import (
    PRE_LOCK_STATUSES,
    ChallengeMode,
    ChallengeStatus,
    CoinSide,
    EventType,
    FeeArrangement,
    TrafficLightState,
    WebhookEventType,
)
from escrow_engine.domain.exceptions import (
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ChallengeNotOpenError,
    CounterpartyNotAllowedError,
    CounterpartyRequiredError,
    ForbiddenError,
    NotAPartyError,
    NotCounterpartyError,
    TrafficLightRedError,
    ValidationError,
)
from escrow_engine.domain.fee_arrangement import coin_side_from_block_hash, resolve_fee_payer
from escrow_engine.domain.state_machine import ChallengeStateMachine, validate_transition
from escrow_engine.infrastructure.database.orm_models import (
    Challenge,
    EnforcedConfig,
    EnforcedThreshold,
)
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    CompletionRepository,
    EnforcedTermsRepository,
    EventRepository,
)
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.logging_config import get_logger
from escrow_engine.services.stake_ledger import StakeLedger
from escrow_engine.services.traffic_light_service import TrafficLightEvaluator

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.collaborators import EventEmitter, TrustScoreProvider
    from escrow_engine.domain.policies import ThresholdTerms, TimeoutPolicy
    from escrow_engine.infrastructure.database.orm_models import (
        ChallengeEvent,
        Stake,
        TrafficLightEvaluation,
    )

logger = get_logger(__name__)

# Audit event recorded for each target status when the caller doesn't name one.
_EVENT_FOR_TARGET: dict[ChallengeStatus, EventType] = {
    ChallengeStatus.AWAITING_COUNTERPARTY: EventType.CHALLENGE_SENT,
    ChallengeStatus.AWAITING_GATEKEEPER: EventType.CHALLENGE_ACCEPTED,
    ChallengeStatus.INTENT_LOCKED: EventType.INTENT_LOCKED,
    ChallengeStatus.COMPLETED: EventType.CHALLENGE_COMPLETED,
    ChallengeStatus.CANCELLED: EventType.CHALLENGE_CANCELLED,
    ChallengeStatus.EXPIRED: EventType.CHALLENGE_EXPIRED,
    ChallengeStatus.DISPUTED: EventType.DISPUTE_RAISED,
}

_RESOLUTION_STATUSES = (ChallengeStatus.INTENT_LOCKED, ChallengeStatus.AWAITING_RESOLUTION)


@dataclass
class ChallengeStatusView:
    """Everything a client needs to render one challenge."""

    challenge: Challenge
    threshold: EnforcedThreshold | None = None
    config: EnforcedConfig | None = None
    stakes: list[Stake] = field(default_factory=list)
    traffic_light: TrafficLightState | None = None
    allowed_transitions: list[str] = field(default_factory=list)


class ChallengeLifecycle:
    """Manages the challenge lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        events: EventEmitter | None = None,
        trust_scores: TrustScoreProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._events = events or NullEventEmitter()
        self._settings = settings or get_settings()
        self._challenge_repo = ChallengeRepository(session)
        self._terms_repo = EnforcedTermsRepository(session)
        self._completion_repo = CompletionRepository(session)
        self._event_repo = EventRepository(session)
        self.ledger = StakeLedger(session, events=self._events, settings=self._settings)
        self.traffic_light = TrafficLightEvaluator(
            session, trust_scores=trust_scores, events=self._events
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_challenge(
        self,
        creator_id: str,
        mode: ChallengeMode | str,
        title: str,
        counterparty_id: str | None = None,
        description: str | None = None,
        creator_wallet: str | None = None,
        counterparty_wallet: str | None = None,
        fee_arrangement: FeeArrangement | str = FeeArrangement.CREATOR_PAYS,
        coin_toss_call: CoinSide | str | None = None,
        terms: ThresholdTerms | None = None,
        timeouts: TimeoutPolicy | None = None,
        now: datetime | None = None,
    ) -> Challenge:
        """Create a challenge in DRAFT.

        ENFORCED challenges also get their threshold and timeout config, an
        accept deadline and an initial traffic light evaluation.
        """
        mode = ChallengeMode(mode)
        fee_arrangement = FeeArrangement(fee_arrangement)
        now = now or datetime.now(UTC)

        if mode == ChallengeMode.SOLO and counterparty_id is not None:
            raise CounterpartyNotAllowedError()
        if mode != ChallengeMode.SOLO and not counterparty_id:
            raise CounterpartyRequiredError(mode.value)
        if counterparty_id is not None and counterparty_id == creator_id:
            raise ValidationError(
                "Counterparty must differ from the creator", code="CHALLENGE_SELF_COUNTERPARTY"
            )
        if fee_arrangement == FeeArrangement.COIN_TOSS and coin_toss_call is None:
            raise ValidationError(
                "A coin toss needs the creator's call", code="COIN_TOSS_CALL_REQUIRED"
            )
        if mode == ChallengeMode.ENFORCED and terms is None:
            raise ValidationError(
                "ENFORCED challenges need stake thresholds", code="THRESHOLDS_REQUIRED"
            )
        if mode != ChallengeMode.ENFORCED and terms is not None:
            raise ValidationError(
                "Stake thresholds only apply to ENFORCED challenges",
                code="THRESHOLDS_NOT_ALLOWED",
            )

        policy = timeouts or self._settings.default_timeouts
        if terms is not None:
            terms.validate_against_limit(self._settings.max_transaction_usd)

        challenge = Challenge(
            mode=mode.value,
            creator_id=creator_id,
            counterparty_id=counterparty_id,
            creator_wallet=creator_wallet.lower() if creator_wallet else None,
            counterparty_wallet=counterparty_wallet.lower() if counterparty_wallet else None,
            title=title,
            description=description,
            fee_arrangement=fee_arrangement.value,
            coin_toss_call=CoinSide(coin_toss_call).value if coin_toss_call else None,
            status=ChallengeStatus.DRAFT.value,
            expires_at=(
                now + timedelta(seconds=policy.accept_seconds)
                if mode == ChallengeMode.ENFORCED
                else None
            ),
        )
        challenge = await self._challenge_repo.create(challenge)

        if terms is not None:
            await self._terms_repo.create(
                EnforcedThreshold(
                    challenge_id=challenge.id,
                    min_usd=terms.min_usd,
                    max_usd=terms.max_usd,
                    required_confirmations=terms.required_confirmations,
                    allowed_chains=list(terms.allowed_chains),
                    allowed_assets=[a.upper() for a in terms.allowed_assets],
                    deal_expiry=terms.deal_expiry,
                    creator_stake=terms.creator_stake,
                    counterparty_stake=terms.counterparty_stake,
                    stake_currency=terms.stake_currency.upper(),
                ),
                EnforcedConfig(
                    challenge_id=challenge.id,
                    accept_timeout_seconds=policy.accept_seconds,
                    response_timeout_seconds=policy.response_seconds,
                    dispute_timeout_seconds=policy.dispute_seconds,
                ),
            )

        await self._event_repo.record(
            challenge_id=challenge.id,
            event_type=EventType.CHALLENGE_CREATED,
            old_status=None,
            new_status=ChallengeStatus.DRAFT,
            actor=creator_id,
            metadata={"mode": mode.value, "title": title},
        )
        await self._events.emit(
            WebhookEventType.CHALLENGE_CREATED.value,
            str(challenge.id),
            {"mode": mode.value, "creator_id": creator_id, "counterparty_id": counterparty_id},
        )
        logger.info("challenge.created", challenge_id=str(challenge.id), mode=mode.value)

        if mode == ChallengeMode.ENFORCED:
            await self.traffic_light.evaluate(challenge.id, now=now)
        return challenge

    # ------------------------------------------------------------------
    # Invitation
    # ------------------------------------------------------------------

    async def send(
        self, challenge_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Challenge:
        """Creator publishes the challenge to the counterparty."""
        challenge = await self._get_challenge_or_raise(challenge_id)
        if actor_id != challenge.creator_id:
            raise ForbiddenError(
                f"Only the creator can send challenge {challenge_id}", code="NOT_CREATOR"
            )

        fields: dict = {}
        config = await self._terms_repo.get_config(challenge.id)
        if config is not None:
            # The accept window starts when the counterparty can actually see it
            fields["expires_at"] = (now or datetime.now(UTC)) + timedelta(
                seconds=config.accept_timeout_seconds
            )
        return await self.apply_transition(
            challenge, ChallengeStatus.AWAITING_COUNTERPARTY, actor_id, **fields
        )

    async def accept(
        self, challenge_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Challenge:
        """Counterparty accepts.

        ENFORCED challenges run straight through AWAITING_GATEKEEPER to
        INTENT_LOCKED when the traffic light is not RED. Other modes stop at
        AWAITING_GATEKEEPER until record_gatekeeper_result().
        """
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)

        if actor_id != challenge.counterparty_id:
            raise NotCounterpartyError(str(challenge_id), actor_id)
        validate_transition(challenge.status, ChallengeStatus.AWAITING_GATEKEEPER)
        if challenge.expires_at is not None and now >= challenge.expires_at:
            raise ChallengeExpiredError(str(challenge_id))

        if challenge.challenge_mode == ChallengeMode.ENFORCED:
            await self._ensure_not_red(challenge, now)

        challenge = await self.apply_transition(
            challenge, ChallengeStatus.AWAITING_GATEKEEPER, actor_id
        )
        if challenge.challenge_mode == ChallengeMode.ENFORCED:
            challenge = await self._lock_intent(challenge, actor_id, now)
        return challenge

    async def record_gatekeeper_result(
        self,
        challenge_id: uuid.UUID,
        passed: bool,
        failures: list[str] | None = None,
        actor: str = "GATEKEEPER",
        now: datetime | None = None,
    ) -> Challenge:
        """Settle AWAITING_GATEKEEPER for non-ENFORCED challenges."""
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)
        if challenge.challenge_mode == ChallengeMode.ENFORCED:
            raise ValidationError(
                "ENFORCED challenges are gated by the traffic light",
                code="GATEKEEPER_NOT_APPLICABLE",
            )

        if passed:
            return await self._lock_intent(challenge, actor, now)
        return await self.apply_transition(
            challenge,
            ChallengeStatus.CANCELLED,
            actor,
            event_type=EventType.GATEKEEPER_REJECTED,
            metadata={"failures": failures or []},
            resolved_at=now,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def complete(
        self, challenge_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Challenge:
        """Record ``actor_id``'s completion; the last party to complete closes it."""
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)

        if not challenge.is_party(actor_id):
            raise NotAPartyError(str(challenge_id), actor_id)
        if challenge.challenge_status not in _RESOLUTION_STATUSES:
            raise ChallengeNotOpenError(str(challenge_id), challenge.status, "complete")

        await self._completion_repo.record(challenge.id, actor_id)
        await self._event_repo.record(
            challenge_id=challenge.id,
            event_type=EventType.COMPLETION_RECORDED,
            old_status=challenge.challenge_status,
            new_status=challenge.challenge_status,
            actor=actor_id,
        )

        parties = {p for p in (challenge.creator_id, challenge.counterparty_id) if p}
        completed = await self._completion_repo.completed_users(challenge.id)
        if parties <= completed:
            challenge = await self.apply_transition(
                challenge, ChallengeStatus.COMPLETED, actor_id, resolved_at=now
            )
            await self.ledger.release_custodied(challenge.id, reason="challenge completed")
        elif challenge.challenge_status == ChallengeStatus.INTENT_LOCKED:
            challenge = await self.apply_transition(
                challenge,
                ChallengeStatus.AWAITING_RESOLUTION,
                actor_id,
                event_type=EventType.STATUS_CHANGED,
            )
        return challenge

    async def cancel(
        self,
        challenge_id: uuid.UUID,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Challenge:
        """Creator withdraws the challenge before intent lock."""
        now = now or datetime.now(UTC)
        challenge = await self._get_challenge_or_raise(challenge_id)

        if actor_id != challenge.creator_id:
            raise ForbiddenError(
                f"Only the creator can cancel challenge {challenge_id}", code="NOT_CREATOR"
            )
        if challenge.challenge_status not in PRE_LOCK_STATUSES:
            raise ChallengeNotOpenError(str(challenge_id), challenge.status, "cancel")

        challenge = await self.apply_transition(
            challenge,
            ChallengeStatus.CANCELLED,
            actor_id,
            metadata={"reason": reason},
            resolved_at=now,
        )
        await self.ledger.release_custodied(challenge.id, reason=reason or "challenge cancelled")
        return challenge

    # ------------------------------------------------------------------
    # Generic transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        challenge_id: uuid.UUID,
        target: ChallengeStatus | str,
        actor: str = "SYSTEM",
        now: datetime | None = None,
    ) -> Challenge:
        """Move a challenge to ``target`` with the side effects that status implies."""
        now = now or datetime.now(UTC)
        target = ChallengeStatus(target)
        challenge = await self._get_challenge_or_raise(challenge_id)
        validate_transition(challenge.status, target)

        if target == ChallengeStatus.DISPUTED:
            raise ValidationError(
                "Disputes are opened through raise_dispute", code="DISPUTE_REQUIRES_RAISE"
            )
        if target == ChallengeStatus.INTENT_LOCKED:
            if challenge.challenge_mode == ChallengeMode.ENFORCED:
                await self._ensure_not_red(challenge, now)
            return await self._lock_intent(challenge, actor, now)
        if target.is_terminal:
            await self.force_close(
                challenge, target, reason=f"transition by {actor}", now=now, actor=actor
            )
            return challenge
        return await self.apply_transition(challenge, target, actor)

    async def apply_transition(
        self,
        challenge: Challenge,
        target: ChallengeStatus,
        actor: str,
        event_type: EventType | None = None,
        metadata: dict | None = None,
        **fields: object,
    ) -> Challenge:
        """Validate, write conditionally, audit and announce one status change.

        Raises:
            InvalidStateTransitionError: ``target`` is not reachable from the current status.
            ConcurrencyConflictError: Someone else changed the status first.
        """
        current = ChallengeStatus(challenge.status)
        new_status = validate_transition(current.value, target)

        challenge = await self._challenge_repo.transition_status(
            challenge, current, new_status, **fields
        )
        await self._event_repo.record(
            challenge_id=challenge.id,
            event_type=event_type or _EVENT_FOR_TARGET.get(new_status, EventType.STATUS_CHANGED),
            old_status=current,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )
        await self._events.emit(
            WebhookEventType.CHALLENGE_STATUS_CHANGED.value,
            str(challenge.id),
            {"old_status": current.value, "new_status": new_status.value, "actor": actor},
        )

        logger.info(
            "challenge.transitioned",
            challenge_id=str(challenge.id),
            from_status=current.value,
            to_status=new_status.value,
            actor=actor,
        )
        return challenge

    async def force_close(
        self,
        challenge: Challenge,
        target: ChallengeStatus,
        reason: str,
        now: datetime,
        actor: str = "SYSTEM",
    ) -> list[Stake]:
        """Move to a terminal status and hand every custodied stake back."""
        await self.apply_transition(
            challenge, target, actor, metadata={"reason": reason}, resolved_at=now
        )
        return await self.ledger.release_custodied(challenge.id, reason=reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_challenge(self, challenge_id: uuid.UUID) -> Challenge:
        return await self._get_challenge_or_raise(challenge_id)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Challenge]:
        return await self._challenge_repo.list_for_user(user_id, limit=limit)

    async def get_status(self, challenge_id: uuid.UUID) -> ChallengeStatusView:
        challenge = await self._get_challenge_or_raise(challenge_id)
        return ChallengeStatusView(
            challenge=challenge,
            threshold=await self._terms_repo.get_threshold(challenge.id),
            config=await self._terms_repo.get_config(challenge.id),
            stakes=await self.ledger.list_stakes(challenge.id),
            traffic_light=await self.traffic_light.current(challenge.id),
            allowed_transitions=ChallengeStateMachine(challenge.status).allowed_targets(),
        )

    async def get_events(self, challenge_id: uuid.UUID) -> list[ChallengeEvent]:
        await self._get_challenge_or_raise(challenge_id)
        return await self._event_repo.get_by_challenge(challenge_id)

    async def resolve_fee_payer(
        self, challenge_id: uuid.UUID, block_hash: str | None = None
    ) -> dict:
        """Who pays the platform fee; coin tosses are settled from ``block_hash``."""
        challenge = await self._get_challenge_or_raise(challenge_id)
        arrangement = FeeArrangement(challenge.fee_arrangement)
        result = coin_side_from_block_hash(block_hash) if block_hash else None
        creator_call = CoinSide(challenge.coin_toss_call) if challenge.coin_toss_call else None

        payer = resolve_fee_payer(arrangement, result=result, creator_call=creator_call)
        return {
            "fee_arrangement": arrangement.value,
            "fee_payer": payer.value,
            "coin_result": result.value if result else None,
            "creator_call": creator_call.value if creator_call else None,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_challenge_or_raise(self, challenge_id: uuid.UUID) -> Challenge:
        challenge = await self._challenge_repo.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return challenge

    async def _ensure_not_red(self, challenge: Challenge, now: datetime) -> TrafficLightEvaluation:
        evaluation = await self.traffic_light.evaluate(challenge.id, now=now)
        if evaluation.state == TrafficLightState.RED.value:
            logger.warning(
                "challenge.traffic_light_blocked",
                challenge_id=str(challenge.id),
                reason=evaluation.reason,
            )
            raise TrafficLightRedError(str(challenge.id), evaluation.reason, list(evaluation.flags))
        return evaluation

    async def _lock_intent(self, challenge: Challenge, actor: str, now: datetime) -> Challenge:
        """AWAITING_GATEKEEPER -> INTENT_LOCKED, holding every confirmed stake first."""
        validate_transition(challenge.status, ChallengeStatus.INTENT_LOCKED)

        locked = await self.ledger.lock_confirmed(challenge.id)
        config = await self._terms_repo.get_config(challenge.id)
        policy = config.to_policy() if config else self._settings.default_timeouts

        return await self.apply_transition(
            challenge,
            ChallengeStatus.INTENT_LOCKED,
            actor,
            metadata={"locked_stakes": [str(stake.id) for stake in locked]},
            intent_locked_at=now,
            response_deadline_at=now + timedelta(seconds=policy.response_seconds),
        )
