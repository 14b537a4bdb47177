"""Traffic Light Evaluator — gathers inputs, runs the reducer, keeps the audit log.

The verdict itself comes from domain/traffic_light.py. This service reads the
two stakes and the threshold, asks the trust-score provider about both wallets,
then appends a TrafficLightEvaluation row and moves the EnforcedConfig pointer
in the caller's transaction.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_engine.domain.enums import (
    ChallengeMode,
    StakeStatus,
    TrafficLightState,
    WebhookEventType,
)
from escrow_engine.domain.exceptions import ChallengeNotFoundError, UpstreamUnavailableError
from escrow_engine.domain.traffic_light import (
    StakeSnapshot,
    TrafficLightInputs,
    evaluate_traffic_light,
    red_result,
    time_remaining_seconds,
    verify_stake,
)
from escrow_engine.infrastructure.database.orm_models import TrafficLightEvaluation
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    EnforcedTermsRepository,
    StakeRepository,
    TrafficLightRepository,
)
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.collaborators import EventEmitter, TrustScore, TrustScoreProvider
    from escrow_engine.domain.traffic_light import TrafficLightResult
    from escrow_engine.infrastructure.database.orm_models import Challenge, Stake

logger = get_logger(__name__)

NOT_ENFORCED_REASON = "Traffic light only applies to ENFORCED challenges"
NO_THRESHOLD_REASON = "Challenge has no stake thresholds"


class TrafficLightEvaluator:
    def __init__(
        self,
        session: AsyncSession,
        trust_scores: TrustScoreProvider | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self._session = session
        self._trust_scores = trust_scores
        self._events = events or NullEventEmitter()
        self._challenge_repo = ChallengeRepository(session)
        self._terms_repo = EnforcedTermsRepository(session)
        self._stake_repo = StakeRepository(session)
        self._evaluation_repo = TrafficLightRepository(session)

    async def evaluate(
        self, challenge_id: uuid.UUID, now: datetime | None = None
    ) -> TrafficLightEvaluation:
        """Evaluate and persist the traffic light of a challenge.

        ``now`` only feeds the time-remaining input; the audit row is always
        stamped with the wall clock.
        """
        challenge = await self._challenge_repo.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))

        result = await self._compute(challenge, now or datetime.now(UTC))

        evaluation = await self._evaluation_repo.record(
            TrafficLightEvaluation(
                challenge_id=challenge.id,
                state=result.state.value,
                reason=result.reason,
                details=result.details(),
                flags=result.flag_messages,
                evaluated_at=datetime.now(UTC),
            )
        )
        await self._terms_repo.set_current_light(challenge.id, result.state, evaluation.evaluated_at)

        await self._events.emit(
            WebhookEventType.TRAFFIC_LIGHT_EVALUATED.value,
            str(challenge.id),
            {"state": evaluation.state, "reason": evaluation.reason, "flags": evaluation.flags},
        )
        logger.info(
            "traffic_light.evaluated",
            challenge_id=str(challenge.id),
            state=evaluation.state,
            flags=len(evaluation.flags),
        )
        return evaluation

    # --- Predicates (each one re-runs the full evaluation) ---

    async def is_green(self, challenge_id: uuid.UUID) -> bool:
        evaluation = await self.evaluate(challenge_id)
        return evaluation.state == TrafficLightState.GREEN.value

    async def is_red(self, challenge_id: uuid.UUID) -> bool:
        evaluation = await self.evaluate(challenge_id)
        return evaluation.state == TrafficLightState.RED.value

    async def can_proceed(self, challenge_id: uuid.UUID) -> bool:
        return not await self.is_red(challenge_id)

    # --- Reads ---

    async def history(
        self, challenge_id: uuid.UUID, limit: int = 10
    ) -> list[TrafficLightEvaluation]:
        return await self._evaluation_repo.history(challenge_id, limit=limit)

    async def current(self, challenge_id: uuid.UUID) -> TrafficLightState | None:
        """Current light from the config projection, else the newest audit row."""
        config = await self._terms_repo.get_config(challenge_id)
        if config is not None and config.last_evaluation_at is not None:
            return TrafficLightState(config.traffic_light_state)
        latest = await self._evaluation_repo.latest(challenge_id)
        return TrafficLightState(latest.state) if latest else None

    # --- Internals ---

    async def _compute(self, challenge: Challenge, now: datetime) -> TrafficLightResult:
        if challenge.challenge_mode != ChallengeMode.ENFORCED:
            return red_result(NOT_ENFORCED_REASON)
        threshold = await self._terms_repo.get_threshold(challenge.id)
        if threshold is None:
            return red_result(NO_THRESHOLD_REASON)

        stakes = {s.user_id: s for s in await self._stake_repo.list_by_challenge(challenge.id)}
        creator_stake = stakes.get(challenge.creator_id)
        counterparty_stake = stakes.get(challenge.counterparty_id or "")

        creator_wallet = challenge.creator_wallet or _wallet_of(creator_stake)
        counterparty_wallet = challenge.counterparty_wallet or _wallet_of(counterparty_stake)

        inputs = TrafficLightInputs(
            creator_stake=verify_stake(
                _snapshot(creator_stake),
                threshold.creator_stake,
                threshold.required_confirmations,
            ),
            counterparty_stake=verify_stake(
                _snapshot(counterparty_stake),
                threshold.counterparty_stake,
                threshold.required_confirmations,
            ),
            creator_trust=await self._lookup_trust(creator_wallet),
            counterparty_trust=await self._lookup_trust(counterparty_wallet),
            time_remaining_seconds=time_remaining_seconds(threshold.deal_expiry, now),
        )
        return evaluate_traffic_light(inputs)

    async def _lookup_trust(self, wallet: str | None) -> TrustScore | None:
        if self._trust_scores is None or not wallet:
            return None
        try:
            return await self._trust_scores.get_trust_score(wallet)
        except UpstreamUnavailableError as exc:
            # An unreachable scoring service is not held against either party
            logger.warning("traffic_light.trust_score_unavailable", wallet=wallet, error=str(exc))
            return None


def _snapshot(stake: Stake | None) -> StakeSnapshot | None:
    if stake is None:
        return None
    return StakeSnapshot(
        status=StakeStatus(stake.status),
        amount=stake.amount,
        confirmations=stake.confirmations,
    )


def _wallet_of(stake: Stake | None) -> str | None:
    return stake.wallet_address if stake else None
