"""REST API routes for challenges, stakes, traffic light and disputes.

Endpoints:
    POST   /api/v1/challenges                               — Create a challenge
    GET    /api/v1/challenges                               — List the caller's challenges
    GET    /api/v1/challenges/{id}                          — Full status view
    POST   /api/v1/challenges/{id}/send                     — Creator publishes
    POST   /api/v1/challenges/{id}/accept                   — Counterparty accepts
    POST   /api/v1/challenges/{id}/complete                 — Party marks complete
    POST   /api/v1/challenges/{id}/cancel                   — Creator cancels
    GET    /api/v1/challenges/{id}/events                   — Audit trail
    GET    /api/v1/challenges/{id}/fee-payer                — Who pays the fee
    POST   /api/v1/challenges/{id}/stakes                   — Deposit a stake
    GET    /api/v1/challenges/{id}/stakes                   — List stakes
    POST   /api/v1/challenges/{id}/stakes/{sid}/confirm     — Confirm a deposit
    GET    /api/v1/challenges/{id}/stakes/{sid}/events      — Stake history
    POST   /api/v1/challenges/{id}/traffic-light            — Evaluate now
    GET    /api/v1/challenges/{id}/traffic-light/history    — Past evaluations
    POST   /api/v1/challenges/{id}/disputes                 — Raise a dispute
    GET    /api/v1/challenges/{id}/disputes                 — List disputes

The acting user comes from the X-User-ID header.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status

from escrow_engine.api.deps import (
    get_actor_id,
    get_app_settings,
    get_confirmation_source,
    get_trust_scores,
    get_uow_factory,
)
from escrow_engine.config import Settings
from escrow_engine.domain.exceptions import StakeNotFoundError
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.challenge import (
    CancelChallengeRequest,
    ChallengeEventResponse,
    ChallengeResponse,
    ChallengeStatusResponse,
    ConfirmStakeRequest,
    CreateChallengeRequest,
    DepositStakeRequest,
    DisputeResponse,
    FeePayerResponse,
    RaiseDisputeRequest,
    StakeEventResponse,
    StakeResponse,
    TrafficLightResponse,
)
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.dispute_service import DisputeResolver
from escrow_engine.services.stake_ledger import StakeLedger
from escrow_engine.services.traffic_light_service import TrafficLightEvaluator

router = APIRouter(prefix="/api/v1/challenges", tags=["Challenges"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Challenge lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ChallengeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new challenge",
)
async def create_challenge(
    body: CreateChallengeRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
    trust_scores=Depends(get_trust_scores),  # noqa: ANN001
    settings: Settings = Depends(get_app_settings),
) -> ChallengeResponse:
    async with uow() as work:
        lifecycle = ChallengeLifecycle(
            work.session, events=work.events, trust_scores=trust_scores, settings=settings
        )
        challenge = await lifecycle.create_challenge(
            creator_id=actor_id,
            mode=body.mode,
            title=body.title,
            counterparty_id=body.counterparty_id,
            description=body.description,
            creator_wallet=body.creator_wallet,
            counterparty_wallet=body.counterparty_wallet,
            fee_arrangement=body.fee_arrangement,
            coin_toss_call=body.coin_toss_call,
            terms=body.thresholds.to_terms() if body.thresholds else None,
            timeouts=body.timeouts.to_policy(settings.default_timeouts) if body.timeouts else None,
        )
    return ChallengeResponse.model_validate(challenge)


@router.get("", response_model=list[ChallengeResponse], summary="List the caller's challenges")
async def list_challenges(
    limit: int = Query(default=50, ge=1, le=200),
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[ChallengeResponse]:
    async with uow() as work:
        challenges = await ChallengeLifecycle(work.session).list_for_user(actor_id, limit=limit)
    return [ChallengeResponse.model_validate(c) for c in challenges]


@router.get(
    "/{challenge_id}",
    response_model=ChallengeStatusResponse,
    summary="Challenge with thresholds, stakes, traffic light and next statuses",
)
async def get_challenge_status(
    challenge_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> ChallengeStatusResponse:
    async with uow() as work:
        view = await ChallengeLifecycle(work.session).get_status(challenge_id)
        response = ChallengeStatusResponse.from_view(view)
    return response


@router.post("/{challenge_id}/send", response_model=ChallengeResponse, summary="Publish")
async def send_challenge(
    challenge_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        challenge = await ChallengeLifecycle(work.session, events=work.events).send(
            challenge_id, actor_id
        )
    return ChallengeResponse.model_validate(challenge)


@router.post(
    "/{challenge_id}/accept",
    response_model=ChallengeResponse,
    summary="Counterparty accepts",
    description=(
        "ENFORCED challenges are gated by the traffic light and move straight "
        "to INTENT_LOCKED, holding every confirmed stake."
    ),
)
async def accept_challenge(
    challenge_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
    trust_scores=Depends(get_trust_scores),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        lifecycle = ChallengeLifecycle(work.session, events=work.events, trust_scores=trust_scores)
        challenge = await lifecycle.accept(challenge_id, actor_id)
    return ChallengeResponse.model_validate(challenge)


@router.post("/{challenge_id}/complete", response_model=ChallengeResponse, summary="Complete")
async def complete_challenge(
    challenge_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        challenge = await ChallengeLifecycle(work.session, events=work.events).complete(
            challenge_id, actor_id
        )
    return ChallengeResponse.model_validate(challenge)


@router.post("/{challenge_id}/cancel", response_model=ChallengeResponse, summary="Cancel")
async def cancel_challenge(
    challenge_id: uuid.UUID,
    body: CancelChallengeRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        challenge = await ChallengeLifecycle(work.session, events=work.events).cancel(
            challenge_id, actor_id, reason=body.reason
        )
    return ChallengeResponse.model_validate(challenge)


@router.get(
    "/{challenge_id}/events",
    response_model=list[ChallengeEventResponse],
    summary="Audit trail of status changes",
)
async def list_challenge_events(
    challenge_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[ChallengeEventResponse]:
    async with uow() as work:
        events = await ChallengeLifecycle(work.session).get_events(challenge_id)
    return [ChallengeEventResponse.model_validate(e) for e in events]


@router.get(
    "/{challenge_id}/fee-payer",
    response_model=FeePayerResponse,
    summary="Resolve who pays the platform fee",
)
async def get_fee_payer(
    challenge_id: uuid.UUID,
    block_hash: str | None = Query(default=None, pattern=r"^(0x)?[a-fA-F0-9]{2,64}$"),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> FeePayerResponse:
    async with uow() as work:
        decision = await ChallengeLifecycle(work.session).resolve_fee_payer(
            challenge_id, block_hash=block_hash
        )
    return FeePayerResponse(**decision)


# ---------------------------------------------------------------------------
# Stakes
# ---------------------------------------------------------------------------


@router.post(
    "/{challenge_id}/stakes",
    response_model=StakeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record the caller's stake deposit",
)
async def deposit_stake(
    challenge_id: uuid.UUID,
    body: DepositStakeRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> StakeResponse:
    async with uow() as work:
        stake = await StakeLedger(work.session, events=work.events).deposit(
            challenge_id=challenge_id,
            user_id=actor_id,
            wallet_address=body.wallet_address,
            amount=body.amount,
            currency=body.currency,
            chain_id=body.chain_id,
            token_address=body.token_address,
        )
    return StakeResponse.model_validate(stake)


@router.get("/{challenge_id}/stakes", response_model=list[StakeResponse], summary="List stakes")
async def list_stakes(
    challenge_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[StakeResponse]:
    async with uow() as work:
        stakes = await StakeLedger(work.session).list_stakes(challenge_id)
    return [StakeResponse.model_validate(s) for s in stakes]


@router.post(
    "/{challenge_id}/stakes/{stake_id}/confirm",
    response_model=StakeResponse,
    summary="Confirm a deposit",
    description="Uses the given confirmation count, or asks the chain when it is omitted.",
)
async def confirm_stake(
    challenge_id: uuid.UUID,
    stake_id: uuid.UUID,
    body: ConfirmStakeRequest,
    uow=Depends(get_uow_factory),  # noqa: ANN001
    confirmations=Depends(get_confirmation_source),  # noqa: ANN001
) -> StakeResponse:
    async with uow() as work:
        ledger = StakeLedger(work.session, events=work.events, confirmations=confirmations)
        await _stake_of_challenge(ledger, challenge_id, stake_id)
        if body.confirmations is None:
            stake = await ledger.confirm_from_chain(stake_id, body.tx_hash)
        else:
            stake = await ledger.confirm(stake_id, body.tx_hash, body.confirmations)
    return StakeResponse.model_validate(stake)


@router.get(
    "/{challenge_id}/stakes/{stake_id}/events",
    response_model=list[StakeEventResponse],
    summary="Stake history",
)
async def stake_history(
    challenge_id: uuid.UUID,
    stake_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[StakeEventResponse]:
    async with uow() as work:
        ledger = StakeLedger(work.session)
        await _stake_of_challenge(ledger, challenge_id, stake_id)
        events = await ledger.history(stake_id)
    return [StakeEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Traffic light
# ---------------------------------------------------------------------------


@router.post(
    "/{challenge_id}/traffic-light",
    response_model=TrafficLightResponse,
    summary="Evaluate the traffic light now",
)
async def evaluate_traffic_light(
    challenge_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
    trust_scores=Depends(get_trust_scores),  # noqa: ANN001
) -> TrafficLightResponse:
    async with uow() as work:
        evaluator = TrafficLightEvaluator(
            work.session, trust_scores=trust_scores, events=work.events
        )
        evaluation = await evaluator.evaluate(challenge_id)
    return TrafficLightResponse.model_validate(evaluation)


@router.get(
    "/{challenge_id}/traffic-light/history",
    response_model=list[TrafficLightResponse],
    summary="Past evaluations, newest first",
)
async def traffic_light_history(
    challenge_id: uuid.UUID,
    limit: int = Query(default=10, ge=1, le=100),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[TrafficLightResponse]:
    async with uow() as work:
        evaluations = await TrafficLightEvaluator(work.session).history(challenge_id, limit=limit)
    return [TrafficLightResponse.model_validate(e) for e in evaluations]


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.post(
    "/{challenge_id}/disputes",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise a dispute",
)
async def raise_dispute(
    challenge_id: uuid.UUID,
    body: RaiseDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> DisputeResponse:
    async with uow() as work:
        dispute = await DisputeResolver(work.session, events=work.events).raise_dispute(
            challenge_id, actor_id, body.reason, evidence=body.evidence
        )
    logger.info("api.dispute_raised", challenge_id=str(challenge_id), dispute_id=str(dispute.id))
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/{challenge_id}/disputes", response_model=list[DisputeResponse], summary="List disputes"
)
async def list_disputes(
    challenge_id: uuid.UUID,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> list[DisputeResponse]:
    async with uow() as work:
        disputes = await DisputeResolver(work.session).list_disputes(challenge_id)
    return [DisputeResponse.model_validate(d) for d in disputes]


async def _stake_of_challenge(
    ledger: StakeLedger, challenge_id: uuid.UUID, stake_id: uuid.UUID
) -> None:
    stake = await ledger.get_stake(stake_id)
    if stake.challenge_id != challenge_id:
        raise StakeNotFoundError(str(stake_id))
