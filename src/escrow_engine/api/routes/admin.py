"""Operator endpoints.

Endpoints:
    POST /api/v1/admin/sweep                                 — Run one timeout sweep
    POST /api/v1/admin/challenges/{id}/gatekeeper            — Record a gatekeeper verdict
    POST /api/v1/admin/challenges/{id}/transition            — Force a table transition
    POST /api/v1/admin/challenges/{id}/disputes/resolve      — Decide a dispute
    POST /api/v1/admin/stakes/{sid}/release                  — Return a stake
    POST /api/v1/admin/stakes/{sid}/transfer                 — Award a stake
    POST /api/v1/admin/stakes/{sid}/slash                    — Forfeit a stake

Operator identity is taken from X-User-ID and recorded as the event actor.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from escrow_engine.api.deps import (
    get_actor_id,
    get_app_settings,
    get_event_emitter,
    get_session_factory,
    get_trust_scores,
    get_uow_factory,
)
from escrow_engine.config import Settings
from escrow_engine.domain.enums import ChallengeStatus
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.challenge import (
    ChallengeResponse,
    DisputeOutcomeResponse,
    GatekeeperResultRequest,
    ResolveDisputeRequest,
    StakeActionRequest,
    StakeResponse,
    SweepReportResponse,
)
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.dispute_service import DisputeResolver
from escrow_engine.services.stake_ledger import StakeLedger
from escrow_engine.services.timeout_sweeper import TimeoutSweeper

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
logger = get_logger(__name__)


@router.post("/sweep", response_model=SweepReportResponse, summary="Run one timeout sweep")
async def run_sweep(
    actor_id: str = Depends(get_actor_id),
    factory=Depends(get_session_factory),  # noqa: ANN001
    emitter=Depends(get_event_emitter),  # noqa: ANN001
    settings: Settings = Depends(get_app_settings),
) -> SweepReportResponse:
    report = await TimeoutSweeper(factory, emitter=emitter, settings=settings).sweep()
    logger.info("admin.sweep", actor=actor_id, processed=report.processed)
    return SweepReportResponse.model_validate(report.to_dict())


@router.post(
    "/challenges/{challenge_id}/gatekeeper",
    response_model=ChallengeResponse,
    summary="Record the gatekeeper verdict of a non-ENFORCED challenge",
)
async def record_gatekeeper_result(
    challenge_id: uuid.UUID,
    body: GatekeeperResultRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        challenge = await ChallengeLifecycle(
            work.session, events=work.events
        ).record_gatekeeper_result(challenge_id, body.passed, body.failures, actor=actor_id)
    return ChallengeResponse.model_validate(challenge)


@router.post(
    "/challenges/{challenge_id}/transition",
    response_model=ChallengeResponse,
    summary="Move a challenge along the transition table",
)
async def force_transition(
    challenge_id: uuid.UUID,
    target: ChallengeStatus = Query(...),
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
    trust_scores=Depends(get_trust_scores),  # noqa: ANN001
) -> ChallengeResponse:
    async with uow() as work:
        lifecycle = ChallengeLifecycle(work.session, events=work.events, trust_scores=trust_scores)
        challenge = await lifecycle.transition(challenge_id, target, actor=actor_id)
    return ChallengeResponse.model_validate(challenge)


@router.post(
    "/challenges/{challenge_id}/disputes/resolve",
    response_model=DisputeOutcomeResponse,
    summary="Decide the open dispute",
)
async def resolve_dispute(
    challenge_id: uuid.UUID,
    body: ResolveDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
    settings: Settings = Depends(get_app_settings),
) -> DisputeOutcomeResponse:
    async with uow() as work:
        resolver = DisputeResolver(work.session, events=work.events, settings=settings)
        outcome = await resolver.resolve_dispute(
            challenge_id, body.winner_id, body.resolution, actor=actor_id
        )
    return DisputeOutcomeResponse.from_outcome(outcome)


@router.post("/stakes/{stake_id}/release", response_model=StakeResponse, summary="Release")
async def release_stake(
    stake_id: uuid.UUID,
    body: StakeActionRequest,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> StakeResponse:
    async with uow() as work:
        stake = await StakeLedger(work.session, events=work.events).release(
            stake_id, body.reason, tx_hash=body.tx_hash
        )
    return StakeResponse.model_validate(stake)


@router.post("/stakes/{stake_id}/transfer", response_model=StakeResponse, summary="Transfer")
async def transfer_stake(
    stake_id: uuid.UUID,
    body: StakeActionRequest,
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> StakeResponse:
    async with uow() as work:
        stake = await StakeLedger(work.session, events=work.events).transfer(
            stake_id, body.reason, tx_hash=body.tx_hash
        )
    return StakeResponse.model_validate(stake)


@router.post("/stakes/{stake_id}/slash", response_model=StakeResponse, summary="Slash")
async def slash_stake(
    stake_id: uuid.UUID,
    body: StakeActionRequest,
    actor_id: str = Depends(get_actor_id),
    uow=Depends(get_uow_factory),  # noqa: ANN001
) -> StakeResponse:
    async with uow() as work:
        stake = await StakeLedger(work.session, events=work.events).slash(
            stake_id, body.reason, details={"slashed_by": actor_id}
        )
    return StakeResponse.model_validate(stake)
