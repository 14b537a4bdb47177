"""MCP Tool definitions for the Escrow Challenge Engine.

These tools expose read-mostly engine operations via the Model Context
Protocol, allowing agents and operators to query and nudge challenges.

Tools:
    - get_challenge_status: Challenge, terms, stakes, light and next statuses
    - evaluate_traffic_light: Run (and record) a traffic light evaluation
    - get_stake_history: Ordered event log of one stake
    - run_timeout_sweep: Force overdue accept/response/dispute deadlines

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool opens its own unit of work (no FastAPI Depends available).
Engine errors come back as their structured dict, never as a raised error.
"""

from __future__ import annotations

import uuid

from mcp.server.fastmcp import FastMCP

from escrow_engine.domain.exceptions import EngineError
from escrow_engine.infrastructure.database.engine import _get_session_factory
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.infrastructure.unit_of_work import unit_of_work
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.challenge import (
    ChallengeStatusResponse,
    StakeEventResponse,
    TrafficLightResponse,
)
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.stake_ledger import StakeLedger
from escrow_engine.services.timeout_sweeper import TimeoutSweeper
from escrow_engine.services.traffic_light_service import TrafficLightEvaluator

logger = get_logger(__name__)

mcp = FastMCP(
    "Escrow Challenge Engine",
    json_response=True,
)

# Collaborators shared with the REST app; main.py fills these in at startup.
collaborators: dict = {"event_emitter": None, "trust_scores": None}


def _emitter():  # noqa: ANN202
    return collaborators.get("event_emitter") or NullEventEmitter()


def _parse_id(value: str, name: str) -> uuid.UUID | dict:
    try:
        return uuid.UUID(value)
    except ValueError:
        return {"error": "VALIDATION_ERROR", "message": f"{name} is not a UUID: {value!r}"}


@mcp.tool()
async def get_challenge_status(challenge_id: str) -> dict:
    """Check the current status of a challenge.

    Args:
        challenge_id: UUID of the challenge.

    Returns:
        The challenge, its stake thresholds and timeouts, every stake, the
        current traffic light and the statuses it may move to next.
    """
    parsed = _parse_id(challenge_id, "challenge_id")
    if isinstance(parsed, dict):
        return parsed
    try:
        async with unit_of_work(_get_session_factory(), _emitter()) as uow:
            view = await ChallengeLifecycle(uow.session).get_status(parsed)
            return ChallengeStatusResponse.from_view(view).model_dump(mode="json")
    except EngineError as exc:
        return exc.to_dict()


@mcp.tool()
async def evaluate_traffic_light(challenge_id: str) -> dict:
    """Evaluate whether an ENFORCED challenge is safe to proceed.

    GREEN means every check passed, YELLOW means proceed with caution and
    RED blocks acceptance. The evaluation is recorded in the audit log.

    Args:
        challenge_id: UUID of the challenge.
    """
    parsed = _parse_id(challenge_id, "challenge_id")
    if isinstance(parsed, dict):
        return parsed
    try:
        async with unit_of_work(_get_session_factory(), _emitter()) as uow:
            evaluator = TrafficLightEvaluator(
                uow.session,
                trust_scores=collaborators.get("trust_scores"),
                events=uow.events,
            )
            evaluation = await evaluator.evaluate(parsed)
            result = TrafficLightResponse.model_validate(evaluation).model_dump(mode="json")
    except EngineError as exc:
        return exc.to_dict()
    logger.info("mcp.evaluate_traffic_light", challenge_id=challenge_id, state=result["state"])
    return result


@mcp.tool()
async def get_stake_history(stake_id: str) -> dict:
    """List every recorded event of a stake, oldest first.

    Args:
        stake_id: UUID of the stake.
    """
    parsed = _parse_id(stake_id, "stake_id")
    if isinstance(parsed, dict):
        return parsed
    try:
        async with unit_of_work(_get_session_factory(), _emitter()) as uow:
            ledger = StakeLedger(uow.session)
            stake = await ledger.get_stake(parsed)
            events = await ledger.history(parsed)
            return {
                "stake_id": str(stake.id),
                "challenge_id": str(stake.challenge_id),
                "status": stake.status,
                "events": [
                    StakeEventResponse.model_validate(e).model_dump(mode="json") for e in events
                ],
            }
    except EngineError as exc:
        return exc.to_dict()


@mcp.tool()
async def run_timeout_sweep() -> dict:
    """Expire or cancel every challenge whose deadline has passed.

    Returns:
        Counts of processed, expired, cancelled, conflicting and failed
        challenges plus the number of stakes released.
    """
    report = await TimeoutSweeper(_get_session_factory(), emitter=_emitter()).sweep()
    logger.info("mcp.run_timeout_sweep", processed=report.processed)
    return report.to_dict()
