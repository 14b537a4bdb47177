"""Pydantic schemas for the Challenge API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Annotated

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.domain.enums import ChallengeMode, CoinSide, FeeArrangement
from escrow_engine.domain.policies import ThresholdTerms, TimeoutPolicy

if TYPE_CHECKING:
    from escrow_engine.services.challenge_service import ChallengeStatusView
    from escrow_engine.services.dispute_service import DisputeOutcome

WALLET_PATTERN = r"^0x[a-fA-F0-9]{40}$"
CHAIN_ID_PATTERN = r"^eip155:[0-9]+$"
TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"
USD_PATTERN = r"^[0-9]+(\.[0-9]{1,2})?$"
AMOUNT_PATTERN = r"^[0-9]+$"

ChainId = Annotated[str, Field(pattern=CHAIN_ID_PATTERN, examples=["eip155:1"])]

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class ThresholdTermsRequest(BaseModel):
    """Stake policy of an ENFORCED challenge."""

    min_usd: str = Field(..., pattern=USD_PATTERN, examples=["100.00"])
    max_usd: str = Field(..., pattern=USD_PATTERN, examples=["1000.00"])
    allowed_chains: list[ChainId] = Field(..., min_length=1)
    allowed_assets: list[str] = Field(..., min_length=1, examples=[["ETH", "USDC"]])
    creator_stake: str = Field(
        ...,
        pattern=AMOUNT_PATTERN,
        description="Required creator stake in base units (wei for ETH)",
        examples=["1000000000000000000"],
    )
    counterparty_stake: str = Field(..., pattern=AMOUNT_PATTERN)
    stake_currency: str = Field(..., min_length=1, max_length=16, examples=["ETH"])
    required_confirmations: int = Field(default=12, ge=1, le=1000)
    deal_expiry: datetime | None = Field(
        default=None, description="Wall-clock expiry of the deal; RED once passed"
    )

    def to_terms(self) -> ThresholdTerms:
        return ThresholdTerms(
            min_usd=self.min_usd,
            max_usd=self.max_usd,
            allowed_chains=tuple(self.allowed_chains),
            allowed_assets=tuple(a.upper() for a in self.allowed_assets),
            creator_stake=self.creator_stake,
            counterparty_stake=self.counterparty_stake,
            stake_currency=self.stake_currency.upper(),
            required_confirmations=self.required_confirmations,
            deal_expiry=self.deal_expiry,
        )


class TimeoutsRequest(BaseModel):
    """Per-challenge overrides of the ENFORCED timeouts, in seconds."""

    accept_seconds: int | None = Field(default=None, gt=0)
    response_seconds: int | None = Field(default=None, gt=0)
    dispute_seconds: int | None = Field(default=None, gt=0)

    def to_policy(self, defaults: TimeoutPolicy) -> TimeoutPolicy:
        return TimeoutPolicy(
            accept_seconds=self.accept_seconds or defaults.accept_seconds,
            response_seconds=self.response_seconds or defaults.response_seconds,
            dispute_seconds=self.dispute_seconds or defaults.dispute_seconds,
        )


class CreateChallengeRequest(BaseModel):
    """Request body for creating a new challenge."""

    mode: ChallengeMode = Field(..., examples=["ENFORCED"])
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    counterparty_id: str | None = Field(
        default=None,
        max_length=64,
        description="Required for every mode except SOLO",
    )
    creator_wallet: str | None = Field(default=None, pattern=WALLET_PATTERN)
    counterparty_wallet: str | None = Field(default=None, pattern=WALLET_PATTERN)
    fee_arrangement: FeeArrangement = FeeArrangement.CREATOR_PAYS
    coin_toss_call: CoinSide | None = Field(
        default=None, description="Creator's call when fee_arrangement is coin_toss"
    )
    thresholds: ThresholdTermsRequest | None = Field(
        default=None, description="Required for ENFORCED challenges"
    )
    timeouts: TimeoutsRequest | None = None


class CancelChallengeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class GatekeeperResultRequest(BaseModel):
    passed: bool
    failures: list[str] = Field(default_factory=list)


class DepositStakeRequest(BaseModel):
    """Request body for recording a party's stake deposit."""

    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    amount: str = Field(
        ...,
        pattern=AMOUNT_PATTERN,
        description="Deposited amount in base units",
        examples=["1000000000000000000"],
    )
    currency: str = Field(..., min_length=1, max_length=16, examples=["ETH"])
    chain_id: str = Field(..., pattern=CHAIN_ID_PATTERN, examples=["eip155:1"])
    token_address: str | None = Field(default=None, pattern=WALLET_PATTERN)


class ConfirmStakeRequest(BaseModel):
    """Confirm a deposit.

    Without ``confirmations`` the count is read from the chain's RPC endpoint.
    """

    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)
    confirmations: int | None = Field(default=None, ge=0)


class StakeActionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    tx_hash: str | None = Field(default=None, pattern=TX_HASH_PATTERN)


class RaiseDisputeRequest(BaseModel):
    """Request body for raising a dispute against a challenge."""

    reason: str = Field(
        ...,
        min_length=10,
        max_length=2000,
        description="Detailed reason for the dispute",
    )
    evidence: dict | None = Field(default=None, description="Opaque evidence payload")


class ResolveDisputeRequest(BaseModel):
    winner_id: str = Field(..., max_length=64)
    resolution: str = Field(..., min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ChallengeResponse(BaseModel):
    """Response schema for a challenge."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    mode: str
    status: str
    creator_id: str
    counterparty_id: str | None
    creator_wallet: str | None
    counterparty_wallet: str | None
    title: str
    description: str | None
    fee_arrangement: str
    coin_toss_call: str | None
    expires_at: datetime | None
    intent_locked_at: datetime | None
    response_deadline_at: datetime | None
    dispute_deadline_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ThresholdResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    min_usd: str
    max_usd: str
    allowed_chains: list[str]
    allowed_assets: list[str]
    creator_stake: str
    counterparty_stake: str
    stake_currency: str
    required_confirmations: int
    deal_expiry: datetime | None


class EnforcedConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    accept_timeout_seconds: int
    response_timeout_seconds: int
    dispute_timeout_seconds: int
    traffic_light_state: str
    last_evaluation_at: datetime | None


class StakeResponse(BaseModel):
    """Response schema for a stake."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    challenge_id: uuid.UUID
    user_id: str
    wallet_address: str
    amount: str
    currency: str
    chain_id: str
    token_address: str | None
    deposit_tx_hash: str | None
    release_tx_hash: str | None
    confirmations: int
    status: str
    deposited_at: datetime | None
    confirmed_at: datetime | None
    locked_at: datetime | None
    released_at: datetime | None


class StakeEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    stake_id: uuid.UUID
    event_type: str
    tx_hash: str | None
    details: dict | None
    created_at: datetime


class TrafficLightResponse(BaseModel):
    """One persisted traffic light evaluation."""

    model_config = ConfigDict(from_attributes=True)

    challenge_id: uuid.UUID
    state: str
    reason: str
    flags: list[str]
    details: dict
    evaluated_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    challenge_id: uuid.UUID
    raised_by: str
    reason: str
    evidence: dict | None
    status: str
    winner_id: str | None
    resolution: str | None
    created_at: datetime
    resolved_at: datetime | None


class DisputeOutcomeResponse(BaseModel):
    dispute: DisputeResponse
    challenge: ChallengeResponse
    winner_stakes: list[StakeResponse]
    loser_stakes: list[StakeResponse]
    disposition: str

    @classmethod
    def from_outcome(cls, outcome: DisputeOutcome) -> DisputeOutcomeResponse:
        return cls(
            dispute=DisputeResponse.model_validate(outcome.dispute),
            challenge=ChallengeResponse.model_validate(outcome.challenge),
            winner_stakes=[StakeResponse.model_validate(s) for s in outcome.winner_stakes],
            loser_stakes=[StakeResponse.model_validate(s) for s in outcome.loser_stakes],
            disposition=outcome.disposition.value,
        )


class ChallengeEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    challenge_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ChallengeStatusResponse(BaseModel):
    """Challenge plus its terms, stakes and current light."""

    challenge: ChallengeResponse
    thresholds: ThresholdResponse | None
    timeouts: EnforcedConfigResponse | None
    stakes: list[StakeResponse]
    traffic_light: str | None
    allowed_transitions: list[str] = Field(
        description="Statuses reachable from the current status in one step"
    )

    @classmethod
    def from_view(cls, view: ChallengeStatusView) -> ChallengeStatusResponse:
        return cls(
            challenge=ChallengeResponse.model_validate(view.challenge),
            thresholds=ThresholdResponse.model_validate(view.threshold) if view.threshold else None,
            timeouts=EnforcedConfigResponse.model_validate(view.config) if view.config else None,
            stakes=[StakeResponse.model_validate(s) for s in view.stakes],
            traffic_light=view.traffic_light.value if view.traffic_light else None,
            allowed_transitions=view.allowed_transitions,
        )


class FeePayerResponse(BaseModel):
    fee_arrangement: str
    fee_payer: str
    coin_result: str | None = None
    creator_call: str | None = None


class SweepOutcomeResponse(BaseModel):
    challenge_id: str
    action: str
    reason: str | None = None
    stakes_released: int = 0


class SweepReportResponse(BaseModel):
    processed: int
    expired: int
    cancelled: int
    conflicts: int
    failed: int
    skipped: int
    stakes_released: int
    duration_ms: int
    outcomes: list[SweepOutcomeResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
