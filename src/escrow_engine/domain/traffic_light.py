"""Traffic Light reducer.

Reduces both parties' stake verification, their trust scores and the time left
before deal expiry into a GREEN / YELLOW / RED verdict. This module is pure:
the same inputs always yield the same state, reason and flags. Reading stakes,
calling the trust-score service and persisting the audit record happen in
services/traffic_light_service.py.

Derivation (first match wins):
    1. RED    - either stake verification is FAILED or INSUFFICIENT
    2. RED    - time remaining is known and <= 0
    3. RED    - either party is HIGH risk or carries a CRITICAL trust flag
    4. GREEN  - both stakes satisfied, both parties LOW risk (or unscored),
                and no warning flag
    5. YELLOW - everything else
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_engine.domain.amounts import is_zero, validate_stake_amount
from escrow_engine.domain.enums import (
    Party,
    RiskLevel,
    StakeStatus,
    StakeVerificationStatus,
    TrafficLightState,
)

if TYPE_CHECKING:
    from datetime import datetime

    from escrow_engine.domain.collaborators import TrustScore

EXPIRY_WARNING_SECONDS = 3600

GREEN_REASON = "All verifications passed. Safe to proceed."
RED_FALLBACK_REASON = "Verification failed. Do not proceed."
YELLOW_FALLBACK_REASON = "Partial verification. Proceed with caution."

_FAILED_STAKE_STATUSES = frozenset(
    {StakeStatus.RELEASED, StakeStatus.TRANSFERRED, StakeStatus.SLASHED}
)


class FlagCode(enum.StrEnum):
    STAKE_PENDING = "STAKE_PENDING"
    STAKE_INSUFFICIENT = "STAKE_INSUFFICIENT"
    STAKE_FAILED = "STAKE_FAILED"
    DEAL_EXPIRED = "DEAL_EXPIRED"
    EXPIRY_SOON = "EXPIRY_SOON"
    HIGH_RISK = "HIGH_RISK"
    MEDIUM_RISK = "MEDIUM_RISK"
    CRITICAL_TRUST_FLAGS = "CRITICAL_TRUST_FLAGS"

    @property
    def is_warning(self) -> bool:
        """Warning-level flags keep an otherwise clean evaluation at YELLOW."""
        return self in (FlagCode.MEDIUM_RISK, FlagCode.EXPIRY_SOON)


@dataclass(frozen=True)
class TrafficLightFlag:
    code: FlagCode
    message: str
    party: Party | None = None


# ---------------------------------------------------------------------------
# Stake verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StakeSnapshot:
    """The parts of a stake row the reducer looks at."""

    status: StakeStatus
    amount: str
    confirmations: int = 0


@dataclass(frozen=True)
class StakeVerification:
    status: StakeVerificationStatus
    required: str
    deposited: str
    confirmations: int
    required_confirmations: int

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "required": self.required,
            "deposited": self.deposited,
            "confirmations": self.confirmations,
            "required_confirmations": self.required_confirmations,
        }


def verify_stake(
    stake: StakeSnapshot | None,
    required: str,
    required_confirmations: int,
) -> StakeVerification:
    """Classify one party's stake against the required amount."""

    def _result(status: StakeVerificationStatus, deposited: str = "0", confirmations: int = 0):
        return StakeVerification(
            status=status,
            required=required,
            deposited=deposited,
            confirmations=confirmations,
            required_confirmations=required_confirmations,
        )

    if is_zero(required):
        return _result(
            StakeVerificationStatus.NOT_REQUIRED,
            deposited=stake.amount if stake else "0",
            confirmations=stake.confirmations if stake else 0,
        )
    if stake is None or stake.status == StakeStatus.PENDING:
        return _result(
            StakeVerificationStatus.PENDING,
            deposited=stake.amount if stake else "0",
        )
    if stake.status in _FAILED_STAKE_STATUSES:
        return _result(StakeVerificationStatus.FAILED, stake.amount, stake.confirmations)
    if not validate_stake_amount(stake.amount, required).valid:
        return _result(StakeVerificationStatus.INSUFFICIENT, stake.amount, stake.confirmations)
    return _result(StakeVerificationStatus.CONFIRMED, stake.amount, stake.confirmations)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrafficLightInputs:
    creator_stake: StakeVerification
    counterparty_stake: StakeVerification
    creator_trust: TrustScore | None = None
    counterparty_trust: TrustScore | None = None
    time_remaining_seconds: int | None = None


@dataclass(frozen=True)
class TrafficLightResult:
    state: TrafficLightState
    reason: str
    flags: tuple[TrafficLightFlag, ...] = field(default_factory=tuple)
    inputs: TrafficLightInputs | None = None

    @property
    def flag_messages(self) -> list[str]:
        return [flag.message for flag in self.flags]

    @property
    def thresholds_met(self) -> bool:
        if self.inputs is None:
            return False
        return (
            self.inputs.creator_stake.status.is_satisfied
            and self.inputs.counterparty_stake.status.is_satisfied
        )

    @property
    def can_proceed(self) -> bool:
        return self.state != TrafficLightState.RED

    def details(self) -> dict:
        """Structured snapshot persisted alongside the evaluation."""
        if self.inputs is None:
            return {"thresholds_met": False, "flag_codes": [f.code.value for f in self.flags]}
        return {
            "creator_stake": self.inputs.creator_stake.to_dict(),
            "counterparty_stake": self.inputs.counterparty_stake.to_dict(),
            "trust_scores": {
                "creator": _trust_summary(self.inputs.creator_trust),
                "counterparty": _trust_summary(self.inputs.counterparty_trust),
            },
            "time_remaining_seconds": self.inputs.time_remaining_seconds,
            "thresholds_met": self.thresholds_met,
            "flag_codes": [flag.code.value for flag in self.flags],
        }


def _trust_summary(trust: TrustScore | None) -> dict | None:
    if trust is None:
        return None
    return {
        "wallet": trust.wallet,
        "score": trust.score,
        "risk_level": trust.risk_level.value,
        "has_critical_flags": trust.has_critical_flags,
        "confidence": trust.confidence,
    }


def time_remaining_seconds(deal_expiry: datetime | None, now: datetime) -> int | None:
    """Whole seconds until ``deal_expiry``, floored at zero; None without an expiry."""
    if deal_expiry is None:
        return None
    return max(0, int((deal_expiry - now).total_seconds()))


def collect_flags(inputs: TrafficLightInputs) -> list[TrafficLightFlag]:
    """Build the ordered flag list: stakes, then time, then trust."""
    flags: list[TrafficLightFlag] = []

    for party, verification in (
        (Party.CREATOR, inputs.creator_stake),
        (Party.COUNTERPARTY, inputs.counterparty_stake),
    ):
        if verification.status == StakeVerificationStatus.PENDING:
            flags.append(
                TrafficLightFlag(
                    FlagCode.STAKE_PENDING, f"{party.label} stake pending confirmation", party
                )
            )
        elif verification.status == StakeVerificationStatus.INSUFFICIENT:
            flags.append(
                TrafficLightFlag(
                    FlagCode.STAKE_INSUFFICIENT, f"{party.label} stake insufficient", party
                )
            )
        elif verification.status == StakeVerificationStatus.FAILED:
            flags.append(
                TrafficLightFlag(
                    FlagCode.STAKE_FAILED, f"{party.label} stake is no longer in escrow", party
                )
            )

    remaining = inputs.time_remaining_seconds
    if remaining is not None:
        if remaining <= 0:
            flags.append(TrafficLightFlag(FlagCode.DEAL_EXPIRED, "Deal has expired"))
        elif remaining < EXPIRY_WARNING_SECONDS:
            flags.append(
                TrafficLightFlag(FlagCode.EXPIRY_SOON, "Less than 1 hour until deal expiry")
            )

    for party, trust in (
        (Party.CREATOR, inputs.creator_trust),
        (Party.COUNTERPARTY, inputs.counterparty_trust),
    ):
        if trust is None:
            continue
        if trust.risk_level == RiskLevel.HIGH:
            flags.append(
                TrafficLightFlag(
                    FlagCode.HIGH_RISK,
                    f"{party.label} wallet has HIGH risk score ({trust.score})",
                    party,
                )
            )
        elif trust.risk_level == RiskLevel.MEDIUM:
            flags.append(
                TrafficLightFlag(
                    FlagCode.MEDIUM_RISK,
                    f"{party.label} wallet has MEDIUM risk score ({trust.score})",
                    party,
                )
            )
        if trust.has_critical_flags:
            flags.append(
                TrafficLightFlag(
                    FlagCode.CRITICAL_TRUST_FLAGS,
                    f"{party.label} wallet has CRITICAL trust flags",
                    party,
                )
            )

    return flags


def derive_state(inputs: TrafficLightInputs, flags: list[TrafficLightFlag]) -> TrafficLightState:
    stake_statuses = (inputs.creator_stake.status, inputs.counterparty_stake.status)
    trusts = [t for t in (inputs.creator_trust, inputs.counterparty_trust) if t is not None]

    if any(
        s in (StakeVerificationStatus.FAILED, StakeVerificationStatus.INSUFFICIENT)
        for s in stake_statuses
    ):
        return TrafficLightState.RED
    if inputs.time_remaining_seconds is not None and inputs.time_remaining_seconds <= 0:
        return TrafficLightState.RED
    if any(t.risk_level == RiskLevel.HIGH or t.has_critical_flags for t in trusts):
        return TrafficLightState.RED

    if (
        all(s.is_satisfied for s in stake_statuses)
        and all(t.risk_level == RiskLevel.LOW for t in trusts)
        and not any(flag.code.is_warning for flag in flags)
    ):
        return TrafficLightState.GREEN
    return TrafficLightState.YELLOW


def build_reason(state: TrafficLightState, flags: list[TrafficLightFlag]) -> str:
    if state == TrafficLightState.GREEN:
        return GREEN_REASON
    if state == TrafficLightState.RED:
        return flags[0].message if flags else RED_FALLBACK_REASON
    return ", ".join(flag.message for flag in flags) if flags else YELLOW_FALLBACK_REASON


def evaluate_traffic_light(inputs: TrafficLightInputs) -> TrafficLightResult:
    """Reduce the inputs to a verdict. Deterministic and side-effect free."""
    flags = collect_flags(inputs)
    state = derive_state(inputs, flags)
    return TrafficLightResult(
        state=state,
        reason=build_reason(state, flags),
        flags=tuple(flags),
        inputs=inputs,
    )


def red_result(reason: str) -> TrafficLightResult:
    """Verdict for challenges that cannot be evaluated (wrong mode, no threshold)."""
    return TrafficLightResult(state=TrafficLightState.RED, reason=reason)
