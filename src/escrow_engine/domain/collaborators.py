"""Collaborator Protocols.

Defines the narrow interfaces the engine consumes from the outside world:
the wallet trust-score service, the on-chain confirmation source and the
event emitter. These are Protocols (structural subtyping) so concrete clients
don't need to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from httpx, Redis, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from escrow_engine.domain.enums import FlagSeverity, RiskLevel

# Score bands used when a provider reports a score without a risk level.
LOW_RISK_MIN_SCORE = 70
MEDIUM_RISK_MIN_SCORE = 40


def risk_level_for_score(score: int) -> RiskLevel:
    """Map a 0..100 trust score onto a coarse risk level."""
    if score >= LOW_RISK_MIN_SCORE:
        return RiskLevel.LOW
    if score >= MEDIUM_RISK_MIN_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


@dataclass(frozen=True)
class TrustFlag:
    """A single observation attached to a wallet's trust score."""

    severity: FlagSeverity
    type: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"severity": self.severity.value, "type": self.type, "description": self.description}


@dataclass(frozen=True)
class TrustScore:
    """Trust assessment of a wallet.

    Attributes:
        wallet: Lower-cased wallet address the score belongs to.
        score: 0 (worst) to 100 (best).
        risk_level: Coarse LOW / MEDIUM / HIGH band.
        flags: Individual findings; any CRITICAL flag is disqualifying.
        confidence: 0.0 - 1.0, how much on-chain history backs the score.
    """

    wallet: str
    score: int
    risk_level: RiskLevel
    flags: tuple[TrustFlag, ...] = field(default_factory=tuple)
    confidence: float = 0.0

    @property
    def has_critical_flags(self) -> bool:
        return any(flag.severity == FlagSeverity.CRITICAL for flag in self.flags)

    def to_dict(self) -> dict:
        """Serialize for caching and for the evaluation audit record."""
        return {
            "wallet": self.wallet,
            "score": self.score,
            "risk_level": self.risk_level.value,
            "flags": [flag.to_dict() for flag in self.flags],
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TrustScore:
        score = int(data["score"])
        raw_level = data.get("risk_level") or data.get("riskLevel")
        return cls(
            wallet=str(data.get("wallet", "")).lower(),
            score=score,
            risk_level=RiskLevel(raw_level) if raw_level else risk_level_for_score(score),
            flags=tuple(
                TrustFlag(
                    severity=FlagSeverity(flag["severity"]),
                    type=str(flag.get("type", "")),
                    description=str(flag.get("description", "")),
                )
                for flag in data.get("flags", [])
            ),
            confidence=float(data.get("confidence", 0.0)),
        )


@runtime_checkable
class TrustScoreProvider(Protocol):
    """Anything that can score a wallet.

    Implementations raise UpstreamUnavailableError when the service cannot be
    reached; the Traffic Light treats that as "no penalty".
    """

    async def get_trust_score(self, wallet: str) -> TrustScore: ...


@runtime_checkable
class ConfirmationSource(Protocol):
    """Reports how many confirmations a deposit transaction has on its chain."""

    async def get_confirmations(self, chain_id: str, tx_hash: str) -> int: ...


@runtime_checkable
class EventEmitter(Protocol):
    """Fire-and-forget notification sink.

    Implementations must never raise: a failed emission is logged, never
    allowed to roll back engine state.
    """

    async def emit(self, event_type: str, challenge_id: str, payload: dict) -> None: ...
