"""ENFORCED-mode policy value objects.

ThresholdTerms is the immutable per-challenge stake policy; TimeoutPolicy holds
the accept/response/dispute windows. Both validate themselves on construction
so the service layer can trust them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from escrow_engine.domain.amounts import parse_amount
from escrow_engine.domain.exceptions import ValidationError

DEFAULT_ACCEPT_TIMEOUT_SECONDS = 900
DEFAULT_RESPONSE_TIMEOUT_SECONDS = 86_400
DEFAULT_DISPUTE_TIMEOUT_SECONDS = 259_200
DEFAULT_REQUIRED_CONFIRMATIONS = 12

# (min, max) seconds for each configurable window.
TIMEOUT_BOUNDS: dict[str, tuple[int, int]] = {
    "accept": (60, 604_800),
    "response": (300, 2_592_000),
    "dispute": (3_600, 2_592_000),
}


def _parse_usd(value: str, name: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError) as err:
        raise ValidationError(f"{name} is not a decimal amount: {value!r}") from err
    if not parsed.is_finite() or parsed < 0 or parsed.as_tuple().exponent < -2:
        raise ValidationError(f"{name} must be non-negative with at most 2 decimals: {value}")
    return parsed


@dataclass(frozen=True)
class ThresholdTerms:
    """Stake policy for an ENFORCED challenge.

    Attributes:
        min_usd / max_usd: Value band of the exchange, as decimal strings.
        allowed_chains: CAIP-2 chain ids, e.g. ``eip155:1``.
        allowed_assets: Asset symbols, compared case-insensitively.
        creator_stake / counterparty_stake: Required amounts in base units.
        stake_currency: Symbol both stakes are denominated in.
        deal_expiry: Optional wall-clock expiry of the deal.
    """

    min_usd: str
    max_usd: str
    allowed_chains: tuple[str, ...]
    allowed_assets: tuple[str, ...]
    creator_stake: str
    counterparty_stake: str
    stake_currency: str
    required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS
    deal_expiry: datetime | None = None

    def __post_init__(self) -> None:
        if not self.allowed_chains:
            raise ValidationError("At least one allowed chain is required")
        if not self.allowed_assets:
            raise ValidationError("At least one allowed asset is required")
        parse_amount(self.creator_stake)
        parse_amount(self.counterparty_stake)
        if _parse_usd(self.min_usd, "min_usd") > _parse_usd(self.max_usd, "max_usd"):
            raise ValidationError("min_usd cannot exceed max_usd")
        if self.required_confirmations < 1:
            raise ValidationError("required_confirmations must be at least 1")

    def validate_against_limit(self, max_transaction_usd: Decimal) -> None:
        if _parse_usd(self.max_usd, "max_usd") > max_transaction_usd:
            raise ValidationError(
                f"max_usd exceeds the transaction limit of {max_transaction_usd} USD",
                code="TRANSACTION_LIMIT_EXCEEDED",
            )

    def is_chain_allowed(self, chain_id: str) -> bool:
        return chain_id in self.allowed_chains

    def is_asset_allowed(self, asset: str) -> bool:
        return asset.upper() in {a.upper() for a in self.allowed_assets}


@dataclass(frozen=True)
class TimeoutPolicy:
    accept_seconds: int = DEFAULT_ACCEPT_TIMEOUT_SECONDS
    response_seconds: int = DEFAULT_RESPONSE_TIMEOUT_SECONDS
    dispute_seconds: int = DEFAULT_DISPUTE_TIMEOUT_SECONDS
    bounds: dict[str, tuple[int, int]] = field(default_factory=lambda: dict(TIMEOUT_BOUNDS))

    def __post_init__(self) -> None:
        for name, value in (
            ("accept", self.accept_seconds),
            ("response", self.response_seconds),
            ("dispute", self.dispute_seconds),
        ):
            low, high = self.bounds[name]
            if not low <= value <= high:
                raise ValidationError(
                    f"{name} timeout must be between {low} and {high} seconds, got {value}",
                    code="INVALID_TIMEOUT",
                )
