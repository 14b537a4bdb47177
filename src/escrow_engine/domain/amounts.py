"""Stake amount arithmetic.

Amounts are unsigned big integers in their smallest unit (wei for ETH),
carried as decimal strings end to end. Comparisons use Python ints, never
floats: ``0.1 ETH`` is ``"100000000000000000"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from escrow_engine.domain.exceptions import InvalidAmountError

_AMOUNT_RE = re.compile(r"[0-9]+")


def parse_amount(amount: str) -> int:
    """Parse an unsigned integer amount string.

    Raises:
        InvalidAmountError: If the string is empty, signed, fractional or not numeric.
    """
    if not isinstance(amount, str) or not _AMOUNT_RE.fullmatch(amount):
        raise InvalidAmountError(str(amount))
    return int(amount)


@dataclass(frozen=True)
class StakeAmountCheck:
    """Result of comparing a deposited amount with the required amount.

    Attributes:
        valid: True when deposited >= required.
        deficit: Decimal string of ``max(0, required - deposited)``.
    """

    valid: bool
    deficit: str

    def to_dict(self) -> dict:
        return {"valid": self.valid, "deficit": self.deficit}


def validate_stake_amount(deposited: str, required: str) -> StakeAmountCheck:
    """Compare two amount strings exactly.

    >>> validate_stake_amount("999999999999999999", "1000000000000000000")
    StakeAmountCheck(valid=False, deficit='1')
    """
    deposited_value = parse_amount(deposited)
    required_value = parse_amount(required)
    deficit = max(0, required_value - deposited_value)
    return StakeAmountCheck(valid=deficit == 0, deficit=str(deficit))


def is_zero(amount: str) -> bool:
    return parse_amount(amount) == 0
