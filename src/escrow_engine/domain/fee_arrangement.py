"""Fee arrangement strategy.

Decides who pays the platform fee. For coin tosses the result bit comes from a
public block hash, so anyone can recompute it: the first byte of the hash is
even for heads, odd for tails. The creator calls a side up front; whoever loses
the toss pays.
"""

from __future__ import annotations

from escrow_engine.domain.enums import CoinSide, FeeArrangement, FeePayer
from escrow_engine.domain.exceptions import ValidationError


def coin_side_from_block_hash(block_hash: str) -> CoinSide:
    """Derive a coin side from the parity of a block hash's first byte."""
    digits = block_hash[2:] if block_hash.lower().startswith("0x") else block_hash
    if len(digits) < 2:
        raise ValidationError(f"Block hash too short: {block_hash!r}", code="INVALID_BLOCK_HASH")
    try:
        first_byte = int(digits[:2], 16)
    except ValueError as err:
        raise ValidationError(
            f"Block hash is not hex: {block_hash!r}", code="INVALID_BLOCK_HASH"
        ) from err
    return CoinSide.HEADS if first_byte % 2 == 0 else CoinSide.TAILS


def resolve_fee_payer(
    arrangement: FeeArrangement,
    result: CoinSide | None = None,
    creator_call: CoinSide | None = None,
) -> FeePayer:
    """Return who pays under ``arrangement``.

    ``result`` and ``creator_call`` are only consulted for COIN_TOSS.
    """
    if arrangement == FeeArrangement.CREATOR_PAYS:
        return FeePayer.CREATOR
    if arrangement == FeeArrangement.COUNTERPARTY_PAYS:
        return FeePayer.COUNTERPARTY
    if arrangement == FeeArrangement.SPLIT:
        return FeePayer.SPLIT

    if result is None or creator_call is None:
        raise ValidationError(
            "Coin toss needs both a result and the creator's call",
            code="COIN_TOSS_INCOMPLETE",
        )
    creator_won = result == creator_call
    return FeePayer.COUNTERPARTY if creator_won else FeePayer.CREATOR
