"""Money arithmetic: platform fee split and firm share allocation.

All amounts are Decimal rounded to two places (half-up). Share allocation
truncates every share but the last, which takes the remainder, so the parts
add up to the whole and none of them is negative.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSplit:
    amount: Decimal
    fee_percent: Decimal
    platform_fee: Decimal
    provider_amount: Decimal


def split_amount(amount: Decimal, fee_percent: Decimal) -> FeeSplit:
    """Split a gross amount into platform fee and provider amount."""
    amount = quantize(amount)
    platform_fee = quantize(amount * fee_percent / HUNDRED)
    return FeeSplit(
        amount=amount,
        fee_percent=fee_percent,
        platform_fee=platform_fee,
        provider_amount=amount - platform_fee,
    )


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise (or dollars to cents)."""
    return int((quantize(amount) * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ShareAllocation:
    member_id: str
    percentage: float
    amount: Decimal


def shares_total(percentages: list[float]) -> float:
    return float(sum(Decimal(str(p)) for p in percentages))


def allocate_shares(
    amount: Decimal, shares: list[tuple[str, float]], epsilon: float = 1e-6
) -> list[ShareAllocation]:
    """Allocate ``amount`` across (member_id, percentage) pairs.

    Raises:
        ValueError: if the list is empty, a percentage is not positive, a
            member appears twice, or the percentages miss 100 by more than
            ``epsilon``.
    """
    if not shares:
        raise ValueError("At least one share is required")
    member_ids = [member_id for member_id, _ in shares]
    if len(set(member_ids)) != len(member_ids):
        raise ValueError("Each member may hold only one share")
    if any(pct <= 0 for _, pct in shares):
        raise ValueError("Share percentages must be positive")
    total = shares_total([pct for _, pct in shares])
    if abs(total - 100.0) > epsilon:
        raise ValueError(f"Total percentage must equal 100%, got {total}%")

    allocations: list[ShareAllocation] = []
    allocated = Decimal("0")
    for index, (member_id, pct) in enumerate(shares):
        if index == len(shares) - 1:
            part = quantize(amount) - allocated
        else:
            part = (amount * Decimal(str(pct)) / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)
            allocated += part
        allocations.append(ShareAllocation(member_id=member_id, percentage=pct, amount=part))
    return allocations
