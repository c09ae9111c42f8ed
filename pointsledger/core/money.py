"""Point <-> minor unit conversion and cashout fee math.

1 point = 1 currency unit = 100 minor units. Every amount is converted to
integer minor units at the boundary; all arithmetic after that is integer
only, with round-half-up as the tie-break.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from pydantic import BaseModel

from pointsledger.core.exceptions import ValidationError

MINOR_PER_POINT = 100

Number = Union[int, str, Decimal, float]


class CashoutAmounts(BaseModel):
    requested_minor: int
    fee_minor: int
    final_minor: int


def to_decimal(value: Number, field: str = "amount") -> Decimal:
    """Exact Decimal for a boundary value. Floats go through str so 0.1 stays 0.1."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={"field": field}) from None
    if not d.is_finite():
        raise ValidationError(f"{field} must be finite", details={"field": field})
    return d


def round_half_up(value: Decimal) -> int:
    try:
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # more digits than the decimal context can hold
        raise ValidationError("Amount is too large", details={"amount": str(value)}) from None


def points_to_minor(points: Number) -> int:
    return round_half_up(to_decimal(points, "points") * MINOR_PER_POINT)


def minor_to_points(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_PER_POINT).quantize(Decimal("0.01"))


def validate_fee_percentage(fee_percentage: Number) -> Decimal:
    pct = to_decimal(fee_percentage, "fee_percentage")
    if pct < 0 or pct > 100:
        raise ValidationError(
            "Fee percentage must be between 0 and 100",
            details={"fee_percentage": str(pct)},
        )
    return pct


def fee_for(requested_minor: int, fee_percentage: Number) -> int:
    pct = validate_fee_percentage(fee_percentage)
    return round_half_up(Decimal(requested_minor) * pct / 100)


def calculate_amounts(points: Number, fee_percentage: Number) -> CashoutAmounts:
    """Fee breakdown for a cashout of `points` at `fee_percentage` percent."""
    requested_minor = points_to_minor(points)
    if requested_minor <= 0:
        raise ValidationError("Requested amount must be positive", details={"points": str(points)})
    fee_minor = fee_for(requested_minor, fee_percentage)
    return CashoutAmounts(
        requested_minor=requested_minor,
        fee_minor=fee_minor,
        final_minor=requested_minor - fee_minor,
    )
