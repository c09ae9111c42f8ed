"""Point conversion and cashout fee math."""

from decimal import Decimal

import pytest

from pointsledger.core.exceptions import ValidationError
from pointsledger.core.money import calculate_amounts, minor_to_points, points_to_minor


def test_fee_breakdown_round_numbers():
    amounts = calculate_amounts(100, 5)
    assert (amounts.requested_minor, amounts.fee_minor, amounts.final_minor) == (10000, 500, 9500)


def test_fee_rounds_half_up():
    # 3300 * 7.5% = 247.5 -> 248
    amounts = calculate_amounts(33, 7.5)
    assert (amounts.requested_minor, amounts.fee_minor, amounts.final_minor) == (3300, 248, 3052)


def test_fee_is_stable_across_repeats():
    first = calculate_amounts(33, 7.5)
    assert all(calculate_amounts(33, 7.5) == first for _ in range(1000))


def test_float_inputs_are_deterministic():
    assert calculate_amounts(0.1, 12.5) == calculate_amounts("0.1", "12.5")
    assert points_to_minor(0.1) == 10
    assert points_to_minor(1.005) == 101


def test_fee_bounds():
    assert calculate_amounts(10, 0).fee_minor == 0
    assert calculate_amounts(10, 100).final_minor == 0
    with pytest.raises(ValidationError):
        calculate_amounts(10, -1)
    with pytest.raises(ValidationError):
        calculate_amounts(10, 100.01)


@pytest.mark.parametrize("points", [0, -5, "abc", "NaN", True, "1e27"])
def test_invalid_requested_amounts(points):
    with pytest.raises(ValidationError):
        calculate_amounts(points, 5)


def test_minor_to_points():
    assert minor_to_points(9500) == Decimal("95.00")
    assert minor_to_points(-248) == Decimal("-2.48")


def test_oversized_amount_is_a_validation_error():
    with pytest.raises(ValidationError):
        points_to_minor("1e30")
