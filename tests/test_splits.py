from decimal import Decimal

import pytest

from splitledger.errors import (
    DuplicateMember,
    EmptySplitSet,
    InvalidAmount,
    NegativeAmount,
    PercentageMismatch,
    SplitMismatch,
    ValidationError,
)
from splitledger.splits import SplitStrategy, validate


def _total(splits):
    return sum((split.amount for split in splits), Decimal("0"))


def test_equal_split_last_member_absorbs_remainder():
    splits = validate(Decimal("100.00"), SplitStrategy.EQUAL, [("a", None), ("b", None), ("c", None)])

    assert [split.amount for split in splits] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert _total(splits) == Decimal("100.00")


def test_equal_split_keeps_member_order():
    splits = validate(Decimal("90.00"), SplitStrategy.EQUAL, [(3, None), (1, None), (2, None)])

    assert [split.user for split in splits] == [3, 1, 2]
    assert all(split.amount == Decimal("30.00") for split in splits)
    assert not any(split.settled for split in splits)


@pytest.mark.parametrize(
    "amount, members",
    [("0.01", 1), ("0.10", 2), ("7.77", 3), ("99.99", 4), ("1000.00", 7), ("0.00", 3)],
)
def test_equal_split_always_sums_to_amount(amount, members):
    splits = validate(Decimal(amount), SplitStrategy.EQUAL, [(i, None) for i in range(members)])

    assert _total(splits) == Decimal(amount)


def test_exact_split_accepts_matching_amounts():
    splits = validate(Decimal("100.00"), SplitStrategy.EXACT, [("a", "60"), ("b", 40)])

    assert [split.amount for split in splits] == [Decimal("60.00"), Decimal("40.00")]


def test_exact_split_within_tolerance():
    splits = validate(Decimal("100.00"), SplitStrategy.EXACT, [("a", "50.00"), ("b", "49.99")])

    assert _total(splits) == Decimal("99.99")


def test_exact_split_mismatch_is_rejected():
    with pytest.raises(SplitMismatch):
        validate(Decimal("100.00"), SplitStrategy.EXACT, [("a", 40), ("b", 40)])


def test_exact_split_rejects_negative_share():
    with pytest.raises(NegativeAmount):
        validate(Decimal("10.00"), SplitStrategy.EXACT, [("a", 20), ("b", -10)])


def test_exact_split_rejects_missing_value():
    with pytest.raises(InvalidAmount):
        validate(Decimal("10.00"), SplitStrategy.EXACT, [("a", 10), ("b", None)])


def test_percentage_split_derives_amounts():
    splits = validate(Decimal("200.00"), SplitStrategy.PERCENTAGE, [("a", 50), ("b", 30), ("c", 20)])

    assert [split.amount for split in splits] == [Decimal("100.00"), Decimal("60.00"), Decimal("40.00")]


def test_percentage_split_rounding_lands_on_last_member():
    splits = validate(
        Decimal("10.00"),
        SplitStrategy.PERCENTAGE,
        [("a", "33.33"), ("b", "33.33"), ("c", "33.34")],
    )

    assert _total(splits) == Decimal("10.00")
    assert splits[0].amount == Decimal("3.33")


def test_percentage_drift_can_land_on_a_zero_share():
    # 99.995 is within tolerance of 100, the missing 0.005% goes to the last member
    splits = validate(Decimal("1000.00"), SplitStrategy.PERCENTAGE, [("a", "99.995"), ("b", 0)])

    assert [split.amount for split in splits] == [Decimal("999.95"), Decimal("0.05")]
    assert _total(splits) == Decimal("1000.00")


def test_percentage_sum_must_be_hundred():
    with pytest.raises(PercentageMismatch):
        validate(Decimal("100.00"), SplitStrategy.PERCENTAGE, [("a", 50), ("b", 40)])


def test_percentage_over_hundred_is_rejected():
    with pytest.raises(PercentageMismatch):
        validate(Decimal("100.00"), SplitStrategy.PERCENTAGE, [("a", 150), ("b", -50)])


def test_negative_percentage_is_rejected():
    with pytest.raises(NegativeAmount):
        validate(Decimal("100.00"), SplitStrategy.PERCENTAGE, [("a", -10), ("b", 110)])


def test_empty_split_set():
    with pytest.raises(EmptySplitSet):
        validate(Decimal("10.00"), SplitStrategy.EQUAL, [])


def test_negative_expense_amount():
    with pytest.raises(NegativeAmount):
        validate(Decimal("-1.00"), SplitStrategy.EQUAL, [("a", None)])


def test_duplicate_member_is_rejected():
    with pytest.raises(DuplicateMember):
        validate(Decimal("10.00"), SplitStrategy.EQUAL, [("a", None), ("a", None)])


def test_strategy_parse():
    assert SplitStrategy.parse("Percentage") is SplitStrategy.PERCENTAGE
    assert SplitStrategy.parse(" equal ") is SplitStrategy.EQUAL
    with pytest.raises(ValidationError):
        SplitStrategy.parse("shares")
