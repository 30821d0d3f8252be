"""Turn a requested split into per-member amounts that cover the expense.

Every strategy returns a list of :class:`~splitledger.models.Split` in the order
the members were given. Equal and percentage splits hand any rounding
remainder to the last member so the total matches the expense to the cent.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, List, Sequence, Tuple

from .errors import (
    DuplicateMember,
    EmptySplitSet,
    NegativeAmount,
    PercentageMismatch,
    SplitMismatch,
    ValidationError,
)
from .models import MemberId, Split
from .money import ZERO, amounts_close, parse_decimal, quantize, to_decimal

HUNDRED = Decimal("100")


class SplitStrategy(str, Enum):
    EQUAL = "equal"
    EXACT = "exact"
    PERCENTAGE = "percentage"

    @classmethod
    def parse(cls, value: Any) -> "SplitStrategy":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown split strategy {value!r}", code="invalid_split_type") from None


def validate(
    amount: Decimal,
    strategy: SplitStrategy,
    splits: Sequence[Tuple[MemberId, Any]],
) -> List[Split]:
    if not splits:
        raise EmptySplitSet("at least one member must share the expense")
    if amount < ZERO:
        raise NegativeAmount("expense amount is negative")

    members = [member for member, _ in splits]
    if len(set(members)) != len(members):
        raise DuplicateMember("a member appears more than once in the split")

    if strategy is SplitStrategy.EQUAL:
        return _equal(amount, members)
    if strategy is SplitStrategy.EXACT:
        return _exact(amount, splits)
    if strategy is SplitStrategy.PERCENTAGE:
        return _percentage(amount, splits)
    raise ValidationError(f"unknown split strategy {strategy!r}", code="invalid_split_type")


def _equal(amount: Decimal, members: List[MemberId]) -> List[Split]:
    per_person = quantize(amount / len(members))
    shares = [per_person] * (len(members) - 1)
    shares.append(amount - sum(shares, ZERO))
    return _build(members, shares)


def _exact(amount: Decimal, splits: Sequence[Tuple[MemberId, Any]]) -> List[Split]:
    members = [member for member, _ in splits]
    shares = [to_decimal(raw) for _, raw in splits]
    for member, share in zip(members, shares):
        if share < ZERO:
            raise NegativeAmount(f"share for {member!r} is negative")
    total = sum(shares, ZERO)
    if not amounts_close(total, amount):
        raise SplitMismatch(f"splits total {total} but expense amount is {amount}")
    return _build(members, shares)


def _percentage(amount: Decimal, splits: Sequence[Tuple[MemberId, Any]]) -> List[Split]:
    members = [member for member, _ in splits]
    percentages = [parse_decimal(raw) for _, raw in splits]

    for member, percentage in zip(members, percentages):
        if percentage < ZERO:
            raise NegativeAmount(f"percentage for {member!r} is negative")
        if percentage > HUNDRED:
            raise PercentageMismatch(f"percentage for {member!r} exceeds 100")

    total = sum(percentages, ZERO)
    if not amounts_close(total, HUNDRED):
        raise PercentageMismatch(f"percentages total {total}, expected 100")

    shares = [quantize(percentage / HUNDRED * amount) for percentage in percentages]
    # rounding drift lands on the last member, as with equal splits
    shares[-1] += amount - sum(shares, ZERO)
    return _build(members, shares)


def _build(members: List[MemberId], shares: List[Decimal]) -> List[Split]:
    for member, share in zip(members, shares):
        if share < ZERO:
            raise NegativeAmount(f"share for {member!r} is negative")
    return [Split(member, share) for member, share in zip(members, shares)]
