from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date as date_type
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, Mapping, Optional, Tuple

from .errors import (
    CreatorRemoval,
    InvalidPayload,
    InvalidTransition,
    NegativeAmount,
    NotAMember,
    SplitMismatch,
    ValidationError,
)
from .money import ZERO, amounts_close, to_display

MemberId = Hashable

CATEGORIES = ("Food", "Transportation", "Housing", "Entertainment", "Utilities", "Other")


def check_fields(
    payload: Any,
    required: Iterable[str] = (),
    optional: Iterable[str] = (),
) -> Dict[str, Any]:
    """Reject a request body that is not an object, lacks a required key or
    carries a key nobody asked for. Returns the payload unchanged."""
    if not isinstance(payload, dict):
        raise InvalidPayload("request body must be a JSON object", code="invalid_payload")

    required = tuple(required)
    allowed = set(required) | set(optional)

    missing = [name for name in required if payload.get(name) in (None, "")]
    if missing:
        raise InvalidPayload(", ".join(sorted(missing)), code="missing_fields")

    unknown = [name for name in payload if name not in allowed]
    if unknown:
        raise InvalidPayload(", ".join(sorted(unknown)), code="unknown_fields")

    return payload


@dataclass(frozen=True)
class Member:
    id: MemberId
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Split:
    user: MemberId
    amount: Decimal
    settled: bool = False

    def __post_init__(self) -> None:
        if self.amount < ZERO:
            raise NegativeAmount(f"split for {self.user!r} is negative")

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user, "amount": to_display(self.amount), "settled": self.settled}


@dataclass(frozen=True)
class Expense:
    id: Optional[int]
    description: str
    amount: Decimal
    payer: MemberId
    splits: Tuple[Split, ...]
    date: date_type
    category: str = "Other"
    notes: Optional[str] = None
    group: Optional[int] = None
    receipt: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "splits", tuple(self.splits))
        if not self.description or not self.description.strip():
            raise InvalidPayload("description", code="missing_fields")
        if self.amount < ZERO:
            raise NegativeAmount("expense amount is negative")
        if self.category not in CATEGORIES:
            raise InvalidPayload(f"category must be one of {', '.join(CATEGORIES)}", code="invalid_field")
        total = sum((split.amount for split in self.splits), ZERO)
        if not amounts_close(total, self.amount):
            raise SplitMismatch(f"splits total {total} but expense amount is {self.amount}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": to_display(self.amount),
            "paid_by": self.payer,
            "group_id": self.group,
            "category": self.category,
            "notes": self.notes,
            "receipt": self.receipt,
            "date": self.date.isoformat(),
            "splits": [split.to_dict() for split in self.splits],
        }


@dataclass(frozen=True)
class Balance:
    paid: Decimal = ZERO
    owed: Decimal = ZERO

    @property
    def net(self) -> Decimal:
        return self.paid - self.owed

    def to_dict(self) -> Dict[str, float]:
        return {
            "paid": to_display(self.paid),
            "owed": to_display(self.owed),
            "net": to_display(self.net),
        }


class SettlementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> "SettlementStatus":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown settlement status {value!r}", code="invalid_status") from None

    @property
    def is_terminal(self) -> bool:
        return self is not SettlementStatus.PENDING


@dataclass(frozen=True)
class LinkedExpense:
    expense: int
    amount: Decimal

    def __post_init__(self) -> None:
        if self.amount < ZERO:
            raise NegativeAmount(f"linked amount for expense {self.expense} is negative")


@dataclass(frozen=True)
class Settlement:
    id: Optional[int]
    payer: MemberId
    receiver: MemberId
    amount: Decimal
    group: Optional[int] = None
    linked_expenses: Tuple[LinkedExpense, ...] = ()
    status: SettlementStatus = SettlementStatus.PENDING
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "linked_expenses", tuple(self.linked_expenses))
        if self.amount <= ZERO:
            raise ValidationError("settlement amount must be positive", code="invalid_amount")
        if self.payer == self.receiver:
            raise ValidationError("cannot settle with yourself", code="self_settlement")

    def transition(self, status: SettlementStatus) -> "Settlement":
        if self.status.is_terminal:
            raise InvalidTransition(f"settlement is already {self.status.value}")
        if status is SettlementStatus.PENDING:
            raise InvalidTransition("settlement is already pending")
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payer": self.payer,
            "receiver": self.receiver,
            "amount": to_display(self.amount),
            "group_id": self.group,
            "status": self.status.value,
            "notes": self.notes,
            "expenses": [
                {"expense_id": linked.expense, "amount": to_display(linked.amount)}
                for linked in self.linked_expenses
            ],
        }


@dataclass(frozen=True)
class GroupMember:
    user: MemberId
    is_admin: bool = False


@dataclass(frozen=True)
class Group:
    id: Optional[int]
    name: str
    created_by: MemberId
    members: Tuple[GroupMember, ...] = field(default_factory=tuple)
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidPayload("name", code="missing_fields")
        members = []
        seen = set()
        creator_seen = False
        for member in self.members:
            if member.user in seen:
                continue
            seen.add(member.user)
            if member.user == self.created_by:
                member = GroupMember(member.user, is_admin=True)
                creator_seen = True
            members.append(member)
        if not creator_seen:
            members.insert(0, GroupMember(self.created_by, is_admin=True))
        object.__setattr__(self, "members", tuple(members))

    @property
    def member_ids(self) -> Tuple[MemberId, ...]:
        return tuple(member.user for member in self.members)

    def has_member(self, user: MemberId) -> bool:
        return user in self.member_ids

    def is_admin(self, user: MemberId) -> bool:
        return any(member.user == user and member.is_admin for member in self.members)

    def add_members(self, users: Iterable[MemberId]) -> "Group":
        existing = set(self.member_ids)
        added = []
        for user in users:
            if user in existing:
                continue
            existing.add(user)
            added.append(GroupMember(user))
        return replace(self, members=self.members + tuple(added))

    def remove_member(self, user: MemberId) -> "Group":
        if user == self.created_by:
            raise CreatorRemoval("the group creator cannot be removed")
        if not self.has_member(user):
            raise NotAMember(f"user {user!r} is not in this group")
        return replace(self, members=tuple(m for m in self.members if m.user != user))

    @classmethod
    def from_rows(cls, row: Mapping[str, Any], member_rows: Iterable[Mapping[str, Any]]) -> "Group":
        return cls(
            id=row["id"],
            name=row["name"],
            created_by=row["created_by"],
            description=row.get("description"),
            members=tuple(
                GroupMember(member["user_id"], bool(member["is_admin"])) for member in member_rows
            ),
        )
