"""Net balances for a group and greedy settle-up suggestions.

Both functions are pure: they take a snapshot fetched by the caller and
return fresh objects, so callers recompute after every write instead of
caching results.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .errors import MemberNotFound
from .models import Balance, Expense, MemberId, Settlement, SettlementStatus
from .money import ZERO, is_settled, quantize, to_display


@dataclass(frozen=True)
class Suggestion:
    from_member: MemberId
    to_member: MemberId
    amount: Decimal


def aggregate(
    members: Iterable[MemberId],
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement] = (),
) -> Dict[MemberId, Balance]:
    paid: Dict[MemberId, Decimal] = {member: ZERO for member in members}
    owed: Dict[MemberId, Decimal] = {member: ZERO for member in paid}

    for expense in expenses:
        _require(paid, expense.payer, f"payer of expense {expense.id}")
        paid[expense.payer] += expense.amount
        for split in expense.splits:
            _require(owed, split.user, f"split of expense {expense.id}")
            owed[split.user] += split.amount

    # a completed repayment moves money from payer to receiver
    for settlement in settlements:
        if settlement.status is not SettlementStatus.COMPLETED:
            continue
        _require(paid, settlement.payer, f"payer of settlement {settlement.id}")
        _require(owed, settlement.receiver, f"receiver of settlement {settlement.id}")
        paid[settlement.payer] += settlement.amount
        owed[settlement.receiver] += settlement.amount

    return {member: Balance(paid[member], owed[member]) for member in paid}


def _require(ledger: Mapping[MemberId, Decimal], member: MemberId, context: str) -> None:
    if member not in ledger:
        raise MemberNotFound(member, context)


def suggest(nets: Mapping[MemberId, Decimal]) -> List[Suggestion]:
    """Pair the largest debtor with the largest creditor until one side runs out.

    This is a greedy heuristic. It always clears every balance but can use
    more payments than the smallest possible set.
    """
    debtors = [[member, net] for member, net in nets.items() if net < ZERO and not is_settled(net)]
    creditors = [[member, net] for member, net in nets.items() if net > ZERO and not is_settled(net)]

    # sorted() is stable, so equal balances keep their input order
    debtors = sorted(debtors, key=lambda entry: entry[1])
    creditors = sorted(creditors, key=lambda entry: -entry[1])

    suggestions: List[Suggestion] = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]

        amount = min(-debtor[1], creditor[1])
        if amount > ZERO:
            suggestions.append(Suggestion(debtor[0], creditor[0], quantize(amount)))

        debtor[1] += amount
        creditor[1] -= amount

        if is_settled(debtor[1]):
            i += 1
        if is_settled(creditor[1]):
            j += 1

    return suggestions


def net_balances(balances: Mapping[MemberId, Balance]) -> Dict[MemberId, Decimal]:
    return {member: balance.net for member, balance in balances.items()}


def serialize_balances(balances: Mapping[MemberId, Balance]) -> Dict[str, Dict[str, float]]:
    return {str(member): balance.to_dict() for member, balance in balances.items()}


def serialize_suggestions(
    suggestions: Sequence[Suggestion],
    names: Mapping[MemberId, str],
) -> List[Dict[str, Any]]:
    return [
        {
            "from": {"id": suggestion.from_member, "name": names.get(suggestion.from_member)},
            "to": {"id": suggestion.to_member, "name": names.get(suggestion.to_member)},
            "amount": to_display(suggestion.amount),
        }
        for suggestion in suggestions
    ]
