"""Balance aggregation: fold a group's expenses into net pairwise balances.

Everything here is a pure function of its inputs. A balance computed from a
snapshot can be stale the moment it is returned; callers that need to act on
it (settle_all) recompute it inside a store transaction.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence

from .exceptions import InconsistentLedgerError
from .models import Expense, Group, PairBalance, Payment
from .money import Money

logger = logging.getLogger(__name__)


def _inconsistent(message: str) -> InconsistentLedgerError:
    logger.error(f"Inconsistent ledger: {message}")
    return InconsistentLedgerError(message)


def check_expense(group: Group, expense: Expense) -> None:
    """
    Verify that a stored expense still satisfies the ledger invariants.

    Raises:
        InconsistentLedgerError: If the payer or a participant is not a group
            member, the currency differs from the group's, or the participant
            amounts do not add up to the total
    """
    if expense.group_id != group.id:
        raise _inconsistent(f"Expense {expense.id} does not belong to group {group.id}")
    if not group.is_member(expense.payer_id):
        raise _inconsistent(
            f"Expense {expense.id} was paid by {expense.payer_id}, "
            f"who is not a member of group {group.id}"
        )
    if expense.total.currency != group.currency:
        raise _inconsistent(
            f"Expense {expense.id} is in {expense.total.currency}, "
            f"group {group.id} is in {group.currency}"
        )

    owed_sum = 0
    for participant in expense.participants:
        if not group.is_member(participant.user_id):
            raise _inconsistent(
                f"Expense {expense.id} has participant {participant.user_id}, "
                f"who is not a member of group {group.id}"
            )
        owed_sum += participant.amount_owed.amount
    if owed_sum != expense.total.amount:
        raise _inconsistent(
            f"Participants of expense {expense.id} owe {owed_sum} minor units, "
            f"total is {expense.total.amount}"
        )


def _check_payments(group: Group, payments: Iterable[Payment]) -> None:
    for payment in payments:
        for user_id in (payment.from_user_id, payment.to_user_id):
            if not group.is_member(user_id):
                raise _inconsistent(
                    f"Payment {payment.id} involves {user_id}, "
                    f"who is not a member of group {group.id}"
                )


def _canonical(user_a: str, user_b: str) -> tuple[str, str]:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


def aggregate_group(
    group: Group,
    expenses: Sequence[Expense],
    payments: Sequence[Payment] = (),
) -> list[PairBalance]:
    """
    Compute the net balance of every pair of members with shared history.

    Each unpaid participant row (other than the payer's own) is a debt from the
    participant to the payer. Debts are summed per direction and netted into one
    signed balance per pair.

    Args:
        group: The group, used for membership and currency
        expenses: All expenses of the group
        payments: All payments of the group (validated for membership)

    Returns:
        One PairBalance per pair, user_a < user_b, sorted by (user_a, user_b).
        A positive amount means user_b owes user_a.

    Raises:
        InconsistentLedgerError: If any expense or payment violates an invariant
    """
    _check_payments(group, payments)

    unpaid: dict[tuple[str, str], int] = defaultdict(int)  # (creditor, debtor)
    historical: dict[tuple[str, str], int] = defaultdict(int)
    paid: dict[tuple[str, str], int] = defaultdict(int)

    for expense in expenses:
        check_expense(group, expense)
        for participant in expense.debts():
            amount = participant.amount_owed.amount
            pair = _canonical(expense.payer_id, participant.user_id)
            historical[pair] += amount
            if participant.is_paid:
                paid[pair] += amount
            else:
                unpaid[(expense.payer_id, participant.user_id)] += amount

    currency = group.currency
    balances = []
    for user_a, user_b in sorted(historical):
        net = unpaid[(user_a, user_b)] - unpaid[(user_b, user_a)]
        balances.append(
            PairBalance(
                group_id=group.id,
                user_a=user_a,
                user_b=user_b,
                amount=Money(amount=net, currency=currency),
                total_historical=Money(
                    amount=historical[(user_a, user_b)], currency=currency
                ),
                total_paid=Money(amount=paid[(user_a, user_b)], currency=currency),
            )
        )

    logger.debug(
        f"Aggregated {len(expenses)} expenses in group {group.id} "
        f"into {len(balances)} pair balances"
    )
    return balances


def pair_balance(
    group: Group,
    expenses: Sequence[Expense],
    user_a: str,
    user_b: str,
) -> PairBalance:
    """
    Net balance between two members, oriented as requested.

    A positive amount means user_b owes user_a. Pairs without history get a
    zero balance.
    """
    if user_a == user_b:
        raise ValueError("A balance needs two different members")

    canonical = _canonical(user_a, user_b)
    for balance in aggregate_group(group, expenses):
        if (balance.user_a, balance.user_b) == canonical:
            return balance if balance.user_a == user_a else balance.reversed()

    zero = Money.zero(group.currency)
    return PairBalance(
        group_id=group.id,
        user_a=user_a,
        user_b=user_b,
        amount=zero,
        total_historical=zero,
        total_paid=zero,
    )


def member_positions(
    balances: Iterable[PairBalance], members: Iterable[str] = ()
) -> dict[str, int]:
    """
    Net position of each member in minor units across all their pairs.

    Positive means the member is owed money overall, negative means they owe.
    Members passed explicitly appear even when their position is zero.
    """
    positions: dict[str, int] = {member: 0 for member in members}
    for balance in balances:
        net = balance.amount.amount
        positions[balance.user_a] = positions.get(balance.user_a, 0) + net
        positions[balance.user_b] = positions.get(balance.user_b, 0) - net
    return positions
