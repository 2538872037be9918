"""Split calculation: turn an expense total and a split rule into participant rows."""

import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import assert_never

from pydantic import TypeAdapter, ValidationError

from .exceptions import InvalidSplitError
from .models import (
    EqualSplit,
    ExactSplit,
    Participant,
    ParticipantInput,
    PercentageSplit,
    SharesSplit,
    SplitRule,
    SplitType,
)
from .money import Money, allocate

logger = logging.getLogger(__name__)

DEFAULT_PERCENTAGE_TOLERANCE = Decimal("0.01")

_split_rule_adapter: TypeAdapter[SplitRule] = TypeAdapter(SplitRule)


def build_split(split_type: SplitType, inputs: Sequence[ParticipantInput]) -> SplitRule:
    """
    Convert generic participant inputs into a typed split rule.

    Args:
        split_type: The rule to apply
        inputs: Ordered participant inputs

    Returns:
        The matching split rule model

    Raises:
        InvalidSplitError: If a field the rule needs is missing or out of range
    """
    participants: list[dict[str, object]] = []
    for item in inputs:
        entry: dict[str, object] = {"user_id": item.user_id}
        if split_type is SplitType.PERCENTAGE:
            if item.percentage is None:
                raise InvalidSplitError(f"Missing percentage for {item.user_id}")
            entry["percentage"] = item.percentage
        elif split_type is SplitType.SHARES:
            if item.shares is None:
                raise InvalidSplitError(f"Missing shares for {item.user_id}")
            entry["shares"] = item.shares
        elif split_type is SplitType.EXACT:
            if item.exact_amount is None:
                raise InvalidSplitError(f"Missing exact amount for {item.user_id}")
            entry["amount"] = item.exact_amount
        participants.append(entry)

    try:
        return _split_rule_adapter.validate_python(
            {"split_type": split_type, "participants": participants}
        )
    except ValidationError as e:
        raise InvalidSplitError(f"Invalid {split_type.value} split: {e}") from e


def _check_participants(user_ids: list[str]) -> None:
    if not user_ids:
        raise InvalidSplitError("A split needs at least one participant")
    if len(set(user_ids)) != len(user_ids):
        raise InvalidSplitError("Each member may appear only once in a split")


def compute_split(
    expense_id: str,
    total: Money,
    rule: SplitRule,
    percentage_tolerance: Decimal = DEFAULT_PERCENTAGE_TOLERANCE,
) -> list[Participant]:
    """
    Compute owed amounts for every participant of an expense.

    The whole split is recomputed from the inputs on every call; there is no
    incremental edit path.

    Args:
        expense_id: Expense the participant rows belong to
        total: Expense total
        rule: Typed split rule with ordered participants
        percentage_tolerance: Allowed distance of a percentage sum from 100

    Returns:
        Participant rows in input order whose amounts sum exactly to total

    Raises:
        InvalidSplitError: If the inputs cannot produce an exact split
    """
    if total.amount <= 0:
        raise InvalidSplitError(f"Expense total must be positive, got {total}")

    _check_participants([p.user_id for p in rule.participants])

    rows: list[Participant]
    match rule:
        case EqualSplit(participants=shares):
            amounts = allocate(total, [1] * len(shares))
            rows = [
                Participant(expense_id=expense_id, user_id=s.user_id, amount_owed=a)
                for s, a in zip(shares, amounts)
            ]
        case PercentageSplit(participants=shares):
            percent_total = sum((s.percentage for s in shares), Decimal("0"))
            if abs(percent_total - 100) > percentage_tolerance:
                raise InvalidSplitError(
                    f"Percentages must add up to 100, got {percent_total}"
                )
            weights = [s.percentage for s in shares]
            if not any(weights):
                raise InvalidSplitError("At least one percentage must be positive")
            amounts = allocate(total, weights)
            rows = [
                Participant(
                    expense_id=expense_id,
                    user_id=s.user_id,
                    amount_owed=a,
                    percentage=s.percentage,
                )
                for s, a in zip(shares, amounts)
            ]
        case SharesSplit(participants=shares):
            amounts = allocate(total, [s.shares for s in shares])
            rows = [
                Participant(
                    expense_id=expense_id,
                    user_id=s.user_id,
                    amount_owed=a,
                    shares=s.shares,
                )
                for s, a in zip(shares, amounts)
            ]
        case ExactSplit(participants=shares):
            exact_total = sum(s.amount for s in shares)
            if exact_total != total.amount:
                raise InvalidSplitError(
                    f"Exact amounts add up to {exact_total} minor units, "
                    f"expected {total.amount}"
                )
            rows = [
                Participant(
                    expense_id=expense_id,
                    user_id=s.user_id,
                    amount_owed=Money(amount=s.amount, currency=total.currency),
                )
                for s in shares
            ]
        case _:
            assert_never(rule)

    # Final verification
    split_sum = sum(row.amount_owed.amount for row in rows)
    assert split_sum == total.amount, "Split does not add up to the total"

    logger.debug(
        f"Split expense {expense_id} ({rule.split_type.value}) "
        f"{total} across {len(rows)} participants"
    )
    return rows
