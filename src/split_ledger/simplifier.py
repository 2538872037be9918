"""Debt simplification: reduce a group's balances to a short list of transfers.

The plan is a read-only suggestion. It may route money differently from the
real pairwise history and is never written back as payments.
"""

import logging
from collections.abc import Mapping

from .exceptions import InconsistentLedgerError
from .models import SuggestedTransfer
from .money import Money

logger = logging.getLogger(__name__)


def _pick(nets: dict[str, int], sign: int) -> str:
    """Member with the largest absolute net of the given sign, ties by id."""
    candidates = [member for member, net in nets.items() if net * sign > 0]
    return min(candidates, key=lambda member: (-abs(nets[member]), member))


def simplify_debts(
    positions: Mapping[str, int], currency: str = "USD"
) -> list[SuggestedTransfer]:
    """
    Greedy minimum-transaction settlement plan.

    Steps:
    1. Drop members whose net position is already zero
    2. Match the largest creditor with the largest debtor (ties by member id)
    3. Transfer the smaller of the two absolute nets and reduce both
    4. Repeat until every net is zero

    Each step zeroes at least one member, so the plan has at most
    members - 1 transfers and its volume equals the sum of positive nets.

    Args:
        positions: Net position per member in minor units
        currency: Currency of the positions

    Returns:
        Suggested transfers in the order they were chosen

    Raises:
        InconsistentLedgerError: If the positions do not sum to zero
    """
    imbalance = sum(positions.values())
    if imbalance != 0:
        logger.error(f"Net positions do not balance: off by {imbalance} minor units")
        raise InconsistentLedgerError(
            f"Net positions must sum to zero, got {imbalance} minor units"
        )

    nets = {member: net for member, net in positions.items() if net != 0}
    transfers: list[SuggestedTransfer] = []

    while nets:
        creditor = _pick(nets, 1)
        debtor = _pick(nets, -1)
        amount = min(nets[creditor], -nets[debtor])

        transfers.append(
            SuggestedTransfer(
                from_user_id=debtor,
                to_user_id=creditor,
                amount=Money(amount=amount, currency=currency),
            )
        )

        nets[creditor] -= amount
        nets[debtor] += amount
        for member in (creditor, debtor):
            if nets[member] == 0:
                del nets[member]

    logger.debug(
        f"Simplified {len(positions)} positions into {len(transfers)} transfers"
    )
    return transfers
