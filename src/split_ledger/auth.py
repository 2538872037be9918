"""Authorization checks consulted before every ledger mutation."""

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from .exceptions import NotAuthorizedError
from .store import LedgerStore

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Ledger operations subject to authorization."""

    VIEW_GROUP = "view group"
    MANAGE_GROUP = "manage group"
    LEAVE_GROUP = "leave group"
    CREATE_EXPENSE = "create expense"
    EDIT_EXPENSE = "edit expense"
    DELETE_EXPENSE = "delete expense"
    MARK_PAID = "mark participant paid"
    MARK_UNPAID = "mark participant unpaid"
    SETTLE_ALL = "settle balance"


class AuthorizationCheck(Protocol):
    """Decides whether a user may perform an operation."""

    def is_allowed(
        self,
        operation: Operation,
        acting_user_id: str,
        *,
        group_id: str,
        expense_id: str | None = None,
        user_ids: Sequence[str] = (),
    ) -> bool:
        """
        Args:
            operation: The operation about to run
            acting_user_id: The user requesting it
            group_id: Group the operation touches
            expense_id: Expense the operation touches, if any
            user_ids: Members the operation acts on (debtor, or both sides of a
                settlement)
        """
        ...


class MembershipPolicy:
    """Default rules of the shared-expense ledger.

    - Group management is reserved to the group owner.
    - Any member may leave the group on their own behalf.
    - Any member may view the group and add expenses.
    - The payer or the group owner may edit or delete an expense.
    - A participant row may be marked paid by its payer or by its debtor.
    - Only the payer may mark a row unpaid again.
    - A balance may be settled by either of the two members involved.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def is_allowed(
        self,
        operation: Operation,
        acting_user_id: str,
        *,
        group_id: str,
        expense_id: str | None = None,
        user_ids: Sequence[str] = (),
    ) -> bool:
        group = self.store.load_group(group_id)
        if group is None:
            return False

        if operation is Operation.MANAGE_GROUP:
            return acting_user_id == group.owner_id
        if not group.is_member(acting_user_id):
            return False
        if operation is Operation.LEAVE_GROUP:
            return acting_user_id in user_ids
        if operation in (Operation.VIEW_GROUP, Operation.CREATE_EXPENSE):
            return True
        if operation is Operation.SETTLE_ALL:
            return acting_user_id in user_ids

        expense = self.store.load_expense(expense_id) if expense_id else None
        if expense is None:
            return False
        is_payer = acting_user_id == expense.payer_id

        if operation in (Operation.EDIT_EXPENSE, Operation.DELETE_EXPENSE):
            return is_payer or acting_user_id == group.owner_id
        if operation is Operation.MARK_PAID:
            return is_payer or acting_user_id in user_ids
        if operation is Operation.MARK_UNPAID:
            return is_payer

        logger.warning(f"No authorization rule for {operation.value}")
        return False


class AllowAll:
    """Authorization check that allows everything (trusted local use)."""

    def is_allowed(
        self,
        operation: Operation,
        acting_user_id: str,
        *,
        group_id: str,
        expense_id: str | None = None,
        user_ids: Sequence[str] = (),
    ) -> bool:
        return True


def authorize(
    check: AuthorizationCheck,
    operation: Operation,
    acting_user_id: str,
    *,
    group_id: str,
    expense_id: str | None = None,
    user_ids: Sequence[str] = (),
) -> None:
    """
    Consult an authorization check and raise if it denies the operation.

    Raises:
        NotAuthorizedError: If the check denies the operation
    """
    allowed = check.is_allowed(
        operation,
        acting_user_id,
        group_id=group_id,
        expense_id=expense_id,
        user_ids=user_ids,
    )
    if not allowed:
        logger.warning(f"Denied {operation.value} to {acting_user_id}")
        raise NotAuthorizedError(operation.value, acting_user_id)
