"""Service layer that composes the ledger store, split calculator and engine.

This is the surface an RPC or HTTP layer wraps: create expenses with a split,
read balances and simplified debts, mark participants paid or unpaid, settle a
pair, and manage group membership and default splits.
"""

import logging
from collections.abc import Sequence
from datetime import date
from decimal import Decimal

from .aggregator import aggregate_group, member_positions, pair_balance
from .auth import AuthorizationCheck, MembershipPolicy, Operation, authorize
from .clients.accounts import AccountsClient
from .config import Settings
from .db import Database
from .exceptions import (
    CurrencyMismatchError,
    ExpenseLockedError,
    InvalidSplitError,
    MemberInUseError,
    NotFoundError,
)
from .models import (
    Expense,
    Group,
    LinkedTransfer,
    MemberSplitDefault,
    PairBalance,
    Participant,
    ParticipantInput,
    Payment,
    SettlementResult,
    SplitType,
    SuggestedTransfer,
    new_id,
)
from .money import Money
from .notifications import Notifier
from .settlement import SettlementEngine
from .simplifier import simplify_debts
from .splitter import build_split, compute_split
from .store import LedgerStore
from .transfers import AccountTransferService

logger = logging.getLogger(__name__)


def inputs_from_participants(
    split_type: SplitType, participants: Sequence[Participant]
) -> list[ParticipantInput]:
    """Rebuild split inputs from stored participant rows."""
    return [
        ParticipantInput(
            user_id=p.user_id,
            percentage=p.percentage,
            shares=p.shares,
            exact_amount=(
                p.amount_owed.amount if split_type is SplitType.EXACT else None
            ),
        )
        for p in participants
    ]


class LedgerService:
    """Shared-expense ledger operations for one store."""

    def __init__(
        self,
        settings: Settings,
        store: LedgerStore,
        authorizer: AuthorizationCheck | None = None,
        transfers: AccountTransferService | None = None,
        notifier: Notifier | None = None,
    ):
        """Initialize the ledger service."""
        self.settings = settings
        self.store = store
        self.authorizer = authorizer or MembershipPolicy(store)
        self.engine = SettlementEngine(
            store, self.authorizer, transfers=transfers, notifier=notifier
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require_group(self, group_id: str) -> Group:
        group = self.store.load_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def _require_expense(self, expense_id: str) -> Expense:
        expense = self.store.load_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense", expense_id)
        return expense

    def _default_inputs(self, group: Group) -> list[ParticipantInput]:
        defaults = {d.user_id: d for d in group.default_splits}
        inputs = []
        for member in group.members:
            default = defaults.get(member)
            inputs.append(
                ParticipantInput(
                    user_id=member,
                    percentage=default.percentage if default else None,
                    shares=default.shares if default else None,
                )
            )
        return inputs

    def _split(
        self,
        group: Group,
        expense_id: str,
        total: Money,
        split_type: SplitType,
        inputs: Sequence[ParticipantInput],
    ) -> list[Participant]:
        if total.currency != group.currency:
            raise CurrencyMismatchError(group.currency, total.currency)
        for item in inputs:
            if not group.is_member(item.user_id):
                raise InvalidSplitError(
                    f"{item.user_id} is not a member of group {group.id}"
                )
        rule = build_split(split_type, inputs)
        return compute_split(
            expense_id,
            total,
            rule,
            percentage_tolerance=self.settings.percentage_tolerance,
        )

    # ========================================================================
    # Groups
    # ========================================================================

    def create_group(
        self,
        name: str,
        owner_id: str,
        members: Sequence[str] = (),
        currency: str | None = None,
        default_split_type: SplitType = SplitType.EQUAL,
    ) -> Group:
        """Create a group; the owner is always its first member."""
        ordered = [owner_id, *(m for m in dict.fromkeys(members) if m != owner_id)]
        group = Group(
            name=name,
            owner_id=owner_id,
            currency=currency or self.settings.default_currency,
            members=ordered,
            default_split_type=default_split_type,
        )
        self.store.save_group(group)
        logger.info(f"Created group {group.id} ({name}) with {len(ordered)} members")
        return group

    def get_group(self, group_id: str, acting_user_id: str) -> Group:
        group = self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=group_id,
        )
        return group

    def add_member(self, group_id: str, user_id: str, acting_user_id: str) -> Group:
        """Append a member to a group (owner only)."""
        with self.store.transaction(f"group:{group_id}"):
            group = self._require_group(group_id)
            authorize(
                self.authorizer,
                Operation.MANAGE_GROUP,
                acting_user_id,
                group_id=group_id,
            )
            if group.is_member(user_id):
                return group
            updated = group.model_copy(update={"members": [*group.members, user_id]})
            self.store.save_group(updated)

        logger.info(f"Added {user_id} to group {group_id}")
        return updated

    def remove_member(self, group_id: str, user_id: str, acting_user_id: str) -> Group:
        """
        Remove a member from a group.

        The owner may remove anyone; any other member may only remove
        themselves (leave the group).

        Raises:
            MemberInUseError: The member is the owner, or appears in any expense
                or payment of the group
        """
        with self.store.transaction(f"group:{group_id}"):
            group = self._require_group(group_id)
            leaving = acting_user_id == user_id
            authorize(
                self.authorizer,
                Operation.LEAVE_GROUP if leaving else Operation.MANAGE_GROUP,
                acting_user_id,
                group_id=group_id,
                user_ids=(user_id,),
            )
            if not group.is_member(user_id):
                raise NotFoundError("Member", f"{group_id}/{user_id}")
            if user_id == group.owner_id:
                raise MemberInUseError(
                    f"The owner of group {group_id} cannot be removed"
                )

            in_expenses = any(
                expense.payer_id == user_id or expense.get_participant(user_id)
                for expense in self.store.load_group_expenses(group_id)
            )
            in_payments = any(
                user_id in (payment.from_user_id, payment.to_user_id)
                for payment in self.store.load_group_payments(group_id)
            )
            if in_expenses or in_payments:
                raise MemberInUseError(
                    f"{user_id} still appears in the ledger of group {group_id}"
                )

            updated = group.model_copy(
                update={
                    "members": [m for m in group.members if m != user_id],
                    "default_splits": [
                        d for d in group.default_splits if d.user_id != user_id
                    ],
                }
            )
            self.store.save_group(updated)

        logger.info(f"Removed {user_id} from group {group_id}")
        return updated

    def update_default_split(
        self,
        group_id: str,
        split_type: SplitType,
        member_splits: Sequence[MemberSplitDefault],
        acting_user_id: str,
    ) -> Group:
        """
        Set the split applied to new expenses when none is given.

        Raises:
            InvalidSplitError: Weights are missing, invalid, reference
                non-members, or the split type is EXACT
        """
        if split_type is SplitType.EXACT:
            raise InvalidSplitError(
                "EXACT splits depend on the amount and cannot be a default"
            )

        with self.store.transaction(f"group:{group_id}"):
            group = self._require_group(group_id)
            authorize(
                self.authorizer,
                Operation.MANAGE_GROUP,
                acting_user_id,
                group_id=group_id,
            )

            for split in member_splits:
                if not group.is_member(split.user_id):
                    raise InvalidSplitError(
                        f"{split.user_id} is not a member of group {group_id}"
                    )
            if split_type is not SplitType.EQUAL:
                defaults = group.model_copy(update={"default_splits": member_splits})
                inputs = self._default_inputs(defaults)
                rule = build_split(split_type, inputs)
                if split_type is SplitType.PERCENTAGE:
                    percent_total = sum(
                        (s.percentage for s in inputs if s.percentage is not None),
                        Decimal("0"),
                    )
                    if abs(percent_total - 100) > self.settings.percentage_tolerance:
                        raise InvalidSplitError(
                            f"Percentages must add up to 100, got {percent_total}"
                        )
                logger.debug(f"Validated default {rule.split_type.value} split")

            updated = group.model_copy(
                update={
                    "default_split_type": split_type,
                    "default_splits": list(member_splits),
                }
            )
            self.store.save_group(updated)

        logger.info(f"Updated default split of group {group_id} to {split_type.value}")
        return updated

    # ========================================================================
    # Expenses
    # ========================================================================

    def create_expense(
        self,
        group_id: str,
        payer_id: str,
        total: Money,
        description: str,
        acting_user_id: str,
        split_type: SplitType | None = None,
        participants: Sequence[ParticipantInput] | None = None,
        category_id: str | None = None,
        expense_date: date | None = None,
    ) -> Expense:
        """
        Create an expense and split it among participants.

        When split_type is omitted the group's default split type is used; when
        participants are omitted every member takes part with the group's
        default weights.

        Raises:
            NotFoundError: Unknown group, or the payer is not a member
            NotAuthorizedError: Acting user is not a group member
            InvalidSplitError: The split is invalid (nothing is written)
            CurrencyMismatchError: Total is not in the group currency
        """
        group = self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.CREATE_EXPENSE,
            acting_user_id,
            group_id=group_id,
        )
        if not group.is_member(payer_id):
            raise NotFoundError("Member", f"{group_id}/{payer_id}")

        split_type = split_type or group.default_split_type
        if participants is None:
            inputs = self._default_inputs(group)
        else:
            inputs = list(participants)

        expense_id = new_id()
        rows = self._split(group, expense_id, total, split_type, inputs)
        expense = Expense(
            id=expense_id,
            group_id=group_id,
            payer_id=payer_id,
            description=description,
            category_id=category_id,
            total=total,
            split_type=split_type,
            participants=rows,
            **({"expense_date": expense_date} if expense_date else {}),
        )
        self.store.save_expense(expense)

        logger.info(
            f"Created expense {expense.id} in group {group_id}: {total} paid by "
            f"{payer_id}, {split_type.value} across {len(rows)} participants"
        )
        return expense

    def get_expense(self, expense_id: str, acting_user_id: str) -> Expense:
        expense = self._require_expense(expense_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=expense.group_id,
        )
        return expense

    def list_expenses(self, group_id: str, acting_user_id: str) -> list[Expense]:
        self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=group_id,
        )
        return self.store.load_group_expenses(group_id)

    def update_expense(
        self,
        expense_id: str,
        acting_user_id: str,
        total: Money | None = None,
        split_type: SplitType | None = None,
        participants: Sequence[ParticipantInput] | None = None,
        description: str | None = None,
        category_id: str | None = None,
    ) -> Expense:
        """
        Edit an expense, recomputing the whole split from the edited inputs.

        Description and category can always change. Total, split type and
        participants are locked once any participant has been marked paid.

        Raises:
            ExpenseLockedError: The split changed after a payment was recorded
            InvalidSplitError: The edited split is invalid (nothing is written)
        """
        with self.store.transaction(f"expense:{expense_id}"):
            expense = self._require_expense(expense_id)
            authorize(
                self.authorizer,
                Operation.EDIT_EXPENSE,
                acting_user_id,
                group_id=expense.group_id,
                expense_id=expense_id,
            )

            resplit = any(
                value is not None for value in (total, split_type, participants)
            )
            update: dict[str, object] = {}
            if description is not None:
                update["description"] = description
            if category_id is not None:
                update["category_id"] = category_id

            if resplit:
                if expense.has_payments:
                    raise ExpenseLockedError(
                        f"Expense {expense_id} has recorded payments; "
                        f"delete and recreate it to change the split"
                    )
                group = self._require_group(expense.group_id)
                new_total = total or expense.total
                new_type = split_type or expense.split_type
                inputs = (
                    list(participants)
                    if participants is not None
                    else inputs_from_participants(new_type, expense.participants)
                )
                update.update(
                    total=new_total,
                    split_type=new_type,
                    participants=self._split(
                        group, expense_id, new_total, new_type, inputs
                    ),
                )

            updated = expense.model_copy(update=update)
            self.store.save_expense(updated)

        logger.info(f"Updated expense {expense_id} (resplit: {resplit})")
        return updated

    def delete_expense(self, expense_id: str, acting_user_id: str) -> None:
        """Delete an expense. Payments that closed it keep their history."""
        with self.store.transaction(f"expense:{expense_id}"):
            expense = self._require_expense(expense_id)
            authorize(
                self.authorizer,
                Operation.DELETE_EXPENSE,
                acting_user_id,
                group_id=expense.group_id,
                expense_id=expense_id,
            )
            self.store.delete_expense(expense_id)

        logger.info(
            f"Deleted expense {expense_id} from group {expense.group_id} "
            f"({sum(p.is_paid for p in expense.participants)} paid rows)"
        )

    # ========================================================================
    # Balances
    # ========================================================================

    def get_group_balances(
        self, group_id: str, acting_user_id: str
    ) -> list[PairBalance]:
        """Point-in-time net balance of every pair with shared history."""
        group = self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=group_id,
        )
        return aggregate_group(
            group,
            self.store.load_group_expenses(group_id),
            self.store.load_group_payments(group_id),
        )

    def get_pair_balance(
        self, group_id: str, user_a: str, user_b: str, acting_user_id: str
    ) -> PairBalance:
        """Net balance between two members; positive means user_b owes user_a."""
        group = self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=group_id,
        )
        expenses = self.store.load_group_expenses(group_id)
        return pair_balance(group, expenses, user_a, user_b)

    def get_member_balances(
        self, group_id: str, acting_user_id: str
    ) -> dict[str, Money]:
        """Net position of each member (positive = owed money)."""
        group = self._require_group(group_id)
        balances = self.get_group_balances(group_id, acting_user_id)
        return {
            member: Money(amount=net, currency=group.currency)
            for member, net in member_positions(balances, group.members).items()
        }

    def get_simplified_debts(
        self, group_id: str, acting_user_id: str
    ) -> list[SuggestedTransfer]:
        """Suggested minimal set of transfers that zeroes every member."""
        group = self._require_group(group_id)
        balances = self.get_group_balances(group_id, acting_user_id)
        return simplify_debts(member_positions(balances), currency=group.currency)

    def get_payment_history(self, group_id: str, acting_user_id: str) -> list[Payment]:
        """All payments of a group, newest first."""
        self._require_group(group_id)
        authorize(
            self.authorizer,
            Operation.VIEW_GROUP,
            acting_user_id,
            group_id=group_id,
        )
        payments = self.store.load_group_payments(group_id)
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    # ========================================================================
    # Settlement
    # ========================================================================

    def mark_participant_paid(
        self,
        expense_id: str,
        user_id: str,
        acting_user_id: str,
        transfer: LinkedTransfer | None = None,
    ) -> Payment:
        return self.engine.mark_participant_paid(
            expense_id, user_id, acting_user_id, transfer=transfer
        )

    def mark_participant_unpaid(
        self, expense_id: str, user_id: str, acting_user_id: str
    ) -> Participant:
        return self.engine.mark_participant_unpaid(expense_id, user_id, acting_user_id)

    def settle_all(
        self,
        group_id: str,
        user_a: str,
        user_b: str,
        acting_user_id: str,
        transfer: LinkedTransfer | None = None,
    ) -> SettlementResult:
        return self.engine.settle_all(
            group_id, user_a, user_b, acting_user_id, transfer=transfer
        )


def open_service(settings: Settings) -> tuple[LedgerService, Database]:
    """Build a LedgerService over the SQLite database named in settings."""
    db = Database(settings.database_path, timeout=settings.store_timeout_seconds)
    transfers = None
    if settings.accounts_api_url and settings.accounts_api_token:
        transfers = AccountsClient(
            settings.accounts_api_url, settings.accounts_api_token
        )
    return LedgerService(settings, db, transfers=transfers), db
