"""Settlement engine: mark participants paid or unpaid and settle pair balances.

Every operation holds the store's lock for the pair of members it touches and
writes its changes inside one store transaction, so two racing calls cannot
both act on the same unpaid rows. A linked account transfer runs while only
the pair lock is held; the ledger is then re-read inside the transaction and,
if it changed or the write fails, the transfer is reversed before the error
propagates.
"""

import logging
from typing import NamedTuple

from .aggregator import pair_balance
from .auth import AuthorizationCheck, Operation, authorize
from .exceptions import (
    AlreadyPaidError,
    InconsistentLedgerError,
    LinkedTransferFailedError,
    NothingToSettleError,
    NotFoundError,
    NotPaidError,
    StoreUnavailableError,
)
from .models import (
    Expense,
    LinkedTransfer,
    Participant,
    Payment,
    PaymentReversal,
    SettlementResult,
    new_id,
    utcnow,
)
from .money import Money
from .notifications import EventType, LedgerEvent, LoggingNotifier, Notifier
from .store import LedgerStore
from .transfers import AccountTransferService

logger = logging.getLogger(__name__)


def pair_scope(group_id: str, user_a: str, user_b: str) -> str:
    """Contention boundary shared by every change between two members."""
    first, second = sorted((user_a, user_b))
    return f"group:{group_id}:{first}:{second}"


class SettlementPlan(NamedTuple):
    """What settle_all is about to write, computed from one ledger read."""

    debtor: str
    creditor: str
    amount: Money
    rows: list[Participant]

    @property
    def expense_ids(self) -> list[str]:
        return list(dict.fromkeys(p.expense_id for p in self.rows))


class SettlementEngine:
    """Applies payment state changes to the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        authorizer: AuthorizationCheck,
        transfers: AccountTransferService | None = None,
        notifier: Notifier | None = None,
    ):
        """Initialize the settlement engine."""
        self.store = store
        self.authorizer = authorizer
        self.transfers = transfers
        self.notifier = notifier or LoggingNotifier()

    # ========================================================================
    # Helpers
    # ========================================================================

    def _load_row(self, expense_id: str, user_id: str) -> tuple[Expense, Participant]:
        expense = self.store.load_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense", expense_id)
        participant = expense.get_participant(user_id)
        if participant is None:
            raise NotFoundError("Participant", f"{expense_id}/{user_id}")
        return expense, participant

    def _payable_row(
        self, expense_id: str, user_id: str, acting_user_id: str
    ) -> tuple[Expense, Participant]:
        expense, participant = self._load_row(expense_id, user_id)
        authorize(
            self.authorizer,
            Operation.MARK_PAID,
            acting_user_id,
            group_id=expense.group_id,
            expense_id=expense_id,
            user_ids=(user_id,),
        )
        if user_id == expense.payer_id:
            raise AlreadyPaidError(
                expense_id, user_id, "The payer's own share is not a debt"
            )
        if participant.is_paid:
            raise AlreadyPaidError(expense_id, user_id)
        return expense, participant

    def _plan_settlement(
        self, group_id: str, user_a: str, user_b: str, acting_user_id: str
    ) -> SettlementPlan:
        group = self.store.load_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        for user_id in (user_a, user_b):
            if not group.is_member(user_id):
                raise NotFoundError("Member", f"{group_id}/{user_id}")
        authorize(
            self.authorizer,
            Operation.SETTLE_ALL,
            acting_user_id,
            group_id=group_id,
            user_ids=(user_a, user_b),
        )

        expenses = self.store.load_group_expenses(group_id)
        balance = pair_balance(group, expenses, user_a, user_b)
        if balance.amount.is_zero():
            raise NothingToSettleError(group_id, user_a, user_b)
        assert balance.debtor_id is not None and balance.creditor_id is not None

        pair = {user_a, user_b}
        rows = [
            participant
            for expense in expenses
            for participant in expense.debts()
            if not participant.is_paid
            and {expense.payer_id, participant.user_id} == pair
        ]
        return SettlementPlan(
            debtor=balance.debtor_id,
            creditor=balance.creditor_id,
            amount=abs(balance.amount),
            rows=rows,
        )

    def _perform_transfer(
        self,
        transfer: LinkedTransfer,
        from_user_id: str,
        to_user_id: str,
        amount: Money,
        reference: str,
    ) -> str:
        if self.transfers is None:
            raise LinkedTransferFailedError("No account transfer service is configured")
        from_account_id, to_account_id = transfer.route(from_user_id, to_user_id)
        try:
            return self.transfers.transfer(
                from_account_id, to_account_id, amount, reference
            )
        except Exception as e:
            logger.error(f"Linked transfer for {reference} failed: {e}")
            raise LinkedTransferFailedError(
                f"Transfer of {amount} for {reference} failed: {e}"
            ) from e

    def _reverse_transfer(self, transfer_id: str, reference: str) -> None:
        """Compensate a transfer whose ledger update did not commit."""
        logger.warning(
            f"Ledger update for {reference} failed, reversing transfer {transfer_id}"
        )
        assert self.transfers is not None
        try:
            self.transfers.reverse(transfer_id, reference)
        except Exception as e:
            logger.critical(
                f"Could not reverse transfer {transfer_id} for {reference}: {e}. "
                f"Manual reconciliation required."
            )

    def _notify(
        self,
        event_type: EventType,
        payment: Payment,
        amount: Money,
        expense_ids: list[str],
    ) -> None:
        event = LedgerEvent(
            event_type=event_type,
            group_id=payment.group_id,
            from_user_id=payment.from_user_id,
            to_user_id=payment.to_user_id,
            amount=amount,
            payment_id=payment.id,
            expense_ids=expense_ids,
        )
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Notifier failed for {event_type} ({payment.id}): {e}")

    # ========================================================================
    # Operations
    # ========================================================================

    def mark_participant_paid(
        self,
        expense_id: str,
        user_id: str,
        acting_user_id: str,
        transfer: LinkedTransfer | None = None,
    ) -> Payment:
        """
        Mark one participant row paid and record the payment.

        Args:
            expense_id: Expense the row belongs to
            user_id: The debtor whose share is paid
            acting_user_id: User requesting the change (payer or debtor)
            transfer: Optional member accounts to move the money between

        Returns:
            The recorded payment (debtor -> payer, closing this expense)

        Raises:
            NotFoundError: Unknown expense or participant
            NotAuthorizedError: Acting user is neither payer nor debtor
            AlreadyPaidError: Row already paid, or it is the payer's own row
            LinkedTransferFailedError: The transfer failed; nothing was written
            StoreUnavailableError: Timeout, conflict, or the row changed while
                the transfer ran; nothing was written
        """
        expense, _ = self._load_row(expense_id, user_id)
        scope = pair_scope(expense.group_id, expense.payer_id, user_id)
        payment_id = new_id()
        transfer_id: str | None = None

        with self.store.scope_lock(scope):
            expense, participant = self._payable_row(
                expense_id, user_id, acting_user_id
            )
            amount = participant.amount_owed
            if transfer is not None:
                transfer_id = self._perform_transfer(
                    transfer, user_id, expense.payer_id, amount, payment_id
                )

            try:
                with self.store.transaction(scope):
                    _, current = self._payable_row(expense_id, user_id, acting_user_id)
                    if current != participant:
                        raise StoreUnavailableError(
                            f"Row {expense_id}/{user_id} changed during the transfer"
                        )

                    now = utcnow()
                    payment = Payment(
                        id=payment_id,
                        group_id=expense.group_id,
                        from_user_id=user_id,
                        to_user_id=expense.payer_id,
                        amount=amount,
                        expense_ids=[expense_id],
                        linked_transfer_id=transfer_id,
                        created_at=now,
                    )
                    self.store.append_payment(payment)
                    self.store.save_participant(
                        participant.model_copy(
                            update={
                                "is_paid": True,
                                "paid_at": now,
                                "linked_payment_id": payment_id,
                                "linked_transfer_id": transfer_id,
                            }
                        ),
                        expected_is_paid=False,
                    )
            except Exception:
                if transfer_id is not None:
                    self._reverse_transfer(transfer_id, payment_id)
                raise

        logger.info(
            f"Marked {user_id} paid on expense {expense_id}: {amount} "
            f"(payment {payment_id})"
        )
        self._notify("payment_recorded", payment, amount, [expense_id])
        return payment

    def settle_all(
        self,
        group_id: str,
        user_a: str,
        user_b: str,
        acting_user_id: str,
        transfer: LinkedTransfer | None = None,
    ) -> SettlementResult:
        """
        Settle the net balance between two members.

        The balance is recomputed under the pair lock. Every unpaid row
        between the two members (both directions) is marked paid and a single
        payment for the net amount is recorded from the debtor to the creditor.
        A linked transfer moves the money from the debtor's account to the
        creditor's, whichever way round the members were passed. Calling this
        twice settles once; the second call finds a zero balance.

        Raises:
            NotFoundError: Unknown group, or a user is not a member
            NotAuthorizedError: Acting user is not one of the two members
            NothingToSettleError: The net balance is zero
            LinkedTransferFailedError: The transfer failed, or a member has no
                linked account; nothing was written
            StoreUnavailableError: Timeout, conflict, or the balance changed
                while the transfer ran; nothing was written
        """
        if user_a == user_b:
            raise ValueError("Cannot settle a balance between a member and themselves")

        scope = pair_scope(group_id, user_a, user_b)
        payment_id = new_id()
        transfer_id: str | None = None

        with self.store.scope_lock(scope):
            plan = self._plan_settlement(group_id, user_a, user_b, acting_user_id)
            if transfer is not None:
                transfer_id = self._perform_transfer(
                    transfer, plan.debtor, plan.creditor, plan.amount, payment_id
                )

            try:
                with self.store.transaction(scope):
                    current = self._plan_settlement(
                        group_id, user_a, user_b, acting_user_id
                    )
                    if current != plan:
                        raise StoreUnavailableError(
                            f"Balance between {user_a} and {user_b} changed "
                            f"during the transfer"
                        )

                    now = utcnow()
                    payment = Payment(
                        id=payment_id,
                        group_id=group_id,
                        from_user_id=plan.debtor,
                        to_user_id=plan.creditor,
                        amount=plan.amount,
                        expense_ids=plan.expense_ids,
                        linked_transfer_id=transfer_id,
                        created_at=now,
                    )
                    self.store.append_payment(payment)
                    for participant in plan.rows:
                        self.store.save_participant(
                            participant.model_copy(
                                update={
                                    "is_paid": True,
                                    "paid_at": now,
                                    "linked_payment_id": payment_id,
                                    "linked_transfer_id": transfer_id,
                                }
                            ),
                            expected_is_paid=False,
                        )
            except Exception:
                if transfer_id is not None:
                    self._reverse_transfer(transfer_id, payment_id)
                raise

        logger.info(
            f"Settled {plan.debtor} -> {plan.creditor} in group {group_id}: "
            f"{plan.amount} closing {len(plan.rows)} rows on "
            f"{len(payment.expense_ids)} expenses (payment {payment_id})"
        )
        self._notify("balance_settled", payment, plan.amount, payment.expense_ids)
        return SettlementResult(
            payment=payment,
            settled_participants=len(plan.rows),
            transfer_id=transfer_id,
        )

    def mark_participant_unpaid(
        self,
        expense_id: str,
        user_id: str,
        acting_user_id: str,
    ) -> Participant:
        """
        Revert a paid participant row to unpaid.

        The payment that closed the row is kept: the expense is removed from
        its closed-expense set and a reversal record is appended. No money is
        moved back.

        Raises:
            NotFoundError: Unknown expense or participant
            NotAuthorizedError: Acting user is not the payer of the expense
            NotPaidError: The row is not paid
            InconsistentLedgerError: The row links to a payment that is missing
            StoreUnavailableError: Timeout or conflict; nothing was written
        """
        expense, _ = self._load_row(expense_id, user_id)
        scope = pair_scope(expense.group_id, expense.payer_id, user_id)

        with self.store.transaction(scope):
            expense, participant = self._load_row(expense_id, user_id)
            authorize(
                self.authorizer,
                Operation.MARK_UNPAID,
                acting_user_id,
                group_id=expense.group_id,
                expense_id=expense_id,
                user_ids=(user_id,),
            )
            if not participant.is_paid:
                raise NotPaidError(expense_id, user_id)

            payment: Payment | None = None
            if participant.linked_payment_id:
                payment = self.store.load_payment(participant.linked_payment_id)
                if payment is None:
                    logger.error(
                        f"Participant {user_id} on expense {expense_id} links to "
                        f"missing payment {participant.linked_payment_id}"
                    )
                    raise InconsistentLedgerError(
                        f"Payment {participant.linked_payment_id} not found"
                    )

            reverted = participant.model_copy(
                update={
                    "is_paid": False,
                    "paid_at": None,
                    "linked_payment_id": None,
                    "linked_transfer_id": None,
                }
            )
            self.store.save_participant(reverted, expected_is_paid=True)

            if payment is not None:
                self.store.remove_payment_expense(payment.id, expense_id)
                self.store.append_payment_reversal(
                    PaymentReversal(
                        payment_id=payment.id,
                        expense_id=expense_id,
                        user_id=user_id,
                        reversed_by=acting_user_id,
                    )
                )

        logger.info(
            f"Marked {user_id} unpaid on expense {expense_id} "
            f"(payment {payment.id if payment else 'none'})"
        )
        if payment is not None:
            self._notify(
                "payment_reversed", payment, participant.amount_owed, [expense_id]
            )
        return reverted
