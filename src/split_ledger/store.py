"""
Abstract ledger storage interface.

The settlement engine only talks to storage through this contract, so the
SQLite implementation in db.py can be swapped for a server database without
touching ledger logic. Every mutating engine operation runs inside
transaction(); reads run outside one, take no lock, and see a consistent
snapshot.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager

from .models import Expense, Group, Participant, Payment, PaymentReversal


class LedgerStore(ABC):
    """Durable storage of groups, expenses, participants and payments."""

    @abstractmethod
    def scope_lock(self, scope: str) -> AbstractContextManager[None]:
        """
        Hold a contention boundary without opening a unit of work.

        Callers that must talk to the outside world between reading and
        writing (e.g. a bank transfer) hold the scope lock across both steps,
        so no database transaction stays open while they wait. A
        transaction() on the same scope from the same thread joins the lock.

        Raises:
            StoreUnavailableError: If the lock is not acquired within the
                store's timeout
        """

    @abstractmethod
    def transaction(self, scope: str) -> AbstractContextManager[None]:
        """
        Open a unit of work.

        Everything executed inside the block commits together or not at all.
        Nested calls join the outer unit of work. Units of work on different
        scopes never wait on each other's scope lock.

        Args:
            scope: Contention boundary, e.g. "group:alice:bob"

        Raises:
            StoreUnavailableError: If the unit of work cannot start or commit
                within the store's timeout
        """

    @abstractmethod
    def load_group(self, group_id: str) -> Group | None:
        """Load a group with its ordered members and default splits."""

    @abstractmethod
    def save_group(self, group: Group) -> None:
        """Insert or replace a group, including members and default splits."""

    @abstractmethod
    def load_expense(self, expense_id: str) -> Expense | None:
        """Load an expense with its participant rows."""

    @abstractmethod
    def save_expense(self, expense: Expense) -> None:
        """Insert or replace an expense and all of its participant rows."""

    @abstractmethod
    def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense and its participant rows. Returns False if absent."""

    @abstractmethod
    def load_participant(self, expense_id: str, user_id: str) -> Participant | None:
        """Load a single participant row."""

    @abstractmethod
    def save_participant(
        self, participant: Participant, expected_is_paid: bool
    ) -> None:
        """
        Compare-and-swap a participant's payment state.

        Raises:
            StoreUnavailableError: If the stored is_paid differs from
                expected_is_paid (a concurrent writer got there first)
        """

    @abstractmethod
    def append_payment(self, payment: Payment) -> None:
        """Append a payment and its closed-expense set."""

    @abstractmethod
    def load_payment(self, payment_id: str) -> Payment | None:
        """Load a payment with its closed-expense set and reversals."""

    @abstractmethod
    def remove_payment_expense(self, payment_id: str, expense_id: str) -> None:
        """Remove one expense from a payment's closed-expense set."""

    @abstractmethod
    def append_payment_reversal(self, reversal: PaymentReversal) -> None:
        """Record that a participant closed by a payment was reverted."""

    @abstractmethod
    def load_group_expenses(self, group_id: str) -> list[Expense]:
        """Load every expense of a group, oldest first."""

    @abstractmethod
    def load_group_payments(self, group_id: str) -> list[Payment]:
        """Load every payment of a group, oldest first."""
