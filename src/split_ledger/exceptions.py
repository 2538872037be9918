"""Custom exceptions for split-ledger."""


class LedgerError(Exception):
    """Base exception for all split-ledger errors."""

    pass


class InvalidSplitError(LedgerError):
    """Raised when split proportions or amounts are invalid."""

    pass


class CurrencyMismatchError(LedgerError):
    """Raised when money in different currencies is combined."""

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Cannot combine {left} with {right}")


class NotFoundError(LedgerError):
    """Raised when a group, expense, participant or payment does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class AlreadyPaidError(LedgerError):
    """Raised when marking a participant paid that is already paid."""

    def __init__(self, expense_id: str, user_id: str, message: str | None = None):
        self.expense_id = expense_id
        self.user_id = user_id
        super().__init__(
            message or f"Participant {user_id} on expense {expense_id} is already paid"
        )


class NotPaidError(LedgerError):
    """Raised when reverting a participant that is not paid."""

    def __init__(self, expense_id: str, user_id: str):
        self.expense_id = expense_id
        self.user_id = user_id
        super().__init__(f"Participant {user_id} on expense {expense_id} is not paid")


class NothingToSettleError(LedgerError):
    """Raised when the net balance between two members is already zero."""

    def __init__(self, group_id: str, user_a: str, user_b: str):
        self.group_id = group_id
        self.user_a = user_a
        self.user_b = user_b
        super().__init__(
            f"Nothing to settle between {user_a} and {user_b} in group {group_id}"
        )


class NotAuthorizedError(LedgerError):
    """Raised when the acting user may not perform an operation."""

    def __init__(self, operation: str, acting_user_id: str):
        self.operation = operation
        self.acting_user_id = acting_user_id
        super().__init__(f"User {acting_user_id} is not allowed to {operation}")


class ExpenseLockedError(LedgerError):
    """Raised when editing the split of an expense that already has payments."""

    pass


class MemberInUseError(LedgerError):
    """Raised when removing a member that still appears in the ledger."""

    pass


class InconsistentLedgerError(LedgerError):
    """Raised when stored ledger data violates an invariant."""

    pass


class StoreUnavailableError(LedgerError):
    """Raised when the store times out or a concurrent write conflicts."""

    pass


class LinkedTransferFailedError(LedgerError):
    """Raised when the linked account transfer fails."""

    pass
