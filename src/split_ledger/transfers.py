"""Contract for the optional account-transfer collaborator."""

from typing import Protocol

from .money import Money


class AccountTransferService(Protocol):
    """Moves real money between two accounts.

    A transfer requested by the settlement engine is all-or-nothing together
    with the ledger change: the engine performs it inside its unit of work and
    calls reverse() if the ledger commit fails afterwards.
    """

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Money,
        reference: str,
    ) -> str:
        """Perform the transfer and return its id."""
        ...

    def reverse(self, transfer_id: str, reference: str) -> None:
        """Undo a transfer previously returned by transfer()."""
        ...
