"""Pydantic domain models for split-ledger."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import LinkedTransferFailedError
from .money import Money


def new_id() -> str:
    """Generate a new opaque identifier."""
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class SplitType(str, Enum):
    """Rule used to divide an expense among its participants."""

    EQUAL = "EQUAL"
    PERCENTAGE = "PERCENTAGE"
    EXACT = "EXACT"
    SHARES = "SHARES"


# ============================================================================
# Split rules
# ============================================================================


class ParticipantInput(BaseModel):
    """Untyped per-participant split input as it arrives from a caller."""

    user_id: str
    percentage: Decimal | None = None
    shares: int | None = None
    exact_amount: int | None = None  # minor units


class EqualShare(BaseModel):
    user_id: str


class PercentageShare(BaseModel):
    user_id: str
    percentage: Decimal = Field(ge=0)


class SharesShare(BaseModel):
    user_id: str
    shares: int = Field(ge=1)


class ExactShare(BaseModel):
    user_id: str
    amount: int = Field(ge=0)  # minor units


class EqualSplit(BaseModel):
    split_type: Literal[SplitType.EQUAL] = SplitType.EQUAL
    participants: list[EqualShare]


class PercentageSplit(BaseModel):
    split_type: Literal[SplitType.PERCENTAGE] = SplitType.PERCENTAGE
    participants: list[PercentageShare]


class SharesSplit(BaseModel):
    split_type: Literal[SplitType.SHARES] = SplitType.SHARES
    participants: list[SharesShare]


class ExactSplit(BaseModel):
    split_type: Literal[SplitType.EXACT] = SplitType.EXACT
    participants: list[ExactShare]


SplitRule = Annotated[
    EqualSplit | PercentageSplit | SharesSplit | ExactSplit,
    Field(discriminator="split_type"),
]


# ============================================================================
# Ledger Models
# ============================================================================


class MemberSplitDefault(BaseModel):
    """A member's default weight for new expenses in a group."""

    user_id: str
    percentage: Decimal | None = None
    shares: int | None = None


class Group(BaseModel):
    """A fixed set of members who share expenses."""

    id: str = Field(default_factory=new_id)
    name: str
    owner_id: str
    currency: str = "USD"
    members: list[str]
    default_split_type: SplitType = SplitType.EQUAL
    default_splits: list[MemberSplitDefault] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("members")
    @classmethod
    def _unique_members(cls, members: list[str]) -> list[str]:
        if len(set(members)) != len(members):
            raise ValueError("Group members must be unique")
        return members

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members


class Participant(BaseModel):
    """One member's owed share of one expense."""

    expense_id: str
    user_id: str
    amount_owed: Money
    percentage: Decimal | None = None  # input that produced amount_owed
    shares: int | None = None
    is_paid: bool = False
    paid_at: datetime | None = None
    linked_payment_id: str | None = None
    linked_transfer_id: str | None = None


class Expense(BaseModel):
    """A shared cost fronted by one payer and split among participants."""

    id: str = Field(default_factory=new_id)
    group_id: str
    payer_id: str
    description: str
    category_id: str | None = None
    total: Money
    split_type: SplitType
    expense_date: date = Field(default_factory=lambda: utcnow().date())
    created_at: datetime = Field(default_factory=utcnow)
    participants: list[Participant] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_participants(self) -> "Expense":
        user_ids = [p.user_id for p in self.participants]
        if len(set(user_ids)) != len(user_ids):
            raise ValueError(f"Expense {self.id} has duplicate participants")
        return self

    @property
    def has_payments(self) -> bool:
        """True once any participant row has been marked paid."""
        return any(p.is_paid for p in self.participants)

    def get_participant(self, user_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def debts(self) -> list[Participant]:
        """Participant rows that represent a debt to the payer."""
        return [p for p in self.participants if p.user_id != self.payer_id]


class PaymentReversal(BaseModel):
    """Audit record of a participant reverted to unpaid after a payment."""

    payment_id: str
    expense_id: str
    user_id: str
    reversed_by: str
    reversed_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    """A recorded settlement event between two members.

    expense_ids is the current closed-expense set. Reverting a participant
    removes its expense from the set and appends a PaymentReversal; the payment
    itself is never deleted.
    """

    id: str = Field(default_factory=new_id)
    group_id: str
    from_user_id: str
    to_user_id: str
    amount: Money
    expense_ids: list[str] = Field(default_factory=list)
    linked_transfer_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    reversals: list[PaymentReversal] = Field(default_factory=list)

    @property
    def is_fully_reversed(self) -> bool:
        return not self.expense_ids and bool(self.reversals)


# ============================================================================
# Derived Models
# ============================================================================


class PairBalance(BaseModel):
    """Net balance between two members; positive amount means B owes A."""

    group_id: str
    user_a: str
    user_b: str
    amount: Money
    total_historical: Money
    total_paid: Money

    def reversed(self) -> "PairBalance":
        """The same balance seen from user_b's side."""
        return PairBalance(
            group_id=self.group_id,
            user_a=self.user_b,
            user_b=self.user_a,
            amount=-self.amount,
            total_historical=self.total_historical,
            total_paid=self.total_paid,
        )

    @property
    def debtor_id(self) -> str | None:
        if self.amount.amount > 0:
            return self.user_b
        if self.amount.amount < 0:
            return self.user_a
        return None

    @property
    def creditor_id(self) -> str | None:
        if self.amount.amount > 0:
            return self.user_a
        if self.amount.amount < 0:
            return self.user_b
        return None


class SuggestedTransfer(BaseModel):
    """One transfer of a simplified settlement plan."""

    from_user_id: str
    to_user_id: str
    amount: Money


class LinkedTransfer(BaseModel):
    """
    Member accounts to move real money between when recording a payment.

    Accounts are keyed by user id. The engine picks the source and destination
    from the debtor and creditor it computes, so the money always moves in the
    direction of the recorded payment.
    """

    accounts: dict[str, str]

    def route(self, from_user_id: str, to_user_id: str) -> tuple[str, str]:
        """Return (from_account_id, to_account_id) for a payment between members."""
        missing = [
            user_id
            for user_id in (from_user_id, to_user_id)
            if not self.accounts.get(user_id)
        ]
        if missing:
            raise LinkedTransferFailedError(
                f"No account linked for {', '.join(missing)}"
            )
        return self.accounts[from_user_id], self.accounts[to_user_id]


class SettlementResult(BaseModel):
    """Outcome of settling the balance between two members."""

    payment: Payment
    settled_participants: int
    transfer_id: str | None = None
