"""split-ledger - Track shared expenses, split them fairly, and settle up."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .models import (
    Expense,
    Group,
    PairBalance,
    Participant,
    ParticipantInput,
    Payment,
    SplitType,
    SuggestedTransfer,
)
from .money import Money, allocate
from .service import LedgerService, open_service
from .simplifier import simplify_debts
from .splitter import build_split, compute_split

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Expense",
    "Group",
    "PairBalance",
    "Participant",
    "ParticipantInput",
    "Payment",
    "SplitType",
    "SuggestedTransfer",
    "Money",
    "allocate",
    "LedgerService",
    "open_service",
    "simplify_debts",
    "build_split",
    "compute_split",
]
