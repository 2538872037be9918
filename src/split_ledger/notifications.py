"""Fire-and-forget ledger event notifications."""

import logging
from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from .models import utcnow
from .money import Money

logger = logging.getLogger(__name__)

EventType = Literal["payment_recorded", "balance_settled", "payment_reversed"]


class LedgerEvent(BaseModel):
    """Something other parties may want to hear about."""

    event_type: EventType
    group_id: str
    from_user_id: str
    to_user_id: str
    amount: Money
    payment_id: str
    expense_ids: list[str] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=utcnow)


class Notifier(Protocol):
    """Receives ledger events. Delivery is best effort."""

    def notify(self, event: LedgerEvent) -> None: ...


class LoggingNotifier:
    """Notifier that writes events to the log."""

    def notify(self, event: LedgerEvent) -> None:
        logger.info(
            f"{event.event_type}: {event.from_user_id} -> {event.to_user_id} "
            f"{event.amount} (payment {event.payment_id}, group {event.group_id})"
        )
