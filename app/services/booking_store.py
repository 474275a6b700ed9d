from datetime import datetime, timezone
from typing import Iterable, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.ticket import Ticket, TicketStatus, can_transition

log = structlog.get_logger(__name__)


class BookingStore(Protocol):
    def get_tickets_by_confirmation_code(self, code: str) -> list[Ticket]: ...

    def mark_paid(self, ticket_ids: Iterable[int], gateway_txn_id: str, paid_at: datetime | None = None) -> int: ...

    def cancel(self, ticket_ids: Iterable[int]) -> int: ...


class SqlBookingStore:
    """Ticket access for the payment flow. Callers commit through the shared session."""

    def __init__(self, db: Session):
        self.db = db

    def get_tickets_by_confirmation_code(self, code: str) -> list[Ticket]:
        return list(self.db.scalars(
            select(Ticket).where(Ticket.confirmation_code == code).order_by(Ticket.id)
        ))

    def _load(self, ticket_ids: Iterable[int]) -> list[Ticket]:
        ids = list(ticket_ids)
        if not ids:
            return []
        # row locks so a duplicate callback racing this one waits and then sees PAID
        return list(self.db.scalars(
            select(Ticket).where(Ticket.id.in_(ids)).order_by(Ticket.id).with_for_update()
        ))

    def mark_paid(self, ticket_ids: Iterable[int], gateway_txn_id: str, paid_at: datetime | None = None) -> int:
        """UNPAID -> PAID. Already-paid tickets are skipped, so redelivered callbacks are no-ops."""
        paid_at = paid_at or datetime.now(timezone.utc)
        changed = 0
        for t in self._load(ticket_ids):
            if t.ticket_status is TicketStatus.PAID:
                continue
            if not can_transition(t.ticket_status, TicketStatus.PAID):
                log.error("paid_callback_for_cancelled_ticket", ticket_id=t.id,
                          confirmation_code=t.confirmation_code, gateway_txn_id=gateway_txn_id)
                continue
            t.status = TicketStatus.PAID.value
            t.payment_time = paid_at
            t.gateway_txn_id = gateway_txn_id
            changed += 1
        self.db.flush()
        return changed

    def cancel(self, ticket_ids: Iterable[int]) -> int:
        changed = 0
        for t in self._load(ticket_ids):
            if not can_transition(t.ticket_status, TicketStatus.CANCELLED):
                continue
            t.status = TicketStatus.CANCELLED.value
            changed += 1
        self.db.flush()
        return changed

    def unpaid_departing_before(self, cutoff: datetime) -> list[Ticket]:
        return list(self.db.scalars(
            select(Ticket).where(
                Ticket.status == TicketStatus.UNPAID.value,
                Ticket.departure_time != None,  # noqa: E711
                Ticket.departure_time < cutoff,
            ).order_by(Ticket.id)
        ))
