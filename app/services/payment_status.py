from typing import Iterable

from app.models.ticket import TICKET_STATUS_FROM_WIRE, TicketStatus
from app.schemas.payments import BookingPaymentStatus


def _status_of(ticket) -> TicketStatus | None:
    status = ticket.status
    if isinstance(status, int):
        # snapshots carry the backend's 0/1/2 wire value; anything else counts as neither
        return TICKET_STATUS_FROM_WIRE.get(status)
    return TicketStatus(status)


def aggregate(confirmation_code: str, tickets: Iterable) -> BookingPaymentStatus:
    """Fold ticket-level state into one booking status.

    Works on anything with ``fare`` and ``status`` (ORM tickets, cached
    snapshots). Cancelled tickets are left out of every count and sum, so an
    all-cancelled booking looks like an empty one: nothing to pay, nothing paid.
    """
    paid = unpaid = 0
    paid_amount = unpaid_amount = 0
    for t in tickets:
        st = _status_of(t)
        if st is TicketStatus.PAID:
            paid += 1
            paid_amount += int(t.fare or 0)
        elif st is TicketStatus.UNPAID:
            unpaid += 1
            unpaid_amount += int(t.fare or 0)

    total = paid + unpaid
    return BookingPaymentStatus(
        confirmationCode=confirmation_code,
        totalTickets=total,
        paidTickets=paid,
        unpaidTickets=unpaid,
        totalAmount=paid_amount + unpaid_amount,
        paidAmount=paid_amount,
        unpaidAmount=unpaid_amount,
        bookingPaid=total > 0 and unpaid == 0,
        partiallyPaid=0 < paid < total,
        paymentRequired=unpaid > 0,
    )
