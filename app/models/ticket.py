from enum import Enum
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base


class TicketStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


# Legacy integer status used by the booking backend and its clients
TICKET_STATUS_WIRE = {
    TicketStatus.UNPAID: 0,
    TicketStatus.PAID: 1,
    TicketStatus.CANCELLED: 2,
}
TICKET_STATUS_FROM_WIRE = {v: k for k, v in TICKET_STATUS_WIRE.items()}

TICKET_TRANSITIONS = {
    TicketStatus.UNPAID: {TicketStatus.PAID, TicketStatus.CANCELLED},
    TicketStatus.PAID: {TicketStatus.CANCELLED},  # refund only
    TicketStatus.CANCELLED: set(),
}


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    return target in TICKET_TRANSITIONS.get(current, set())


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    confirmation_code: Mapped[str] = mapped_column(String(20), index=True)

    fare: Mapped[int] = mapped_column(Integer)  # VND, no minor units
    status: Mapped[str] = mapped_column(String(12), default=TicketStatus.UNPAID.value, index=True)
    payment_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    gateway_txn_id: Mapped[str] = mapped_column(String(64), nullable=True)

    passenger_name: Mapped[str] = mapped_column(String(200), default="")
    passenger_email: Mapped[str] = mapped_column(String(320), default="")

    # flight snapshot at booking time
    flight_code: Mapped[str] = mapped_column(String(20), default="")
    departure_city: Mapped[str] = mapped_column(String(120), default="")
    arrival_city: Mapped[str] = mapped_column(String(120), default="")
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    arrival_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    seat_number: Mapped[str] = mapped_column(String(8), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    @property
    def ticket_status(self) -> TicketStatus:
        return TicketStatus(self.status)

    @property
    def wire_status(self) -> int:
        return TICKET_STATUS_WIRE[self.ticket_status]
