from pydantic import BaseModel
from typing import List, Optional


class TicketSnapshot(BaseModel):
    ticketId: Optional[int] = None
    fare: int = 0
    status: int = 0  # 0 unpaid, 1 paid, 2 cancelled
    seatNumber: Optional[str] = ""
    passengerName: Optional[str] = ""


class PassengerSnapshot(BaseModel):
    name: str
    email: Optional[str] = ""  # plain str to allow .local and other dev domains


class FlightInfo(BaseModel):
    flightCode: str = ""
    departureTime: str = ""
    arrivalTime: str = ""
    departureCity: str = ""
    arrivalCity: str = ""


class GuestBookingRecord(BaseModel):
    """A booking confirmation kept for a guest. A convenience copy, never authoritative."""
    confirmationCode: str
    bookingDate: str
    tickets: List[TicketSnapshot] = []
    passengers: List[PassengerSnapshot] = []
    totalAmount: int = 0
    flightInfo: FlightInfo = FlightInfo()

    def has_passenger_email(self, email: str) -> bool:
        wanted = email.strip().lower()
        return any((p.email or "").strip().lower() == wanted for p in self.passengers)
