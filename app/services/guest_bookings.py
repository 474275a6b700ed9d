"""Booking confirmations kept for guests who have no account.

Only the most recent entries are kept (oldest dropped first). The copy is a
convenience for "my bookings" style screens; the booking backend stays the
source of truth and is asked whenever the local copy has nothing.
"""
from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

import structlog
from pydantic import ValidationError

from app.core.config import settings
from app.schemas.booking import FlightInfo, GuestBookingRecord, PassengerSnapshot, TicketSnapshot
from app.services.errors import GatewayError

log = structlog.get_logger(__name__)


class GuestBookingRepository(Protocol):
    def list(self) -> list[GuestBookingRecord]: ...

    def store(self, records: Iterable[GuestBookingRecord]) -> None: ...

    def remove(self, confirmation_code: str) -> bool: ...


class InMemoryGuestBookingRepository:
    def __init__(self):
        self._records: list[GuestBookingRecord] = []

    def list(self) -> list[GuestBookingRecord]:
        return list(self._records)

    def store(self, records: Iterable[GuestBookingRecord]) -> None:
        self._records = list(records)

    def remove(self, confirmation_code: str) -> bool:
        kept = [r for r in self._records if r.confirmationCode != confirmation_code]
        removed = len(kept) < len(self._records)
        self._records = kept
        return removed


class JsonFileGuestBookingRepository:
    """One JSON array on disk. Writes go to a temp file that replaces the old one."""

    def __init__(self, path: str | os.PathLike | None = None):
        self.path = Path(path or settings.GUEST_BOOKINGS_FILE)

    def list(self) -> list[GuestBookingRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            return [GuestBookingRecord.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            # unreadable cache is treated as empty; the backend still has the bookings
            log.warning("guest_bookings_unreadable", path=str(self.path), error=str(e))
            return []

    def store(self, records: Iterable[GuestBookingRecord]) -> None:
        payload = json.dumps([r.model_dump() for r in records], ensure_ascii=False, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".guest_bookings.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove(self, confirmation_code: str) -> bool:
        records = self.list()
        kept = [r for r in records if r.confirmationCode != confirmation_code]
        if len(kept) == len(records):
            return False
        self.store(kept)
        return True


ServerLookup = Callable[[str, Optional[str]], Optional[GuestBookingRecord]]
ServerCancel = Callable[[str, str], object]


class GuestBookingCache:
    def __init__(self, repo: GuestBookingRepository, server_lookup: ServerLookup | None = None,
                 server_cancel: ServerCancel | None = None, limit: int | None = None):
        self.repo = repo
        self.server_lookup = server_lookup
        self.server_cancel = server_cancel
        self.limit = limit or settings.GUEST_BOOKINGS_LIMIT

    def list(self) -> list[GuestBookingRecord]:
        return self.repo.list()

    def store(self, record: GuestBookingRecord) -> None:
        records = self.repo.list()
        records.append(record)
        if len(records) > self.limit:
            records = records[len(records) - self.limit:]
        self.repo.store(records)

    def find(self, confirmation_code: str) -> GuestBookingRecord | None:
        # exact match; codes are issued upper-case
        for r in self.repo.list():
            if r.confirmationCode == confirmation_code:
                return r
        return None

    def lookup(self, confirmation_code: str, email: str | None = None) -> GuestBookingRecord | None:
        local = self.find(confirmation_code)
        if local is not None:
            if email and not local.has_passenger_email(email):
                return None
            return local
        if self.server_lookup is None:
            return None
        return self.server_lookup(confirmation_code, email)

    def remove(self, confirmation_code: str) -> None:
        self.repo.remove(confirmation_code)

    def record_checkout(self, confirmation_code: str, tickets: list, passengers: list,
                        flight_info: dict | None = None) -> GuestBookingRecord:
        record = build_record(confirmation_code, tickets, passengers, flight_info)
        self.store(record)
        return record

    def cancel(self, confirmation_code: str, reason: str = "") -> bool:
        """Drop the local copy and ask the backend to cancel. Returns whether the backend accepted."""
        self.remove(confirmation_code)
        if self.server_cancel is None:
            return False
        try:
            self.server_cancel(confirmation_code, reason)
        except GatewayError as e:
            log.warning("guest_booking_cancel_failed", confirmation_code=confirmation_code, error=e.message)
            return False
        return True


def build_record(confirmation_code: str, tickets: list, passengers: list,
                 flight_info: dict | None = None, booked_at: datetime | None = None) -> GuestBookingRecord:
    snapshots = [t if isinstance(t, TicketSnapshot) else TicketSnapshot.model_validate(t) for t in tickets]
    people = [p if isinstance(p, PassengerSnapshot) else PassengerSnapshot.model_validate(p) for p in passengers]
    fi = flight_info or {}
    return GuestBookingRecord(
        confirmationCode=confirmation_code,
        bookingDate=(booked_at or datetime.now(timezone.utc)).isoformat(),
        tickets=snapshots,
        passengers=people,
        totalAmount=sum(t.fare or 0 for t in snapshots),
        flightInfo=FlightInfo(
            flightCode=fi.get("flightCode") or "",
            departureTime=fi.get("departureTime") or "",
            arrivalTime=fi.get("arrivalTime") or "",
            departureCity=fi.get("departureCityName") or fi.get("departureCity") or "",
            arrivalCity=fi.get("arrivalCityName") or fi.get("arrivalCity") or "",
        ),
    )


def record_from_tickets(confirmation_code: str, tickets: list) -> GuestBookingRecord:
    """Build the guest view of a booking from stored Ticket rows."""
    first = tickets[0] if tickets else None
    flight_info = {}
    if first is not None:
        flight_info = {
            "flightCode": first.flight_code or "",
            "departureTime": first.departure_time.isoformat() if first.departure_time else "",
            "arrivalTime": first.arrival_time.isoformat() if first.arrival_time else "",
            "departureCity": first.departure_city or "",
            "arrivalCity": first.arrival_city or "",
        }
    snapshots = [
        TicketSnapshot(ticketId=t.id, fare=t.fare, status=t.wire_status, seatNumber=t.seat_number or "",
                       passengerName=t.passenger_name or "")
        for t in tickets
    ]
    passengers = [PassengerSnapshot(name=t.passenger_name or "", email=t.passenger_email or "") for t in tickets]
    booked_at = min((t.created_at for t in tickets if t.created_at), default=None)
    return build_record(confirmation_code, snapshots, passengers, flight_info, booked_at=booked_at)
