from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.schemas.booking import GuestBookingRecord
from app.schemas.payments import ConfirmationCodeOut
from app.services.booking_store import SqlBookingStore
from app.services.confirmation_code import codec
from app.services.guest_bookings import record_from_tickets

router = APIRouter(tags=["bookings"])

MAX_CODE_ATTEMPTS = 5


@router.get("/public/bookings/lookup/{confirmationCode}", response_model=GuestBookingRecord)
def lookup_booking(confirmationCode: str, email: str | None = None, db: Session = Depends(get_db)):
    tickets = SqlBookingStore(db).get_tickets_by_confirmation_code(confirmationCode)
    if not tickets:
        raise HTTPException(status_code=404, detail="Booking not found")
    record = record_from_tickets(confirmationCode, tickets)
    # same answer for a wrong email as for an unknown code
    if email and not record.has_passenger_email(email):
        raise HTTPException(status_code=404, detail="Booking not found")
    return record


@router.post("/public/bookings/confirmation-code", response_model=ConfirmationCodeOut)
def issue_confirmation_code(db: Session = Depends(get_db)):
    store = SqlBookingStore(db)
    now = datetime.now(ZoneInfo(settings.VNP_TIMEZONE))
    for _ in range(MAX_CODE_ATTEMPTS):
        code = codec.generate(now)
        if not store.get_tickets_by_confirmation_code(code):
            return ConfirmationCodeOut(confirmationCode=code)
    raise HTTPException(status_code=503, detail="Could not allocate a confirmation code, retry")
