from datetime import datetime, timezone, timedelta
from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError
import structlog

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.audit_service import log_audit
from app.services.booking_store import SqlBookingStore
from app.services.email_service import process_pending_emails

log = structlog.get_logger(__name__)


def release_unpaid_tickets(db: Session, now: datetime | None = None) -> dict:
    """Cancel UNPAID tickets whose flight leaves within the hold window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now + timedelta(hours=settings.BOOKING_HOLD_HOURS)
    store = SqlBookingStore(db)
    expired = store.unpaid_departing_before(cutoff)
    by_code: dict[str, list[int]] = {}
    for t in expired:
        by_code.setdefault(t.confirmation_code, []).append(t.id)
    cancelled = 0
    for code, ids in by_code.items():
        n = store.cancel(ids)
        cancelled += n
        log_audit(db, actor="ticket-cleanup", action="booking.expired", entity_type="booking", entity_id=code,
                  details={"ticket_ids": ids, "cutoff": cutoff.isoformat()})
    db.commit()
    if cancelled:
        log.info("unpaid_tickets_released", cancelled=cancelled, bookings=len(by_code))
    return {"cancelled": cancelled, "bookings": len(by_code)}


def expire_unpaid_tickets() -> dict:
    db: Session = SessionLocal()
    try:
        try:
            return release_unpaid_tickets(db)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()


def process_email_queue(limit: int = 50) -> dict:
    """Process queued/failed emails (retry send). Run periodically via Celery beat."""
    db: Session = SessionLocal()
    try:
        try:
            return process_pending_emails(db, limit=limit)
        except ProgrammingError:
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()
