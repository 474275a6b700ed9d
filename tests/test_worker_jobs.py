from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from sqlalchemy import select

from conftest import CODE, add_tickets

from app.models.email_log import EmailLog
from app.models.ticket import Ticket
from app.services import email_service
from app.tasks.worker_jobs import release_unpaid_tickets

NOW = datetime(2025, 5, 27, 0, 0, tzinfo=timezone.utc)


def test_unpaid_tickets_near_departure_are_released(db):
    soon = NOW + timedelta(hours=3)
    later = NOW + timedelta(days=5)
    add_tickets(db, CODE, [500_000, 500_000], ["UNPAID", "PAID"], departure_time=soon)
    add_tickets(db, "FMS-20250527-LATE", [500_000], departure_time=later)

    result = release_unpaid_tickets(db, now=NOW)
    assert result == {"cancelled": 1, "bookings": 1}

    db.expire_all()
    rows = {(t.confirmation_code, t.status) for t in db.scalars(select(Ticket))}
    assert (CODE, "CANCELLED") in rows
    assert (CODE, "PAID") in rows
    assert ("FMS-20250527-LATE", "UNPAID") in rows


def test_release_is_noop_without_candidates(db):
    assert release_unpaid_tickets(db, now=NOW) == {"cancelled": 0, "bookings": 0}


def _ticket(email):
    return SimpleNamespace(passenger_email=email, passenger_name="Nguyen Van A", flight_code="VN123",
                           departure_city="Ha Noi", arrival_city="Da Nang", departure_time=None,
                           seat_number="1A", fare=500_000)


@patch("app.services.email_service.send_email")
def test_payment_notification_queued_per_passenger(mock_send, db, monkeypatch):
    monkeypatch.setattr(email_service.settings, "PAYMENT_EMAILS_ENABLED", True)
    queued = email_service.notify_payment(db, CODE, [_ticket("a@example.com"), _ticket("")])
    assert queued == 1
    entry = db.scalars(select(EmailLog)).one()
    assert entry.status == "sent"
    assert entry.confirmation_code == CODE
    assert "500,000 VND" in mock_send.call_args.args[2]


@patch("app.services.email_service.send_email")
def test_failed_email_is_retried_by_queue(mock_send, db, monkeypatch):
    monkeypatch.setattr(email_service.settings, "PAYMENT_EMAILS_ENABLED", True)
    mock_send.side_effect = OSError("smtp down")
    email_service.notify_payment(db, CODE, [_ticket("a@example.com")])
    assert db.scalars(select(EmailLog)).one().status == "failed"

    mock_send.side_effect = None
    assert email_service.process_pending_emails(db) == {"processed": 1, "sent": 1, "failed": 0}
    entry = db.scalars(select(EmailLog)).one()
    assert entry.status == "sent"
    assert entry.attempts == 2


def test_notifications_can_be_disabled(db):
    assert email_service.notify_payment(db, CODE, [_ticket("a@example.com")]) == 0
