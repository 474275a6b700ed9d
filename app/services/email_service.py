from datetime import datetime, timezone
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import uuid
import requests
import structlog

from app.core.config import settings
from app.models.email_log import EmailLog

log = structlog.get_logger(__name__)

MAX_ATTEMPTS = 5


def queue_email(db: Session, to_email: str, subject: str, body: str, confirmation_code: str = "",
                kind: str = "payment_notification") -> str:
    """Queue and attempt immediate send. Body is stored so the worker can retry on failure."""
    eid = str(uuid.uuid4())
    entry = EmailLog(
        id=eid,
        to_email=to_email,
        subject=subject,
        body=body,
        kind=kind,
        status="queued",
        attempts=0,
        confirmation_code=confirmation_code,
    )
    db.add(entry)
    db.commit()

    try:
        entry.attempts = 1
        send_email(to_email, subject, body)
        entry.status = "sent"
        entry.sent_at = datetime.now(timezone.utc)
    except (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError) as e:
        # Worker will retry via process_email_queue
        entry.status = "failed"
        log.warning("email_send_failed", to=to_email, confirmation_code=confirmation_code, error=str(e))
    db.commit()
    return eid


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP (MailHog recommended for local)."""

    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    from_email = settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def payment_notification_body(confirmation_code: str, ticket) -> str:
    departure = ticket.departure_time.strftime("%d/%m/%Y %H:%M") if ticket.departure_time else "N/A"
    return (
        f"Dear {ticket.passenger_name or 'passenger'},\n\n"
        f"Payment for booking {confirmation_code} has been received.\n\n"
        f"Flight: {ticket.flight_code}\n"
        f"From: {ticket.departure_city}\n"
        f"To: {ticket.arrival_city}\n"
        f"Departure: {departure}\n"
        f"Seat: {ticket.seat_number or 'assigned at check-in'}\n"
        f"Fare: {ticket.fare:,} VND\n\n"
        f"Keep your confirmation code to look up or manage this booking.\n"
    )


def notify_payment(db: Session, confirmation_code: str, tickets) -> int:
    """Queue one notification per paid ticket that has a passenger email. Returns queued count."""
    if not settings.PAYMENT_EMAILS_ENABLED:
        return 0
    queued = 0
    for t in tickets:
        if not t.passenger_email:
            continue
        queue_email(db, t.passenger_email, f"Payment received for booking {confirmation_code}",
                    payment_notification_body(confirmation_code, t), confirmation_code=confirmation_code)
        queued += 1
    return queued


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Process up to `limit` queued or failed emails; retry send and update status. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.attempts < MAX_ATTEMPTS,
                EmailLog.body.isnot(None), EmailLog.body != "")
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for entry in pending:
        entry.attempts = (entry.attempts or 0) + 1
        try:
            send_email(entry.to_email, entry.subject, entry.body)
            entry.status = "sent"
            entry.sent_at = datetime.now(timezone.utc)
            sent += 1
        except (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError) as e:
            entry.status = "failed"
            failed += 1
            log.warning("email_retry_failed", email_id=entry.id, attempts=entry.attempts, error=str(e))
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}
