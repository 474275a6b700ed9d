import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.payment import Payment
from app.models.refund import Refund
from app.services.audit_service import log_audit


class PaymentLedger:
    """Payment attempts, settlements and refunds for confirmation codes.

    A settlement is keyed by the attempt's txn_ref plus the gateway
    transaction number; settling an attempt that is already paid is a no-op.
    """

    def __init__(self, db: Session):
        self.db = db

    def record_attempt(self, *, confirmation_code: str, txn_ref: str, amount: int, ticket_ids: list[int],
                       create_date: str) -> Payment:
        p = Payment(
            id=str(uuid.uuid4()),
            confirmation_code=confirmation_code,
            txn_ref=txn_ref,
            provider="vnpay",
            amount=amount,
            ticket_ids_json=json.dumps(list(ticket_ids)),
            status="pending",
            create_date=create_date,
        )
        self.db.add(p)
        self.db.flush()
        return p

    def find_by_txn_ref(self, txn_ref: str) -> Payment | None:
        return self.db.scalars(select(Payment).where(Payment.txn_ref == txn_ref).with_for_update()).first()

    def latest_attempt(self, confirmation_code: str) -> Payment | None:
        return self.db.scalars(
            select(Payment).where(Payment.confirmation_code == confirmation_code)
            .order_by(Payment.created_at.desc(), Payment.create_date.desc())
        ).first()

    def latest_paid(self, confirmation_code: str) -> Payment | None:
        return self.db.scalars(
            select(Payment).where(Payment.confirmation_code == confirmation_code, Payment.status == "paid")
            .order_by(Payment.settled_at.desc())
        ).first()

    @staticmethod
    def ticket_ids(payment: Payment) -> list[int]:
        return [int(i) for i in json.loads(payment.ticket_ids_json or "[]")]

    def settle(self, payment: Payment, *, status: str, response_code: str = "", transaction_no: str = "",
               bank_code: str = "", pay_date: str = "") -> Payment:
        payment.status = status
        payment.response_code = response_code or payment.response_code
        payment.transaction_no = transaction_no or payment.transaction_no
        payment.bank_code = bank_code or payment.bank_code
        payment.pay_date = pay_date or payment.pay_date
        payment.settled_at = datetime.now(timezone.utc)
        self.db.flush()
        return payment

    def refunded_amount(self, payment_id: str) -> int:
        total = self.db.scalar(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.payment_id == payment_id,
                Refund.status == "succeeded",
            )
        )
        return int(total or 0)

    def record_refund(self, *, confirmation_code: str, payment_id: str, operator: str, reason: str, amount: int,
                      full_refund: bool, tickets_cancelled: int, status: str, response_code: str = "",
                      gateway_message: str = "") -> Refund:
        r = Refund(
            id=str(uuid.uuid4()),
            confirmation_code=confirmation_code,
            payment_id=payment_id,
            operator=operator,
            reason=reason,
            amount=amount,
            full_refund=full_refund,
            tickets_cancelled=tickets_cancelled,
            status=status,
            response_code=response_code,
            gateway_message=gateway_message[:500],
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(r)
        self.db.flush()
        return r

    def audit(self, actor: str, action: str, entity_type: str, entity_id: str, details: dict | None = None):
        log_audit(self.db, actor=actor, action=action, entity_type=entity_type, entity_id=entity_id, details=details)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
