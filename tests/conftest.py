import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["VNP_TMN_CODE"] = "TESTTMN1"
os.environ["VNP_HASH_SECRET"] = "TESTHASHSECRET"
os.environ["PAYMENT_EMAILS_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from app.main import app  # noqa: F401  registers every model on Base.metadata
from app.core.config import settings
from app.db.session import Base, SessionLocal, engine
from app.models.ticket import Ticket
from app.services.booking_store import SqlBookingStore
from app.services.payment_ledger import PaymentLedger
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.vnpay_client import sign_params

GATEWAY_TZ = ZoneInfo("Asia/Ho_Chi_Minh")
FIXED_NOW = datetime(2025, 5, 27, 5, 14, 8, tzinfo=GATEWAY_TZ)
CODE = "FMS-20250527-A1B2"
TXN_REF = "051408" + CODE.encode().hex()


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def add_tickets(db, code, fares, statuses=None, email="guest@example.com", departure_time=None):
    statuses = statuses or ["UNPAID"] * len(fares)
    rows = []
    for i, (fare, status) in enumerate(zip(fares, statuses)):
        t = Ticket(
            confirmation_code=code,
            fare=fare,
            status=status,
            passenger_name=f"Passenger {i + 1}",
            passenger_email=email,
            flight_code="VN123",
            departure_city="Ha Noi",
            arrival_city="Ho Chi Minh",
            departure_time=departure_time,
            seat_number=f"{i + 1}A",
        )
        db.add(t)
        rows.append(t)
    db.commit()
    return rows


def signed_callback(txn_ref=TXN_REF, amount_vnd=1_000_000, response_code="00", secret=None, **extra):
    params = {
        "vnp_TmnCode": settings.VNP_TMN_CODE,
        "vnp_Amount": str(amount_vnd * 100),
        "vnp_ResponseCode": response_code,
        "vnp_TxnRef": txn_ref,
        "vnp_TransactionNo": "14012345",
        "vnp_TransactionStatus": response_code,
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20250527051530",
        "vnp_OrderInfo": f"Flight ticket payment. Booking {CODE}",
    }
    params.update(extra)
    params["vnp_SecureHash"] = sign_params(secret or settings.VNP_HASH_SECRET, params)
    return params


class FakeGateway:
    """Records calls; answers querydr/refund with whatever the test queued."""

    def __init__(self):
        self.created = []
        self.refunds = []
        self.queries = []
        self.query_answer = {}
        self.refund_answer = {"vnp_ResponseCode": "00", "vnp_Message": "Refund success"}
        self.refund_error = None
        self.query_valid = True

    def create_payment_url(self, amount, reference, *, order_info, ip_addr, now, locale="vn", bank_code=None):
        self.created.append({"amount": amount, "reference": reference, "bank_code": bank_code})
        return f"https://sandbox.test/pay?vnp_Amount={amount * 100}&vnp_TxnRef={reference}"

    def query_transaction(self, reference, *, trans_date, ip_addr, now):
        self.queries.append({"reference": reference, "trans_date": trans_date})
        return dict(self.query_answer)

    def query_response_valid(self, data):
        return self.query_valid

    def refund(self, reference, amount, *, trans_date, transaction_no, user, ip_addr, now, full=True):
        self.refunds.append({"reference": reference, "amount": amount, "full": full, "user": user,
                             "transaction_no": transaction_no})
        if self.refund_error is not None:
            raise self.refund_error
        return dict(self.refund_answer)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notified():
    return []


@pytest.fixture
def orchestrator(db, gateway, notified):
    return PaymentOrchestrator(
        SqlBookingStore(db),
        PaymentLedger(db),
        gateway,
        clock=lambda: FIXED_NOW,
        notifier=lambda code, tickets: notified.append((code, [t.id for t in tickets])),
    )
