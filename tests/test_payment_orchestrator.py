import pytest
from sqlalchemy import select

from conftest import CODE, FIXED_NOW, TXN_REF, add_tickets, signed_callback

from app.models.audit_log import AuditLog
from app.models.payment import Payment
from app.models.refund import Refund
from app.models.ticket import Ticket
from app.services.booking_store import SqlBookingStore
from app.services.confirmation_code import ConfirmationCodeCodec
from app.services.errors import (
    BookingNotFound, GatewayRejected, GatewayTimeout, InvalidAmount, InvalidRequest, InvalidStateTransition,
    ReferenceTooLong, RequiresRefund,
)
from app.services.gateway_codes import GatewayOutcome
from app.services.payment_ledger import PaymentLedger
from app.services.payment_orchestrator import PaymentOrchestrator


def statuses(db):
    db.expire_all()
    return [t.status for t in db.scalars(select(Ticket).where(Ticket.confirmation_code == CODE).order_by(Ticket.id))]


def actions(db):
    return [a.action for a in db.scalars(select(AuditLog).order_by(AuditLog.created_at))]


def pay(orchestrator, amount=1_000_000):
    orchestrator.create_payment(CODE)
    return orchestrator.reconcile_return(signed_callback(amount_vnd=amount))


# -- create ----------------------------------------------------------------

def test_create_payment_requests_unpaid_amount(db, orchestrator, gateway):
    add_tickets(db, CODE, [500_000, 500_000])
    created = orchestrator.create_payment(CODE, bank_code="NCB")
    assert created.amount == 1_000_000
    assert created.txnRef == TXN_REF
    assert "vnp_Amount=100000000" in created.paymentUrl
    assert gateway.created == [{"amount": 1_000_000, "reference": TXN_REF, "bank_code": "NCB"}]
    payment = db.scalars(select(Payment)).one()
    assert payment.status == "pending"
    assert payment.create_date == "20250527051408"


def test_partially_paid_booking_charges_only_the_rest(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000], ["PAID", "UNPAID"])
    status = orchestrator.query_status(CODE)
    assert status.partiallyPaid is True
    assert status.unpaidAmount == 500_000
    assert orchestrator.create_payment(CODE).amount == 500_000


def test_create_payment_twice_is_idempotent(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    first = orchestrator.create_payment(CODE)
    second = orchestrator.create_payment(CODE)
    assert first.amount == second.amount == 1_000_000
    assert first.txnRef == second.txnRef
    assert len(db.scalars(select(Payment)).all()) == 1


def test_create_payment_for_paid_booking_is_refused(db, orchestrator):
    add_tickets(db, CODE, [500_000], ["PAID"])
    with pytest.raises(InvalidStateTransition) as exc:
        orchestrator.create_payment(CODE)
    assert exc.value.status.bookingPaid is True


def _lose_insert_race(orchestrator, monkeypatch, amount, status="pending"):
    """Commit a competing attempt, then hide it from the first lookup."""
    ledger = orchestrator.ledger
    rival = ledger.record_attempt(confirmation_code=CODE, txn_ref=TXN_REF, amount=amount, ticket_ids=[],
                                  create_date="20250527051408")
    rival.status = status
    ledger.commit()
    real_find = ledger.find_by_txn_ref
    calls = []

    def find(txn_ref):
        calls.append(txn_ref)
        return None if len(calls) == 1 else real_find(txn_ref)

    monkeypatch.setattr(ledger, "find_by_txn_ref", find)
    return calls


def test_concurrent_create_reuses_the_winning_attempt(db, orchestrator, monkeypatch):
    add_tickets(db, CODE, [500_000, 500_000])
    calls = _lose_insert_race(orchestrator, monkeypatch, 1_000_000)
    created = orchestrator.create_payment(CODE)
    assert created.txnRef == TXN_REF
    assert len(calls) == 2
    assert len(db.scalars(select(Payment)).all()) == 1


def test_concurrent_create_against_settled_attempt_is_409(db, orchestrator, monkeypatch):
    add_tickets(db, CODE, [1_000_000])
    _lose_insert_race(orchestrator, monkeypatch, 1_000_000, status="paid")
    with pytest.raises(InvalidStateTransition):
        orchestrator.create_payment(CODE)
    assert db.scalars(select(Payment)).one().status == "paid"


def test_create_payment_unknown_code(orchestrator):
    with pytest.raises(BookingNotFound):
        orchestrator.create_payment("FMS-20250101-ZZZZ")


def test_code_too_long_for_gateway_reference(db, gateway):
    add_tickets(db, CODE, [1_000_000])
    short = PaymentOrchestrator(SqlBookingStore(db), PaymentLedger(db), gateway, clock=lambda: FIXED_NOW,
                                codec=ConfirmationCodeCodec(max_reference_length=20))
    with pytest.raises(ReferenceTooLong) as exc:
        short.create_payment(CODE)
    assert not isinstance(exc.value, InvalidAmount)
    assert exc.value.to_detail()["code"] == "EncodingTooLong"
    assert gateway.created == []
    assert db.scalars(select(Payment)).all() == []


# -- return callback -------------------------------------------------------

def test_return_marks_tickets_paid_once(db, orchestrator, notified):
    add_tickets(db, CODE, [500_000, 500_000])
    first = pay(orchestrator)
    assert first.success is True
    assert first.ticketsMarkedPaid == 2
    assert statuses(db) == ["PAID", "PAID"]

    again = orchestrator.reconcile_return(signed_callback())
    assert again.success is True
    assert again.alreadyProcessed is True
    assert again.ticketsMarkedPaid == 0
    assert len(notified) == 1
    payment = db.scalars(select(Payment)).one()
    assert payment.status == "paid"
    assert payment.transaction_no == "14012345"


def test_return_without_recorded_attempt_settles_unpaid_tickets(db, orchestrator):
    add_tickets(db, CODE, [400_000, 600_000])
    out = orchestrator.reconcile_return(signed_callback())
    assert out.ticketsMarkedPaid == 2
    assert statuses(db) == ["PAID", "PAID"]


def test_return_with_wrong_amount_marks_nothing(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    orchestrator.create_payment(CODE)
    out = orchestrator.reconcile_return(signed_callback(amount_vnd=500_000))
    assert out.success is False
    assert statuses(db) == ["UNPAID", "UNPAID"]
    assert "payment.amount_mismatch" in actions(db)


def test_user_cancelled_payment_leaves_tickets_unpaid(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    orchestrator.create_payment(CODE)
    out = orchestrator.reconcile_return(signed_callback(response_code="24"))
    assert out.outcome == GatewayOutcome.CANCELLED_BY_USER.value
    assert statuses(db) == ["UNPAID", "UNPAID"]
    assert db.scalars(select(Payment)).one().status == "failed"


def test_forged_return_changes_nothing(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    orchestrator.create_payment(CODE)
    params = signed_callback()
    params["vnp_Amount"] = "100"
    out = orchestrator.reconcile_return(params)
    assert out.signatureValid is False
    assert statuses(db) == ["UNPAID", "UNPAID"]
    assert "payment.signature_invalid" in actions(db)


def test_already_confirmed_code_settles_like_success(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    orchestrator.create_payment(CODE)
    out = orchestrator.reconcile_return(signed_callback(response_code="01"))
    assert out.success is True
    assert statuses(db) == ["PAID"]


# -- IPN -------------------------------------------------------------------

def test_ipn_confirms_then_reports_already_confirmed(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    orchestrator.create_payment(CODE)
    assert orchestrator.process_ipn(signed_callback()).RspCode == "00"
    assert statuses(db) == ["PAID", "PAID"]
    assert orchestrator.process_ipn(signed_callback()).RspCode == "02"


def test_ipn_bad_checksum(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    ack = orchestrator.process_ipn(signed_callback(secret="forged"))
    assert ack.RspCode == "97"
    assert statuses(db) == ["UNPAID"]


def test_ipn_unknown_order(orchestrator):
    assert orchestrator.process_ipn(signed_callback()).RspCode == "01"


def test_ipn_amount_mismatch(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    orchestrator.create_payment(CODE)
    assert orchestrator.process_ipn(signed_callback(amount_vnd=999_000)).RspCode == "04"


def test_ipn_malformed(orchestrator):
    params = signed_callback()
    del params["vnp_Amount"]
    assert orchestrator.process_ipn(params).RspCode == "99"


def test_ipn_failed_payment_is_acknowledged(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    orchestrator.create_payment(CODE)
    assert orchestrator.process_ipn(signed_callback(response_code="51")).RspCode == "00"
    assert statuses(db) == ["UNPAID"]


# -- cancel ----------------------------------------------------------------

def test_cancel_unpaid_booking(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000])
    result = orchestrator.cancel_payment(CODE, reason="changed plans")
    assert result.cancelledTickets == 2
    assert statuses(db) == ["CANCELLED", "CANCELLED"]
    with pytest.raises(InvalidStateTransition):
        orchestrator.cancel_payment(CODE)


def test_cancel_after_payment_requires_refund(db, orchestrator):
    add_tickets(db, CODE, [500_000, 500_000], ["PAID", "UNPAID"])
    with pytest.raises(RequiresRefund) as exc:
        orchestrator.cancel_payment(CODE)
    assert exc.value.status.paidTickets == 1
    assert statuses(db) == ["PAID", "UNPAID"]


# -- refund ----------------------------------------------------------------

def test_full_refund_cancels_paid_tickets(db, orchestrator, gateway):
    add_tickets(db, CODE, [500_000, 500_000])
    pay(orchestrator)
    record = orchestrator.refund(CODE, 1_000_000, reason="flight cancelled", operator="ops@fms.local")
    assert record.fullRefund is True
    assert record.ticketsCancelled == 2
    assert gateway.refunds[0]["full"] is True
    assert gateway.refunds[0]["transaction_no"] == "14012345"
    assert statuses(db) == ["CANCELLED", "CANCELLED"]
    assert db.scalars(select(Payment)).one().status == "refunded"


def test_return_replayed_after_full_refund_changes_nothing(db, orchestrator, notified):
    add_tickets(db, CODE, [500_000, 500_000])
    pay(orchestrator)
    orchestrator.refund(CODE, 1_000_000, reason="flight cancelled", operator="ops@fms.local")
    before = len(actions(db))

    again = orchestrator.reconcile_return(signed_callback())
    assert again.success is True
    assert again.alreadyProcessed is True
    assert again.ticketsMarkedPaid == 0
    assert db.scalars(select(Payment)).one().status == "refunded"
    assert statuses(db) == ["CANCELLED", "CANCELLED"]
    assert len(actions(db)) == before
    assert "payment.needs_refund" not in actions(db)
    assert len(notified) == 1


def test_query_after_refund_does_not_resettle(db, orchestrator, gateway):
    add_tickets(db, CODE, [1_000_000])
    pay(orchestrator)
    orchestrator.refund(CODE, 1_000_000, reason="flight cancelled", operator="ops@fms.local")
    gateway.query_answer = {"vnp_ResponseCode": "00", "vnp_TransactionStatus": "00", "vnp_Amount": "100000000"}
    result = orchestrator.query_transaction(CODE)
    assert result.ticketsMarkedPaid == 0
    assert db.scalars(select(Payment)).one().status == "refunded"


def test_partial_refunds_until_remainder_is_cleared(db, orchestrator, gateway):
    add_tickets(db, CODE, [500_000, 500_000])
    pay(orchestrator)
    first = orchestrator.refund(CODE, 400_000, reason="fee waiver", operator="finance@fms.local")
    assert first.fullRefund is False
    assert statuses(db) == ["PAID", "PAID"]

    with pytest.raises(InvalidAmount):
        orchestrator.refund(CODE, 700_000, reason="too much", operator="finance@fms.local")

    last = orchestrator.refund(CODE, 600_000, reason="rest", operator="finance@fms.local")
    assert last.fullRefund is True
    assert [r["full"] for r in gateway.refunds] == [False, False]
    assert statuses(db) == ["CANCELLED", "CANCELLED"]


def test_refund_needs_reason_and_operator(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    pay(orchestrator)
    with pytest.raises(InvalidRequest):
        orchestrator.refund(CODE, 1_000_000, reason=" ", operator="ops@fms.local")


def test_refund_of_unpaid_booking_is_refused(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    with pytest.raises(InvalidStateTransition):
        orchestrator.refund(CODE, 1_000_000, reason="x", operator="ops@fms.local")


def test_refund_rejected_by_gateway_keeps_tickets(db, orchestrator, gateway):
    add_tickets(db, CODE, [1_000_000])
    pay(orchestrator)
    gateway.refund_answer = {"vnp_ResponseCode": "94", "vnp_Message": "Duplicate request"}
    with pytest.raises(GatewayRejected) as exc:
        orchestrator.refund(CODE, 1_000_000, reason="dup", operator="ops@fms.local")
    assert exc.value.response_code == "94"
    assert statuses(db) == ["PAID"]
    assert db.scalars(select(Refund)).one().status == "failed"


def test_refund_timeout_is_distinct(db, orchestrator, gateway):
    add_tickets(db, CODE, [1_000_000])
    pay(orchestrator)
    gateway.refund_error = GatewayTimeout("Payment gateway did not answer within 25s")
    with pytest.raises(GatewayTimeout) as exc:
        orchestrator.refund(CODE, 1_000_000, reason="slow", operator="ops@fms.local")
    assert exc.value.status.paidTickets == 1
    assert statuses(db) == ["PAID"]


# -- query -----------------------------------------------------------------

def test_query_settles_confirmed_transaction(db, orchestrator, gateway):
    add_tickets(db, CODE, [500_000, 500_000])
    orchestrator.create_payment(CODE)
    gateway.query_answer = {
        "vnp_ResponseCode": "00", "vnp_TransactionStatus": "00", "vnp_Amount": "100000000",
        "vnp_TransactionNo": "14012345", "vnp_PayDate": "20250527051530",
    }
    result = orchestrator.query_transaction(CODE)
    assert result.success is True
    assert result.settled is True
    assert result.ticketsMarkedPaid == 2
    assert gateway.queries[0]["trans_date"] == "20250527051408"
    assert statuses(db) == ["PAID", "PAID"]


def test_query_with_bad_signature_does_not_settle(db, orchestrator, gateway):
    add_tickets(db, CODE, [1_000_000])
    orchestrator.create_payment(CODE)
    gateway.query_answer = {"vnp_ResponseCode": "00", "vnp_TransactionStatus": "00", "vnp_Amount": "100000000"}
    gateway.query_valid = False
    result = orchestrator.query_transaction(CODE)
    assert result.settled is False
    assert statuses(db) == ["UNPAID"]


def test_query_pending_transaction(db, orchestrator, gateway):
    add_tickets(db, CODE, [1_000_000])
    orchestrator.create_payment(CODE)
    gateway.query_answer = {"vnp_ResponseCode": "00", "vnp_TransactionStatus": "01", "vnp_Amount": "100000000"}
    result = orchestrator.query_transaction(CODE)
    assert result.success is False
    assert statuses(db) == ["UNPAID"]


def test_query_without_attempt(db, orchestrator):
    add_tickets(db, CODE, [1_000_000])
    with pytest.raises(BookingNotFound):
        orchestrator.query_transaction(CODE)
