"""Payment decisions for a confirmation code.

The orchestrator decides whether an action is legal given the live aggregate
state; the gateway client moves money and the booking store moves tickets.
Ticket settlement is idempotent: redelivered return callbacks, IPNs and
status queries for an attempt that is already paid or refunded change
nothing.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Protocol
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.models.ticket import TicketStatus
from app.schemas.payments import (
    BookingPaymentStatus, CancelResult, IpnAck, PaymentCreated, RefundRecord, ReturnOutcome,
    TransactionQueryResult,
)
from app.services.booking_store import BookingStore
from app.services.confirmation_code import ConfirmationCodeCodec, EncodingTooLong, codec as default_codec
from app.services.errors import (
    BookingNotFound, GatewayError, GatewayRejected, InvalidAmount, InvalidRequest, InvalidStateTransition,
    ReferenceTooLong, RequiresRefund,
)
from app.services.gateway_codes import (
    GatewayOutcome, IPN_MESSAGES, IpnCode, TXN_STATUS_SUCCESS, describe_api_code,
)
from app.services.gateway_return import GatewayReturnProcessor, ReturnStatus
from app.services.payment_ledger import PaymentLedger
from app.services.payment_status import aggregate
from app.services.vnpay_client import DATE_FMT

log = structlog.get_logger(__name__)

# attempt states a gateway success may still settle
SETTLEABLE = ("pending", "failed")


class GatewayClient(Protocol):
    def create_payment_url(self, amount: int, reference: str, *, order_info: str, ip_addr: str,
                           now: datetime, locale: str = "vn", bank_code: str | None = None) -> str: ...

    def query_transaction(self, reference: str, *, trans_date: str, ip_addr: str, now: datetime) -> dict: ...

    def query_response_valid(self, data: dict) -> bool: ...

    def refund(self, reference: str, amount: int, *, trans_date: str, transaction_no: str, user: str,
               ip_addr: str, now: datetime, full: bool = True) -> dict: ...


@dataclass
class Settlement:
    marked: int = 0
    already_processed: bool = False
    amount_mismatch: bool = False


def _gateway_now() -> datetime:
    return datetime.now(ZoneInfo(settings.VNP_TIMEZONE))


class PaymentOrchestrator:
    def __init__(self, store: BookingStore, ledger: PaymentLedger, gateway: GatewayClient, *,
                 processor: GatewayReturnProcessor | None = None, codec: ConfirmationCodeCodec | None = None,
                 clock: Callable[[], datetime] | None = None,
                 notifier: Callable[[str, list], int] | None = None):
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.processor = processor or GatewayReturnProcessor()
        self.codec = codec or default_codec
        self.clock = clock or _gateway_now
        self.notifier = notifier

    # -- reads -------------------------------------------------------------

    def query_status(self, confirmation_code: str, *, require_existing: bool = False) -> BookingPaymentStatus:
        # always recomputed from tickets: "pay now" must see live numbers
        if require_existing:
            return self._load(confirmation_code)[1]
        return aggregate(confirmation_code, self.store.get_tickets_by_confirmation_code(confirmation_code))

    def _load(self, confirmation_code: str):
        tickets = self.store.get_tickets_by_confirmation_code(confirmation_code)
        if not tickets:
            raise BookingNotFound(f"No booking found for confirmation code {confirmation_code}")
        return tickets, aggregate(confirmation_code, tickets)

    # -- commands ----------------------------------------------------------

    def create_payment(self, confirmation_code: str, *, ip_addr: str = "127.0.0.1", locale: str = "vn",
                       bank_code: str | None = None) -> PaymentCreated:
        tickets, status = self._load(confirmation_code)
        if not status.paymentRequired:
            reason = "Booking is already paid" if status.bookingPaid else "Booking has no payable tickets"
            raise InvalidStateTransition(reason, status)
        amount = status.unpaidAmount
        if amount <= 0:
            raise InvalidAmount(f"Invalid payment amount {amount}", status)

        now = self.clock()
        reference = self.codec.encode_for_gateway(confirmation_code, now)
        if isinstance(reference, EncodingTooLong):
            raise ReferenceTooLong(reference.reason, status)

        order_info = f"Flight ticket payment. Booking {confirmation_code}"
        url = self.gateway.create_payment_url(amount, reference, order_info=order_info, ip_addr=ip_addr,
                                              now=now, locale=locale, bank_code=bank_code)

        attempt = self.ledger.find_by_txn_ref(reference)
        if attempt is None:
            unpaid_ids = [t.id for t in tickets if t.ticket_status is TicketStatus.UNPAID]
            try:
                self.ledger.record_attempt(confirmation_code=confirmation_code, txn_ref=reference, amount=amount,
                                           ticket_ids=unpaid_ids, create_date=now.strftime(DATE_FMT))
                self.ledger.audit("customer", "payment.created", "booking", confirmation_code,
                                  {"txn_ref": reference, "amount": amount})
                self.ledger.commit()
            except IntegrityError as exc:
                # a concurrent request inserted the same reference first
                self.ledger.rollback()
                attempt = self.ledger.find_by_txn_ref(reference)
                if attempt is None:
                    raise
                log.info("payment_create_raced", confirmation_code=confirmation_code, txn_ref=reference)
                self._check_reusable(attempt, amount, status, exc)
        else:
            self._check_reusable(attempt, amount, status)
            self.ledger.commit()
        log.info("payment_created", confirmation_code=confirmation_code, txn_ref=reference, amount=amount)
        return PaymentCreated(confirmationCode=confirmation_code, paymentUrl=url, txnRef=reference,
                              amount=amount, orderInfo=order_info)

    def _check_reusable(self, attempt, amount: int, status: BookingPaymentStatus, cause: Exception | None = None):
        if attempt.status != "pending" or attempt.amount != amount:
            # same-second resubmission after the first attempt already moved on
            raise InvalidStateTransition(
                "A payment for this booking is already being processed, retry shortly", status) from cause

    def cancel_payment(self, confirmation_code: str, reason: str = "") -> CancelResult:
        tickets, status = self._load(confirmation_code)
        if status.paidTickets > 0:
            raise RequiresRefund(
                "Cannot cancel booking - payment has already been completed. Use refund instead.", status)
        unpaid_ids = [t.id for t in tickets if t.ticket_status is TicketStatus.UNPAID]
        if not unpaid_ids:
            raise InvalidStateTransition("Booking is already cancelled", status)
        cancelled = self.store.cancel(unpaid_ids)
        self.ledger.audit("customer", "booking.cancelled", "booking", confirmation_code,
                          {"ticket_ids": unpaid_ids, "reason": reason})
        self.ledger.commit()
        log.info("booking_cancelled", confirmation_code=confirmation_code, tickets=cancelled)
        return CancelResult(confirmationCode=confirmation_code, cancelledTickets=cancelled,
                            timestamp=self.clock().strftime("%Y-%m-%d %H:%M:%S"))

    def refund(self, confirmation_code: str, amount: int, *, reason: str, operator: str,
               ip_addr: str = "127.0.0.1") -> RefundRecord:
        if not (reason or "").strip() or not (operator or "").strip():
            raise InvalidRequest("A refund needs a reason and the operator's identity")
        tickets, status = self._load(confirmation_code)
        if status.paidTickets == 0:
            raise InvalidStateTransition("Booking has no paid tickets to refund", status)
        payment = self.ledger.latest_paid(confirmation_code)
        if payment is None:
            raise InvalidStateTransition("No settled gateway payment found for this booking", status)

        remaining = payment.amount - self.ledger.refunded_amount(payment.id)
        if amount <= 0 or amount > status.paidAmount or amount > remaining:
            raise InvalidAmount(
                f"Refund amount {amount} must be positive and at most {min(status.paidAmount, remaining)}", status)
        clears = amount == remaining
        # the gateway only accepts a "full" refund for an untouched transaction
        gateway_full = amount == payment.amount

        log_ctx = log.bind(confirmation_code=confirmation_code, txn_ref=payment.txn_ref, amount=amount)
        try:
            resp = self.gateway.refund(payment.txn_ref, amount, trans_date=payment.create_date,
                                       transaction_no=payment.transaction_no, user=operator, ip_addr=ip_addr,
                                       now=self.clock(), full=gateway_full)
        except GatewayError as e:
            self.ledger.record_refund(confirmation_code=confirmation_code, payment_id=payment.id, operator=operator,
                                      reason=reason, amount=amount, full_refund=clears, tickets_cancelled=0,
                                      status="failed", gateway_message=e.message)
            self.ledger.audit(operator, "payment.refund_failed", "booking", confirmation_code, {"error": e.message})
            self.ledger.commit()
            e.status = status
            raise

        rc = str(resp.get("vnp_ResponseCode") or "")
        _, description = describe_api_code(rc)
        message = str(resp.get("vnp_Message") or description)
        if rc != "00":
            self.ledger.record_refund(confirmation_code=confirmation_code, payment_id=payment.id, operator=operator,
                                      reason=reason, amount=amount, full_refund=clears, tickets_cancelled=0,
                                      status="failed", response_code=rc, gateway_message=message)
            self.ledger.audit(operator, "payment.refund_rejected", "booking", confirmation_code,
                              {"response_code": rc, "message": message})
            self.ledger.commit()
            log_ctx.warning("refund_rejected", response_code=rc)
            raise GatewayRejected(f"Refund rejected by gateway: {description}", response_code=rc, status=status)

        cancelled = 0
        if clears:
            cancelled = self.store.cancel(self.ledger.ticket_ids(payment))
            self.ledger.settle(payment, status="refunded")
        record = self.ledger.record_refund(confirmation_code=confirmation_code, payment_id=payment.id,
                                           operator=operator, reason=reason, amount=amount, full_refund=clears,
                                           tickets_cancelled=cancelled, status="succeeded", response_code=rc,
                                           gateway_message=message)
        self.ledger.audit(operator, "payment.refunded", "booking", confirmation_code,
                          {"amount": amount, "full": clears, "tickets_cancelled": cancelled, "reason": reason})
        self.ledger.commit()
        log_ctx.info("refund_succeeded", full=clears, tickets_cancelled=cancelled)
        return RefundRecord(
            id=record.id, confirmationCode=confirmation_code, amount=amount, fullRefund=clears,
            ticketsCancelled=cancelled, reason=reason, operator=operator, responseCode=rc, message=message,
            createdAt=record.created_at.isoformat(),
        )

    def query_transaction(self, confirmation_code: str, *, ip_addr: str = "127.0.0.1") -> TransactionQueryResult:
        _, status = self._load(confirmation_code)
        attempt = self.ledger.latest_attempt(confirmation_code)
        if attempt is None:
            raise BookingNotFound("No payment has been started for this booking", status)

        data = self.gateway.query_transaction(attempt.txn_ref, trans_date=attempt.create_date, ip_addr=ip_addr,
                                              now=self.clock())
        rc = str(data.get("vnp_ResponseCode") or "")
        txn_status = str(data.get("vnp_TransactionStatus") or "")
        amount_raw = str(data.get("vnp_Amount") or "")
        amount = int(amount_raw) // 100 if amount_raw.isdigit() else None
        _, description = describe_api_code(rc)
        success = rc == "00" and txn_status == TXN_STATUS_SUCCESS

        result = TransactionQueryResult(
            confirmationCode=confirmation_code, txnRef=attempt.txn_ref, success=success, responseCode=rc,
            transactionStatus=txn_status, message=str(data.get("vnp_Message") or description),
            transactionNo=str(data.get("vnp_TransactionNo") or ""), amount=amount,
        )
        if not success or attempt.status not in SETTLEABLE:
            return result
        if not self.gateway.query_response_valid(data):
            log.warning("query_signature_invalid", confirmation_code=confirmation_code, txn_ref=attempt.txn_ref)
            self.ledger.audit("vnpay-query", "payment.signature_invalid", "payment", attempt.txn_ref, {"source": "querydr"})
            self.ledger.commit()
            return result

        settlement = self._settle(confirmation_code, attempt.txn_ref, amount=amount or 0,
                                  transaction_no=result.transactionNo, response_code="00",
                                  bank_code=str(data.get("vnp_BankCode") or ""),
                                  pay_date=str(data.get("vnp_PayDate") or ""), actor="vnpay-query")
        return result.model_copy(update={
            "settled": not settlement.amount_mismatch,
            "ticketsMarkedPaid": settlement.marked,
        })

    # -- gateway callbacks -------------------------------------------------

    def reconcile_return(self, query_params: Mapping) -> ReturnOutcome:
        outcome = self.processor.process(query_params)
        if outcome.status == ReturnStatus.REJECTED.value:
            self._audit_rejection(outcome, source="return")
            return outcome
        if outcome.confirmationCode is None:
            self.ledger.audit("vnpay-return", "payment.unparseable_reference", "payment", outcome.txnRef or "-",
                              {"response_code": outcome.rawResponseCode})
            self.ledger.commit()
            return outcome
        if not outcome.success:
            self._record_failure(outcome, actor="vnpay-return")
            return outcome

        settlement = self._settle(outcome.confirmationCode, outcome.txnRef, amount=outcome.amount or 0,
                                  transaction_no=outcome.transactionNo or "", response_code=outcome.rawResponseCode,
                                  bank_code=outcome.bankCode or "", pay_date=outcome.payDate or "",
                                  actor="vnpay-return")
        if settlement.amount_mismatch:
            return outcome.model_copy(update={
                "success": False,
                "message": "Paid amount does not match the booking, please contact support",
            })
        return outcome.model_copy(update={
            "ticketsMarkedPaid": settlement.marked,
            "alreadyProcessed": settlement.already_processed,
        })

    def process_ipn(self, query_params: Mapping) -> IpnAck:
        outcome = self.processor.process(query_params)
        if outcome.outcome == GatewayOutcome.SIGNATURE_INVALID.value:
            self._audit_rejection(outcome, source="ipn")
            return _ack(IpnCode.INVALID_CHECKSUM)
        if outcome.status == ReturnStatus.REJECTED.value:
            return _ack(IpnCode.UNKNOWN_ERROR)

        code = outcome.confirmationCode
        tickets = self.store.get_tickets_by_confirmation_code(code) if code else []
        if not tickets:
            return _ack(IpnCode.ORDER_NOT_FOUND)

        attempt = self.ledger.find_by_txn_ref(outcome.txnRef)
        status = aggregate(code, tickets)
        expected = attempt.amount if attempt is not None else status.unpaidAmount
        if attempt is None and status.unpaidTickets == 0:
            return _ack(IpnCode.ALREADY_CONFIRMED)
        if outcome.amount != expected:
            log.warning("ipn_amount_mismatch", confirmation_code=code, expected=expected, received=outcome.amount)
            return _ack(IpnCode.INVALID_AMOUNT)
        if attempt is not None and attempt.status != "pending":
            return _ack(IpnCode.ALREADY_CONFIRMED)

        if outcome.success:
            self._settle(code, outcome.txnRef, amount=outcome.amount or 0, transaction_no=outcome.transactionNo or "",
                         response_code=outcome.rawResponseCode, bank_code=outcome.bankCode or "",
                         pay_date=outcome.payDate or "", actor="vnpay-ipn")
        else:
            self._record_failure(outcome, actor="vnpay-ipn")
        return _ack(IpnCode.CONFIRM_SUCCESS)

    # -- internals ---------------------------------------------------------

    def _settle(self, confirmation_code: str, txn_ref: str, *, amount: int, transaction_no: str,
                response_code: str, bank_code: str, pay_date: str, actor: str) -> Settlement:
        attempt = self.ledger.find_by_txn_ref(txn_ref)
        if attempt is not None:
            if attempt.status not in SETTLEABLE:
                # paid, or paid and since refunded: the money was already accounted for
                log.info("payment_already_settled", confirmation_code=confirmation_code, txn_ref=txn_ref,
                         attempt_status=attempt.status)
                return Settlement(already_processed=True)
            if attempt.confirmation_code != confirmation_code or attempt.amount != amount:
                return self._mismatch(confirmation_code, txn_ref, expected=attempt.amount, received=amount,
                                      actor=actor)
            ticket_ids = self.ledger.ticket_ids(attempt)
        else:
            # attempt not in the ledger (created before it existed or by hand): cover what is unpaid now
            tickets = self.store.get_tickets_by_confirmation_code(confirmation_code)
            status = aggregate(confirmation_code, tickets)
            if status.unpaidTickets == 0:
                return Settlement(already_processed=True)
            if status.unpaidAmount != amount:
                return self._mismatch(confirmation_code, txn_ref, expected=status.unpaidAmount, received=amount,
                                      actor=actor)
            ticket_ids = [t.id for t in tickets if t.ticket_status is TicketStatus.UNPAID]
            attempt = self.ledger.record_attempt(confirmation_code=confirmation_code, txn_ref=txn_ref,
                                                 amount=amount, ticket_ids=ticket_ids,
                                                 create_date=pay_date or self.clock().strftime(DATE_FMT))

        marked = self.store.mark_paid(ticket_ids, transaction_no or txn_ref, paid_at=self._paid_at(pay_date))
        self.ledger.settle(attempt, status="paid", response_code=response_code, transaction_no=transaction_no,
                           bank_code=bank_code, pay_date=pay_date)
        details = {"txn_ref": txn_ref, "transaction_no": transaction_no, "amount": amount, "tickets": marked}
        self.ledger.audit(actor, "payment.settled", "booking", confirmation_code, details)
        if marked == 0:
            # money taken for tickets that were already paid or cancelled meanwhile
            self.ledger.audit(actor, "payment.needs_refund", "booking", confirmation_code, details)
            log.warning("payment_settled_without_tickets", confirmation_code=confirmation_code, txn_ref=txn_ref)
        self.ledger.commit()
        log.info("payment_settled", confirmation_code=confirmation_code, txn_ref=txn_ref, tickets=marked)

        if marked and self.notifier is not None:
            paid = [t for t in self.store.get_tickets_by_confirmation_code(confirmation_code)
                    if t.id in ticket_ids and t.ticket_status is TicketStatus.PAID]
            try:
                self.notifier(confirmation_code, paid)
            except Exception as e:  # notifications never undo a settlement
                log.warning("payment_notification_failed", confirmation_code=confirmation_code, error=str(e))
        return Settlement(marked=marked)

    def _mismatch(self, confirmation_code: str, txn_ref: str, *, expected: int, received: int,
                  actor: str) -> Settlement:
        log.warning("payment_amount_mismatch", confirmation_code=confirmation_code, txn_ref=txn_ref,
                    expected=expected, received=received)
        self.ledger.audit(actor, "payment.amount_mismatch", "booking", confirmation_code,
                          {"txn_ref": txn_ref, "expected": expected, "received": received})
        self.ledger.commit()
        return Settlement(amount_mismatch=True)

    def _record_failure(self, outcome: ReturnOutcome, *, actor: str) -> None:
        attempt = self.ledger.find_by_txn_ref(outcome.txnRef) if outcome.txnRef else None
        if attempt is not None and attempt.status == "pending":
            self.ledger.settle(attempt, status="failed", response_code=outcome.rawResponseCode or "",
                               transaction_no=outcome.transactionNo or "", pay_date=outcome.payDate or "")
        self.ledger.audit(actor, "payment.failed", "booking", outcome.confirmationCode or outcome.txnRef or "-",
                          {"response_code": outcome.rawResponseCode, "outcome": outcome.outcome})
        self.ledger.commit()
        log.info("payment_failed", confirmation_code=outcome.confirmationCode, response_code=outcome.rawResponseCode,
                 outcome=outcome.outcome)

    def _audit_rejection(self, outcome: ReturnOutcome, *, source: str) -> None:
        action = ("payment.signature_invalid" if outcome.outcome == GatewayOutcome.SIGNATURE_INVALID.value
                  else "payment.malformed_callback")
        self.ledger.audit(f"vnpay-{source}", action, "payment", outcome.txnRef or "-",
                          {"response_code": outcome.rawResponseCode, "message": outcome.message})
        self.ledger.commit()

    def _paid_at(self, pay_date: str) -> datetime:
        if pay_date:
            try:
                return datetime.strptime(pay_date, DATE_FMT).replace(tzinfo=ZoneInfo(settings.VNP_TIMEZONE))
            except ValueError:
                log.warning("pay_date_unparseable", pay_date=pay_date)
        return self.clock()


def _ack(code: IpnCode) -> IpnAck:
    return IpnAck(RspCode=code.value, Message=IPN_MESSAGES[code])
