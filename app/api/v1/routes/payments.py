from fastapi import APIRouter, Depends, Request

from app.api.deps import Operator, client_ip, get_orchestrator, http_error, require_roles
from app.core.security import REFUND_ROLES
from app.schemas.payments import (
    BookingPaymentStatus, CancelRequest, CancelResult, IpnAck, PaymentCreated, RefundRecord, RefundRequest,
    ReturnOutcome, TransactionQueryResult,
)
from app.services.errors import PaymentError
from app.services.payment_orchestrator import PaymentOrchestrator

router = APIRouter(tags=["payments"])


@router.post("/payment/create", response_model=PaymentCreated)
def create_payment(
    request: Request,
    confirmationCode: str,
    bankCode: str | None = None,
    language: str = "vn",
    orch: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        return orch.create_payment(confirmationCode, ip_addr=client_ip(request), locale=language, bank_code=bankCode)
    except PaymentError as e:
        raise http_error(e)


@router.get("/payment/return", response_model=ReturnOutcome)
def payment_return(request: Request, orch: PaymentOrchestrator = Depends(get_orchestrator)):
    """Browser redirect from the gateway. Always answers 200; the outcome says what happened."""
    return orch.reconcile_return(request.query_params)


@router.get("/payment/IPN", response_model=IpnAck)
def payment_ipn(request: Request, orch: PaymentOrchestrator = Depends(get_orchestrator)):
    # the gateway retries until it gets an RspCode back, so this never raises
    return orch.process_ipn(request.query_params)


@router.get("/payment/status/{confirmationCode}", response_model=BookingPaymentStatus)
def payment_status(confirmationCode: str, orch: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        return orch.query_status(confirmationCode, require_existing=True)
    except PaymentError as e:
        raise http_error(e)


@router.post("/payment/cancel/{confirmationCode}", response_model=CancelResult)
def cancel_payment(confirmationCode: str, body: CancelRequest | None = None,
                   orch: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        return orch.cancel_payment(confirmationCode, reason=body.reason if body else "")
    except PaymentError as e:
        raise http_error(e)


@router.post("/payment/query/{confirmationCode}", response_model=TransactionQueryResult)
def query_transaction(request: Request, confirmationCode: str, orch: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        return orch.query_transaction(confirmationCode, ip_addr=client_ip(request))
    except PaymentError as e:
        raise http_error(e)


@router.post("/ops/payment/refund", response_model=RefundRecord)
def refund_payment(
    request: Request,
    body: RefundRequest,
    operator: Operator = Depends(require_roles(*REFUND_ROLES)),
    orch: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        return orch.refund(body.confirmationCode, body.amount, reason=body.reason, operator=operator.username,
                           ip_addr=client_ip(request))
    except PaymentError as e:
        raise http_error(e)
