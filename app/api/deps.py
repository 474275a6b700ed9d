from dataclasses import dataclass
from functools import partial

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import decode_token
from app.db.session import get_db
from app.services.booking_store import SqlBookingStore
from app.services.email_service import notify_payment
from app.services.errors import PaymentError
from app.services.payment_ledger import PaymentLedger
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.vnpay_client import VNPayClient, VNPayConfig

bearer = HTTPBearer(auto_error=False)

STATUS_BY_CODE = {
    "NotFound": 404,
    "InvalidStateTransition": 409,
    "RequiresRefund": 409,
    "InvalidAmount": 422,
    "EncodingTooLong": 422,
    "InvalidRequest": 422,
    "GatewayError": 502,
    "GatewayUnavailable": 502,
    "GatewayRejected": 502,
    "GatewayTimeout": 504,
}


@dataclass
class Operator:
    username: str
    role: str


def get_current_operator(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> Operator:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return Operator(username=payload["sub"], role=payload.get("role") or "")


def require_roles(*roles: str):
    def _guard(operator: Operator = Depends(get_current_operator)) -> Operator:
        if operator.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return operator
    return _guard


def gateway_config() -> VNPayConfig:
    return VNPayConfig(
        pay_url=settings.VNP_PAY_URL,
        api_url=settings.VNP_API_URL,
        return_url=settings.VNP_RETURN_URL,
        tmn_code=settings.VNP_TMN_CODE,
        hash_secret=settings.VNP_HASH_SECRET,
        version=settings.VNP_VERSION,
        timezone=settings.VNP_TIMEZONE,
        timeout=settings.VNP_TIMEOUT,
        expire_minutes=settings.VNP_EXPIRE_MINUTES,
    )


def get_gateway() -> VNPayClient:
    return VNPayClient(gateway_config())


def get_orchestrator(db: Session = Depends(get_db), gateway: VNPayClient = Depends(get_gateway)) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        SqlBookingStore(db),
        PaymentLedger(db),
        gateway,
        notifier=partial(notify_payment, db),
    )


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def http_error(e: PaymentError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CODE.get(e.code, 400), detail=e.to_detail())
