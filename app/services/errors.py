from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.schemas.payments import BookingPaymentStatus


class PaymentError(Exception):
    """Base for payment failures that carry a human-readable reason.

    `code` is a stable machine identifier, `status` the aggregate booking
    state at the time of the failure when one was computed.
    """
    code = "PaymentError"

    def __init__(self, message: str, status: BookingPaymentStatus | None = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status.model_dump() if self.status is not None else None,
        }


class BookingNotFound(PaymentError):
    code = "NotFound"


class InvalidAmount(PaymentError):
    code = "InvalidAmount"


class InvalidStateTransition(PaymentError):
    code = "InvalidStateTransition"


class RequiresRefund(InvalidStateTransition):
    code = "RequiresRefund"


class GatewayError(PaymentError):
    code = "GatewayError"


class GatewayUnavailable(GatewayError):
    code = "GatewayUnavailable"


class GatewayTimeout(GatewayError):
    code = "GatewayTimeout"


class GatewayRejected(GatewayError):
    """The gateway answered, but refused the request (non-success response code)."""
    code = "GatewayRejected"

    def __init__(self, message: str, response_code: str = "", status: BookingPaymentStatus | None = None):
        super().__init__(message, status=status)
        self.response_code = response_code


class ReferenceTooLong(PaymentError):
    """The confirmation code does not fit the gateway's transaction reference field."""
    code = "EncodingTooLong"


class InvalidRequest(PaymentError):
    code = "InvalidRequest"
