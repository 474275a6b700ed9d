"""Classify one gateway return callback (browser redirect or IPN).

RECEIVED -> SIGNATURE_CHECKED -> ACCEPTED | REJECTED

The processor never mutates anything; reconciling an accepted callback with
ticket state is PaymentOrchestrator's job, so calling it twice is harmless.
"""
from enum import Enum
from typing import Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.config import settings
from app.schemas.payments import ReturnOutcome
from app.services.confirmation_code import ConfirmationCodeCodec, ParseError, codec as default_codec
from app.services.gateway_codes import GatewayOutcome, SUCCESS_OUTCOMES, classify_return_code
from app.services.vnpay_client import sign_params, signatures_match

log = structlog.get_logger(__name__)


class ReturnStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class CallbackV2_1_0(BaseModel):
    """Return/IPN parameters of gateway API 2.1.0. Unknown vnp_ fields are rejected."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)

    vnp_TmnCode: str = Field(min_length=1)
    vnp_Amount: str = Field(pattern=r"^\d+$")
    vnp_ResponseCode: str = Field(pattern=r"^\d{2}$")
    vnp_TxnRef: str = Field(min_length=1, max_length=100)
    vnp_SecureHash: str = Field(pattern=r"^[0-9a-fA-F]+$")

    vnp_SecureHashType: Optional[str] = None
    vnp_BankCode: Optional[str] = None
    vnp_BankTranNo: Optional[str] = None
    vnp_CardType: Optional[str] = None
    vnp_OrderInfo: Optional[str] = None
    vnp_PayDate: Optional[str] = Field(default=None, pattern=r"^\d{14}$")
    vnp_TransactionNo: Optional[str] = None
    vnp_TransactionStatus: Optional[str] = None


CALLBACK_SCHEMAS = {"2.1.0": CallbackV2_1_0}


def _gateway_fields(query_params: Mapping) -> dict:
    return {k: v for k, v in dict(query_params).items() if isinstance(k, str) and k.startswith("vnp_")}


class GatewayReturnProcessor:
    def __init__(self, hash_secret: str | None = None, codec: ConfirmationCodeCodec | None = None,
                 version: str | None = None):
        self.hash_secret = hash_secret if hash_secret is not None else settings.VNP_HASH_SECRET
        self.codec = codec or default_codec
        self.schema = CALLBACK_SCHEMAS[version or settings.VNP_VERSION]

    def process(self, query_params: Mapping) -> ReturnOutcome:
        fields = _gateway_fields(query_params or {})
        txn_ref = fields.get("vnp_TxnRef")
        try:
            cb = self.schema.model_validate(fields)
        except ValidationError as e:
            bad = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            log.warning("gateway_callback_malformed", txn_ref=txn_ref, fields=bad)
            return ReturnOutcome(
                status=ReturnStatus.REJECTED.value,
                outcome=GatewayOutcome.MALFORMED_CALLBACK.value,
                message="MalformedCallback: missing or invalid fields " + ", ".join(bad),
                txnRef=txn_ref,
            )

        expected = sign_params(self.hash_secret, fields)
        if not self.hash_secret or not signatures_match(expected, cb.vnp_SecureHash):
            # same display as any rejection; logged apart for fraud review
            log.warning("gateway_signature_invalid", txn_ref=cb.vnp_TxnRef, response_code=cb.vnp_ResponseCode,
                        amount=cb.vnp_Amount)
            return ReturnOutcome(
                status=ReturnStatus.REJECTED.value,
                outcome=GatewayOutcome.SIGNATURE_INVALID.value,
                message="SignatureInvalid: the payment result could not be verified",
                signatureValid=False,
                rawResponseCode=cb.vnp_ResponseCode,
                txnRef=cb.vnp_TxnRef,
            )

        outcome, reason = classify_return_code(cb.vnp_ResponseCode)
        decoded = self.codec.decode_from_gateway(cb.vnp_TxnRef)
        if isinstance(decoded, ParseError):
            log.warning("txn_ref_unparseable", txn_ref=cb.vnp_TxnRef, reason=decoded.reason)
            confirmation_code = None
        else:
            confirmation_code = decoded

        return ReturnOutcome(
            status=ReturnStatus.ACCEPTED.value,
            success=outcome in SUCCESS_OUTCOMES,
            outcome=outcome.value,
            message=reason,
            signatureValid=True,
            confirmationCode=confirmation_code,
            rawResponseCode=cb.vnp_ResponseCode,
            txnRef=cb.vnp_TxnRef,
            transactionNo=cb.vnp_TransactionNo,
            transactionStatus=cb.vnp_TransactionStatus,
            amount=int(cb.vnp_Amount) // 100,
            bankCode=cb.vnp_BankCode,
            cardType=cb.vnp_CardType,
            payDate=cb.vnp_PayDate,
        )
