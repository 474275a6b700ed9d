"""VNPay wire codes, mapped to closed enums in one place.

Keep these tables in sync with the gateway's published code lists
(payment return ``vnp_ResponseCode``, merchant API ``vnp_ResponseCode`` for
querydr/refund, ``vnp_TransactionStatus``, and the IPN acknowledgement codes).
"""
from enum import Enum


class GatewayOutcome(str, Enum):
    PAID = "PAID"                            # "00" fresh success
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"  # "01" order already confirmed (replay)
    CANCELLED_BY_USER = "CANCELLED_BY_USER"
    FAILED = "FAILED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    MALFORMED_CALLBACK = "MALFORMED_CALLBACK"


SUCCESS_OUTCOMES = frozenset({GatewayOutcome.PAID, GatewayOutcome.ALREADY_CONFIRMED})

# vnp_ResponseCode on the browser return / IPN
RETURN_CODES: dict[str, tuple[GatewayOutcome, str]] = {
    "00": (GatewayOutcome.PAID, "Transaction successful"),
    "01": (GatewayOutcome.ALREADY_CONFIRMED, "Order already confirmed"),
    "02": (GatewayOutcome.FAILED, "Transaction failed"),
    "07": (GatewayOutcome.FAILED, "Amount deducted, transaction flagged as suspicious"),
    "09": (GatewayOutcome.FAILED, "Card/account not registered for internet banking"),
    "10": (GatewayOutcome.FAILED, "Card/account verification failed too many times"),
    "11": (GatewayOutcome.FAILED, "Payment window expired"),
    "12": (GatewayOutcome.FAILED, "Card/account is locked"),
    "13": (GatewayOutcome.FAILED, "Wrong one-time password"),
    "24": (GatewayOutcome.CANCELLED_BY_USER, "Customer cancelled the transaction"),
    "51": (GatewayOutcome.FAILED, "Insufficient balance"),
    "65": (GatewayOutcome.FAILED, "Daily transaction limit exceeded"),
    "75": (GatewayOutcome.FAILED, "Bank under maintenance"),
    "79": (GatewayOutcome.FAILED, "Too many wrong payment passwords"),
    "99": (GatewayOutcome.FAILED, "Other error"),
}
UNKNOWN_RETURN = (GatewayOutcome.FAILED, "Unknown error")


def classify_return_code(code: str | None) -> tuple[GatewayOutcome, str]:
    return RETURN_CODES.get(code or "", UNKNOWN_RETURN)


# vnp_ResponseCode of the merchant API (querydr / refund)
API_CODES: dict[str, tuple[str, str]] = {
    "00": ("SUCCESS", "Request successful"),
    "02": ("INVALID_TMN_CODE", "Invalid merchant code"),
    "03": ("INVALID_DATA_FORMAT", "Invalid data format"),
    "04": ("FULL_REFUND_AFTER_PARTIAL", "Full refund not allowed after a partial refund"),
    "13": ("PARTIAL_REFUND_ONLY", "Only partial refunds are allowed for this transaction"),
    "91": ("TRANSACTION_NOT_FOUND", "Transaction not found"),
    "93": ("INVALID_REFUND_AMOUNT", "Refund amount exceeds the original amount"),
    "94": ("DUPLICATE_REQUEST", "Duplicate request"),
    "95": ("TRANSACTION_FAILED", "Transaction was not successful at the gateway"),
    "97": ("INVALID_CHECKSUM", "Invalid checksum"),
    "99": ("OTHER_ERROR", "Other error"),
}


def describe_api_code(code: str | None) -> tuple[str, str]:
    return API_CODES.get(code or "", ("UNKNOWN", "Unknown response code"))


# vnp_TransactionStatus reported by querydr
TXN_STATUS_SUCCESS = "00"


# IPN acknowledgements we answer with
class IpnCode(str, Enum):
    CONFIRM_SUCCESS = "00"
    ORDER_NOT_FOUND = "01"
    ALREADY_CONFIRMED = "02"
    INVALID_AMOUNT = "04"
    INVALID_CHECKSUM = "97"
    UNKNOWN_ERROR = "99"


IPN_MESSAGES = {
    IpnCode.CONFIRM_SUCCESS: "Confirm Success",
    IpnCode.ORDER_NOT_FOUND: "Order not Found",
    IpnCode.ALREADY_CONFIRMED: "Order already confirmed",
    IpnCode.INVALID_AMOUNT: "Invalid Amount",
    IpnCode.INVALID_CHECKSUM: "Invalid Checksum",
    IpnCode.UNKNOWN_ERROR: "Unknown error",
}
