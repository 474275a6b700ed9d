"""Confirmation codes and their transport through the gateway's txn reference.

A confirmation code looks like ``FMS-20250527-A1B2``. The gateway only accepts
an alphanumeric ``vnp_TxnRef`` of limited length, so the code travels as
``HHMMSS`` (time of the payment request, makes references unique across
retries) followed by the hex of the code's UTF-8 bytes::

    FMS-20250527-A1B2 @ 05:14:08  ->  051408464d532d32303235303532372d41314232

Decoding never raises: anything that does not match the expected shape is a
``ParseError`` and must be handled as a manual support case.
"""
import random
import re
import string
from dataclasses import dataclass
from datetime import datetime

from app.core.config import settings

CODE_RE = re.compile(r"^[A-Z]{2,4}-\d{8}-[A-Z0-9]{4}$")
TXN_REF_RE = re.compile(r"^\d{6}[0-9a-fA-F]+$")
TIME_PREFIX_LENGTH = 6
SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class ParseError:
    reference: str
    reason: str


@dataclass(frozen=True)
class EncodingTooLong:
    code: str
    length: int
    limit: int

    @property
    def reason(self) -> str:
        return f"transaction reference would be {self.length} chars, gateway limit is {self.limit}"


def is_valid_code(code: str) -> bool:
    return isinstance(code, str) and CODE_RE.match(code) is not None


class ConfirmationCodeCodec:
    def __init__(self, prefix: str | None = None, max_reference_length: int | None = None):
        self.prefix = (prefix or settings.CONFIRMATION_CODE_PREFIX).upper()
        self.max_reference_length = max_reference_length or settings.VNP_TXN_REF_MAX_LENGTH

    def generate(self, now: datetime) -> str:
        suffix = "".join(random.choices(SUFFIX_ALPHABET, k=4))
        return f"{self.prefix}-{now:%Y%m%d}-{suffix}"

    def encode_for_gateway(self, code: str, now: datetime) -> str | EncodingTooLong:
        reference = f"{now:%H%M%S}" + code.encode("utf-8").hex()
        if len(reference) > self.max_reference_length:
            return EncodingTooLong(code=code, length=len(reference), limit=self.max_reference_length)
        return reference

    def decode_from_gateway(self, ref) -> str | ParseError:
        if not isinstance(ref, str) or not ref:
            return ParseError(reference=str(ref or ""), reason="empty reference")
        if not TXN_REF_RE.match(ref):
            return ParseError(reference=ref, reason="reference is not HHMMSS followed by hex")
        body = ref[TIME_PREFIX_LENGTH:]
        if len(body) % 2:
            # truncated by the gateway or by hand; never guess the missing nibble
            return ParseError(reference=ref, reason="hex body has odd length")
        try:
            return bytes.fromhex(body).decode("utf-8")
        except UnicodeDecodeError:
            return ParseError(reference=ref, reason="hex body is not valid UTF-8")


codec = ConfirmationCodeCodec()
