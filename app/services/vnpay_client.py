import hashlib
import hmac
import re
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

import requests
import structlog

from app.services.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable

log = structlog.get_logger(__name__)

DATE_FMT = "%Y%m%d%H%M%S"
SIGNATURE_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")


@dataclass
class VNPayConfig:
    pay_url: str            # browser redirect endpoint (vpcpay.html)
    api_url: str            # merchant_webapi/api/transaction
    return_url: str
    tmn_code: str           # merchant terminal code
    hash_secret: str        # shared secret for HMAC-SHA512
    version: str = "2.1.0"
    timezone: str = "Asia/Ho_Chi_Minh"
    timeout: int = 25
    expire_minutes: int = 15
    currency: str = "VND"
    order_type: str = "190000"  # airline tickets


def hmac_sha512_hex(secret: str, msg: str) -> str:
    return hmac.new(secret.encode("utf-8"), msg.encode("utf-8"), hashlib.sha512).hexdigest()


def canonical_query(params: dict) -> str:
    # sorted by name, empty values dropped, values form-encoded (space -> '+')
    items = sorted((k, v) for k, v in params.items() if v not in (None, ""))
    return "&".join(f"{k}={quote_plus(str(v), safe='')}" for k, v in items)


def sign_params(secret: str, params: dict) -> str:
    unsigned = {k: v for k, v in params.items() if k not in SIGNATURE_FIELDS}
    return hmac_sha512_hex(secret, canonical_query(unsigned))


def signatures_match(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.lower(), (received or "").strip().lower())


def ascii_order_info(text: str) -> str:
    """The gateway rejects accents and most punctuation in vnp_OrderInfo."""
    # Đ/đ have no decomposition
    decomposed = unicodedata.normalize("NFD", text.replace("Đ", "D").replace("đ", "d"))
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    stripped = stripped.encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-zA-Z0-9.: -]", " ", stripped)


class VNPayClient:
    def __init__(self, cfg: VNPayConfig):
        self.cfg = cfg
        self._tz = ZoneInfo(cfg.timezone)

    def _require_configured(self):
        if not self.cfg.tmn_code or not self.cfg.hash_secret:
            raise GatewayUnavailable("Payment gateway is not configured")

    def _stamp(self, now: datetime) -> str:
        return now.astimezone(self._tz).strftime(DATE_FMT)

    def create_payment_url(self, amount: int, reference: str, *, order_info: str, ip_addr: str,
                           now: datetime, locale: str = "vn", bank_code: str | None = None) -> str:
        self._require_configured()
        params = {
            "vnp_Version": self.cfg.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_Amount": str(int(amount) * 100),  # gateway amounts carry two implied decimals
            "vnp_CurrCode": self.cfg.currency,
            "vnp_TxnRef": reference,
            "vnp_OrderInfo": ascii_order_info(order_info),
            "vnp_OrderType": self.cfg.order_type,
            "vnp_Locale": locale or "vn",
            "vnp_ReturnUrl": self.cfg.return_url,
            "vnp_IpAddr": ip_addr,
            "vnp_CreateDate": self._stamp(now),
            "vnp_ExpireDate": self._stamp(now + timedelta(minutes=self.cfg.expire_minutes)),
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code
        query = canonical_query(params)
        signature = hmac_sha512_hex(self.cfg.hash_secret, query)
        return f"{self.cfg.pay_url}?{query}&vnp_SecureHash={signature}"

    def request(self, payload: dict) -> dict:
        self._require_configured()
        try:
            r = requests.post(self.cfg.api_url, json=payload, timeout=self.cfg.timeout,
                              headers={"Content-Type": "application/json", "Accept": "application/json"})
        except requests.Timeout as e:
            log.warning("vnpay_timeout", command=payload.get("vnp_Command"), txn_ref=payload.get("vnp_TxnRef"))
            raise GatewayTimeout(f"Payment gateway did not answer within {self.cfg.timeout}s") from e
        except requests.RequestException as e:
            log.warning("vnpay_unreachable", command=payload.get("vnp_Command"), error=str(e))
            raise GatewayUnavailable(f"Payment gateway unreachable: {e}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway error {r.status_code}")
        if r.status_code >= 400:
            raise GatewayRejected(f"Payment gateway rejected request ({r.status_code}): {data}")
        return data

    def query_transaction(self, reference: str, *, trans_date: str, ip_addr: str, now: datetime) -> dict:
        request_id = uuid.uuid4().hex
        create_date = self._stamp(now)
        order_info = ascii_order_info(f"Query transaction {reference}")
        hash_data = "|".join([
            request_id, self.cfg.version, "querydr", self.cfg.tmn_code, reference,
            trans_date, create_date, ip_addr, order_info,
        ])
        payload = {
            "vnp_RequestId": request_id,
            "vnp_Version": self.cfg.version,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_TxnRef": reference,
            "vnp_OrderInfo": order_info,
            "vnp_TransactionDate": trans_date,
            "vnp_CreateDate": create_date,
            "vnp_IpAddr": ip_addr,
            "vnp_SecureHash": hmac_sha512_hex(self.cfg.hash_secret, hash_data),
        }
        return self.request(payload)

    def query_response_valid(self, data: dict) -> bool:
        """Check the signature the gateway puts on a querydr answer before trusting it."""
        fields = [
            "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode", "vnp_TxnRef",
            "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo", "vnp_TransactionType",
            "vnp_TransactionStatus", "vnp_OrderInfo", "vnp_PromotionCode", "vnp_PromotionAmount",
        ]
        hash_data = "|".join(str(data.get(f) or "") for f in fields)
        return signatures_match(hmac_sha512_hex(self.cfg.hash_secret, hash_data), str(data.get("vnp_SecureHash") or ""))

    def refund(self, reference: str, amount: int, *, trans_date: str, transaction_no: str, user: str,
               ip_addr: str, now: datetime, full: bool = True) -> dict:
        request_id = uuid.uuid4().hex
        create_date = self._stamp(now)
        trans_type = "02" if full else "03"  # 02 full refund, 03 partial refund
        vnp_amount = str(int(amount) * 100)
        order_info = ascii_order_info(f"Refund transaction {reference}")
        # field order is fixed by the gateway, not alphabetical
        hash_data = "|".join([
            request_id, self.cfg.version, "refund", self.cfg.tmn_code, trans_type, reference,
            vnp_amount, transaction_no or "", trans_date, user, create_date, ip_addr, order_info,
        ])
        payload = {
            "vnp_RequestId": request_id,
            "vnp_Version": self.cfg.version,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.cfg.tmn_code,
            "vnp_TransactionType": trans_type,
            "vnp_TxnRef": reference,
            "vnp_Amount": vnp_amount,
            "vnp_TransactionNo": transaction_no or "",
            "vnp_OrderInfo": order_info,
            "vnp_TransactionDate": trans_date,
            "vnp_CreateBy": user,
            "vnp_CreateDate": create_date,
            "vnp_IpAddr": ip_addr,
            "vnp_SecureHash": hmac_sha512_hex(self.cfg.hash_secret, hash_data),
        }
        return self.request(payload)
