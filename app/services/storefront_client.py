import requests
import structlog

from app.core.config import settings
from app.schemas.booking import GuestBookingRecord
from app.services.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable

log = structlog.get_logger(__name__)


class StorefrontClient:
    """HTTP access to the booking backend for lookups the guest cache can't answer."""

    def __init__(self, base_url: str | None = None, timeout: int | None = None, session: requests.Session | None = None):
        self.base_url = (base_url or settings.STOREFRONT_API_URL).rstrip("/")
        self.timeout = timeout or settings.STOREFRONT_TIMEOUT
        self.http = session or requests.Session()

    def _call(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise GatewayTimeout(f"Booking service did not answer within {self.timeout}s") from e
        except requests.RequestException as e:
            raise GatewayUnavailable(f"Booking service unreachable: {e}") from e

    def lookup_booking(self, confirmation_code: str, email: str | None = None) -> GuestBookingRecord | None:
        params = {"email": email} if email else None
        r = self._call("GET", f"/public/bookings/lookup/{confirmation_code}", params=params)
        if r.status_code == 404:
            return None
        if r.status_code >= 500:
            raise GatewayUnavailable(f"Booking service error {r.status_code}")
        if r.status_code >= 400:
            raise GatewayRejected(f"Booking lookup rejected ({r.status_code}): {r.text}")
        return GuestBookingRecord.model_validate(r.json())

    def cancel_booking(self, confirmation_code: str, reason: str = "") -> dict:
        r = self._call("POST", f"/payment/cancel/{confirmation_code}", json={"reason": reason})
        if r.status_code >= 500:
            raise GatewayUnavailable(f"Booking service error {r.status_code}")
        if r.status_code >= 400:
            raise GatewayRejected(f"Booking cancellation rejected ({r.status_code}): {r.text}")
        return r.json() if r.text else {}
