import json
from unittest.mock import MagicMock

import pytest
import requests

from app.schemas.booking import GuestBookingRecord
from app.services.errors import GatewayTimeout, GatewayUnavailable
from app.services.guest_bookings import (
    GuestBookingCache, InMemoryGuestBookingRepository, JsonFileGuestBookingRepository, build_record,
)
from app.services.storefront_client import StorefrontClient


def record(code, email="guest@example.com"):
    return build_record(code, [{"fare": 500_000}, {"fare": 700_000}], [{"name": "Nguyen Van A", "email": email}],
                        {"flightCode": "VN123", "departureCityName": "Ha Noi", "arrivalCityName": "Da Nang"})


def codes(cache):
    return [r.confirmationCode for r in cache.list()]


def test_keeps_only_most_recent_ten():
    cache = GuestBookingCache(InMemoryGuestBookingRepository(), limit=10)
    for i in range(1, 12):
        cache.store(record(f"FMS-20250527-{i:04d}"))
    kept = codes(cache)
    assert len(kept) == 10
    assert "FMS-20250527-0001" not in kept
    assert kept[0] == "FMS-20250527-0002"
    assert kept[-1] == "FMS-20250527-0011"


def test_record_checkout_totals_fares():
    cache = GuestBookingCache(InMemoryGuestBookingRepository())
    r = cache.record_checkout("FMS-20250527-A1B2", [{"fare": 500_000}, {"fare": 700_000}],
                              [{"name": "A", "email": "a@example.com"}],
                              {"flightCode": "VN123", "departureCityName": "Ha Noi"})
    assert r.totalAmount == 1_200_000
    assert r.flightInfo.departureCity == "Ha Noi"
    assert cache.find("FMS-20250527-A1B2") == r


def test_find_is_exact():
    cache = GuestBookingCache(InMemoryGuestBookingRepository())
    cache.store(record("FMS-20250527-A1B2"))
    assert cache.find("fms-20250527-a1b2") is None


def test_lookup_verifies_passenger_email():
    cache = GuestBookingCache(InMemoryGuestBookingRepository())
    cache.store(record("FMS-20250527-A1B2", email="Guest@Example.com"))
    assert cache.lookup("FMS-20250527-A1B2", "guest@example.com") is not None
    assert cache.lookup("FMS-20250527-A1B2", "someone@example.com") is None
    assert cache.lookup("FMS-20250527-A1B2") is not None


def test_lookup_miss_defers_to_server():
    server = MagicMock(return_value=None)
    cache = GuestBookingCache(InMemoryGuestBookingRepository(), server_lookup=server)
    assert cache.lookup("FMS-20250527-ZZZZ", "x@example.com") is None
    server.assert_called_once_with("FMS-20250527-ZZZZ", "x@example.com")


def test_remove_absent_is_noop():
    cache = GuestBookingCache(InMemoryGuestBookingRepository())
    cache.store(record("FMS-20250527-A1B2"))
    cache.remove("FMS-20250527-ZZZZ")
    assert codes(cache) == ["FMS-20250527-A1B2"]


def test_cancel_removes_locally_even_if_server_fails():
    server_cancel = MagicMock(side_effect=GatewayUnavailable("down"))
    cache = GuestBookingCache(InMemoryGuestBookingRepository(), server_cancel=server_cancel)
    cache.store(record("FMS-20250527-A1B2"))
    assert cache.cancel("FMS-20250527-A1B2", "changed plans") is False
    assert cache.find("FMS-20250527-A1B2") is None
    server_cancel.assert_called_once_with("FMS-20250527-A1B2", "changed plans")


def test_json_file_repository_round_trip(tmp_path):
    path = tmp_path / "guest" / "bookings.json"
    cache = GuestBookingCache(JsonFileGuestBookingRepository(path), limit=2)
    for code in ("FMS-20250527-AAAA", "FMS-20250527-BBBB", "FMS-20250527-CCCC"):
        cache.store(record(code))
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert [r["confirmationCode"] for r in stored] == ["FMS-20250527-BBBB", "FMS-20250527-CCCC"]

    reopened = GuestBookingCache(JsonFileGuestBookingRepository(path))
    assert reopened.find("FMS-20250527-CCCC").totalAmount == 1_200_000
    reopened.remove("FMS-20250527-BBBB")
    assert codes(reopened) == ["FMS-20250527-CCCC"]
    assert not list(path.parent.glob("*.tmp"))


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "bookings.json"
    path.write_text("{not json", encoding="utf-8")
    assert JsonFileGuestBookingRepository(path).list() == []


# -- server side lookups ---------------------------------------------------

def _session(status_code, payload=None, exc=None):
    http = MagicMock()
    if exc is not None:
        http.request.side_effect = exc
        return http
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = json.dumps(payload) if payload is not None else ""
    resp.json.return_value = payload
    http.request.return_value = resp
    return http


def test_storefront_404_is_none():
    client = StorefrontClient("http://api.test/api/v1", session=_session(404, {"detail": "Booking not found"}))
    assert client.lookup_booking("FMS-20250527-ZZZZ", "x@example.com") is None


def test_storefront_lookup_parses_record():
    payload = record("FMS-20250527-A1B2").model_dump()
    http = _session(200, payload)
    client = StorefrontClient("http://api.test/api/v1", timeout=3, session=http)
    found = client.lookup_booking("FMS-20250527-A1B2", "guest@example.com")
    assert isinstance(found, GuestBookingRecord)
    assert found.totalAmount == 1_200_000
    args, kwargs = http.request.call_args
    assert args == ("GET", "http://api.test/api/v1/public/bookings/lookup/FMS-20250527-A1B2")
    assert kwargs["params"] == {"email": "guest@example.com"}
    assert kwargs["timeout"] == 3


def test_storefront_timeout():
    client = StorefrontClient("http://api.test/api/v1", session=_session(0, exc=requests.Timeout()))
    with pytest.raises(GatewayTimeout):
        client.lookup_booking("FMS-20250527-A1B2")


def test_cache_with_storefront_fallback():
    client = StorefrontClient("http://api.test/api/v1", session=_session(404))
    cache = GuestBookingCache(InMemoryGuestBookingRepository(), server_lookup=client.lookup_booking)
    assert cache.lookup("FMS-20250527-ZZZZ") is None
