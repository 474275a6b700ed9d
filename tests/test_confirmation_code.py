from datetime import datetime

import pytest

from app.services.confirmation_code import (
    ConfirmationCodeCodec, EncodingTooLong, ParseError, is_valid_code,
)

codec = ConfirmationCodeCodec(prefix="FMS", max_reference_length=100)
AT = datetime(2025, 5, 27, 5, 14, 8)


def test_encode_prefixes_time_and_hexes_code():
    ref = codec.encode_for_gateway("FMS-20250527-A1B2", AT)
    assert ref == "051408464d532d32303235303532372d41314232"
    assert codec.decode_from_gateway(ref) == "FMS-20250527-A1B2"


def test_references_differ_across_seconds_for_same_code():
    a = codec.encode_for_gateway("FMS-20250527-A1B2", AT)
    b = codec.encode_for_gateway("FMS-20250527-A1B2", AT.replace(second=9))
    assert a != b
    assert codec.decode_from_gateway(a) == codec.decode_from_gateway(b)


def test_uppercase_hex_still_decodes():
    ref = codec.encode_for_gateway("FMS-20250527-A1B2", AT)
    assert codec.decode_from_gateway(ref.upper()) == "FMS-20250527-A1B2"


@pytest.mark.parametrize("ref", ["abc", "", "123456", "12345", "051408zz", None, 51408])
def test_garbage_references_are_parse_errors(ref):
    result = codec.decode_from_gateway(ref)
    assert isinstance(result, ParseError)
    assert result.reason


def test_odd_length_body_is_rejected():
    # a truncated reference (gateway cut or manual typo)
    result = codec.decode_from_gateway("051408464d532")
    assert isinstance(result, ParseError)
    assert "odd" in result.reason


def test_invalid_utf8_is_rejected():
    result = codec.decode_from_gateway("051408ff")
    assert isinstance(result, ParseError)


def test_encoding_too_long_is_reported_not_truncated():
    short = ConfirmationCodeCodec(prefix="FMS", max_reference_length=20)
    result = short.encode_for_gateway("FMS-20250527-A1B2", AT)
    assert isinstance(result, EncodingTooLong)
    assert result.length == 40
    assert result.limit == 20


def test_generated_codes_match_format():
    for _ in range(50):
        code = codec.generate(AT)
        assert code.startswith("FMS-20250527-")
        assert is_valid_code(code)


@pytest.mark.parametrize("code, ok", [
    ("FMS-20250527-A1B2", True),
    ("AB-20250101-ZZ99", True),
    ("fms-20250527-a1b2", False),
    ("FMS-2025052-A1B2", False),
    ("FMS-20250527-A1B", False),
])
def test_code_format(code, ok):
    assert is_valid_code(code) is ok


@pytest.mark.parametrize("prefix", ["AB", "FMS", "VNAX"])
@pytest.mark.parametrize("at", [
    datetime(2025, 1, 1, 0, 0, 0),
    AT,
    datetime(2025, 12, 31, 23, 59, 59),
])
def test_generated_codes_round_trip_at_any_time(prefix, at):
    gen = ConfirmationCodeCodec(prefix=prefix, max_reference_length=100)
    for _ in range(20):
        code = gen.generate(at)
        assert is_valid_code(code)
        ref = gen.encode_for_gateway(code, at)
        assert ref.startswith(at.strftime("%H%M%S"))
        assert len(ref) <= 100
        assert gen.decode_from_gateway(ref) == code
