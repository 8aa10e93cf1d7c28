"""Unit tests for signing token generation, hashing and links."""

import uuid
from datetime import UTC, datetime, timedelta, timezone

from countersign.shared.clock import as_utc
from countersign.shared.signing_tokens import (
    build_signing_link,
    generate_otp_code,
    generate_token_value,
    hash_otp,
    hash_token,
    is_well_formed,
    otp_matches,
)
from countersign.shared.user_agent import get_device_info


class TestTokenValues:
    def test_values_are_unique_and_url_safe(self):
        values = {generate_token_value() for _ in range(50)}

        assert len(values) == 50
        for value in values:
            assert is_well_formed(value)
            assert all(c.isalnum() or c in "-_" for c in value)

    def test_short_and_long_values_are_malformed(self):
        assert not is_well_formed("")
        assert not is_well_formed("abc")
        assert not is_well_formed("a" * 500)


class TestTokenHashing:
    def test_hash_is_deterministic_hex(self):
        value = generate_token_value()

        first = hash_token(value)

        assert first == hash_token(value)
        assert len(first) == 64
        int(first, 16)

    def test_hash_never_contains_value(self):
        value = generate_token_value()

        assert value not in hash_token(value)

    def test_different_values_hash_differently(self):
        assert hash_token(generate_token_value()) != hash_token(generate_token_value())


class TestOneTimeCodes:
    def test_codes_are_six_digits(self):
        for _ in range(50):
            code = generate_otp_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_code_hash_is_bound_to_its_token(self):
        token_id = uuid.uuid4()

        stored = hash_otp("042917", token_id)

        assert otp_matches("042917", token_id, stored)
        assert otp_matches(" 042917 ", token_id, stored)
        assert not otp_matches("042918", token_id, stored)
        assert not otp_matches("042917", uuid.uuid4(), stored)
        assert "042917" not in stored


class TestSigningLink:
    def test_link_uses_base_url(self):
        assert build_signing_link("abc", "https://sign.example/s/") == "https://sign.example/s/abc"

    def test_link_defaults_to_settings(self):
        link = build_signing_link("abc")

        assert link.endswith("/abc")
        assert link.startswith("http")


class TestClock:
    def test_naive_datetimes_are_treated_as_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)

        assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def test_aware_datetimes_are_converted(self):
        plus_two = datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        assert as_utc(plus_two) == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class TestDeviceInfo:
    def test_mobile_chrome(self):
        info = get_device_info(
            "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"
        )

        assert info["type"] == "mobile"
        assert info["browser"] == "Chrome"

    def test_ipad_safari(self):
        info = get_device_info(
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Safari/604.1"
        )

        assert info["type"] == "tablet"
        assert info["browser"] == "Safari"

    def test_desktop_edge(self):
        info = get_device_info("Mozilla/5.0 (Windows NT 10.0) Chrome/120.0 Edg/120.0")

        assert info["type"] == "desktop"
        assert info["browser"] == "Edge"

    def test_missing_user_agent(self):
        info = get_device_info(None)

        assert info == {"user_agent": "", "type": "unknown", "browser": "Unknown"}
