"""Tests for Siigo credential checks and the bearer-token cache."""

from __future__ import annotations

import base64
import json

import pytest
from jose import jwt

from sigo_bridge.invoices.auth import (
    CACHE_SECONDS,
    SAFETY_MARGIN_SECONDS,
    TokenCache,
    check_credentials,
    decode_jwt_payload,
    normalize_access_key,
)

USER = "bridge@example.com"
KEY = "k" * 40


def _jwt(payload: dict) -> str:
    return jwt.encode(payload, "siigo-signing-key", algorithm="HS256")


def _segment(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ── Credentials ───────────────────────────────────────────────────────────


class TestCheckCredentials:
    def test_valid(self):
        assert check_credentials(USER, KEY) == []

    @pytest.mark.parametrize(
        "username,api_key",
        [
            ("", KEY),
            ("ab", KEY),
            ("x" * 51, KEY),
            ("not@an-email", KEY),
            (USER, ""),
            (USER, "default-api-key"),
            (USER, "short"),
            (USER, "k" * 129),
            (USER, "k" * 39 + "!"),
        ],
    )
    def test_invalid(self, username, api_key):
        assert len(check_credentials(username, api_key)) == 1

    def test_reports_both_problems(self):
        assert len(check_credentials("", "")) == 2


class TestAccessKey:
    def test_raw_pair_is_base64_encoded(self):
        assert normalize_access_key("user:secret") == base64.b64encode(b"user:secret").decode()

    def test_encoded_key_passes_through(self):
        assert normalize_access_key("  abc123==  ") == "abc123=="


class TestDecodeJwt:
    def test_payload(self):
        assert decode_jwt_payload(_jwt({"exp": 10, "sub": "x"})) == {"exp": 10, "sub": "x"}

    def test_claims_read_without_verifying_signature(self):
        token = jwt.encode({"sub": "x"}, "some-other-key", algorithm="HS256")
        assert decode_jwt_payload(token) == {"sub": "x"}

    @pytest.mark.parametrize("token", ["opaque-token", "a.b", "a.!!!.c", ""])
    def test_not_a_jwt(self, token):
        assert decode_jwt_payload(token) == {}

    def test_non_object_claims(self):
        token = f"{_segment({'alg': 'HS256'})}.{_segment(None)}.{_segment('sig')}"
        assert decode_jwt_payload(token) == {}


# ── Token Cache ───────────────────────────────────────────────────────────


class TestTokenCache:
    def test_empty(self):
        assert TokenCache().get(USER, KEY) is None

    def test_opaque_token_kept_for_cache_window(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        cache.set(USER, KEY, "opaque")
        assert cache.get(USER, KEY).token == "opaque"

        clock.now += CACHE_SECONDS - 1
        assert cache.get(USER, KEY) is not None
        clock.now += 1
        assert cache.get(USER, KEY) is None

    def test_jwt_expiry_minus_safety_margin(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        entry = cache.set(USER, KEY, _jwt({"exp": clock.now + 300}))
        assert entry.expires_at == clock.now + 300 - SAFETY_MARGIN_SECONDS

        clock.now += 300 - SAFETY_MARGIN_SECONDS
        assert cache.get(USER, KEY) is None

    def test_partner_id_from_subscription_key(self):
        cache = TokenCache(clock=FakeClock())
        entry = cache.set(USER, KEY, _jwt({"api_subscription_key": "sub-123"}))
        assert entry.partner_id == "sub-123"

    def test_other_credentials_miss(self):
        cache = TokenCache(clock=FakeClock())
        cache.set(USER, KEY, "opaque")
        assert cache.get("other@example.com", KEY) is None

    def test_clear(self):
        cache = TokenCache(clock=FakeClock())
        cache.set(USER, KEY, "opaque")
        cache.clear()
        assert cache.get(USER, KEY) is None
