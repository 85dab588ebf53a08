"""Siigo credentials and bearer-token cache.

The token is refreshed on its own schedule, independent of any webhook:
it is kept for at most 15 minutes and dropped 2 minutes before the JWT's
own ``exp``. A credential rejection clears it.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

CACHE_SECONDS = 15 * 60
SAFETY_MARGIN_SECONDS = 2 * 60

_API_KEY_CHARS = re.compile(r"^[A-Za-z0-9\-_.=:]+$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PLACEHOLDER_KEYS = {"default-api-key", "your-api-key-here"}


def check_credentials(username: str, api_key: str) -> list[str]:
    """Return problems with the configured credentials (empty = usable)."""
    problems: list[str] = []
    if not username:
        problems.append("SIGO_USERNAME is not set")
    elif not 3 <= len(username) <= 50:
        problems.append("SIGO_USERNAME must be 3 to 50 characters")
    elif "@" in username and not _EMAIL.match(username):
        problems.append("SIGO_USERNAME is not a valid email")

    if not api_key:
        problems.append("SIGO_API_KEY is not set")
    elif api_key in _PLACEHOLDER_KEYS:
        problems.append("SIGO_API_KEY is a placeholder")
    elif not 32 <= len(api_key) <= 128:
        problems.append("SIGO_API_KEY must be 32 to 128 characters")
    elif not _API_KEY_CHARS.match(api_key):
        problems.append("SIGO_API_KEY contains invalid characters")
    return problems


def normalize_access_key(api_key: str) -> str:
    """Siigo expects base64("<user>:<secret>"); encode raw pairs, pass the rest through."""
    key = api_key.strip()
    if ":" in key:
        return base64.b64encode(key.encode("utf-8")).decode("ascii")
    return key


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Read (without verifying) the claims of a JWT. Empty dict if not a JWT."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


@dataclass
class CachedToken:
    token: str
    expires_at: float
    partner_id: str | None = None


class TokenCache:
    """Holds one bearer token for one set of credentials."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entry: CachedToken | None = None
        self._owner: tuple[str, str] | None = None

    def get(self, username: str, api_key: str) -> CachedToken | None:
        if self._entry is None:
            return None
        if self._owner != (username, api_key):
            self.clear()
            return None
        if self._clock() >= self._entry.expires_at:
            logger.info("Siigo token expired for %s, re-authenticating", username)
            self.clear()
            return None
        return self._entry

    def set(self, username: str, api_key: str, token: str) -> CachedToken:
        now = self._clock()
        expires_at = now + CACHE_SECONDS
        payload = decode_jwt_payload(token)
        exp = payload.get("exp")
        if isinstance(exp, (int, float)):
            expires_at = min(expires_at, exp - SAFETY_MARGIN_SECONDS)
        self._entry = CachedToken(
            token=token,
            expires_at=expires_at,
            partner_id=payload.get("api_subscription_key"),
        )
        self._owner = (username, api_key)
        logger.info("Siigo token cached for %s (valid %.0fs)", username, expires_at - now)
        return self._entry

    def clear(self) -> None:
        self._entry = None
        self._owner = None
