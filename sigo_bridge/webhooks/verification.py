"""Hub webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- The hub signs the request body with HMAC-SHA256 and the shared secret and
  sends ``x-hub-signature: sha256=<hex digest>``
- Raw body bytes are verified exactly as received
- When only a parsed body is available it is re-serialized with
  canonical_body() (compact JSON, insertion key order, UTF-8); the hub must
  sign that same form
- All comparisons use hmac.compare_digest() (no timing side channel)
- Missing secret -> verification always fails (fail-closed)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature"
_SIGNATURE_PREFIX = "sha256="

MSG_SIGNATURE_REQUIRED = "signature required"
MSG_SIGNATURE_INVALID = "invalid signature"


@dataclass(frozen=True)
class SignatureCheck:
    ok: bool
    message: str | None = None


def canonical_body(body: bytes | str | Mapping[str, Any]) -> bytes:
    """Return the exact bytes that are signed for ``body``."""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_digest(body: bytes | str | Mapping[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_body(body), hashlib.sha256).hexdigest()


def sign_body(body: bytes | str | Mapping[str, Any], secret: str) -> str:
    """Build an ``x-hub-signature`` header value for ``body``."""
    return _SIGNATURE_PREFIX + compute_digest(body, secret)


def verify_signature(
    body: bytes | str | Mapping[str, Any],
    signature: str | None,
    secret: str,
) -> SignatureCheck:
    """Verify a hub webhook signature.

    Args:
        body: Raw request bytes, or the parsed body
        signature: Value of the x-hub-signature header (may be None)
        secret: Shared webhook secret

    Returns:
        SignatureCheck(ok=True) or SignatureCheck(ok=False, message=...)
    """
    if not signature or not signature.strip():
        return SignatureCheck(ok=False, message=MSG_SIGNATURE_REQUIRED)

    if not secret:
        logger.warning("HUB_WEBHOOK_SECRET not set: rejecting webhook")
        return SignatureCheck(ok=False, message=MSG_SIGNATURE_INVALID)

    provided = signature.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]

    expected = compute_digest(body, secret)
    if hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
        return SignatureCheck(ok=True)
    return SignatureCheck(ok=False, message=MSG_SIGNATURE_INVALID)
