"""Webhook signature verification and operator API keys.

The storefront signs each webhook body with HMAC-SHA256 using the shared
webhook secret and sends the hex digest in ``X-BC-Webhook-Signature``.

Security contract:
- Comparison uses hmac.compare_digest (constant time)
- Missing header, missing secret, and mismatch all fail closed with the
  same outcome
- Only short prefixes of signatures are logged; the secret never is
"""

from __future__ import annotations

import hashlib
import hmac

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-BC-Webhook-Signature"

_LOG_PREFIX_LENGTH = 10


def compute_signature(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _prefix(value: str) -> str:
    return value[:_LOG_PREFIX_LENGTH] + "..."


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a webhook signature against the raw request body.

    Args:
        body: Raw request body bytes, exactly as received.
        signature: Value of the signature header, or None if absent.
        secret: Shared webhook secret.

    Returns:
        True only if a secret is configured, a signature was sent, and the
        signature matches.
    """
    if not secret:
        logger.warning("webhook.secret_not_configured")
        return False
    if not signature:
        logger.warning("webhook.signature_missing")
        return False

    expected = compute_signature(body, secret)
    received = signature.strip().lower().encode("utf-8")
    if not hmac.compare_digest(expected.encode("ascii"), received):
        logger.warning(
            "webhook.signature_invalid",
            received=_prefix(signature),
            expected=_prefix(expected),
        )
        return False

    logger.debug("webhook.signature_valid")
    return True


API_KEY_HEADER = "X-API-Key"


def api_key_matches(presented: str | None, expected: str | None) -> bool:
    """Constant-time check of an operator API key. Empty keys never match."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
