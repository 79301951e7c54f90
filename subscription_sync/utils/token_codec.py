"""Signed capability tokens for self-service cancellation links.

Format: b64url(json(payload)) + "." + b64url(HMAC-SHA256(secret, encoded_payload))
using unpadded URL-safe base64. Tokens are stateless; single use is enforced
separately by a marker in the mapping store.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from subscription_sync.errors import InvalidToken

DEFAULT_TTL_MINUTES = 30


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _signature(encoded_payload: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), encoded_payload.encode("ascii"), hashlib.sha256).digest()


def sign_token(payload: dict[str, Any], secret: str) -> str:
    """Sign a JSON payload.

    Args:
        payload: JSON-serializable payload
        secret: HMAC secret

    Returns:
        Token string "<payload>.<signature>"
    """
    encoded = b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{b64url_encode(_signature(encoded, secret))}"


def verify_token(token: str, secret: str, now: Optional[float] = None) -> dict[str, Any]:
    """Verify a token and return its payload.

    The signature is checked (constant time) before the payload is decoded.
    Every failure raises the same InvalidToken so callers cannot tell a
    forged token from an expired one.

    Args:
        token: Token string
        secret: HMAC secret
        now: Current unix time in seconds (defaults to time.time())

    Raises:
        InvalidToken: Malformed token, bad signature, bad payload, missing or past exp
    """
    if not token or not isinstance(token, str):
        raise InvalidToken()

    parts = token.split(".")
    if len(parts) != 2 or not all(parts):
        raise InvalidToken()
    encoded, signature = parts

    try:
        expected = _signature(encoded, secret)
        given = b64url_decode(signature)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        raise InvalidToken()

    if not hmac.compare_digest(expected, given):
        raise InvalidToken()

    try:
        payload = json.loads(b64url_decode(encoded))
    except (binascii.Error, ValueError):
        raise InvalidToken()

    if not isinstance(payload, dict):
        raise InvalidToken()

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        raise InvalidToken()

    current = time.time() if now is None else now
    if current >= exp:
        raise InvalidToken()

    return payload


def issue_cancel_token(
    email: str,
    customer_id: str,
    subscription_id: Optional[str],
    key: str,
    secret: str,
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[float] = None,
) -> str:
    """Build and sign a cancel-link token.

    Args:
        email: Customer email
        customer_id: Provider customer ID
        subscription_id: Provider subscription ID (may be None)
        key: Mapping store key of the customer record
        secret: HMAC secret
        ttl_minutes: Token lifetime
        now: Current unix time in seconds

    Returns:
        Signed token
    """
    current = time.time() if now is None else now
    payload = {
        "email": email,
        "customerId": customer_id,
        "subscriptionId": subscription_id,
        "key": key,
        "exp": int(current) + ttl_minutes * 60,
    }
    return sign_token(payload, secret)
