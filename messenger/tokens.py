"""
Signed bearer tokens shared with the identity service.

Tokens use the compact JWT layout (header.payload.signature, base64url,
HMAC-SHA256 over the first two segments) so tokens minted by the identity
service verify here as long as both sides share TOKEN_SECRET.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

from messenger.config import settings
from messenger.errors import AuthError

logger = logging.getLogger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: bytes, secret: str) -> str:
    return _b64encode(hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest())


def issue_token(user_id: int, ttl_seconds: Optional[int] = None, secret: Optional[str] = None) -> str:
    """
    Mint a token for user_id.

    The identity service owns login; this exists for seeding and tests.
    """
    ttl = settings.TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    payload = {"userId": user_id, "exp": int(time.time()) + ttl}
    signing_input = ".".join(
        _b64encode(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (_HEADER, payload)
    )
    signature = _sign(signing_input.encode("ascii"), secret or settings.TOKEN_SECRET)
    return f"{signing_input}.{signature}"


def verify_token(token: Optional[str], secret: Optional[str] = None) -> int:
    """
    Verify signature and expiry.

    Args:
        token: Compact token string
        secret: Signing key, TOKEN_SECRET when omitted

    Returns:
        The user id carried by the token

    Raises:
        AuthError: malformed, wrongly signed or expired token
    """
    if not token or not isinstance(token, str):
        raise AuthError("Missing token")

    parts = token.split(".")
    if len(parts) != 3:
        raise AuthError("Malformed token")

    header_b64, payload_b64, signature = parts
    expected = _sign(f"{header_b64}.{payload_b64}".encode("ascii"), secret or settings.TOKEN_SECRET)

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected, signature):
        logger.debug("Token signature mismatch")
        raise AuthError("Invalid token signature")

    try:
        header = json.loads(_b64decode(header_b64))
        payload = json.loads(_b64decode(payload_b64))
    except (ValueError, TypeError) as e:
        raise AuthError("Malformed token") from e

    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise AuthError("Unsupported token algorithm")
    if not isinstance(payload, dict):
        raise AuthError("Malformed token")

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or exp <= time.time():
        raise AuthError("Token expired")

    user_id = payload.get("userId")
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise AuthError("Token carries no user id")

    return user_id
