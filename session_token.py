"""
session_token.py - Signed session credential codec.

Token layout (HS256, JWT-compatible):

    base64url(header) "." base64url(payload) "." base64url(HMAC-SHA256(header.payload))

Pure functions apart from reading the clock; `now` can be injected. Verification
never raises: any malformed, forged or expired token verifies to None.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from pydantic import ValidationError

from logging_config import get_logger
from models import SessionClaims

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "session_token"
SESSION_TTL_SECONDS = 8 * 60 * 60

HEADER = {"alg": "HS256", "typ": "JWT"}


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode("ascii"))


def _encode_json(obj: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def _signature(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


def _now(now: Optional[float]) -> int:
    return int(now if now is not None else time.time())


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    """Return `base64url(payload).signature` for an arbitrary JSON object."""
    body = _encode_json(payload)
    return f"{body}.{_signature(body, secret)}"


def unsign_payload(token: str, secret: str) -> Optional[dict[str, Any]]:
    """Inverse of sign_payload. Returns None when the blob is malformed or forged."""
    if not isinstance(token, str) or token.count(".") != 1:
        return None
    body, signature = token.split(".", 1)
    if not _signature_matches(body, signature, secret):
        return None
    return _decode_json(body)


def _signature_matches(signing_input: str, signature: str, secret: str) -> bool:
    try:
        expected = _signature(signing_input, secret)
    except (UnicodeEncodeError, ValueError):
        return False
    if len(signature) != len(expected):
        return False
    return hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii"))


def _decode_json(segment: str) -> Optional[dict[str, Any]]:
    try:
        decoded = json.loads(b64url_decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def issue(
    claims: SessionClaims | dict[str, Any],
    secret: str,
    ttl_seconds: int = SESSION_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    """Mint a session token carrying identity claims plus iat/exp."""
    identity = SessionClaims.model_validate(claims)
    issued_at = _now(now)

    payload = identity.model_dump()
    payload["iat"] = issued_at
    payload["exp"] = issued_at + int(ttl_seconds)

    signing_input = f"{_encode_json(HEADER)}.{_encode_json(payload)}"
    return f"{signing_input}.{_signature(signing_input, secret)}"


def verify(token: Any, secret: str, now: Optional[float] = None) -> Optional[SessionClaims]:
    """Return the token's claims, or None when it is invalid or expired."""
    if not isinstance(token, str) or not secret:
        return None

    parts = token.split(".")
    if len(parts) != 3:
        return None

    header_b64, payload_b64, signature = parts
    if not _signature_matches(f"{header_b64}.{payload_b64}", signature, secret):
        logger.debug("session_verify_rejected | reason=signature")
        return None

    payload = _decode_json(payload_b64)
    if payload is None:
        logger.debug("session_verify_rejected | reason=payload")
        return None

    exp = payload.get("exp")
    if exp is None or isinstance(exp, bool):
        logger.debug("session_verify_rejected | reason=no_expiry")
        return None
    try:
        expired = float(exp) < _now(now)
    except (TypeError, ValueError):
        return None
    if expired:
        logger.debug("session_verify_rejected | reason=expired")
        return None

    try:
        return SessionClaims.model_validate(payload)
    except ValidationError:
        return None
