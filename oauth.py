"""
oauth.py - Google authorization-code + PKCE login flow.

Two legs:
    begin()     -> authorization URL (PKCE challenge + signed state)
    complete()  -> session token, after state check, code exchange, userinfo
                   lookup and the email-domain allow-list

The state parameter is self-describing: it carries the PKCE verifier, a random
nonce and the issue time, signed with the session secret. No cookie is needed
between the two legs.

The callback leg is strictly sequential and every failure short-circuits the
rest; nothing here retries.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from config import Settings
from errors import AccessDenied, OAuthExchangeError, StateValidationError
from logging_config import get_logger
from models import SessionClaims
from session_token import SESSION_TTL_SECONDS, issue, sign_payload, unsign_payload

logger = get_logger(__name__)

SCOPES = "openid email profile"
STATE_MAX_AGE_SECONDS = 10 * 60
OAUTH_TIMEOUT_SECONDS = 15.0


def generate_pkce_pair() -> tuple[str, str]:
    """Return (verifier, S256 challenge), both base64url without padding."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def encode_state(verifier: str, secret: str, now: Optional[float] = None) -> str:
    issued_at = int(now if now is not None else time.time())
    return sign_payload(
        {"v": verifier, "n": secrets.token_urlsafe(16), "t": issued_at},
        secret,
    )


def decode_state(state: Optional[str], secret: str, now: Optional[float] = None) -> str:
    """Verify a state parameter and return the PKCE verifier it carries."""
    if not state:
        raise StateValidationError("missing")

    data = unsign_payload(state, secret)
    if data is None:
        raise StateValidationError("signature")

    verifier = data.get("v")
    issued_at = data.get("t")
    if not isinstance(verifier, str) or not verifier or not isinstance(issued_at, (int, float)):
        raise StateValidationError("malformed")

    current = now if now is not None else time.time()
    if current - issued_at > STATE_MAX_AGE_SECONDS:
        raise StateValidationError("expired")

    return verifier


def check_email_allowed(email: Optional[str], allowed_domains: list[str]) -> str:
    """Return the email when its domain is allow-listed, else raise AccessDenied."""
    address = str(email or "").strip()
    lowered = address.lower()
    for domain in allowed_domains:
        suffix = "@" + domain.strip().lstrip("@").lower()
        if suffix != "@" and lowered.endswith(suffix):
            return address
    raise AccessDenied(address)


class OAuthFlow:
    """Stateless PKCE login against the configured identity provider."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=OAUTH_TIMEOUT_SECONDS)
        )

    def begin(self, redirect_uri: str, now: Optional[float] = None) -> str:
        """Build the authorization URL the browser is redirected to."""
        client_id, _ = self.settings.require_google_credentials()
        secret = self.settings.require_session_secret()

        verifier, challenge = generate_pkce_pair()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "access_type": "online",
            "include_granted_scopes": "true",
            "state": encode_state(verifier, secret, now=now),
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "prompt": "select_account",
        }
        logger.info("oauth_begin | redirect_uri=%s", redirect_uri)
        return f"{self.settings.google_authorize_url}?{urlencode(params)}"

    async def complete(
        self,
        code: str,
        state: Optional[str],
        redirect_uri: str,
        now: Optional[float] = None,
    ) -> tuple[str, SessionClaims]:
        """Run the callback leg and return (session token, claims)."""
        self.settings.require_google_credentials()
        secret = self.settings.require_session_secret()

        verifier = decode_state(state, secret, now=now)

        async with self._client_factory() as client:
            tokens = await self._exchange_code(client, code, verifier, redirect_uri)
            profile = await self._fetch_userinfo(client, tokens["access_token"])

        email = check_email_allowed(profile.get("email"), self.settings.allowed_email_domains)
        claims = SessionClaims(
            sub=profile.get("sub"),
            email=email,
            name=profile.get("name"),
            picture=profile.get("picture"),
        )
        token = issue(claims, secret, ttl_seconds=SESSION_TTL_SECONDS, now=now)
        logger.info("oauth_session_issued | email=%s", email)
        return token, claims

    async def _exchange_code(
        self,
        client: httpx.AsyncClient,
        code: str,
        verifier: str,
        redirect_uri: str,
    ) -> dict[str, Any]:
        client_id, client_secret = self.settings.require_google_credentials()
        try:
            response = await client.post(
                self.settings.google_token_url,
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": verifier,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError("Token exchange failed", detail=f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            logger.warning("oauth_token_exchange_failed | status=%s", response.status_code)
            raise OAuthExchangeError("Token exchange failed", detail=response.text)

        tokens = _json_object(response)
        if not tokens.get("access_token"):
            raise OAuthExchangeError("Token exchange failed", detail="No access_token in response")
        return tokens

    async def _fetch_userinfo(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
        try:
            response = await client.get(
                self.settings.google_userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError("Failed to fetch userinfo", detail=f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            logger.warning("oauth_userinfo_failed | status=%s", response.status_code)
            raise OAuthExchangeError("Failed to fetch userinfo", detail=response.text)
        return _json_object(response)


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise OAuthExchangeError("Identity provider returned invalid JSON", detail=response.text[:200]) from exc
    if not isinstance(data, dict):
        raise OAuthExchangeError("Identity provider returned an unexpected payload")
    return data
