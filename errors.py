"""
errors.py - Exception taxonomy for the dashboard service.

Data boundary (provider_client.py, api.py /api/data):
    ConfigurationError     -> HTTP 500 with an explanatory message, never retried
    UpstreamAuthError      -> aborts the whole fetch
    UpstreamResourceError  -> one resource degrades to [] plus a warning
    FetchTimeoutError      -> retried per page, then handled as a resource failure

OAuth boundary (oauth.py, api.py /api/auth/*):
    StateValidationError   -> login attempt aborted, coarse reason only
    AccessDenied           -> identity outside the allowed email domain
    OAuthExchangeError     -> token exchange / userinfo failed (HTTP 500)
"""

from __future__ import annotations

from typing import Optional


class DashboardError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(DashboardError):
    """Required credentials or secrets are not configured."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class UpstreamAuthError(DashboardError):
    """Client-credentials token acquisition against the provider failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


# Name used by the provider-facing code paths.
TokenAcquisitionFailed = UpstreamAuthError


class UpstreamResourceError(DashboardError):
    """A single provider resource listing failed."""

    def __init__(self, resource: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{resource}: {message}")
        self.resource = resource
        self.status_code = status_code


class FetchTimeoutError(UpstreamResourceError):
    """An outbound provider call exceeded its time budget."""

    def __init__(self, resource: str, timeout_seconds: float) -> None:
        super().__init__(resource, f"timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class StateValidationError(DashboardError):
    """OAuth state parameter is missing, forged, malformed or expired.

    `reason` is a coarse code for logs; end users only ever see InvalidState.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid OAuth state ({reason})")
        self.reason = reason


class AccessDenied(DashboardError):
    """Authenticated email does not belong to an allowed domain."""

    def __init__(self, email: str) -> None:
        super().__init__(f"Email not allowed: {email!r}")
        self.email = email


class OAuthExchangeError(DashboardError):
    """Code exchange or userinfo lookup against the identity provider failed."""

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail
