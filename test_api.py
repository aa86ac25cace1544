"""
test_api.py - HTTP layer checks (provider and identity provider mocked).

Usage:
    pytest test_api.py
"""

from __future__ import annotations

import asyncio
import csv
import io
import os
import sys
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import api
from cache_store import MemoryCacheStore
from config import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, Settings
from dashboard import DashboardService
from errors import ConfigurationError, UpstreamAuthError
from models import ProviderDataset, SessionClaims
from oauth import OAuthFlow, encode_state
from session_token import SESSION_COOKIE_NAME, issue

SECRET = "api-test-secret"


class FakeFetcher:
    def __init__(self, *results):
        self.results = list(results)

    async def fetch_all(self) -> ProviderDataset:
        await asyncio.sleep(0)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def _dataset(**overrides) -> ProviderDataset:
    values = dict(
        transactions=[
            {
                "id": "t1",
                "amount": 4567,
                "user_transaction_time": "2025-03-01",
                "merchant_name": "Coffee Shop",
                "card_holder": {"first_name": "Ada", "last_name": "L", "department_name": "Engineering"},
                "memo": 'Team "sync", weekly',
            },
            {
                "id": "t2",
                "amount": 1000,
                "user_transaction_time": "2025-03-05",
                "merchant_name": "Airline",
                "card_holder": {"department_name": "Sales"},
            },
        ],
        reimbursements=[
            {"id": "r1", "amount": 1250.0, "transaction_date": "2025-03-02", "merchant": "Hotel"},
        ],
        receipts=[{"id": "rc1", "transaction_id": "t1"}],
    )
    values.update(overrides)
    return ProviderDataset(**values)


def _identity_provider(email: str = "ada@coder.com", token_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_TOKEN_URL:
            if token_status != 200:
                return httpx.Response(token_status, text="invalid_grant")
            return httpx.Response(200, json={"access_token": "google-access"})
        if str(request.url) == GOOGLE_USERINFO_URL:
            return httpx.Response(200, json={"sub": "1", "email": email, "name": "Ada"})
        return httpx.Response(404)

    return handler


@pytest.fixture
def configure(monkeypatch):
    """Swap the module-level collaborators for test doubles."""

    def _configure(*results, email="ada@coder.com", token_status=200, **overrides):
        values = dict(
            google_client_id="gid",
            google_client_secret="gsecret",
            session_secret=SECRET,
            cron_secret="cron-secret",
            ramp_environment="sandbox",
        )
        values.update(overrides)
        settings = Settings(**values)
        handler = _identity_provider(email=email, token_status=token_status)
        service = DashboardService(
            FakeFetcher(*(results or (_dataset(),))),
            MemoryCacheStore(),
            mock_when_unconfigured=True,
        )
        monkeypatch.setattr(api, "settings", settings)
        monkeypatch.setattr(
            api,
            "oauth_flow",
            OAuthFlow(settings, client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))),
        )
        monkeypatch.setattr(api, "dashboard_service", service)
        return TestClient(api.app, follow_redirects=False)

    return _configure


def _sign_in(client: TestClient) -> None:
    token = issue(SessionClaims(sub="1", email="ada@coder.com", name="Ada"), SECRET)
    client.cookies.set(SESSION_COOKIE_NAME, token)


# ---------------------------------------------------------------------------
# /health, /api/data, /api/refresh-cache
# ---------------------------------------------------------------------------


def test_health(configure):
    body = configure().get("/health").json()
    assert body["status"] == "healthy"
    assert body["version"] == api.VERSION
    assert body["environment"] == "sandbox"


def test_data_success_payload(configure):
    response = configure().get("/api/data")
    assert response.status_code == 200
    body = response.json()

    assert body["status"] == "success"
    assert [row["id"] for row in body["transactions"]] == ["t1", "t2"]
    assert [row["id"] for row in body["expenses"]] == ["r1"]
    for key in ("spendCategories", "spendPrograms", "receipts", "memos", "lastUpdated"):
        assert key in body
    assert body["totalTransactions"] == 2
    assert body["totalReimbursements"] == 1
    assert "warnings" not in body
    assert "error" not in body


def test_data_partial_when_warnings(configure):
    client = configure(_dataset(reimbursements=[], warnings=["Some reimbursement data may be incomplete"]))
    body = client.get("/api/data").json()
    assert body["status"] == "partial"
    assert body["warnings"] == ["Some reimbursement data may be incomplete"]


def test_data_mock_when_credentials_missing(configure):
    client = configure(ConfigurationError("not configured", missing=["RAMP_CLIENT_ID", "RAMP_CLIENT_SECRET"]))
    response = client.get("/api/data")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "mock"
    assert body["totalTransactions"] == 2


def test_data_never_500_on_upstream_failure(configure):
    client = configure(UpstreamAuthError("Token request failed: 401", 401))
    response = client.get("/api/data")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "error"
    assert body["error"] == "Failed to fetch data"
    assert "401" in body["message"]
    assert body["transactions"] == []


def test_data_falls_back_to_cache_after_failure(configure):
    client = configure(_dataset(), UpstreamAuthError("Token request failed: 503", 503))
    assert client.get("/api/data").json()["status"] == "success"

    body = client.get("/api/data").json()
    assert body["status"] == "partial"
    assert body["totalTransactions"] == 2
    assert any("cached" in warning for warning in body["warnings"])


def test_refresh_cache_requires_cron_secret(configure):
    client = configure()
    assert client.get("/api/refresh-cache").status_code == 401
    assert client.get("/api/refresh-cache", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/api/refresh-cache", headers={"Authorization": "Bearer cron-secret"})
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_refresh_cache_unconfigured_secret_is_500(configure):
    client = configure(cron_secret="")
    response = client.get("/api/refresh-cache", headers={"Authorization": "Bearer "})
    assert response.status_code == 500
    assert response.json()["missing"] == ["CRON_SECRET"]


# ---------------------------------------------------------------------------
# OAuth endpoints
# ---------------------------------------------------------------------------


def test_google_redirect(configure):
    client = configure()
    response = client.get("/api/auth/google", headers={"x-forwarded-proto": "https", "x-forwarded-host": "dash.example.com"})
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    params = parse_qs(location.query)
    assert location.netloc == "accounts.google.com"
    assert params["redirect_uri"] == ["https://dash.example.com/api/auth/callback"]


def test_google_redirect_uses_public_base_url(configure):
    client = configure(public_base_url="https://te.example.org")
    location = client.get("/api/auth/google").headers["location"]
    assert parse_qs(urlparse(location).query)["redirect_uri"] == ["https://te.example.org/api/auth/callback"]


def test_google_redirect_unconfigured_is_500(configure):
    client = configure(google_client_id="")
    response = client.get("/api/auth/google")
    assert response.status_code == 500
    assert "GOOGLE_CLIENT_ID" in response.json()["missing"]


def _state(client: TestClient) -> str:
    location = client.get("/api/auth/google").headers["location"]
    return parse_qs(urlparse(location).query)["state"][0]


def test_callback_success_sets_session_cookie(configure):
    client = configure()
    response = client.get(
        "/api/auth/callback",
        params={"code": "abc", "state": _state(client)},
        headers={"x-forwarded-proto": "https"},
    )
    assert response.status_code == 302
    assert response.headers["location"] == "/"

    cookie = response.headers["set-cookie"]
    lowered = cookie.lower()
    assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
    assert "httponly" in lowered
    assert "samesite=lax" in lowered
    assert "max-age=28800" in lowered
    assert "path=/" in lowered
    assert "secure" in lowered

    token = cookie.split(";", 1)[0].split("=", 1)[1]
    client.cookies.set(SESSION_COOKIE_NAME, token)
    assert client.get("/api/auth/session").json() == {
        "user": {"email": "ada@coder.com", "name": "Ada", "picture": ""}
    }


def test_callback_plain_http_cookie_is_not_secure(configure):
    client = configure()
    response = client.get("/api/auth/callback", params={"code": "abc", "state": _state(client)})
    assert "secure" not in response.headers["set-cookie"].lower()


def test_callback_expired_state_sets_no_cookie(configure):
    client = configure()
    stale = encode_state("verifier", SECRET, now=time.time() - 11 * 60)
    response = client.get("/api/auth/callback", params={"code": "abc", "state": stale})

    assert response.status_code == 302
    assert response.headers["location"] == "/auth/error?error=InvalidState"
    assert "set-cookie" not in response.headers


def test_callback_wrong_domain_is_access_denied(configure):
    client = configure(email="x@other.com")
    response = client.get("/api/auth/callback", params={"code": "abc", "state": _state(client)})

    assert response.status_code == 302
    assert response.headers["location"] == "/auth/error?error=AccessDenied"
    assert "set-cookie" not in response.headers


def test_callback_exchange_failure_is_500_with_detail(configure):
    client = configure(token_status=400)
    response = client.get("/api/auth/callback", params={"code": "abc", "state": _state(client)})
    assert response.status_code == 500
    assert response.json()["detail"] == "invalid_grant"


def test_callback_provider_error_and_missing_params(configure):
    client = configure()
    response = client.get("/api/auth/callback", params={"error": "access_denied"})
    assert response.status_code == 302
    assert response.headers["location"] == "/auth/error?error=access_denied"

    assert client.get("/api/auth/callback", params={"state": "x"}).status_code == 400


def test_session_endpoints_always_200(configure):
    client = configure()
    for path in ("/api/auth/session", "/api/session"):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json() == {"user": None}

    client.cookies.set(SESSION_COOKIE_NAME, "not.a.token")
    assert client.get("/api/session").json() == {"user": None}

    _sign_in(client)
    assert client.get("/api/session").json()["user"]["email"] == "ada@coder.com"


def test_signout_clears_cookie(configure):
    response = configure().get("/api/auth/signout")
    assert response.status_code == 302
    cookie = response.headers["set-cookie"].lower()
    assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
    assert "max-age=0" in cookie


def test_auth_error_page(configure):
    client = configure()
    denied = client.get("/auth/error", params={"error": "AccessDenied"}).json()
    assert denied["title"] == "Access Denied"
    assert "@coder.com" in denied["message"]

    assert client.get("/auth/error", params={"error": "Configuration"}).json()["title"] == "Configuration Error"
    assert client.get("/auth/error", params={"error": "InvalidState"}).json()["title"] == "Authentication Error"


# ---------------------------------------------------------------------------
# Session-gated views
# ---------------------------------------------------------------------------


def test_dashboard_requires_session(configure):
    client = configure()
    assert client.get("/api/dashboard").status_code == 401
    assert client.get("/api/export.csv").status_code == 401


def test_dashboard_view_with_multi_select(configure):
    client = configure()
    _sign_in(client)

    body = client.get("/api/dashboard", params=[("department", "Engineering"), ("department", "Sales")]).json()
    assert [row["id"] for row in body["rows"]] == ["t2", "t1"]
    assert body["summary"]["total_count"] == 2
    assert body["summary"]["receipt_count"] == 1
    assert body["filterOptions"]["department"] == ["Engineering", "Sales"]
    assert len(body["months"]) == 12
    assert len(body["monthOptions"]) == 12
    assert body["source"] == "live"


def test_dashboard_sort_and_limit(configure):
    client = configure()
    _sign_in(client)
    body = client.get("/api/dashboard", params={"sort": "amount", "direction": "asc", "limit": 2}).json()
    assert [row["id"] for row in body["rows"]] == ["t2", "t1"]
    assert body["totalRows"] == 3


def test_dashboard_rejects_bad_month(configure):
    client = configure()
    _sign_in(client)
    assert client.get("/api/dashboard", params={"month": "March"}).status_code == 400


def test_export_csv(configure):
    client = configure()
    _sign_in(client)
    response = client.get("/api/export.csv", params={"department": "Engineering"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "te-transactions-" in response.headers["content-disposition"]

    parsed = list(csv.reader(io.StringIO(response.text)))
    assert parsed[0][0] == "Date"
    assert len(parsed) == 2
    assert parsed[1][3] == "Coffee Shop"
    assert parsed[1][8] == 'Team "sync", weekly'
