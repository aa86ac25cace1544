"""
api.py - FastAPI HTTP layer for the T&E dashboard.

Data:
    GET /api/data            raw provider dataset, always HTTP 200
    GET /api/refresh-cache   scheduled refresh guarded by CRON_SECRET
    GET /api/dashboard       filtered/sorted view + summary (session required)
    GET /api/export.csv      CSV of the same view (session required)

Auth:
    GET /api/auth/google     302 to the identity provider (PKCE)
    GET /api/auth/callback   302 to / with session cookie, or /auth/error
    GET /api/auth/session    {user: {...} | null}, always HTTP 200
    GET /api/session         alias of /api/auth/session
    GET /api/auth/signout    clears the session cookie
    GET /auth/error          reason code -> title/message/suggestion

Module-level collaborators (settings, oauth_flow, provider_client,
dashboard_service) are looked up per request and may be replaced in tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Optional, Union
from urllib.parse import quote

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

import engine
from cache_store import MemoryCacheStore
from config import Settings
from csv_export import export_filename, to_csv
from dashboard import DashboardService, DashboardState
from errors import AccessDenied, ConfigurationError, OAuthExchangeError, StateValidationError
from logging_config import get_logger, parse_level, setup_logging
from models import ALL, FilterSpec, SessionClaims, SortSpec
from oauth import OAuthFlow
from provider_client import ProviderClient
from session_token import SESSION_COOKIE_NAME, SESSION_TTL_SECONDS, verify

logger = get_logger("te-dashboard-api")

VERSION = "1.0.0"
CALLBACK_PATH = "/api/auth/callback"
DEFAULT_TABLE_ROWS = 50

app = FastAPI(
    title="T&E Dashboard API",
    version=VERSION,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)

settings = Settings.from_env()
oauth_flow = OAuthFlow(settings)
provider_client = ProviderClient(settings)
dashboard_service = DashboardService(provider_client, MemoryCacheStore(), mock_when_unconfigured=True)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _configuration_error(exc: ConfigurationError) -> JSONResponse:
    logger.error("api_configuration_error | missing=%s", ",".join(exc.missing))
    return JSONResponse(
        status_code=500,
        content={"error": "Configuration", "message": str(exc), "missing": exc.missing},
    )


def _auth_error_redirect(reason: str) -> RedirectResponse:
    return RedirectResponse(f"/auth/error?error={quote(reason)}", status_code=302)


def _forwarded_proto(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-proto", "")
    return forwarded.split(",")[0].strip().lower() or request.url.scheme


def _redirect_uri(request: Request) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/") + CALLBACK_PATH
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{_forwarded_proto(request)}://{host}{CALLBACK_PATH}"


def _session_claims(request: Request) -> Optional[SessionClaims]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token or not settings.session_secret:
        return None
    return verify(token, settings.session_secret)


def _require_session(request: Request) -> SessionClaims:
    claims = _session_claims(request)
    if claims is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return claims


def _data_status(state: DashboardState) -> str:
    if state.source == "none":
        return "error"
    if state.source == "mock":
        return "mock"
    if state.source == "cache" or state.warnings:
        return "partial"
    return "success"


def _data_payload(state: DashboardState) -> dict[str, Any]:
    dataset = state.dataset
    payload: dict[str, Any] = {
        "transactions": dataset.transactions,
        "expenses": dataset.reimbursements,
        "spendCategories": dataset.spend_categories,
        "spendPrograms": dataset.spend_programs,
        "receipts": dataset.receipts,
        "memos": dataset.memos,
        "lastUpdated": state.last_updated or _utc_now_iso(),
        "environment": settings.ramp_environment,
        "totalTransactions": len(dataset.transactions),
        "totalReimbursements": len(dataset.reimbursements),
        "status": _data_status(state),
    }
    if state.warnings:
        payload["warnings"] = state.warnings
    if state.source == "mock":
        payload["message"] = "Using mock data - provider credentials not configured"
    elif state.error:
        payload["error"] = "Failed to fetch data"
        payload["message"] = state.error
    return payload


def _selector(request: Request, name: str) -> Union[str, set[str]]:
    values = [value for value in request.query_params.getlist(name) if value != ""]
    if not values:
        return ALL
    if len(values) == 1:
        return values[0]
    return set(values)


def _view_params(request: Request) -> tuple[FilterSpec, SortSpec]:
    params = request.query_params
    try:
        filters = FilterSpec(
            department=_selector(request, "department"),
            employee=_selector(request, "employee"),
            type=_selector(request, "type"),
            merchant=_selector(request, "merchant"),
            category=_selector(request, "category"),
            spend_program=_selector(request, "spend_program"),
            month=params.get("month", ALL),
            date_from=params.get("date_from") or None,
            date_to=params.get("date_to") or None,
            memo_query=params.get("memo", ""),
        )
        sort = SortSpec(column=params.get("sort", "date"), direction=params.get("direction", "desc"))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return filters, sort


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {
        "status": "healthy",
        "timestamp": _utc_now_iso(),
        "version": VERSION,
        "environment": settings.ramp_environment,
    }


@app.get("/api/data")
async def data_endpoint() -> JSONResponse:
    """Fetch the provider dataset. Failures are reported in the body, never as a 5xx."""
    try:
        state = await dashboard_service.refresh()
    except Exception as exc:
        logger.error("api_data_error | error_type=%s | error=%s", type(exc).__name__, exc, exc_info=True)
        state = DashboardState(source="none", error=str(exc) or type(exc).__name__)
    return JSONResponse(content=_data_payload(state), headers={"Cache-Control": "no-store"})


@app.get("/api/refresh-cache")
async def refresh_cache(request: Request) -> JSONResponse:
    """Scheduled refresh. Requires `Authorization: Bearer <CRON_SECRET>`."""
    if not settings.cron_secret:
        return _configuration_error(ConfigurationError("CRON_SECRET is not configured", missing=["CRON_SECRET"]))
    if request.headers.get("authorization") != f"Bearer {settings.cron_secret}":
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    state = await dashboard_service.refresh()
    if state.source == "none":
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Cache refresh failed", "message": state.error},
        )

    logger.info("api_cache_refreshed | source=%s | rows=%d", state.source, len(state.rows))
    return JSONResponse(
        content={
            "success": True,
            "message": "Cache refreshed successfully",
            "timestamp": _utc_now_iso(),
            "source": state.source,
            "warnings": state.warnings,
        }
    )


@app.get("/api/auth/google")
def auth_google(request: Request) -> Response:
    """Start the PKCE login flow."""
    try:
        url = oauth_flow.begin(_redirect_uri(request))
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return RedirectResponse(url, status_code=302)


@app.get(CALLBACK_PATH)
async def auth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> Response:
    """Finish the login flow and set the session cookie."""
    if error:
        logger.warning("auth_callback_provider_error | error=%s", error)
        return _auth_error_redirect(error)
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    try:
        token, claims = await oauth_flow.complete(code, state, _redirect_uri(request))
    except StateValidationError as exc:
        logger.warning("auth_callback_invalid_state | reason=%s", exc.reason)
        return _auth_error_redirect("InvalidState")
    except AccessDenied as exc:
        logger.warning("auth_callback_access_denied | email=%s", exc.email)
        return _auth_error_redirect("AccessDenied")
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except OAuthExchangeError as exc:
        logger.error("auth_callback_exchange_failed | error=%s | detail=%s", exc, exc.detail)
        return JSONResponse(status_code=500, content={"error": str(exc), "detail": exc.detail})

    response = RedirectResponse("/", status_code=302)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_TTL_SECONDS,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_forwarded_proto(request) == "https",
    )
    logger.info("auth_callback_signed_in | email=%s", claims.email)
    return response


@app.get("/api/auth/session")
@app.get("/api/session")
def auth_session(request: Request) -> dict[str, Any]:
    """Current user, or null. Always HTTP 200."""
    claims = _session_claims(request)
    return {"user": claims.public_view() if claims else None}


@app.get("/api/auth/signout")
def auth_signout() -> RedirectResponse:
    response = RedirectResponse("/", status_code=302)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


AUTH_ERRORS: dict[str, dict[str, str]] = {
    "AccessDenied": {
        "title": "Access Denied",
        "message": "Only approved company email addresses are allowed to access this dashboard.",
        "suggestion": "Please sign in with your company Google account.",
    },
    "Configuration": {
        "title": "Configuration Error",
        "message": "There was a problem with the authentication configuration.",
        "suggestion": "Please contact your administrator.",
    },
}
DEFAULT_AUTH_ERROR = {
    "title": "Authentication Error",
    "message": "An error occurred during authentication.",
    "suggestion": "Please try signing in again.",
}


@app.get("/auth/error")
def auth_error(error: str = "") -> dict[str, str]:
    info = dict(AUTH_ERRORS.get(error, DEFAULT_AUTH_ERROR))
    if error == "AccessDenied":
        domains = ", ".join(f"@{domain}" for domain in settings.allowed_email_domains)
        info["message"] = f"Only {domains} email addresses are allowed to access this dashboard."
    info["error"] = error
    return info


@app.get("/api/dashboard")
async def dashboard_view(
    request: Request,
    limit: int = Query(DEFAULT_TABLE_ROWS, ge=1, le=10_000),
) -> dict[str, Any]:
    """Filtered, sorted rows plus summary cards and rollups."""
    claims = _require_session(request)
    filters, sort = _view_params(request)

    state = await dashboard_service.ensure_loaded()
    view = dashboard_service.view(filters, sort)

    return {
        "user": claims.public_view(),
        "rows": [row.model_dump(mode="json") for row in view.rows[:limit]],
        "totalRows": len(view.rows),
        "summary": view.summary.model_dump(),
        "departments": [item.model_dump() for item in view.departments],
        "months": [item.model_dump() for item in view.months],
        "filterOptions": engine.filter_options(state.rows),
        "monthOptions": engine.month_options(),
        "warnings": state.warnings,
        "lastUpdated": state.last_updated,
        "source": state.source,
        "error": state.error,
    }


@app.get("/api/export.csv")
async def export_csv(request: Request) -> Response:
    """CSV of the filtered, sorted view."""
    _require_session(request)
    filters, sort = _view_params(request)

    await dashboard_service.ensure_loaded()
    view = dashboard_service.view(filters, sort)

    return Response(
        content=to_csv(view.rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )


if __name__ == "__main__":
    setup_logging(parse_level(settings.log_level), json_format=settings.log_json)
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
