"""
provider_client.py - Spend-management provider API client.

Responsibilities:
- client-credentials token acquisition (never retried)
- cursor pagination over list endpoints with a page circuit breaker
- per-call timeouts, bounded retries with exponential backoff
- concurrent fetch of every resource with per-resource degradation

Only token acquisition (or missing credentials) can make `fetch_all` raise.
Everything else degrades to empty lists plus human-readable warnings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional

import httpx

from config import Settings
from errors import FetchTimeoutError, UpstreamAuthError, UpstreamResourceError
from logging_config import get_logger
from models import ProviderDataset

logger = get_logger(__name__)

USER_AGENT = "TE-Dashboard/1.0"
TOKEN_SCOPES = (
    "transactions:read reimbursements:read receipts:read memos:read "
    "spend_programs:read users:read"
)

RESOURCE_PATHS: dict[str, str] = {
    "transactions": "transactions",
    "reimbursements": "reimbursements",
    "spend_categories": "sk_categories",
    "spend_programs": "spend-programs",
    "receipts": "receipts",
    "memos": "memos",
}
ESSENTIAL_RESOURCES = ("transactions", "reimbursements")
DATED_RESOURCES = frozenset(ESSENTIAL_RESOURCES)
INCOMPLETE_WARNINGS = {
    "transactions": "Some transaction data may be incomplete",
    "reimbursements": "Some reimbursement data may be incomplete",
}

# Known next-page pointers, checked in this order.
CURSOR_PATHS: tuple[tuple[str, ...], ...] = (
    ("page", "next"),
    ("next_cursor",),
    ("pagination", "next_cursor"),
    ("next",),
    ("links", "next"),
)

MAX_BACKOFF_SECONDS = 8.0


@dataclass(frozen=True)
class NextPage:
    """Where the next page lives: a full URL or an opaque cursor."""

    kind: Literal["url", "cursor"]
    value: str


def extract_next_cursor(envelope: Any) -> Optional[NextPage]:
    """Resolve the provider's next-page pointer from any known envelope shape."""
    if not isinstance(envelope, dict):
        return None

    for path in CURSOR_PATHS:
        node: Any = envelope
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, (int, float)) and not isinstance(node, bool):
            node = str(node)
        if isinstance(node, str) and node.strip():
            value = node.strip()
            if value.startswith(("http://", "https://")):
                return NextPage(kind="url", value=value)
            return NextPage(kind="cursor", value=value)
    return None


class ProviderClient:
    """Reads raw records from the provider API."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory or (lambda: httpx.AsyncClient())
        self.truncated: list[str] = []

    @property
    def base_url(self) -> str:
        return f"{self.settings.provider_base_url}/developer/v1"

    async def get_access_token(self, client: httpx.AsyncClient) -> str:
        """Exchange client credentials for a bearer token."""
        client_id, client_secret = self.settings.require_provider_credentials()
        timeout = self.settings.fetch_timeout_seconds

        try:
            response = await asyncio.wait_for(
                client.post(
                    f"{self.base_url}/token",
                    auth=(client_id, client_secret),
                    data={"grant_type": "client_credentials", "scope": TOKEN_SCOPES},
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamAuthError(f"Token request timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamAuthError(f"Token request failed: {type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            logger.error(
                "provider_token_failed | status=%s | body=%r",
                response.status_code,
                response.text[:500],
            )
            raise UpstreamAuthError(
                f"Token request failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            token = response.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise UpstreamAuthError(
                "Token response did not include an access_token",
                status_code=response.status_code,
                body=response.text,
            )

        logger.info("provider_token_acquired | base_url=%s", self.settings.provider_base_url)
        return str(token)

    async def fetch_paged(
        self,
        client: httpx.AsyncClient,
        resource: str,
        token: str,
        query: Optional[dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Follow next-page pointers and concatenate every page's `data` array."""
        page_cap = max_pages if max_pages is not None else self.settings.fetch_max_pages
        resource_url = f"{self.base_url}/{RESOURCE_PATHS.get(resource, resource)}"
        base_params = {"limit": self.settings.fetch_page_limit, **(query or {})}
        url: str = resource_url
        params: Optional[dict[str, Any]] = base_params

        records: list[dict[str, Any]] = []
        pages = 0
        while True:
            envelope = await self._get_page(client, resource, url, params, token)
            rows = envelope.get("data")
            if isinstance(rows, list):
                records.extend(row for row in rows if isinstance(row, dict))
            pages += 1

            logger.debug(
                "provider_page | resource=%s | page=%d | rows=%d | total=%d",
                resource,
                pages,
                len(rows) if isinstance(rows, list) else 0,
                len(records),
            )

            next_page = extract_next_cursor(envelope)
            if next_page is None:
                break
            if pages >= page_cap:
                logger.warning(
                    "provider_pagination_truncated | resource=%s | pages=%d | rows=%d",
                    resource,
                    pages,
                    len(records),
                )
                self.truncated.append(resource)
                break

            if next_page.kind == "url":
                url, params = next_page.value, None
            else:
                # A bare cursor is relative to the resource listing and its base query.
                url, params = resource_url, {**base_params, "start": next_page.value}

        return records

    async def _get_page(
        self,
        client: httpx.AsyncClient,
        resource: str,
        url: str,
        params: Optional[dict[str, Any]],
        token: str,
    ) -> dict[str, Any]:
        """GET one page with a timeout and bounded retries."""
        attempts = max(1, self.settings.fetch_max_attempts)
        timeout = self.settings.fetch_timeout_seconds
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

        last_error: UpstreamResourceError = UpstreamResourceError(resource, "no attempts made")
        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(
                    client.get(url, params=params, headers=headers),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                last_error = FetchTimeoutError(resource, timeout)
            except httpx.HTTPError as exc:
                last_error = UpstreamResourceError(resource, f"{type(exc).__name__}: {exc}")
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = UpstreamResourceError(resource, f"HTTP {status}", status_code=status)
                elif not response.is_success:
                    raise UpstreamResourceError(resource, f"HTTP {status}", status_code=status)
                else:
                    try:
                        data = response.json()
                    except ValueError as exc:
                        raise UpstreamResourceError(resource, "response was not JSON", status_code=status) from exc
                    return data if isinstance(data, dict) else {}

            if attempt < attempts:
                delay = min(MAX_BACKOFF_SECONDS, self.settings.fetch_backoff_seconds * (2 ** (attempt - 1)))
                logger.warning(
                    "provider_retry | resource=%s | attempt=%d/%d | error=%s | sleep=%.2fs",
                    resource,
                    attempt,
                    attempts,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise last_error

    async def _fetch_resource(
        self,
        client: httpx.AsyncClient,
        resource: str,
        token: str,
        query: Optional[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], Optional[Exception]]:
        try:
            return await self.fetch_paged(client, resource, token, query=query), None
        except Exception as exc:
            logger.warning(
                "provider_resource_failed | resource=%s | error_type=%s | error=%s | fallback=[]",
                resource,
                type(exc).__name__,
                exc,
            )
            return [], exc

    async def fetch_all(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> ProviderDataset:
        """Fetch every resource concurrently and return a best-effort dataset."""
        self.settings.require_provider_credentials()
        self.truncated = []

        dated_query: dict[str, Any] = {}
        if from_date is not None:
            dated_query["from_date"] = from_date.isoformat()
        if to_date is not None:
            dated_query["to_date"] = to_date.isoformat()

        async with self._client_factory() as client:
            token = await self.get_access_token(client)
            resources = list(RESOURCE_PATHS)
            results = await asyncio.gather(
                *(
                    self._fetch_resource(
                        client,
                        resource,
                        token,
                        dated_query if resource in DATED_RESOURCES else None,
                    )
                    for resource in resources
                )
            )

        fetched: dict[str, list[dict[str, Any]]] = {}
        warnings: list[str] = []
        for resource, (records, error) in zip(resources, results):
            fetched[resource] = records
            if error is not None and resource in INCOMPLETE_WARNINGS:
                warnings.append(INCOMPLETE_WARNINGS[resource])

        for resource in self.truncated:
            warnings.append(
                f"{resource} truncated after {self.settings.fetch_max_pages} pages"
            )

        dataset = ProviderDataset(
            **fetched,
            warnings=warnings,
            truncated=list(self.truncated),
        )
        logger.info(
            "provider_fetch_complete | transactions=%d | reimbursements=%d | receipts=%d | warnings=%d",
            len(dataset.transactions),
            len(dataset.reimbursements),
            len(dataset.receipts),
            len(dataset.warnings),
        )
        return dataset


def mock_dataset(now: Optional[datetime] = None) -> ProviderDataset:
    """Sample dataset served when provider credentials are not configured."""
    current = now or datetime.now(timezone.utc)
    yesterday = current - timedelta(days=1)
    last_week = current - timedelta(days=7)

    return ProviderDataset(
        transactions=[
            {
                "id": "mock-transaction-1",
                "amount": 4567,
                "currency_code": "USD",
                "user_transaction_time": yesterday.isoformat(),
                "merchant_name": "Coffee Shop",
                "merchant_descriptor": "SQ *COFFEE SHOP",
                "merchant_location": {"city": "Austin", "state": "TX", "country": "US"},
                "card_holder": {
                    "first_name": "Test",
                    "last_name": "User",
                    "department_name": "Engineering",
                    "location_name": "Remote - US",
                },
                "accounting_categories": [
                    {
                        "category_name": "Operating Expenses : Meals",
                        "tracking_category_remote_type": "GL_ACCOUNT",
                    }
                ],
                "sk_category_name": "Restaurants",
                "spend_program_id": "mock-program-1",
                "memo": "Team coffee",
                "state": "CLEARED",
                "receipts": ["mock-receipt-1"],
            },
            {
                "id": "mock-transaction-2",
                "amount": 32900,
                "currency_code": "USD",
                "user_transaction_time": last_week.isoformat(),
                "merchant_name": "Airline Co",
                "merchant_location": {"city": "Denver", "state": "CO", "country": "US"},
                "card_holder": {
                    "first_name": "Sam",
                    "last_name": "Sample",
                    "department_name": "Sales",
                    "location_name": "Denver",
                },
                "sk_category_name": "Airlines",
                "state": "CLEARED",
            },
        ],
        reimbursements=[
            {
                "id": "mock-expense-1",
                "amount": 1250.00,
                "currency": "USD",
                "transaction_date": yesterday.date().isoformat(),
                "created_at": current.isoformat(),
                "user_full_name": "Test User",
                "merchant": "Hotel Example",
                "start_location": "Austin, TX",
                "accounting_field_selections": [
                    {"name": "Engineering", "category_info": {"name": "Department", "type": "OTHER"}},
                ],
                "memo": "Offsite lodging",
                "state": "APPROVED",
            }
        ],
        spend_programs=[{"id": "mock-program-1", "display_name": "Team Events"}],
        receipts=[
            {
                "id": "mock-receipt-1",
                "transaction_id": "mock-transaction-1",
                "receipt_url": "https://example.com/receipts/mock-receipt-1.png",
            }
        ],
        last_updated=current.isoformat(),
    )
