"""
dashboard.py - Fetch -> cache -> normalize -> view orchestration.

DashboardService owns the current DashboardState. A refresh replaces the
state wholesale:

    live   provider fetch succeeded (warnings may still be attached)
    mock   provider credentials absent and mock fallback enabled
    cache  fetch failed, last valid snapshot served instead
    none   fetch failed and no valid snapshot exists (error is set)

A refresh requested while another is in flight awaits the same task.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Protocol

from pydantic import BaseModel, Field

import engine
from cache_store import CacheStore
from errors import ConfigurationError, UpstreamAuthError
from logging_config import get_logger
from models import DashboardView, FilterSpec, ProviderDataset, SortSpec, UnifiedTransaction
from normalize import normalize, sort_default
from provider_client import mock_dataset

logger = get_logger(__name__)

Source = Literal["live", "cache", "mock", "none"]


class Fetcher(Protocol):
    async def fetch_all(self) -> ProviderDataset: ...


class DashboardState(BaseModel):
    """Normalized rows plus the raw dataset they came from."""

    rows: list[UnifiedTransaction] = Field(default_factory=list)
    dataset: ProviderDataset = Field(default_factory=ProviderDataset)
    warnings: list[str] = Field(default_factory=list)
    last_updated: Optional[str] = None
    source: Source = "none"
    error: Optional[str] = None

    @property
    def receipts(self) -> list[dict[str, Any]]:
        return self.dataset.receipts


def build_state(
    dataset: ProviderDataset,
    source: Source,
    extra_warnings: Optional[list[str]] = None,
    error: Optional[str] = None,
) -> DashboardState:
    return DashboardState(
        rows=sort_default(normalize(dataset)),
        dataset=dataset,
        warnings=list(dataset.warnings) + list(extra_warnings or []),
        last_updated=dataset.last_updated,
        source=source,
        error=error,
    )


class DashboardService:
    def __init__(
        self,
        fetcher: Fetcher,
        cache: CacheStore,
        mock_when_unconfigured: bool = False,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.mock_when_unconfigured = mock_when_unconfigured
        self.state = DashboardState()
        self.loaded = False
        self._inflight: Optional[asyncio.Future] = None

    def load_cached(self, now: Optional[datetime] = None) -> DashboardState:
        """Rebuild state from the cache, if a valid snapshot exists."""
        snapshot = self.cache.load(now=now)
        if snapshot is None:
            return self.state
        self.state = build_state(snapshot.to_dataset(), "cache")
        self.loaded = True
        logger.info("dashboard_cache_loaded | rows=%d | cached_at=%s", len(self.state.rows), snapshot.cached_at)
        return self.state

    async def refresh(self) -> DashboardState:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            logger.info("dashboard_refresh_joined")
            return await asyncio.shield(inflight)

        task = asyncio.ensure_future(self._refresh())
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    async def ensure_loaded(self) -> DashboardState:
        if not self.loaded:
            return await self.refresh()
        return self.state

    async def _refresh(self) -> DashboardState:
        try:
            dataset = await self.fetcher.fetch_all()
        except ConfigurationError as exc:
            if self.mock_when_unconfigured:
                logger.warning("dashboard_mock_data | missing=%s", ",".join(exc.missing))
                return self._replace(build_state(mock_dataset(), "mock"))
            return self._fall_back(exc)
        except UpstreamAuthError as exc:
            return self._fall_back(exc)
        except Exception as exc:
            logger.exception("dashboard_refresh_unexpected | error_type=%s", type(exc).__name__)
            return self._fall_back(exc)

        self.cache.save(dataset)
        return self._replace(build_state(dataset, "live"))

    def _fall_back(self, exc: Exception) -> DashboardState:
        message = str(exc) or type(exc).__name__
        snapshot = self.cache.load()
        if snapshot is not None:
            logger.warning(
                "dashboard_refresh_failed | error_type=%s | fallback='cache' | cached_at=%s",
                type(exc).__name__,
                snapshot.cached_at,
            )
            notice = f"Showing cached data from {snapshot.cached_at}"
            return self._replace(build_state(snapshot.to_dataset(), "cache", extra_warnings=[notice], error=message))

        logger.error("dashboard_refresh_failed | error_type=%s | error=%s | fallback='none'", type(exc).__name__, message)
        return self._replace(DashboardState(source="none", error=message))

    def _replace(self, state: DashboardState) -> DashboardState:
        self.state = state
        self.loaded = True
        return state

    def view(
        self,
        filters: Optional[FilterSpec] = None,
        sort: Optional[SortSpec] = None,
        now: Optional[datetime] = None,
    ) -> DashboardView:
        return engine.apply(
            self.state.rows,
            filters=filters,
            sort=sort,
            receipts=self.state.receipts,
            now=now or datetime.now(timezone.utc),
        )
