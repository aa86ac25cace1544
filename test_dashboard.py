"""
test_dashboard.py - Refresh orchestration and cache fallback checks.

Usage:
    pytest test_dashboard.py
"""

from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cache_store import MemoryCacheStore
from dashboard import DashboardService
from errors import ConfigurationError, UpstreamAuthError
from models import FilterSpec, ProviderDataset


def _dataset(**overrides) -> ProviderDataset:
    values = dict(
        transactions=[
            {"id": "t1", "amount": 4567, "user_transaction_time": "2025-03-01", "card_holder": {"department_name": "Engineering"}},
            {"id": "t2", "amount": 1000, "user_transaction_time": "2025-03-05", "card_holder": {"department_name": "Sales"}},
        ],
        reimbursements=[{"id": "r1", "amount": 1250.0, "transaction_date": "2025-03-02"}],
        receipts=[{"id": "rc1", "transaction_id": "t1"}],
    )
    values.update(overrides)
    return ProviderDataset(**values)


class FakeFetcher:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def fetch_all(self) -> ProviderDataset:
        self.calls += 1
        await asyncio.sleep(0)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_successful_refresh_caches_and_sorts():
    cache = MemoryCacheStore()
    service = DashboardService(FakeFetcher([_dataset()]), cache)
    state = asyncio.run(service.refresh())

    assert state.source == "live"
    assert state.error is None
    assert [row.id for row in state.rows] == ["t2", "r1", "t1"]
    assert cache.load() is not None


def test_failed_refresh_falls_back_to_cache():
    cache = MemoryCacheStore()
    service = DashboardService(FakeFetcher([_dataset(), UpstreamAuthError("Token request failed: 401", 401)]), cache)

    asyncio.run(service.refresh())
    state = asyncio.run(service.refresh())

    assert state.source == "cache"
    assert len(state.rows) == 3
    assert "401" in state.error
    assert any(warning.startswith("Showing cached data") for warning in state.warnings)


def test_failed_refresh_without_cache_is_explicit_error():
    service = DashboardService(FakeFetcher([RuntimeError("boom")]), MemoryCacheStore())
    state = asyncio.run(service.refresh())

    assert state.source == "none"
    assert state.rows == []
    assert state.error == "boom"
    assert service.loaded is True


def test_unconfigured_provider_serves_mock_when_enabled():
    missing = ConfigurationError("not configured", missing=["RAMP_CLIENT_ID"])

    service = DashboardService(FakeFetcher([missing]), MemoryCacheStore(), mock_when_unconfigured=True)
    state = asyncio.run(service.refresh())
    assert state.source == "mock"
    assert len(state.rows) == 3
    assert service.cache.load() is None

    strict = DashboardService(FakeFetcher([missing]), MemoryCacheStore())
    assert asyncio.run(strict.refresh()).source == "none"


def test_concurrent_refresh_shares_one_fetch():
    fetcher = FakeFetcher([_dataset()])
    service = DashboardService(fetcher, MemoryCacheStore())

    async def run_both():
        return await asyncio.gather(service.refresh(), service.refresh())

    first, second = asyncio.run(run_both())
    assert fetcher.calls == 1
    assert first is second


def test_load_cached_rebuilds_rows():
    cache = MemoryCacheStore()
    cache.save(_dataset())
    service = DashboardService(FakeFetcher([]), cache)

    state = service.load_cached()
    assert state.source == "cache"
    assert service.loaded is True
    assert len(state.rows) == 3


def test_view_applies_filters_with_global_receipt_count():
    service = DashboardService(FakeFetcher([_dataset()]), MemoryCacheStore())
    asyncio.run(service.refresh())

    view = service.view(FilterSpec(department="Sales"))
    assert [row.id for row in view.rows] == ["t2"]
    assert view.summary.receipt_count == 1
