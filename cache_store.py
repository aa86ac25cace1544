"""
cache_store.py - Last-known-good snapshot of the provider dataset.

Stores one snapshot (raw dataset + cached_at + version tag). Writes are
whole-object replacement, last write wins. A snapshot older than 24 hours,
from another cache version, or with non-list record arrays is treated as
absent.

Two stores share the CacheStore protocol:
    FileCacheStore    JSON file with atomic temp-file + replace writes (CLI)
    MemoryCacheStore  in-process copy (API process, tests)
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logging_config import get_logger, graceful
from models import ProviderDataset
from normalize import parse_timestamp

logger = get_logger(__name__)

CACHE_VERSION = "1"
CACHE_MAX_AGE = timedelta(hours=24)


class CachedSnapshot(BaseModel):
    """Persisted form of a ProviderDataset."""

    model_config = ConfigDict(extra="ignore")

    version: str = CACHE_VERSION
    cached_at: str
    last_updated: str = ""
    transactions: list[dict[str, Any]] = Field(default_factory=list)
    reimbursements: list[dict[str, Any]] = Field(default_factory=list)
    spend_categories: list[dict[str, Any]] = Field(default_factory=list)
    spend_programs: list[dict[str, Any]] = Field(default_factory=list)
    receipts: list[dict[str, Any]] = Field(default_factory=list)
    memos: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_dataset(cls, dataset: ProviderDataset, now: Optional[datetime] = None) -> "CachedSnapshot":
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        return cls(
            cached_at=stamp,
            last_updated=dataset.last_updated or stamp,
            transactions=dataset.transactions,
            reimbursements=dataset.reimbursements,
            spend_categories=dataset.spend_categories,
            spend_programs=dataset.spend_programs,
            receipts=dataset.receipts,
            memos=dataset.memos,
            warnings=dataset.warnings,
        )

    def to_dataset(self) -> ProviderDataset:
        return ProviderDataset(
            transactions=self.transactions,
            reimbursements=self.reimbursements,
            spend_categories=self.spend_categories,
            spend_programs=self.spend_programs,
            receipts=self.receipts,
            memos=self.memos,
            warnings=self.warnings,
            last_updated=self.last_updated or self.cached_at,
        )


def is_valid(data: Any, now: Optional[datetime] = None) -> bool:
    """Whether a raw snapshot (dict or CachedSnapshot) may be served."""
    if isinstance(data, CachedSnapshot):
        data = data.model_dump()
    if not isinstance(data, dict):
        return False

    if str(data.get("version", "")) != CACHE_VERSION:
        return False

    if not isinstance(data.get("transactions"), list) or not isinstance(data.get("reimbursements"), list):
        return False

    cached_at = parse_timestamp(data.get("cached_at"))
    if cached_at is None:
        return False

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current - cached_at <= CACHE_MAX_AGE


class CacheStore(Protocol):
    def save(self, dataset: ProviderDataset, now: Optional[datetime] = None) -> Optional[CachedSnapshot]: ...

    def load(self, now: Optional[datetime] = None) -> Optional[CachedSnapshot]: ...

    def clear(self) -> None: ...


class FileCacheStore:
    """Disk-backed snapshot using one JSON file and atomic writes."""

    def __init__(self, path: Optional[str] = None) -> None:
        target = path or os.getenv("DASHBOARD_CACHE_FILE", "data/dashboard_cache.json")
        self.path = Path(target).resolve()

    @graceful(lambda: None, log_level=logging.WARNING)
    def save(self, dataset: ProviderDataset, now: Optional[datetime] = None) -> Optional[CachedSnapshot]:
        """Persist atomically via temp-file + replace. Failures are logged, never raised."""
        snapshot = CachedSnapshot.from_dataset(dataset, now=now)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.path.parent),
            delete=False,
            suffix=".tmp",
            prefix="dashboard-cache-",
        ) as tmp_file:
            json.dump(snapshot.model_dump(mode="json"), tmp_file, ensure_ascii=False)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, self.path)
        logger.info(
            "cache_saved | path=%s | transactions=%d | reimbursements=%d",
            self.path,
            len(snapshot.transactions),
            len(snapshot.reimbursements),
        )
        return snapshot

    def load(self, now: Optional[datetime] = None) -> Optional[CachedSnapshot]:
        """Return the snapshot, or None when missing, corrupt or stale."""
        if not self.path.exists():
            return None

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning(
                "cache_load_warning | path=%s | error_type=%s | error=%s | fallback='clear'",
                self.path,
                type(exc).__name__,
                exc,
            )
            self.clear()
            return None

        return _validated(raw, now, on_corrupt=self.clear)

    def clear(self) -> None:
        """Remove the cache file if present."""
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError as exc:
            logger.warning(
                "cache_clear_warning | path=%s | error_type=%s | error=%s",
                self.path,
                type(exc).__name__,
                exc,
            )


class MemoryCacheStore:
    """In-process snapshot. Holds the serialized form so reads never share mutable state with writers."""

    def __init__(self) -> None:
        self._payload: Optional[dict[str, Any]] = None

    def save(self, dataset: ProviderDataset, now: Optional[datetime] = None) -> Optional[CachedSnapshot]:
        snapshot = CachedSnapshot.from_dataset(dataset, now=now)
        self._payload = snapshot.model_dump(mode="json")
        return snapshot

    def load(self, now: Optional[datetime] = None) -> Optional[CachedSnapshot]:
        if self._payload is None:
            return None
        return _validated(self._payload, now, on_corrupt=self.clear)

    def clear(self) -> None:
        self._payload = None


def _validated(raw: Any, now: Optional[datetime], on_corrupt) -> Optional[CachedSnapshot]:
    if not is_valid(raw, now=now):
        logger.info("cache_stale_or_invalid | fallback=None")
        return None
    try:
        return CachedSnapshot.model_validate(raw)
    except ValidationError as exc:
        logger.warning("cache_load_warning | error_type=ValidationError | error=%s | fallback='clear'", exc)
        on_corrupt()
        return None
