"""
engine.py - Filter, sort and aggregate unified rows.

Filter evaluation order (later steps see the already-narrowed set):
    1. department, employee, type
    2. month (when set, date_from/date_to are ignored) else date_from/date_to
    3. merchant, accounting category, spend program
    4. memo substring, case-insensitive

Every categorical selector accepts either a single value ("all" = no
restriction) or a set of values (empty set = no restriction).

Aggregates run on a pandas frame built from the filtered rows. Amounts and
dates are coerced, so one bad value contributes 0 / is skipped instead of
raising.
"""

from __future__ import annotations

import calendar
from datetime import datetime, time, timezone
from typing import Any, Iterable, Optional

import pandas as pd

from logging_config import get_logger
from models import (
    ALL,
    UNKNOWN,
    DashboardView,
    DepartmentTotal,
    FilterSpec,
    MonthlyTotal,
    Receipt,
    Selector,
    SortSpec,
    Summary,
    UnifiedTransaction,
)

logger = get_logger(__name__)

TOP_DEPARTMENTS = 10
NUMERIC_COLUMNS = {"date", "amount"}

# FilterSpec field -> UnifiedTransaction attribute
FILTER_FIELDS = {
    "department": "department",
    "employee": "employee_name",
    "type": "type",
    "merchant": "merchant",
    "category": "accounting_category",
    "spend_program": "spend_program_name",
}


def _utc_now(now: Optional[datetime]) -> datetime:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        return current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone.utc)


def selector_matches(selector: Selector, *values: str) -> bool:
    """True when a row value is not excluded by a single- or multi-select filter."""
    if isinstance(selector, (set, frozenset, list, tuple)):
        return not selector or any(value in selector for value in values)
    return selector == ALL or selector in values


def _row_values(row: UnifiedTransaction, field: str) -> tuple[str, ...]:
    if field == "type":
        # Either the wire value or the human label selects a type.
        return (row.type.value, row.type.label)
    return (str(getattr(row, FILTER_FIELDS[field])),)


def _narrow(rows: list[UnifiedTransaction], filters: FilterSpec, fields: Iterable[str]) -> list[UnifiedTransaction]:
    for field in fields:
        selector = getattr(filters, field)
        rows = [row for row in rows if selector_matches(selector, *_row_values(row, field))]
    return rows


def filter_rows(rows: Iterable[UnifiedTransaction], filters: Optional[FilterSpec] = None) -> list[UnifiedTransaction]:
    """Apply filters in their fixed precedence. Relative row order is preserved."""
    filters = filters or FilterSpec()
    result = list(rows)

    result = _narrow(result, filters, ("department", "employee", "type"))

    if filters.month != ALL:
        result = [row for row in result if row.month_key == filters.month]
    else:
        if filters.date_from is not None:
            start = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc)
            result = [row for row in result if row.date >= start]
        if filters.date_to is not None:
            end = datetime.combine(filters.date_to, time.max, tzinfo=timezone.utc)
            result = [row for row in result if row.date <= end]

    result = _narrow(result, filters, ("merchant", "category", "spend_program"))

    if filters.memo_query:
        needle = filters.memo_query.lower()
        result = [row for row in result if needle in row.memo.lower()]

    return result


def _sort_key(column: str):
    def key(row: UnifiedTransaction) -> Any:
        value = getattr(row, column)
        if column == "date":
            return value.timestamp()
        if column == "amount":
            return float(value)
        if value is None:
            return ""
        if hasattr(value, "value"):
            value = value.value
        return str(value).lower()

    return key


def sort_rows(rows: Iterable[UnifiedTransaction], sort: Optional[SortSpec] = None) -> list[UnifiedTransaction]:
    """Stable sort by one column. Ties keep their incoming order in both directions."""
    sort = sort or SortSpec()
    return sorted(rows, key=_sort_key(sort.column), reverse=sort.descending)


def _frame(rows: list[UnifiedTransaction]) -> pd.DataFrame:
    frame = pd.DataFrame(
        {
            "amount": [row.amount for row in rows],
            "date": [row.date for row in rows],
            "department": [row.department for row in rows],
            "is_reimbursement": [row.is_reimbursement for row in rows],
        }
    )
    frame["amount"] = pd.to_numeric(frame["amount"], errors="coerce").fillna(0.0).astype(float)
    frame["date"] = pd.to_datetime(frame["date"], utc=True, errors="coerce")
    return frame


def _distinct_receipts(receipts: Optional[Iterable[Any]]) -> int:
    ids: set[str] = set()
    for raw in receipts or ():
        receipt = raw if isinstance(raw, Receipt) else Receipt.from_raw(raw)
        if receipt is not None and receipt.id:
            ids.add(receipt.id)
    return len(ids)


def summarize(
    rows: list[UnifiedTransaction],
    receipts: Optional[Iterable[Any]] = None,
    now: Optional[datetime] = None,
) -> Summary:
    """Summary cards over the filtered rows.

    receipt_count is taken from the unfiltered receipts reference list, not
    from the rows.
    """
    current = _utc_now(now)
    receipt_count = _distinct_receipts(receipts)
    if not rows:
        return Summary(receipt_count=receipt_count)

    frame = _frame(rows)
    this_year = frame["date"].dt.year == current.year
    this_month = this_year & (frame["date"].dt.month == current.month)

    return Summary(
        ytd_total=round(float(frame.loc[this_year, "amount"].sum()), 2),
        month_total=round(float(frame.loc[this_month, "amount"].sum()), 2),
        total_count=len(frame),
        reimbursement_count=int(frame["is_reimbursement"].sum()),
        receipt_count=receipt_count,
    )


def department_rollup(rows: list[UnifiedTransaction], top_n: int = TOP_DEPARTMENTS) -> list[DepartmentTotal]:
    """Per-department totals, largest first.

    bar_width is relative to the largest absolute total, so refund-only
    departments still get a visible bar.
    """
    if not rows:
        return []

    totals = (
        _frame(rows)
        .groupby("department")["amount"]
        .sum()
        .sort_values(ascending=False, kind="mergesort")
        .head(top_n)
    )
    peak = float(totals.abs().max()) if len(totals) else 0.0

    return [
        DepartmentTotal(
            department=str(department),
            amount=round(float(amount), 2),
            bar_width=round(abs(float(amount)) / peak * 100, 2) if peak > 0 else 0.0,
        )
        for department, amount in totals.items()
    ]


def monthly_rollup(rows: list[UnifiedTransaction], now: Optional[datetime] = None) -> list[MonthlyTotal]:
    """Twelve buckets for the current year, zero-filled."""
    current = _utc_now(now)
    by_month: dict[int, float] = {}

    if rows:
        frame = _frame(rows)
        frame = frame[frame["date"].dt.year == current.year]
        if not frame.empty:
            grouped = frame.groupby(frame["date"].dt.month)["amount"].sum()
            by_month = {int(month): float(amount) for month, amount in grouped.items()}

    return [
        MonthlyTotal(
            month=f"{current.year:04d}-{month:02d}",
            label=calendar.month_abbr[month],
            amount=round(by_month.get(month, 0.0), 2),
        )
        for month in range(1, 13)
    ]


def apply(
    rows: Iterable[UnifiedTransaction],
    filters: Optional[FilterSpec] = None,
    sort: Optional[SortSpec] = None,
    receipts: Optional[Iterable[Any]] = None,
    now: Optional[datetime] = None,
) -> DashboardView:
    filtered = filter_rows(rows, filters)
    ordered = sort_rows(filtered, sort)
    view = DashboardView(
        rows=ordered,
        summary=summarize(filtered, receipts=receipts, now=now),
        departments=department_rollup(filtered),
        months=monthly_rollup(filtered, now=now),
    )
    logger.debug(
        "engine_apply | rows=%d | filtered=%d | departments=%d",
        len(ordered),
        view.summary.total_count,
        len(view.departments),
    )
    return view


def filter_options(rows: Iterable[UnifiedTransaction]) -> dict[str, list[str]]:
    """Distinct, sorted values for each dropdown. 'Unknown' is never offered."""
    collected: dict[str, set[str]] = {field: set() for field in FILTER_FIELDS}
    for row in rows:
        for field, attribute in FILTER_FIELDS.items():
            value = row.type.value if field == "type" else str(getattr(row, attribute))
            if value and value != UNKNOWN:
                collected[field].add(value)
    return {field: sorted(values, key=str.lower) for field, values in collected.items()}


def month_options(now: Optional[datetime] = None) -> list[dict[str, str]]:
    """The twelve months of the current year as {value: YYYY-MM, label: 'January 2026'}."""
    current = _utc_now(now)
    return [
        {
            "value": f"{current.year:04d}-{month:02d}",
            "label": f"{calendar.month_name[month]} {current.year}",
        }
        for month in range(1, 13)
    ]
