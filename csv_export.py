"""
csv_export.py - CSV rendering of the current dashboard view.

Rows are written in the order given; callers pass the filtered, sorted view.
Text cells are always quoted (internal quotes doubled), the amount is a bare
decimal and the date uses the US short form M/D/YYYY.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Iterable, Optional

from models import UnifiedTransaction

CSV_HEADER = ["Date", "Employee", "Department", "Merchant", "Amount", "Location", "Type", "Category", "Memo"]


def format_short_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def to_csv(rows: Iterable[UnifiedTransaction]) -> str:
    buffer = io.StringIO()
    # QUOTE_NONNUMERIC quotes every str cell and leaves the float amount bare.
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(
            [
                format_short_date(row.date),
                row.employee_name,
                row.department,
                row.merchant,
                float(row.amount),
                row.location,
                row.type_label,
                row.accounting_category,
                row.memo,
            ]
        )
    return buffer.getvalue()


def export_filename(now: Optional[datetime] = None) -> str:
    """Download name for today's export, e.g. te-transactions-2025-03-01.csv."""
    current = now or datetime.now(timezone.utc)
    return f"te-transactions-{current.strftime('%Y-%m-%d')}.csv"
