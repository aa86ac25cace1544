"""
models.py - Data Models for the T&E Dashboard

This file defines the data structures shared across the service. Modules
communicate through these models:

    provider_client.py -> ProviderDataset (raw provider records, untouched)
    normalize.py       -> list[UnifiedTransaction]
    engine.py          -> DashboardView (rows + Summary + rollups)
    csv_export.py      -> str (uses UnifiedTransaction rows as input)
    session_token.py   -> SessionClaims

Design principles:
1. Raw provider records stay plain dicts; their shape is not trusted.
2. UnifiedTransaction is immutable once built and never has a missing field:
   absent values degrade to literal placeholders ("Unknown", "No memo", ...).
3. Filter/sort specifications are validated models so the HTTP layer and the
   CLI share one parser.

Schema relationships:
    TransactionType   --used by--> UnifiedTransaction.type
    SpendProgram      --used by--> UnifiedTransaction.spend_program_name
    Receipt           --used by--> UnifiedTransaction.has_receipt / receipt_url
    FilterSpec, SortSpec --used by--> engine.apply
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN = "Unknown"
NO_MEMO = "No memo"
UNCATEGORIZED = "Uncategorized"
NO_PROGRAM = "No Program"
NOT_APPLICABLE = "N/A"
ALL = "all"

MONTH_TOKEN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class TransactionType(str, Enum):
    """The two record families the provider reports."""

    # Company card purchase. Provider amounts are minor units (cents).
    CARD_TRANSACTION = "card_transaction"

    # Employee-submitted expense repaid by the company. Provider amounts are
    # already major units (dollars).
    REIMBURSEMENT = "reimbursement"

    @property
    def label(self) -> str:
        """Human label used in tables and CSV exports."""
        if self is TransactionType.REIMBURSEMENT:
            return "Reimbursement"
        return "Transaction"


class UnifiedTransaction(BaseModel):
    """One row of the dashboard, built from either record family.

    Amounts are always in major currency units regardless of source. The
    normalizer guarantees every field is populated, so filtering, sorting and
    rendering never need to guard against missing values.
    """

    id: str = Field(..., description="Provider record id (card transaction or reimbursement).")
    date: datetime = Field(
        ...,
        description=(
            "Timezone-aware instant of the purchase. Card transactions use "
            "user_transaction_time; reimbursements use transaction_date and "
            "fall back to created_at. Date-only values are read as UTC midnight."
        ),
    )
    amount: float = Field(
        default=0.0,
        description=(
            "Amount in major currency units. Card amounts are divided by 100, "
            "reimbursement amounts are used as-is. 0.0 when unparseable."
        ),
    )
    currency: str = Field(default="USD", description="ISO 4217 currency code.")
    employee_name: str = Field(default=UNKNOWN)
    department: str = Field(default=UNKNOWN)
    merchant: str = Field(default=UNKNOWN)
    merchant_descriptor: str = Field(
        default=UNKNOWN,
        description="Raw statement descriptor, e.g. 'SQ *BLUE BOTTLE'.",
    )
    location: str = Field(
        default=UNKNOWN,
        description=(
            "Free-text location. Card: 'City, ST, Country' from the merchant "
            "location. Reimbursement: start location, else end location."
        ),
    )
    type: TransactionType
    accounting_category: str = Field(
        default=UNCATEGORIZED,
        description="GL account name with any leading 'Operating expense' prefix removed.",
    )
    state: str = Field(default=UNKNOWN, description="Provider lifecycle state (CLEARED, APPROVED, ...).")
    employee_location: str = Field(
        default=UNKNOWN,
        description="Card holder location. Always 'N/A' for reimbursements.",
    )
    memo: str = Field(default=NO_MEMO)
    spend_category: str = Field(default=UNCATEGORIZED)
    spend_program_name: str = Field(default=NO_PROGRAM)
    has_receipt: bool = False
    receipt_url: Optional[str] = None

    @property
    def type_label(self) -> str:
        return self.type.label

    @property
    def is_reimbursement(self) -> bool:
        return self.type is TransactionType.REIMBURSEMENT

    @property
    def month_key(self) -> str:
        """Calendar month token (YYYY-MM) of the transaction date."""
        return f"{self.date.year:04d}-{self.date.month:02d}"

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "id": "t1",
                    "date": "2025-03-01T00:00:00Z",
                    "amount": 45.67,
                    "currency": "USD",
                    "employee_name": "Ada Lovelace",
                    "department": "Engineering",
                    "merchant": "Coffee Shop",
                    "merchant_descriptor": "SQ *COFFEE SHOP",
                    "location": "Austin, TX, US",
                    "type": "card_transaction",
                    "accounting_category": "Meals",
                    "state": "CLEARED",
                    "employee_location": "Remote - US",
                    "memo": "Team coffee",
                    "spend_category": "Restaurants",
                    "spend_program_name": "Team Events",
                    "has_receipt": True,
                    "receipt_url": "https://example.com/receipts/r1.png",
                }
            ]
        },
    )


class SpendProgram(BaseModel):
    """Reference row used only for spend_program_id -> name resolution."""

    id: str
    name: str

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["SpendProgram"]:
        if not isinstance(raw, dict):
            return None
        program_id = str(raw.get("id") or "").strip()
        name = str(raw.get("name") or raw.get("display_name") or "").strip()
        if not program_id or not name:
            return None
        return cls(id=program_id, name=name)


class SpendCategory(BaseModel):
    """Reference row used only for spend-category id -> label resolution."""

    id: str
    name: str

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["SpendCategory"]:
        if not isinstance(raw, dict):
            return None
        category_id = str(raw.get("id") or "").strip()
        name = str(raw.get("name") or raw.get("display_name") or "").strip()
        if not category_id or not name:
            return None
        return cls(id=category_id, name=name)


class Receipt(BaseModel):
    """Receipt reference: which record it belongs to and where the image lives."""

    id: str
    transaction_id: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Receipt"]:
        if not isinstance(raw, dict):
            return None
        receipt_id = str(raw.get("id") or "").strip()
        owner = raw.get("transaction_id") or raw.get("expense_id")
        url = raw.get("download_url") or raw.get("receipt_url") or raw.get("image_url") or raw.get("url")
        return cls(
            id=receipt_id,
            transaction_id=str(owner).strip() if owner else None,
            url=str(url) if url else None,
        )


class ProviderDataset(BaseModel):
    """Best-effort result of one provider fetch. Records are raw provider dicts."""

    model_config = ConfigDict(extra="ignore")

    transactions: list[dict[str, Any]] = Field(default_factory=list)
    reimbursements: list[dict[str, Any]] = Field(default_factory=list)
    spend_categories: list[dict[str, Any]] = Field(default_factory=list)
    spend_programs: list[dict[str, Any]] = Field(default_factory=list)
    receipts: list[dict[str, Any]] = Field(default_factory=list)
    memos: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    truncated: list[str] = Field(
        default_factory=list,
        description="Resources whose pagination stopped at the page circuit breaker.",
    )
    last_updated: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SessionClaims(BaseModel):
    """Identity claims carried inside the session token."""

    model_config = ConfigDict(extra="ignore")

    sub: str = ""
    email: str = ""
    name: str = ""
    picture: str = ""

    @field_validator("sub", "email", "name", "picture", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    def public_view(self) -> dict[str, str]:
        """Fields exposed to the browser by the session endpoints."""
        return {"email": self.email, "name": self.name, "picture": self.picture}


Selector = Union[str, set[str]]


class FilterSpec(BaseModel):
    """User-selected filters.

    Each categorical selector is either a single value ("all" means no
    restriction) or a set of values (multi-select; an empty set means no
    restriction). Both representations are accepted for every field.
    """

    model_config = ConfigDict(extra="ignore")

    department: Selector = ALL
    employee: Selector = ALL
    type: Selector = ALL
    merchant: Selector = ALL
    category: Selector = ALL
    spend_program: Selector = ALL
    month: str = ALL
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    memo_query: str = ""

    @field_validator("month", mode="before")
    @classmethod
    def _validate_month(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text or text.lower() == ALL:
            return ALL
        if not MONTH_TOKEN.match(text):
            raise ValueError(f"month must be 'all' or YYYY-MM, got {text!r}")
        return text

    @field_validator("memo_query", mode="before")
    @classmethod
    def _strip_memo_query(cls, value: Any) -> str:
        return str(value or "").strip()


SORTABLE_COLUMNS = frozenset(UnifiedTransaction.model_fields)


class SortSpec(BaseModel):
    """Sort column and direction. Defaults to newest first."""

    column: str = "date"
    direction: Literal["asc", "desc"] = "desc"

    @field_validator("column", mode="before")
    @classmethod
    def _validate_column(cls, value: Any) -> str:
        text = str(value or "").strip() or "date"
        if text not in SORTABLE_COLUMNS:
            raise ValueError(f"Unknown sort column: {text!r}")
        return text

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> str:
        return str(value or "desc").strip().lower()

    @property
    def descending(self) -> bool:
        return self.direction == "desc"


class Summary(BaseModel):
    """Summary cards computed over the filtered rows."""

    ytd_total: float = 0.0
    month_total: float = 0.0
    total_count: int = 0
    reimbursement_count: int = 0
    receipt_count: int = Field(
        default=0,
        description="Distinct receipts in the unfiltered receipts reference list.",
    )


class DepartmentTotal(BaseModel):
    department: str
    amount: float
    bar_width: float = Field(..., description="Percentage of the largest absolute department total (0-100).")


class MonthlyTotal(BaseModel):
    month: str = Field(..., description="YYYY-MM token.")
    label: str = Field(..., description="Short month name, e.g. 'Jan'.")
    amount: float = 0.0


class DashboardView(BaseModel):
    """Everything the dashboard renders for one filter/sort state."""

    rows: list[UnifiedTransaction] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    departments: list[DepartmentTotal] = Field(default_factory=list)
    months: list[MonthlyTotal] = Field(default_factory=list)
