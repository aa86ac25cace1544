"""
normalize.py - Raw provider records -> UnifiedTransaction rows.

Value parsers:
    parse_amount(value)        -> float, 0.0 when unparseable
    parse_timestamp(value)     -> aware UTC datetime or None

Field extractors (each encodes its own default):
    extract_employee_name, extract_department, extract_card_location,
    extract_gl_account, strip_category_prefix,
    extract_reimbursement_department, extract_reimbursement_gl_account,
    extract_reimbursement_location, extract_receipt_url

Reference resolution (ReferenceIndex):
    resolve_spend_program, resolve_spend_category, resolve_receipt, resolve_memo

Entry point:
    normalize(dataset) -> list[UnifiedTransaction]

Design principles:
    - Card amounts are minor units (/100); reimbursement amounts are already
      major units and pass through unchanged
    - Pure transformations, no external API calls, no sorting
    - Missing fields degrade to placeholders; a malformed record is logged
      and skipped without affecting its siblings
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as dateparser

from logging_config import get_logger
from models import (
    NO_MEMO,
    NO_PROGRAM,
    NOT_APPLICABLE,
    UNCATEGORIZED,
    UNKNOWN,
    Receipt,
    SpendCategory,
    SpendProgram,
    TransactionType,
    UnifiedTransaction,
)

logger = get_logger(__name__)

GL_ACCOUNT_TYPES = {"GL_ACCOUNT", "GL ACCOUNT", "GLACCOUNT"}

# "Operating Expenses : Travel", "Operating expense - Meals", "OPERATING EXPENSE > Software"
CATEGORY_PREFIX = re.compile(
    r"^\s*operating\s+expenses?\s*[:\-–—>/|]+\s*",
    flags=re.IGNORECASE,
)

PLACEHOLDER_TEXT = {"", "null", "none", "undefined"}


class MalformedRecord(ValueError):
    """A raw record cannot be turned into a row (no id, no usable timestamp)."""


def _text(value: Any, default: str = UNKNOWN) -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    text = str(value).strip()
    if text.lower() in PLACEHOLDER_TEXT:
        return default
    return text


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _sequence(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def parse_amount(value: Any) -> float:
    """Parse a provider amount into a float. Never raises; 0.0 on failure."""
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = str(value).strip().replace("$", "").replace(",", "")
        if not cleaned:
            return 0.0
        try:
            number = float(cleaned)
        except ValueError:
            logger.warning("parse_amount | parse_failed | raw=%r | fallback=0.0", value)
            return 0.0

    if not math.isfinite(number):
        logger.warning("parse_amount | non_finite=%r | fallback=0.0", value)
        return 0.0
    return number


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-ish timestamp into an aware UTC datetime.

    Naive values (including bare dates) are read as UTC.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        # Unix epoch seconds.
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as exc:
            logger.warning(
                "parse_timestamp | parse_error=%s | raw=%r | fallback=None",
                type(exc).__name__,
                value,
            )
            return None
    else:
        text = str(value).strip()
        if not text or not any(char.isdigit() for char in text):
            return None
        try:
            parsed = dateparser.parse(text)
        except (ValueError, TypeError, OverflowError) as exc:
            logger.warning(
                "parse_timestamp | parse_error=%s | raw=%r | fallback=None",
                type(exc).__name__,
                value,
            )
            return None
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def extract_employee_name(card_holder: Any) -> str:
    holder = _mapping(card_holder)
    first = _text(holder.get("first_name"), "")
    last = _text(holder.get("last_name"), "")
    full = f"{first} {last}".strip()
    return full or UNKNOWN


def extract_department(raw: dict[str, Any]) -> str:
    return _text(_mapping(raw.get("card_holder")).get("department_name"))


def extract_card_location(raw: dict[str, Any]) -> str:
    location = _mapping(raw.get("merchant_location"))
    parts = [
        _text(location.get(key), "")
        for key in ("city", "state", "country")
    ]
    joined = ", ".join(part for part in parts if part)
    return joined or UNKNOWN


def strip_category_prefix(category: str) -> str:
    """Drop a leading 'Operating expense(s) <sep>' prefix, case-insensitively."""
    stripped = CATEGORY_PREFIX.sub("", category, count=1).strip()
    return stripped or category


def _is_gl_type(value: Any) -> bool:
    return str(value or "").strip().upper() in GL_ACCOUNT_TYPES


def extract_gl_account(raw: dict[str, Any]) -> str:
    """First accounting-category tag whose remote type is a GL account."""
    for tag in _sequence(raw.get("accounting_categories")):
        tag = _mapping(tag)
        if not _is_gl_type(tag.get("tracking_category_remote_type") or tag.get("type")):
            continue
        name = _text(tag.get("category_name") or tag.get("name"), "")
        if name:
            return strip_category_prefix(name)
    return UNCATEGORIZED


def _field_selections(raw: dict[str, Any]) -> Iterable[dict[str, Any]]:
    for selection in _sequence(raw.get("accounting_field_selections")):
        if isinstance(selection, dict):
            yield selection


def extract_reimbursement_department(raw: dict[str, Any]) -> str:
    """Department from the accounting field selection categorized as 'Department'."""
    for selection in _field_selections(raw):
        category = _mapping(selection.get("category_info"))
        if _text(category.get("name"), "").lower() == "department":
            return _text(selection.get("name"))
    return UNKNOWN


def extract_reimbursement_gl_account(raw: dict[str, Any]) -> str:
    for selection in _field_selections(raw):
        category = _mapping(selection.get("category_info"))
        if _is_gl_type(category.get("type")) or _is_gl_type(selection.get("type")):
            name = _text(selection.get("name"), "")
            if name:
                return strip_category_prefix(name)
    return UNCATEGORIZED


def extract_reimbursement_location(raw: dict[str, Any]) -> str:
    start = _text(raw.get("start_location"), "")
    if start:
        return start
    return _text(raw.get("end_location"))


def extract_receipt_url(raw: dict[str, Any]) -> Optional[str]:
    for key in ("download_url", "receipt_url", "image_url", "url"):
        value = _text(raw.get(key), "")
        if value:
            return value
    return None


@dataclass
class ReferenceIndex:
    """Lookup tables built once per normalize() call."""

    programs: dict[str, str] = field(default_factory=dict)
    categories: dict[str, str] = field(default_factory=dict)
    receipts: dict[str, Receipt] = field(default_factory=dict)
    memos: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        spend_programs: Iterable[Any] = (),
        spend_categories: Iterable[Any] = (),
        receipts: Iterable[Any] = (),
        memos: Iterable[Any] = (),
    ) -> "ReferenceIndex":
        index = cls()
        for raw in spend_programs:
            program = SpendProgram.from_raw(raw)
            if program is not None:
                index.programs.setdefault(program.id, program.name)
        for raw in spend_categories:
            category = SpendCategory.from_raw(raw)
            if category is not None:
                index.categories.setdefault(category.id, category.name)
        for raw in receipts:
            receipt = Receipt.from_raw(raw)
            if receipt is not None and receipt.transaction_id:
                # First match wins.
                index.receipts.setdefault(receipt.transaction_id, receipt)
        for raw in memos:
            raw = _mapping(raw)
            owner = _text(raw.get("transaction_id") or raw.get("expense_id"), "")
            text = _text(raw.get("memo") or raw.get("text"), "")
            if owner and text:
                index.memos.setdefault(owner, text)
        return index


def resolve_spend_program(program_id: Any, index: ReferenceIndex) -> str:
    key = _text(program_id, "")
    if not key:
        return NO_PROGRAM
    return index.programs.get(key, NO_PROGRAM)


def resolve_spend_category(raw: dict[str, Any], index: ReferenceIndex) -> str:
    name = _text(raw.get("sk_category_name") or raw.get("category_name") or raw.get("category"), "")
    if name:
        return name
    category_id = _text(raw.get("sk_category_id") or raw.get("category_id"), "")
    return index.categories.get(category_id, UNCATEGORIZED) if category_id else UNCATEGORIZED


def resolve_receipt(record_id: str, raw: dict[str, Any], index: ReferenceIndex) -> tuple[bool, Optional[str]]:
    """(has_receipt, receipt_url) for a record id."""
    receipt = index.receipts.get(record_id)
    if receipt is not None:
        return True, receipt.url
    # The record itself may list receipts that were not in the receipts listing.
    inline = _sequence(raw.get("receipts"))
    url = next((extract_receipt_url(item) for item in inline if isinstance(item, dict)), None)
    return bool(inline), url


def resolve_memo(record_id: str, raw: dict[str, Any], index: ReferenceIndex) -> str:
    memo = _text(raw.get("memo"), "")
    if memo:
        return memo
    return index.memos.get(record_id, NO_MEMO)


def _record_id(raw: Any) -> str:
    if not isinstance(raw, dict):
        raise MalformedRecord(f"record is {type(raw).__name__}, expected object")
    record_id = _text(raw.get("id"), "")
    if not record_id:
        raise MalformedRecord("record has no id")
    return record_id


def normalize_card_transaction(raw: Any, index: ReferenceIndex) -> UnifiedTransaction:
    record_id = _record_id(raw)
    when = parse_timestamp(raw.get("user_transaction_time"))
    if when is None:
        raise MalformedRecord(f"transaction {record_id} has no usable user_transaction_time")

    card_holder = _mapping(raw.get("card_holder"))
    has_receipt, receipt_url = resolve_receipt(record_id, raw, index)
    merchant = _text(raw.get("merchant_name"))

    return UnifiedTransaction(
        id=record_id,
        date=when,
        amount=parse_amount(raw.get("amount")) / 100,
        currency=_text(raw.get("currency_code") or raw.get("currency"), "USD"),
        employee_name=extract_employee_name(card_holder),
        department=extract_department(raw),
        merchant=merchant,
        merchant_descriptor=_text(raw.get("merchant_descriptor"), merchant),
        location=extract_card_location(raw),
        type=TransactionType.CARD_TRANSACTION,
        accounting_category=extract_gl_account(raw),
        state=_text(raw.get("state")),
        employee_location=_text(card_holder.get("location_name")),
        memo=resolve_memo(record_id, raw, index),
        spend_category=resolve_spend_category(raw, index),
        spend_program_name=resolve_spend_program(raw.get("spend_program_id"), index),
        has_receipt=has_receipt,
        receipt_url=receipt_url,
    )


def normalize_reimbursement(raw: Any, index: ReferenceIndex) -> UnifiedTransaction:
    record_id = _record_id(raw)
    when = parse_timestamp(raw.get("transaction_date")) or parse_timestamp(raw.get("created_at"))
    if when is None:
        raise MalformedRecord(f"reimbursement {record_id} has no usable transaction_date/created_at")

    has_receipt, receipt_url = resolve_receipt(record_id, raw, index)
    merchant = _text(raw.get("merchant"))

    return UnifiedTransaction(
        id=record_id,
        date=when,
        # Already major units.
        amount=parse_amount(raw.get("amount")),
        currency=_text(raw.get("currency") or raw.get("currency_code"), "USD"),
        employee_name=_text(raw.get("user_full_name")),
        department=extract_reimbursement_department(raw),
        merchant=merchant,
        merchant_descriptor=merchant,
        location=extract_reimbursement_location(raw),
        type=TransactionType.REIMBURSEMENT,
        accounting_category=extract_reimbursement_gl_account(raw),
        state=_text(raw.get("state")),
        employee_location=NOT_APPLICABLE,
        memo=resolve_memo(record_id, raw, index),
        spend_category=resolve_spend_category(raw, index),
        spend_program_name=resolve_spend_program(raw.get("spend_program_id"), index),
        has_receipt=has_receipt,
        receipt_url=receipt_url,
    )


def _records(dataset: Any, *keys: str) -> list[Any]:
    for key in keys:
        if isinstance(dataset, dict):
            value = dataset.get(key)
        else:
            value = getattr(dataset, key, None)
        if isinstance(value, list):
            return value
    return []


def normalize(dataset: Any) -> list[UnifiedTransaction]:
    """Build unified rows from a ProviderDataset (or a mapping with the same keys).

    Card transactions come first, then reimbursements, each in provider order.
    """
    index = ReferenceIndex.build(
        spend_programs=_records(dataset, "spend_programs", "spendPrograms"),
        spend_categories=_records(dataset, "spend_categories", "spendCategories"),
        receipts=_records(dataset, "receipts"),
        memos=_records(dataset, "memos"),
    )

    rows: list[UnifiedTransaction] = []
    skipped = 0
    sources = (
        (_records(dataset, "transactions"), normalize_card_transaction),
        (_records(dataset, "reimbursements", "expenses"), normalize_reimbursement),
    )
    for records, builder in sources:
        for position, raw in enumerate(records):
            try:
                rows.append(builder(raw, index))
            except Exception as exc:
                skipped += 1
                logger.warning(
                    "normalize_skip | builder=%s | position=%d | error_type=%s | error=%s",
                    builder.__name__,
                    position,
                    type(exc).__name__,
                    exc,
                )

    logger.debug("normalize | rows=%d | skipped=%d", len(rows), skipped)
    return rows


def sort_default(rows: Iterable[UnifiedTransaction]) -> list[UnifiedTransaction]:
    """Conventional default view: newest first."""
    return sorted(rows, key=lambda row: row.date, reverse=True)
