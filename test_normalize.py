"""
test_normalize.py - Record normalizer checks.

Usage:
    pytest test_normalize.py
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from models import ProviderDataset, TransactionType
from normalize import (
    ReferenceIndex,
    extract_card_location,
    extract_employee_name,
    extract_gl_account,
    extract_reimbursement_department,
    extract_reimbursement_location,
    normalize,
    parse_amount,
    parse_timestamp,
    resolve_memo,
    resolve_receipt,
    resolve_spend_category,
    resolve_spend_program,
    sort_default,
    strip_category_prefix,
)


def _card(**fields):
    raw = {"id": "t1", "amount": 4567, "user_transaction_time": "2025-03-01", "merchant_name": "Coffee Shop"}
    raw.update(fields)
    return raw


def _reimbursement(**fields):
    raw = {"id": "r1", "amount": 1250.00, "transaction_date": "2025-03-02", "merchant": "Hotel"}
    raw.update(fields)
    return raw


def test_scenario_card_and_reimbursement_amounts_and_order():
    rows = normalize(ProviderDataset(transactions=[_card()], reimbursements=[_reimbursement()]))

    assert len(rows) == 2
    by_id = {row.id: row for row in rows}
    assert by_id["t1"].amount == 45.67
    assert by_id["r1"].amount == 1250.00
    assert [row.id for row in sort_default(rows)] == ["r1", "t1"]


def test_card_amounts_are_minor_units_reimbursements_are_not():
    for cents in (0, 1, 99, 100, 4567, 123456789, -2500):
        row = normalize({"transactions": [_card(amount=cents)]})[0]
        assert row.amount == cents / 100

    for dollars in (0, 0.01, 19.99, 1250.0, 99999.5):
        row = normalize({"reimbursements": [_reimbursement(amount=dollars)]})[0]
        assert row.amount == dollars


def test_malformed_records_are_dropped_individually():
    dataset = {
        "transactions": [
            _card(id="ok-1"),
            "not a record",
            None,
            _card(id=""),
            _card(id="bad-date", user_transaction_time="not a date"),
            _card(id="no-date", user_transaction_time=None),
            _card(id="ok-2", amount="abc"),
        ],
        "reimbursements": [
            _reimbursement(id="r-ok"),
            _reimbursement(id="r-bad", transaction_date=None, created_at=None),
            42,
        ],
    }
    rows = normalize(dataset)
    assert [row.id for row in rows] == ["ok-1", "ok-2", "r-ok"]
    assert rows[1].amount == 0.0


def test_missing_nested_fields_degrade_to_placeholders():
    row = normalize({"transactions": [{"id": "t", "user_transaction_time": "2025-01-05T10:00:00Z"}]})[0]
    assert row.amount == 0.0
    assert row.employee_name == "Unknown"
    assert row.department == "Unknown"
    assert row.merchant == "Unknown"
    assert row.location == "Unknown"
    assert row.accounting_category == "Uncategorized"
    assert row.memo == "No memo"
    assert row.spend_category == "Uncategorized"
    assert row.spend_program_name == "No Program"
    assert row.has_receipt is False
    assert row.receipt_url is None
    assert row.type is TransactionType.CARD_TRANSACTION


def test_card_field_mapping():
    raw = _card(
        card_holder={
            "first_name": "Ada",
            "last_name": "Lovelace",
            "department_name": "Engineering",
            "location_name": "London",
        },
        merchant_descriptor="SQ *COFFEE",
        merchant_location={"city": "Austin", "state": "", "country": "US"},
        accounting_categories=[
            {"category_name": "Travel Vendor", "tracking_category_remote_type": "VENDOR"},
            {"category_name": "Operating Expenses : Meals", "tracking_category_remote_type": "GL_ACCOUNT"},
        ],
        sk_category_name="Restaurants",
        state="CLEARED",
    )
    row = normalize({"transactions": [raw]})[0]
    assert row.employee_name == "Ada Lovelace"
    assert row.department == "Engineering"
    assert row.employee_location == "London"
    assert row.merchant_descriptor == "SQ *COFFEE"
    assert row.location == "Austin, US"
    assert row.accounting_category == "Meals"
    assert row.spend_category == "Restaurants"
    assert row.state == "CLEARED"


def test_reimbursement_field_mapping():
    raw = _reimbursement(
        transaction_date=None,
        created_at="2025-04-10T08:30:00+02:00",
        user_full_name="Grace Hopper",
        start_location=None,
        end_location="Boston, MA",
        accounting_field_selections=[
            {"name": "Travel", "category_info": {"name": "GL Account", "type": "GL_ACCOUNT"}},
            {"name": "Sales", "category_info": {"name": "Department", "type": "OTHER"}},
        ],
    )
    row = normalize({"reimbursements": [raw]})[0]
    assert row.date == datetime(2025, 4, 10, 6, 30, tzinfo=timezone.utc)
    assert row.employee_name == "Grace Hopper"
    assert row.department == "Sales"
    assert row.location == "Boston, MA"
    assert row.employee_location == "N/A"
    assert row.accounting_category == "Travel"
    assert row.type is TransactionType.REIMBURSEMENT
    assert row.type_label == "Reimbursement"


def test_reference_resolution():
    dataset = ProviderDataset(
        transactions=[
            _card(id="t1", spend_program_id="p1"),
            _card(id="t2", spend_program_id="missing", sk_category_id="c9", receipts=["rc-x"]),
            _card(id="t3", memo="Inline memo"),
        ],
        spend_programs=[{"id": "p1", "display_name": "Team Events"}],
        spend_categories=[{"id": "c9", "name": "Software"}],
        receipts=[
            {"id": "rc1", "transaction_id": "t1", "receipt_url": "https://r/1.png"},
            {"id": "rc2", "transaction_id": "t1", "receipt_url": "https://r/2.png"},
        ],
        memos=[{"transaction_id": "t2", "memo": "From memos list"}, {"transaction_id": "t3", "memo": "ignored"}],
    )
    rows = {row.id: row for row in normalize(dataset)}

    assert rows["t1"].spend_program_name == "Team Events"
    assert rows["t2"].spend_program_name == "No Program"
    assert rows["t3"].spend_program_name == "No Program"

    assert (rows["t1"].has_receipt, rows["t1"].receipt_url) == (True, "https://r/1.png")
    assert (rows["t2"].has_receipt, rows["t2"].receipt_url) == (True, None)
    assert (rows["t3"].has_receipt, rows["t3"].receipt_url) == (False, None)

    assert rows["t2"].memo == "From memos list"
    assert rows["t3"].memo == "Inline memo"
    assert rows["t2"].spend_category == "Software"


def test_receipt_matches_reimbursement_by_expense_id():
    dataset = {
        "reimbursements": [_reimbursement(id="r9")],
        "receipts": [{"id": "rc", "expense_id": "r9", "image_url": "https://r/9.jpg"}],
    }
    row = normalize(dataset)[0]
    assert row.has_receipt is True
    assert row.receipt_url == "https://r/9.jpg"


def test_inline_receipts_supply_the_download_url():
    dataset = {
        "transactions": [
            _card(id="t1", receipts=[{"id": "rc1", "download_url": "https://x/rc1.png"}]),
            _card(id="t2", receipts=["rc-id", {"id": "rc2", "image_url": "https://x/rc2.png"}]),
        ],
        "reimbursements": [
            _reimbursement(id="r1", receipts=[{"id": "rc3", "download_url": "https://x/rc3.pdf"}]),
        ],
    }
    rows = {row.id: row for row in normalize(dataset)}

    assert (rows["t1"].has_receipt, rows["t1"].receipt_url) == (True, "https://x/rc1.png")
    assert (rows["t2"].has_receipt, rows["t2"].receipt_url) == (True, "https://x/rc2.png")
    assert (rows["r1"].has_receipt, rows["r1"].receipt_url) == (True, "https://x/rc3.pdf")

    # The receipts listing still wins over the inline copy.
    listed = ProviderDataset(
        transactions=[_card(id="t1", receipts=[{"download_url": "https://x/inline.png"}])],
        receipts=[{"id": "rc1", "transaction_id": "t1", "download_url": "https://x/listed.png"}],
    )
    assert normalize(listed)[0].receipt_url == "https://x/listed.png"


def test_normalize_does_not_sort():
    dataset = {"transactions": [_card(id="old", user_transaction_time="2024-01-01"), _card(id="new")]}
    assert [row.id for row in normalize(dataset)] == ["old", "new"]


def test_parse_amount():
    assert parse_amount(4567) == 4567.0
    assert parse_amount("1,250.50") == 1250.5
    assert parse_amount("$12") == 12.0
    assert parse_amount(None) == 0.0
    assert parse_amount("abc") == 0.0
    assert parse_amount(float("nan")) == 0.0
    assert parse_amount(True) == 0.0


def test_parse_timestamp():
    assert parse_timestamp("2025-03-01") == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2025-03-01T12:00:00-05:00") == datetime(2025, 3, 1, 17, tzinfo=timezone.utc)
    assert parse_timestamp(datetime(2025, 3, 1, 9)) == datetime(2025, 3, 1, 9, tzinfo=timezone.utc)
    for bad in (None, "", "not a date", "2025-13-45", True, 10**20):
        assert parse_timestamp(bad) is None


def test_epoch_seconds_are_accepted():
    assert parse_timestamp(1700000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert parse_timestamp(1700000000.5).microsecond == 500000

    dataset = {"transactions": [_card(id="a"), _card(id="c", user_transaction_time=1700000000)]}
    rows = {row.id: row for row in normalize(dataset)}
    assert rows["c"].date == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_strip_category_prefix():
    assert strip_category_prefix("Operating Expenses : Travel") == "Travel"
    assert strip_category_prefix("operating expense - Meals") == "Meals"
    assert strip_category_prefix("OPERATING EXPENSES > Software") == "Software"
    assert strip_category_prefix("Operating Expenses") == "Operating Expenses"
    assert strip_category_prefix("Cost of Goods Sold") == "Cost of Goods Sold"


def test_named_extractors_defaults():
    assert extract_employee_name(None) == "Unknown"
    assert extract_employee_name({"first_name": "Ada"}) == "Ada"
    assert extract_card_location({"merchant_location": None}) == "Unknown"
    assert extract_gl_account({"accounting_categories": "bad"}) == "Uncategorized"
    assert extract_reimbursement_department({"accounting_field_selections": [None, {"name": "x"}]}) == "Unknown"
    assert extract_reimbursement_location({"start_location": "Austin"}) == "Austin"
    assert extract_reimbursement_location({}) == "Unknown"

    index = ReferenceIndex.build()
    assert resolve_spend_program(None, index) == "No Program"
    assert resolve_receipt("x", {}, index) == (False, None)
    assert resolve_memo("x", {"memo": "  "}, index) == "No memo"
    assert resolve_spend_category({}, index) == "Uncategorized"
