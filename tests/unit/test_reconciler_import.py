from __future__ import annotations

import json

import pytest

from sheet_migration.db.record_store import DuplicateSheetIdError
from sheet_migration.mapping.entities import LOANS, PAYROLL
from sheet_migration.models.results import Failed, Imported, Skipped, Updated
from sheet_migration.services.reconciler import ReconciliationError

PAYROLL_HEADERS = [
    "ID", "Credit Application ID", "Role", "Number of Employees in Role",
    "Monthly Salary", "Months per Year the Role is Paid", "Notes", "Total Annual Cost",
]
LOAN_HEADERS = ["ID", "Borrower ID", "Loan Number", "Principal Amount", "Number of Months"]


@pytest.fixture()
def payroll_sheet(fake_sheets):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS, [
        ["PAY-1", "CA-1", "Teacher", "4", "KSh 15,000", "12", "", "720000"],
        ["PAY-2", "CA-1", "Cook", "1", "8,000", "12", "", "96000"],
        ["", "", "", "", "", "", "", ""],
        ["", "CA-2", "Driver", "1", "9000", "12", "", ""],
        ["PAY-3", "CA-2", "Guard", "2", "#VALUE!", "12", "night", ""],
        ["PAY-1", "CA-1", "Teacher", "4", "15000", "12", "dup", ""],
    ])
    return fake_sheets


def test_import_creates_records_and_skips_blank_rows(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    result = reconciler.import_from_sheets()

    assert result.imported == 3
    assert result.errors == 0
    reasons = {o.identifier: o.reason for o in result.outcomes if isinstance(o, Skipped)}
    assert reasons["row 4"] == "Completely empty record"
    assert reasons["row 5"] == "Empty ID"
    assert reasons["PAY-1"].startswith("Duplicate ID in sheet")

    teacher = store.find_by_sheet_id("PAY-1")
    assert teacher.synced is True
    assert teacher.values["monthly_salary"] == 15000.0
    assert teacher.values["number_of_employees_in_role"] == 4
    # #VALUE! は NULL
    assert store.find_by_sheet_id("PAY-3").values["monthly_salary"] is None


def test_import_is_idempotent(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    reconciler.import_from_sheets()
    before = {r.id: r for r in store.find_all()}

    again = reconciler.import_from_sheets()

    assert again.imported == 0
    assert again.errors == 0
    assert [o.reason for o in again.outcomes if isinstance(o, Skipped) and o.identifier == "PAY-2"] == [
        "Already exists in database"
    ]
    assert {r.id: r for r in store.find_all()} == before


def test_import_correlation_filter(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    result = reconciler.import_from_sheets("CA-2")

    assert [o.identifier for o in result.outcomes if isinstance(o, Imported)] == ["PAY-3"]
    mismatch = next(o for o in result.outcomes if isinstance(o, Skipped) and o.identifier == "PAY-2")
    assert mismatch.reason == "Credit Application ID mismatch: expected CA-2, got CA-1"
    assert store.count() == 1


def test_row_failures_are_isolated_and_logged(payroll_sheet, make_reconciler, tmp_path):
    reconciler, store = make_reconciler(PAYROLL)
    store.fail_create_for.add("PAY-2")

    result = reconciler.import_from_sheets()

    assert result.imported == 2
    assert result.errors == 1
    failed = next(o for o in result.outcomes if isinstance(o, Failed))
    assert failed.identifier == "PAY-2"
    assert failed.error_type == "STORE_ERROR"
    assert store.find_by_sheet_id("PAY-3") is not None

    logs = list((tmp_path / "logs").glob("errors-*.log"))
    assert len(logs) == 1
    entry = json.loads(logs[0].read_text(encoding="utf-8").strip())
    assert entry["entity"] == "payroll"
    assert entry["sheet"] == "Payroll"
    assert entry["identifier"] == "PAY-2"
    assert entry["operation"] == "import"
    assert entry["error_type"] == "STORE_ERROR"


def test_duplicate_sheet_id_in_store_is_a_row_failure(payroll_sheet, make_reconciler, monkeypatch):
    reconciler, store = make_reconciler(PAYROLL)
    original_create = store.create

    def racing_create(values, *, sheet_id=None, synced=False):
        # 検索後・挿入前に別経路で同じ sheet_id が登録された状況
        if sheet_id == "PAY-2":
            raise DuplicateSheetIdError(f"sheet_id {sheet_id!r} already linked")
        return original_create(values, sheet_id=sheet_id, synced=synced)

    monkeypatch.setattr(store, "create", racing_create)

    result = reconciler.import_from_sheets()

    failed = [o for o in result.outcomes if isinstance(o, Failed)]
    assert [o.identifier for o in failed] == ["PAY-2"]
    assert failed[0].error_type == "DUPLICATE_SHEET_ID_ERROR"


def test_unreadable_sheet_aborts_run(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS)
    fake_sheets.unreadable.add("Payroll")
    reconciler, _ = make_reconciler(PAYROLL)
    with pytest.raises(ReconciliationError):
        reconciler.import_from_sheets()


def test_loans_update_existing_records(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Loans", LOAN_HEADERS, [
        ["L-1", "B-1", "1", "10000", "12"],
        ["L-2", "B-2", "1", "20000", "6"],
    ])
    reconciler, store = make_reconciler(LOANS)
    first = reconciler.import_from_sheets()
    assert first.imported == 2

    fake_sheets.sheets["Loans"][1][3] = "KSh 12,500"
    second = reconciler.import_from_sheets()

    assert [o.identifier for o in second.outcomes if isinstance(o, Updated)] == ["L-1"]
    assert store.find_by_sheet_id("L-1").values["principal_amount"] == 12500.0
    unchanged = next(o for o in second.outcomes if o.identifier == "L-2")
    assert unchanged == Skipped("L-2", "Already up to date")

    third = reconciler.import_from_sheets()
    assert third.updated == 0 and third.imported == 0 and third.skipped == 2


def test_loans_import_marks_unsynced_record_synced(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Loans", LOAN_HEADERS, [["L-1", "B-1", "1", "10000", "12"]])
    reconciler, store = make_reconciler(LOANS)
    record_id = store.add(
        {"borrower_id": "B-1", "loan_number": "1", "principal_amount": 10000.0, "number_of_months": 12},
        sheet_id="L-1",
        synced=False,
    )
    result = reconciler.import_from_sheets()
    assert result.updated == 1
    assert store.get(record_id).synced is True


def test_import_payload_shape(payroll_sheet, make_reconciler):
    reconciler, _ = make_reconciler(PAYROLL)
    payload = reconciler.import_from_sheets().to_payload()
    assert payload["success"] is True
    assert payload["imported"] == 3
    assert payload["skipped"] == 3
    assert {"sheetId": "row 4", "reason": "Completely empty record"} in payload["skippedDetails"]
    assert "errorDetails" not in payload
