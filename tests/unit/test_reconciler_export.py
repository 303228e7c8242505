from __future__ import annotations

import pytest

from sheet_migration.mapping.entities import FINANCIAL_SURVEYS, PAYROLL
from sheet_migration.models.results import Failed, Synced
from sheet_migration.services.reconciler import ReconciliationError

PAYROLL_HEADERS = [
    "ID", "Credit Application ID", "Role", "Number of Employees in Role",
    "Monthly Salary", "Months per Year the Role is Paid", "Notes", "Total Annual Cost",
]


def _payroll(**overrides):
    values = {
        "credit_application_id": "CA-1",
        "role": "Teacher",
        "number_of_employees_in_role": 4,
        "monthly_salary": 15000.0,
        "months_per_year_the_role_is_paid": 12,
        "notes": None,
    }
    values.update(overrides)
    return values


@pytest.fixture()
def payroll_sheet(fake_sheets):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS, [
        ["PAY-1", "CA-1", "Teacher", "4", "15000", "12", "", "720000"],
        ["PAY-2", "CA-1", "Cook", "1", "8000", "12", "", "96000"],
    ])
    fake_sheets.formulas[("Payroll", 2, 7)] = "=D2*E2*F2"
    return fake_sheets


def test_durable_id_updates_existing_row_and_keeps_formulas(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(monthly_salary=16000.0, notes="raise"), sheet_id="PAY-1")

    result = reconciler.sync_to_sheets()

    assert result.outcomes == [Synced(str(record_id), "PAY-1", "updated")]
    row = payroll_sheet.rows("Payroll")[0]
    assert row["Monthly Salary"] == "16000"
    assert row["Notes"] == "raise"
    assert row["ID"] == "PAY-1"
    # 数式列は上書きしない
    assert payroll_sheet.formulas[("Payroll", 2, 7)] == "=D2*E2*F2"
    assert row["Total Annual Cost"] == "720000"
    assert store.get(record_id).synced is True
    assert len(payroll_sheet.sheets["Payroll"]) == 3


def test_pending_id_matches_natural_key_and_backfills(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(role="Cook", monthly_salary=8500.0), sheet_id="PR-1700000000000")

    result = reconciler.sync_to_sheets()

    assert result.outcomes == [Synced(str(record_id), "PAY-2", "matched")]
    record = store.get(record_id)
    assert record.sheet_id == "PAY-2"
    assert record.synced is True
    assert payroll_sheet.rows("Payroll")[1]["Monthly Salary"] == "8500"


def test_unmatched_record_is_appended(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(role="Driver", monthly_salary=9000.0))

    result = reconciler.sync_to_sheets()

    synced = result.outcomes[0]
    assert isinstance(synced, Synced)
    assert synced.action == "appended"
    assert synced.sheet_id.startswith("PAY-")
    assert store.get(record_id).sheet_id == synced.sheet_id
    appended = payroll_sheet.rows("Payroll")[-1]
    assert appended["ID"] == synced.sheet_id
    assert appended["Role"] == "Driver"
    assert appended["Total Annual Cost"] == ""


def test_vanished_durable_row_is_reappended(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(role="Bursar"), sheet_id="PAY-77")

    result = reconciler.sync_to_sheets()

    assert result.outcomes[0].action == "appended"
    assert store.get(record_id).sheet_id != "PAY-77"


def test_rows_linked_to_other_records_are_not_matched(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    store.add(_payroll(role="Cook"), sheet_id="PAY-2", synced=True)
    newcomer = store.add(_payroll(role="Cook"))

    result = reconciler.sync_to_sheets()

    assert result.outcomes[0].identifier == str(newcomer)
    assert result.outcomes[0].action == "appended"


def test_claimed_rows_are_not_matched_twice(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    first = store.add(_payroll(role="Cook"))
    second = store.add(_payroll(role="Cook"))

    result = reconciler.sync_to_sheets()

    actions = {o.identifier: o.action for o in result.outcomes}
    assert actions == {str(first): "matched", str(second): "appended"}


def test_ambiguous_match_is_a_row_failure(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS, [
        ["PAY-1", "CA-1", "Cook", "1", "8000", "12", "", ""],
        ["PAY-2", "CA-1", "Cook", "1", "8000", "12", "", ""],
    ])
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(role="Cook"))
    other = store.add(_payroll(role="Guard"))

    result = reconciler.sync_to_sheets()

    failed = [o for o in result.outcomes if isinstance(o, Failed)]
    assert [o.identifier for o in failed] == [str(record_id)]
    assert failed[0].error_type == "AMBIGUOUS_MATCH_ERROR"
    assert store.get(record_id).synced is False
    # 後続レコードは処理継続
    assert store.get(other).synced is True


def test_duplicate_durable_rows_fail_the_record(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS, [
        ["PAY-1", "CA-1", "Cook", "1", "8000", "12", "", ""],
        ["PAY-1", "CA-1", "Cook", "1", "8000", "12", "", ""],
    ])
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(role="Cook"), sheet_id="PAY-1")

    result = reconciler.sync_to_sheets()

    assert result.errors == 1
    assert result.outcomes[0].error_type == "DUPLICATE_ROW_ERROR"
    assert store.get(record_id).synced is False


def test_only_unsynced_records_matching_correlation_are_exported(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    store.add(_payroll(role="Nurse"), synced=True)
    wanted = store.add(_payroll(credit_application_id="CA-9", role="Nurse"))
    store.add(_payroll(credit_application_id="CA-8", role="Nurse"))

    result = reconciler.sync_to_sheets("CA-9")

    assert [o.identifier for o in result.outcomes] == [str(wanted)]


def test_export_setup_failure(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Payroll", PAYROLL_HEADERS)
    fake_sheets.unreadable.add("Payroll")
    reconciler, store = make_reconciler(PAYROLL)
    store.add(_payroll())
    with pytest.raises(ReconciliationError):
        reconciler.sync_to_sheets()


def test_export_payload(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    record_id = store.add(_payroll(), sheet_id="PAY-1")
    payload = reconciler.sync_to_sheets().to_payload()
    assert payload["success"] is True
    assert payload["synced"] == 1
    assert payload["errors"] == 0
    assert payload["results"] == [{"id": str(record_id), "sheetId": "PAY-1", "action": "updated"}]


def test_sync_record_exports_single_record(payroll_sheet, make_reconciler):
    reconciler, store = make_reconciler(PAYROLL)
    store.add(_payroll(role="Driver"))
    target = store.add(_payroll(notes="only me"), sheet_id="PAY-1", synced=True)

    result = reconciler.sync_record(target)

    assert [o.identifier for o in result.outcomes] == [str(target)]
    assert payroll_sheet.rows("Payroll")[0]["Notes"] == "only me"


def test_sync_record_unknown_id(payroll_sheet, make_reconciler):
    reconciler, _ = make_reconciler(PAYROLL)
    with pytest.raises(ReconciliationError, match="not found"):
        reconciler.sync_record(404)


def _survey_headers():
    fmap = FINANCIAL_SURVEYS.field_map
    computed = [fmap.spec(f).column for f in FINANCIAL_SURVEYS.readback_fields]
    return ["ID", "Credit Application ID", "Survey Date", "Created By", *computed]


def test_survey_export_schedules_readback(fake_sheets, make_reconciler):
    headers = _survey_headers()
    fake_sheets.add_sheet("Financial Survey", headers, [
        ["FS-1", "CA-1", "15/05/2022", "amy", "KSh 1,000", "250000", "80,000", "30000"],
    ])
    reconciler, store = make_reconciler(FINANCIAL_SURVEYS)
    record_id = store.add(
        {"credit_application_id": "CA-1", "survey_date": "2022-05-15", "created_by": "bob"}
    )

    result = reconciler.sync_to_sheets()

    assert result.outcomes == [Synced(str(record_id), "FS-1", "matched")]
    row = fake_sheets.rows("Financial Survey")[0]
    assert row["Created By"] == "bob"
    assert row["Survey Date"] == "15/05/2022"
    # 読戻しで数式列が store に反映される
    values = store.get(record_id).values
    assert values["monthly_debt_payments"] == 1000.0
    assert values["annual_expense_estimate"] == 250000.0
    assert values["annual_food_expense_estimate"] == 80000.0
    assert values["annual_transport_expense_estimate"] == 30000.0


def test_survey_answers_are_written_and_survive_readback(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Financial Survey", _survey_headers())
    reconciler, store = make_reconciler(FINANCIAL_SURVEYS)
    record_id = store.add({
        "credit_application_id": "CA-9",
        "survey_date": "2022-05-15",
        "monthly_debt_payments": 5000.0,
        "annual_food_expense_estimate": 120.0,
    })

    result = reconciler.sync_to_sheets()

    assert result.outcomes[0].action == "appended"
    row = fake_sheets.rows("Financial Survey")[0]
    assert row["Annual Food Expense Estimate"] == "120"
    debt_column = FINANCIAL_SURVEYS.field_map.spec("monthly_debt_payments").column
    assert row[debt_column] == "5000"
    assert row["Annual Transport Expense Estimate"] == ""
    values = store.get(record_id).values
    assert values["monthly_debt_payments"] == 5000.0
    assert values["annual_food_expense_estimate"] == 120.0
    assert values["annual_transport_expense_estimate"] is None


def test_blank_formula_cells_do_not_erase_stored_values(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Financial Survey", _survey_headers(), [
        ["FS-1", "CA-1", "15/05/2022", "amy", "", "", "", ""],
    ])
    # 食費列は数式 (再計算前なので表示値は空)
    fake_sheets.formulas[("Financial Survey", 2, 6)] = "=E2*3"
    reconciler, store = make_reconciler(FINANCIAL_SURVEYS)
    record_id = store.add(
        {
            "credit_application_id": "CA-1",
            "monthly_debt_payments": 5000.0,
            "annual_expense_estimate": 250000.0,
            "annual_food_expense_estimate": 120.0,
        },
        sheet_id="FS-1",
    )

    result = reconciler.sync_to_sheets()

    assert result.outcomes == [Synced(str(record_id), "FS-1", "updated")]
    row = fake_sheets.rows("Financial Survey")[0]
    assert row["Annual Food Expense Estimate"] == ""
    assert fake_sheets.formulas[("Financial Survey", 2, 6)] == "=E2*3"
    assert row["Annual Transport Expense Estimate"] == ""
    values = store.get(record_id).values
    assert values["monthly_debt_payments"] == 5000.0
    assert values["annual_expense_estimate"] == 250000.0
    assert values["annual_food_expense_estimate"] == 120.0
    assert values["annual_transport_expense_estimate"] is None


def test_readback_for_missing_row_is_a_noop(fake_sheets, make_reconciler):
    fake_sheets.add_sheet("Financial Survey", _survey_headers())
    reconciler, store = make_reconciler(FINANCIAL_SURVEYS)
    record_id = store.add({"credit_application_id": "CA-1"})
    assert reconciler.read_back(record_id, "FS-404") == {}


def test_payroll_has_no_readback(payroll_sheet, make_reconciler):
    reconciler, _ = make_reconciler(PAYROLL)
    assert reconciler.read_back(1, "PAY-1") == {}
