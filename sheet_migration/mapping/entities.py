from __future__ import annotations

from dataclasses import dataclass, replace

from sheet_migration.models.config_models import EntitySettings

from .field_map import FieldMap, FieldSpec

"""Registry of reconciled entities.

Each EntityDefinition bundles everything the reconciler needs to know about
one sheet/table pair: the field map, the correlation filter, the import
policy for rows that already exist in the store, the natural key used to
re-link records whose sheet id went missing, and the columns the sheet owns
(formula results that the store must never overwrite).
"""

__all__ = [
    "CorrelationKey",
    "EntityDefinition",
    "FINANCIAL_SURVEYS",
    "PAYROLL",
    "LOANS",
    "WRITE_OFFS",
    "ENTITIES",
    "get_entity",
    "configured_entities",
]


@dataclass(frozen=True)
class CorrelationKey:
    param: str  # HTTP query parameter
    field: str  # store field compared against
    label: str  # skip reason 用表示名


@dataclass(frozen=True)
class EntityDefinition:
    slug: str
    name: str
    sheet_name: str
    table: str
    field_map: FieldMap
    correlation: CorrelationKey
    id_prefix: str
    update_on_import: bool = False
    natural_key: tuple[str, ...] = ()
    pending_prefixes: tuple[str, ...] = ()
    computed_fields: tuple[str, ...] = ()  # シート数式列: export で書込まない
    readback_fields: tuple[str, ...] = ()  # export 後に遅延読戻しする列

    def with_settings(self, settings: EntitySettings | None) -> EntityDefinition:
        if settings is None:
            return self
        return replace(
            self,
            sheet_name=settings.sheet or self.sheet_name,
            table=settings.table or self.table,
        )


_f = FieldSpec

FINANCIAL_SURVEYS = EntityDefinition(
    slug="financial-surveys",
    name="Financial Surveys",
    sheet_name="Financial Survey",
    table="financial_surveys",
    correlation=CorrelationKey("creditApplicationId", "credit_application_id", "Credit Application ID"),
    id_prefix="FS",
    natural_key=("credit_application_id", "survey_date"),
    # 負債額は回答項目のため export 対象、残りはシート数式
    computed_fields=(
        "annual_expense_estimate",
        "annual_food_expense_estimate",
        "annual_transport_expense_estimate",
    ),
    readback_fields=(
        "monthly_debt_payments",
        "annual_expense_estimate",
        "annual_food_expense_estimate",
        "annual_transport_expense_estimate",
    ),
    field_map=FieldMap([
        _f("Credit Application ID", "credit_application_id"),
        _f("Survey Date", "survey_date", "date"),
        _f("Director ID", "director_id"),
        _f("Created By", "created_by"),
        _f("What grades does the school serve?", "school_grades"),
        _f("Is the school APBET or Private?", "is_school_apbet_or_private"),
        _f("Is the school supported by a major church?", "is_church_supported"),
        _f("Which church?", "church_name"),
        _f("How much money does the church give the school per year?", "church_annual_support", "currency"),
        _f("What other benefits does church provide to the school?", "church_benefits"),
        _f("Does the school rent, lease, or own its facilities?", "facility_ownership"),
        _f("How much does the school pay for the lease or rental per year?", "annual_lease_rent", "currency"),
        _f(
            "How much money does the owner withdraw from the school annually? "
            "(including direct expenses, salary, profit, dividends, etc)",
            "owner_annual_withdrawal",
            "currency",
        ),
        _f(
            "How much does the school and directors pay per month in school related debt payments, "
            "including debt on and off the CRB?",
            "monthly_debt_payments",
            "currency",
        ),
        _f("Does the school provide any meals?", "provides_meals"),
        _f("How much does the school spend on food per term? ", "termly_food_expense", "currency"),
        _f("How much does the school spend on cooking fuel per term?", "termly_fuel_expense", "currency"),
        _f(
            "How much does the school spend on students’ textbooks annually?",
            "annual_student_textbook_expense",
            "currency",
            aliases=("How much does the school spend on students' textbooks annually?",),
        ),
        _f(
            "How much does the school spend on teachers’ textbooks annually?",
            "annual_teacher_textbook_expense",
            "currency",
            aliases=("How much does the school spend on teachers' textbooks annually?",),
        ),
        _f("How much does the school spend on stationery per term?", "termly_stationery_expense", "currency"),
        _f("How much does the school spend on WiFi per month?", "monthly_wifi_expense", "currency"),
        _f("How much does the school spend on airtime per term?", "termly_airtime_expense", "currency"),
        _f("How much does the school spend on water per month?", "monthly_water_expense", "currency"),
        _f("How much does the school spend on miscellaneous costs per term?", "termly_misc_expense", "currency"),
        _f(
            "How much does the school spend on taxes and licensing annually?",
            "annual_tax_license_expense",
            "currency",
        ),
        _f(
            "How much does the school spend on electricity per month?",
            "monthly_electricity_expense",
            "currency",
        ),
        _f("Does the school have vehicles for transportation?", "has_vehicles"),
        _f(
            "How much in total does the school spend on vehicle service per term?",
            "termly_vehicle_service_expense",
            "currency",
        ),
        _f(
            "How much in total does the school spend on vehicle fuel per term?",
            "termly_vehicle_fuel_expense",
            "currency",
        ),
        _f(
            "Including all of its vehicles, how much has the school spent purchasing vehicles?",
            "total_vehicle_purchase_expense",
            "currency",
        ),
        _f(
            "How much does the school spend on laptops, desks, blackboards, water tanks, "
            "kitchen appliances, and furniture annually?",
            "annual_equipment_furniture_expense",
            "currency",
        ),
        _f(
            "How much does the school pay for school repair and maintenance per year?",
            "annual_repair_maintenance_expense",
            "currency",
        ),
        _f(
            "Does the school have any sources of revenue other than school fees and sponsorships?",
            "has_other_revenue",
        ),
        _f("What are the other sources of revenue?", "other_revenue_sources"),
        _f(
            "How much does the school collect from these other sources of revenue annually "
            "according to the director's estimate?",
            "annual_other_revenue",
            "currency",
        ),
        _f("How many children at the school are sponsored?", "sponsored_children_count", "integer"),
        _f(
            "How much annual sponsorship revenue does the school collect?",
            "annual_sponsorship_revenue",
            "currency",
        ),
        _f(
            "Annual Expense Estimate Excluding Payroll, Rent, Debt, Owners Draw, Food, and Transport",
            "annual_expense_estimate",
            "currency",
        ),
        _f("Annual Food Expense Estimate", "annual_food_expense_estimate", "currency"),
        _f("Annual Transport Expense Estimate", "annual_transport_expense_estimate", "currency"),
        _f(
            "What was the value of the assets held by the school last year?",
            "last_year_asset_value",
            "currency",
        ),
        _f("Loan Amount Deposited into Bank Accounts in Last Year", "last_year_loan_deposits", "currency"),
        _f(
            "How many students did the school have the previous academic year ",
            "previous_year_student_count",
            "integer",
        ),
        _f("Lease agreement, if any", "lease_agreement"),
        _f("Does the school receive significant revenue from donations? ", "receives_significant_donations"),
        _f("How much annual donation revenue does it receive? ", "annual_donation_revenue", "currency"),
        _f(
            "What major project do you have in the foreseeable future that could strain your finances "
            "and what plans do you have to mitigate any constraints?",
            "major_projects_and_mitigation",
        ),
        _f("How many students do you expect to have next year?", "next_year_expected_students", "integer"),
        _f(
            "What was the value of the assets held by the school two years ago?",
            "two_years_ago_asset_value",
            "currency",
        ),
        _f("Current total bank account balance", "current_bank_balance", "currency"),
        _f("Number of years at current business premises", "years_at_current_premises", "number"),
        _f("How many years has the school had a bank account?", "years_with_bank_account", "number"),
        _f("School has audited financials or management accounts?", "has_audited_financials"),
        _f("How many branches does the school have?", "branch_count", "integer"),
        _f(
            "Has this school ever borrowed from a microfinance institution "
            "(e.g., Ed Partners or Kenya Women Microfinance Bank)? ",
            "has_microfinance_borrowing",
        ),
        _f(
            "Has this school ever borrowed from a formal financial institution "
            "(Kenya Co-Op, KCB, Equity Bank, etc.)?",
            "has_formal_bank_borrowing",
        ),
    ]),
)

PAYROLL = EntityDefinition(
    slug="payroll",
    name="Payroll",
    sheet_name="Payroll",
    table="payroll",
    correlation=CorrelationKey("creditApplicationId", "credit_application_id", "Credit Application ID"),
    id_prefix="PAY",
    natural_key=("credit_application_id", "role"),
    pending_prefixes=("PR-",),
    computed_fields=("total_annual_cost",),
    field_map=FieldMap([
        _f("Credit Application ID", "credit_application_id"),
        _f("Role", "role"),
        _f("Number of Employees in Role", "number_of_employees_in_role", "integer"),
        _f("Monthly Salary", "monthly_salary", "currency"),
        _f("Months per Year the Role is Paid", "months_per_year_the_role_is_paid", "integer"),
        _f("Notes", "notes"),
        _f("Total Annual Cost", "total_annual_cost", "currency"),
    ]),
)

LOANS = EntityDefinition(
    slug="loans",
    name="Loans",
    sheet_name="Loans",
    table="loans",
    correlation=CorrelationKey("borrowerId", "borrower_id", "Borrower ID"),
    id_prefix="L",
    update_on_import=True,
    natural_key=("borrower_id", "loan_number"),
    field_map=FieldMap([
        _f("Loan Type", "loan_type"),
        _f("Loan Purpose", "loan_purpose"),
        _f("Borrower Type", "borrower_type"),
        _f("Borrower ID", "borrower_id"),
        _f("Borrower Name", "borrower_name"),
        _f("Principal Amount", "principal_amount", "currency"),
        _f("Interest Type", "interest_type"),
        _f("Annual Declining Interest ", "annual_declining_interest"),
        _f("Annual Flat Interest", "annual_flat_interest"),
        _f("Processing Fee Percentage", "processing_fee_percentage"),
        _f("Credit Life Insurance Percentage", "credit_life_insurance_percentage"),
        _f("Securitization Fee", "securitization_fee"),
        _f("Processing Fee", "processing_fee"),
        _f("Credit Life Insurance Fee", "credit_life_insurance_fee"),
        _f("Number of Months", "number_of_months", "integer"),
        _f("Daily Penalty", "daily_penalty"),
        _f("Amount to Disburse", "amount_to_disburse"),
        _f(
            "Total Comprehensive Vehicle Insurance Payments to Pay",
            "total_comprehensive_vehicle_insurance_payments_to_pay",
        ),
        _f("Total Interest Charged", "total_interest_charged"),
        _f("Total Interest to Pay", "total_interest_to_pay"),
        _f("Total Principal to Pay", "total_principal_to_pay"),
        _f("Credit Application ID", "credit_application_id"),
        _f("First Payment Period", "first_payment_period"),
        _f("Created By", "created_by"),
        _f(
            "Total Liability Amount, Including Penalties and Comprehensive Vehicle Insurance",
            "total_liability_amount",
        ),
        _f("Total Loan Amount Paid, Including Penalties and Insurance", "total_loan_amount_paid"),
        _f("Total Penalties Assessed", "total_penalties_assessed"),
        _f("Total Penalties Paid", "total_penalties_paid"),
        _f("Penalties Still Due", "penalties_still_due"),
        _f("SSL ID", "ssl_id"),
        _f("Loan Overdue", "loan_overdue"),
        _f("PAR 14", "par14"),
        _f("PAR 30", "par30"),
        _f("PAR 60", "par60"),
        _f("PAR 90", "par90"),
        _f("PAR 120", "par120"),
        _f("Amount Overdue", "amount_overdue"),
        _f("Loan Fully Paid?", "loan_fully_paid"),
        _f("Loan Status", "loan_status"),
        _f("Total Amount Due to Date", "total_amount_due_to_date"),
        _f("Amount Disbursed to Date Including Fees", "amount_disbursed_to_date_including_fees"),
        _f("Balance of Disbursements Owed", "balance_of_disbursements_owed"),
        _f("Principal Paid to Date", "principal_paid_to_date"),
        _f("Outstanding Principal Balance", "outstanding_principal_balance", "currency"),
        _f("Number of Assets used as Collateral", "number_of_assets_used_as_collateral"),
        _f("Number of Assets Recorded", "number_of_assets_recorded"),
        _f("All Collateral Recorded?", "all_collateral_recorded"),
        _f("Principal Difference", "principal_difference"),
        _f("Credit Life Insurance Submitted?", "credit_life_insurance_submitted"),
        _f(
            "Director has completed credit life health examination?",
            "director_has_completed_credit_life_health_examination",
        ),
        _f("Record of Receipt for Credit Life Insurance", "record_of_receipt_for_credit_life_insurance"),
        _f("% Disbursed", "percent_disbursed"),
        _f("Days Late", "days_late", "integer"),
        _f("Total Unpaid Liability", "total_unpaid_liability"),
        _f("Restructured?", "restructured"),
        _f("Collateral Checked by Legal Team?", "collateral_checked_by_legal_team"),
        _f("Has Female Director?", "has_female_director", "boolean_to_int"),
        _f("Reports Generated", "reports_generated"),
        _f("Contract Uploaded?", "contract_uploaded"),
        _f("% Charge on Vehicle Insurance Financing", "percent_charge_on_vehicle_insurance_financing"),
        _f("Customer Care Call Done? ", "customer_care_call_done"),
        _f("Checks Held", "checks_held"),
        _f("Remaining Periods for Checks", "remaining_periods_for_checks"),
        _f("Adequate Checks for Remaining Periods?", "adequate_checks_for_remaining_periods"),
        _f("Total Liability Amount from Contract", "total_liability_amount_from_contract"),
        _f("Liability check", "liability_check"),
        _f("Credit Life Insurer", "credit_life_insurer"),
        _f("Interest Charged vs Due Difference", "interest_charged_vs_due_difference"),
        _f(
            "Principal Due with Forgiveness vs. Without Forgiveness",
            "principal_due_with_forgiveness_vs_without_forgiveness",
        ),
        _f("Insurance Due With vs. Without Forgiveness", "insurance_due_with_vs_without_forgiveness"),
        _f("First Loan", "first_loan"),
        _f(
            "Additional Fees Withheld from Disbursement",
            "additional_fees_withheld_from_disbursement",
            aliases=("Additional Fees WIthheld from Dsibursement",),
        ),
        _f("Days Since Creation", "days_since_creation"),
        _f("Referral?", "referral"),
        _f("Number of Installments Overdue", "number_of_installments_overdue"),
        _f("Amount Paid Towards Overdue Installments", "amount_paid_towards_overdue_installments"),
        _f("Borrower ID for Contracts", "borrower_id_for_contracts"),
        _f("Most Recent Installment Partially Paid?", "most_recent_installment_partially_paid"),
        _f("Willingness to Pay", "willingness_to_pay"),
        _f("Capability to Pay", "capability_to_pay"),
        _f("Loan Risk Category", "loan_risk_category"),
        _f("Calculated Amount to Disburse", "calculated_amount_to_disburse"),
        _f(
            "Difference Between Calculated and Recorded Disbursement",
            "difference_between_calculated_and_recorded_disbursement",
        ),
        _f("Teachers", "teachers"),
        _f("Total Interest Paid", "total_interest_paid"),
        _f(
            "Outstanding Interest Balance",
            "outstanding_interest_balance",
            "currency",
            aliases=("Oustanding Interest Balance",),
        ),
        _f("Total Vehicle Insurance Due", "total_vehicle_insurance_due"),
        _f("Total Vehicle Insurance Paid", "total_vehicle_insurance_paid"),
        _f("Outstanding Vehicle Insurance Balance", "outstanding_vehicle_insurance_balance"),
        _f("Reassigned?", "reassigned"),
        _f("Flexi Loan?", "flexi_loan"),
        _f("Loan Qualifies for Catalyze Program?", "loan_qualifies_for_catalyze_program"),
        _f("All Staff", "all_staff"),
        _f("Loan has Gone PAR30", "loan_has_gone_par30"),
        _f("Has Male Director?", "has_male_director"),
        _f("School Area", "school_area"),
        _f("First Disbursement", "first_disbursement"),
        _f(
            "Total Additional Fees not Withheld from Disbursement",
            "total_additional_fees_not_withheld_from_disbursement",
        ),
        _f(
            "Additional Fees not Withheld from Disbursement Paid",
            "additional_fees_not_withheld_from_disbursement_paid",
        ),
        _f(
            "Additional Fees not Withheld from Disbursement Still Due",
            "additional_fees_not_withheld_from_disbursement_still_due",
        ),
        _f("Average School Fees", "average_school_fees"),
        _f("Contracting Date", "contracting_date", "date"),
        _f("Submitted to CATALYZE", "submitted_to_catalyze"),
        _f("Most Recent Contract", "most_recent_contract"),
        _f("Most Recent Contract Type", "most_recent_contract_type"),
        _f("School Type", "school_type"),
        _f(
            "How many classrooms will be constructed with the loan?",
            "how_many_classrooms_will_be_constructed_with_the_loan",
        ),
        _f(
            "How many vehicles will be purchased with the loan?",
            "how_many_vehicles_will_be_purchased_with_the_loan",
        ),
        _f("Principal Written Off", "principal_written_off"),
        _f("Interest Written Off", "interest_written_off"),
        _f("Vehicle Insurance Written Off", "vehicle_insurance_written_off"),
        _f("Segmented Repayment View", "segmented_repayment_view"),
        _f("Before Jan 1 2024?", "before_jan_1_2024"),
        _f("Loan Number", "loan_number"),
        _f("Team Leader", "team_leader"),
        _f("Vehicle Insurance without Forgiveness Check", "vehicle_insurance_without_forgiveness_check"),
        _f("Vehicle Insurance with Forgiveness Check", "vehicle_insurance_with_forgiveness_check"),
        _f("Suspended Interest Charged", "suspended_interest_charged"),
        _f("Suspended Interest Due", "suspended_interest_due"),
        _f("Region", "region"),
        _f("Excise Duty", "excise_duty"),
    ]),
)

WRITE_OFFS = EntityDefinition(
    slug="write-offs",
    name="Write Offs",
    sheet_name="Write Offs",
    table="write_offs",
    correlation=CorrelationKey("loanId", "loan_id", "Loan ID"),
    id_prefix="WO",
    natural_key=("loan_id", "payment_schedule_id"),
    field_map=FieldMap([
        _f("Date", "date", "date"),
        _f("Loan ID", "loan_id"),
        _f("Payment Schedule ID", "payment_schedule_id"),
        _f("Principal Amount Written Off", "principal_amount_written_off", "currency"),
        _f("Interest Amount Written Off", "interest_amount_written_off", "currency"),
        _f("Vehicle Insurance Amount Written Off", "vehicle_insurance_amount_written_off", "currency"),
        _f("Penalty Amount Written Off", "penalty_amount_written_off", "currency"),
        _f("Total Amount", "total_amount", "currency"),
        _f("Created At", "created_at_sheet"),
        _f("Created By", "created_by"),
        _f("Region", "region"),
        _f("SSL ID", "ssl_id"),
        _f("Loan or Payment Level", "loan_or_payment_level"),
    ]),
)

ENTITIES: dict[str, EntityDefinition] = {
    e.slug: e for e in (FINANCIAL_SURVEYS, PAYROLL, LOANS, WRITE_OFFS)
}


def get_entity(name: str) -> EntityDefinition:
    """Look up an entity by slug (``write-offs``) or display name (``Write Offs``)."""
    wanted = name.strip().lower()
    for entity in ENTITIES.values():
        if wanted in (entity.slug, entity.name.lower()):
            return entity
    raise KeyError(name)


def configured_entities(settings: dict[str, EntitySettings] | None = None) -> list[EntityDefinition]:
    """Apply config overrides and drop disabled entities (registry order)."""
    settings = settings or {}
    out = []
    for slug, entity in ENTITIES.items():
        override = settings.get(slug)
        if override is not None and not override.enabled:
            continue
        out.append(entity.with_settings(override))
    return out
