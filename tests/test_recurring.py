from dataclasses import replace
from datetime import date

import pytest

from kaspit.catalog import create_category, create_contact
from kaspit.errors import AuthorizationError, RecordNotFoundError
from kaspit.ledger import EntriesFilter, get_entry, load_entries
from kaspit.recurring import (
    RecurringUpdate,
    create_recurring_expense,
    delete_recurring_expense,
    estimated_monthly_total,
    generate_due_expenses,
    get_recurring_expense,
    is_due,
    list_recurring_expenses,
    monthly_equivalent,
    occurrence_in_cycle,
    occurs_on,
    toggle_active,
    upcoming_occurrences,
    update_recurring_expense,
)


def _monthly(cfg, company_id, name="Rent", amount=4000, day=5, **kwargs):
    kwargs.setdefault("start_date", date(2025, 1, 1))
    return create_recurring_expense(
        cfg, company_id, name, amount, frequency="monthly", day_of_month=day, **kwargs
    )


def test_create_recurring_expense_defaults(cfg, companies):
    company_id = companies.alpha.id
    rent = create_category(cfg, company_id, "Rent", "expense")
    landlord = create_contact(cfg, company_id, "supplier", "Landlord")

    template = create_recurring_expense(
        cfg,
        company_id,
        " Office rent ",
        4000,
        category_id=rent.id,
        supplier_id=landlord.id,
        start_date=date(2025, 1, 1),
        expense_type="rent",
    )

    assert template.name == "Office rent"
    assert template.frequency == "monthly"
    assert template.day_of_month == 1
    assert template.is_active is True
    assert template.last_generated_date is None
    assert template.expense_type == "rent"
    assert get_recurring_expense(cfg, company_id, template.id) == template


def test_create_recurring_expense_validations(cfg, companies):
    company_id = companies.alpha.id
    sales = create_category(cfg, company_id, "Sales", "income")
    customer = create_contact(cfg, company_id, "customer", "Client")

    with pytest.raises(ValueError):
        _monthly(cfg, company_id, name=" ")
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, amount=0)
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, day=32)
    with pytest.raises(ValueError):
        create_recurring_expense(cfg, company_id, "Cleaning", 300, frequency="weekly")
    with pytest.raises(ValueError):
        create_recurring_expense(cfg, company_id, "Cleaning", 300, frequency="daily")
    with pytest.raises(ValueError):
        create_recurring_expense(cfg, company_id, "Insurance", 900, frequency="yearly")
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, expense_type="regular")
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, end_date=date(2024, 12, 31))
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, category_id=sales.id)
    with pytest.raises(ValueError):
        _monthly(cfg, company_id, supplier_id=customer.id)


def test_monthly_occurrence_is_clipped_to_month_length(cfg, companies):
    template = _monthly(cfg, companies.alpha.id, day=31)

    assert occurrence_in_cycle(template, date(2025, 2, 10)) == date(2025, 2, 28)
    assert occurrence_in_cycle(template, date(2024, 2, 10)) == date(2024, 2, 29)
    assert occurrence_in_cycle(template, date(2025, 4, 1)) == date(2025, 4, 30)
    assert occurs_on(template, date(2025, 4, 30)) is True
    assert occurs_on(template, date(2025, 5, 30)) is False


def test_weekly_occurrence_uses_sunday_based_weekdays(cfg, companies):
    """day_of_week counts from Sunday = 0; cycles are ISO weeks."""
    company_id = companies.alpha.id
    wednesday = date(2025, 3, 12)

    def weekly(day_of_week):
        return create_recurring_expense(
            cfg,
            company_id,
            f"Cleaning {day_of_week}",
            300,
            frequency="weekly",
            day_of_week=day_of_week,
            start_date=date(2025, 1, 1),
        )

    assert weekly(1).day_of_month is None
    assert occurrence_in_cycle(weekly(1), wednesday) == date(2025, 3, 10)
    assert occurrence_in_cycle(weekly(3), wednesday) == date(2025, 3, 12)
    assert occurrence_in_cycle(weekly(0), wednesday) == date(2025, 3, 16)


def test_yearly_occurrence(cfg, companies):
    template = create_recurring_expense(
        cfg,
        companies.alpha.id,
        "Insurance",
        2400,
        frequency="yearly",
        month_of_year=6,
        day_of_month=15,
        start_date=date(2025, 1, 1),
    )
    assert occurrence_in_cycle(template, date(2025, 2, 1)) == date(2025, 6, 15)
    assert occurs_on(template, date(2025, 6, 15)) is True


def test_is_due_respects_window_and_last_generation(cfg, companies):
    template = _monthly(cfg, companies.alpha.id, end_date=date(2025, 6, 30))

    assert is_due(template, date(2025, 3, 10)) is True
    assert is_due(template, date(2024, 12, 31)) is False
    assert is_due(template, date(2025, 7, 1)) is False

    generated = replace(template, last_generated_date=date(2025, 3, 5))
    assert is_due(generated, date(2025, 3, 28)) is False
    assert is_due(generated, date(2025, 4, 1)) is True

    paused = replace(template, is_active=False)
    assert is_due(paused, date(2025, 3, 10)) is False


def test_occurrence_outside_window_is_not_generated(cfg, companies):
    """A cycle whose occurrence falls before the start or after the end is skipped."""
    company_id = companies.alpha.id
    short = _monthly(
        cfg, company_id, name="Short", day=28,
        start_date=date(2025, 3, 1), end_date=date(2025, 3, 10),
    )
    late_start = _monthly(cfg, company_id, name="Late start", day=5, start_date=date(2025, 3, 15))

    assert is_due(short, date(2025, 3, 5)) is False
    assert is_due(late_start, date(2025, 3, 20)) is False
    assert generate_due_expenses(cfg, company_id, today=date(2025, 3, 20)) == []

    april = generate_due_expenses(cfg, company_id, today=date(2025, 4, 2))
    assert [(e.description, e.date) for e in april] == [("Late start - אפריל 2025", date(2025, 4, 5))]


def test_generate_due_expenses_once_per_cycle(cfg, companies):
    """Running the generation twice in a month creates a single expense."""
    company_id = companies.alpha.id
    rent = create_category(cfg, company_id, "Rent", "expense")
    landlord = create_contact(cfg, company_id, "supplier", "Landlord")
    template = _monthly(cfg, company_id, category_id=rent.id, supplier_id=landlord.id)
    _monthly(cfg, companies.beta.id, name="Beta rent")

    created = generate_due_expenses(
        cfg, company_id, today=date(2025, 3, 10), created_by=companies.alpha_user.id
    )

    assert len(created) == 1
    expense = created[0]
    assert expense.kind == "expense"
    assert expense.amount == 4000.0
    assert expense.date == date(2025, 3, 5)
    assert expense.description == "Rent - מרץ 2025"
    assert expense.payment_status == "pending"
    assert expense.category_id == rent.id
    assert expense.counterparty == "Landlord"
    assert expense.recurring_expense_id == template.id
    assert expense.is_recurring is False
    assert get_recurring_expense(cfg, company_id, template.id).last_generated_date == date(2025, 3, 5)

    assert generate_due_expenses(cfg, company_id, today=date(2025, 3, 28)) == []

    april = generate_due_expenses(cfg, company_id, today=date(2025, 4, 1))
    assert [e.date for e in april] == [date(2025, 4, 5)]
    assert len(load_entries(cfg, company_id, EntriesFilter(kind="expense"))) == 2
    assert load_entries(cfg, companies.beta.id) == []


def test_paused_templates_are_not_generated(cfg, companies):
    company_id = companies.alpha.id
    template = _monthly(cfg, company_id)

    paused = toggle_active(cfg, company_id, template.id)
    assert paused.is_active is False
    assert generate_due_expenses(cfg, company_id, today=date(2025, 3, 10)) == []
    assert list_recurring_expenses(cfg, company_id, active_only=True) == []

    resumed = toggle_active(cfg, company_id, template.id)
    assert resumed.is_active is True
    assert len(generate_due_expenses(cfg, company_id, today=date(2025, 3, 10))) == 1


def test_update_recurring_expense(cfg, companies):
    company_id = companies.alpha.id
    template = _monthly(cfg, company_id)

    updated = update_recurring_expense(
        cfg, company_id, template.id, RecurringUpdate(amount=4200, day_of_month=10)
    )
    assert updated.amount == 4200.0
    assert updated.day_of_month == 10
    assert updated.name == "Rent"

    with pytest.raises(ValueError):
        update_recurring_expense(cfg, company_id, template.id, RecurringUpdate())
    with pytest.raises(ValueError):
        update_recurring_expense(cfg, company_id, template.id, RecurringUpdate(amount=-1))
    with pytest.raises(ValueError):
        update_recurring_expense(
            cfg, company_id, template.id, RecurringUpdate(end_date=date(2024, 1, 1))
        )
    with pytest.raises(AuthorizationError):
        update_recurring_expense(
            cfg, companies.beta.id, template.id, RecurringUpdate(amount=1)
        )


def test_delete_keeps_generated_expenses(cfg, companies):
    company_id = companies.alpha.id
    template = _monthly(cfg, company_id)
    (expense,) = generate_due_expenses(cfg, company_id, today=date(2025, 3, 10))

    delete_recurring_expense(cfg, company_id, template.id)

    with pytest.raises(RecordNotFoundError):
        get_recurring_expense(cfg, company_id, template.id)
    kept = get_entry(cfg, company_id, expense.id)
    assert kept.recurring_expense_id is None


def test_monthly_equivalents(cfg, companies):
    company_id = companies.alpha.id
    rent = _monthly(cfg, company_id)
    cleaning = create_recurring_expense(
        cfg, company_id, "Cleaning", 300, frequency="weekly", day_of_week=0,
        start_date=date(2025, 1, 1),
    )
    insurance = create_recurring_expense(
        cfg, company_id, "Insurance", 2400, frequency="yearly", month_of_year=6,
        start_date=date(2025, 1, 1),
    )

    assert monthly_equivalent(rent) == 4000.0
    assert monthly_equivalent(cleaning) == 1300.0
    assert monthly_equivalent(insurance) == 200.0
    assert estimated_monthly_total([rent, cleaning, insurance]) == 5500.0
    assert estimated_monthly_total([rent, replace(cleaning, is_active=False)]) == 4000.0


def test_upcoming_occurrences_next_seven_days(cfg, companies):
    company_id = companies.alpha.id
    soon = _monthly(cfg, company_id, name="Loan", day=12)
    _monthly(cfg, company_id, name="Rent", day=20)
    _monthly(cfg, company_id, name="Today", day=10)

    templates = list_recurring_expenses(cfg, company_id)
    upcoming = upcoming_occurrences(templates, date(2025, 3, 10))

    assert [(t.id, d) for t, d in upcoming] == [(soon.id, date(2025, 3, 12))]
