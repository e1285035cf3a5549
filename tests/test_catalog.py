from datetime import date

import pytest

from kaspit.budget import set_budget
from kaspit.catalog import (
    PALETTE,
    ContactUpdate,
    create_category,
    create_contact,
    deactivate_category,
    deactivate_contact,
    delete_category,
    delete_contact,
    find_category_by_name,
    get_category,
    get_contact,
    get_or_create_category,
    list_categories,
    list_contacts,
    reactivate_category,
    reactivate_contact,
    update_category,
    update_contact,
)
from kaspit.errors import AuthorizationError, RecordNotFoundError
from kaspit.ledger import NewEntry, add_entry
from kaspit.recurring import create_recurring_expense


def test_categories_cycle_through_palette(cfg, companies):
    """Without an explicit colour, each new category takes the next palette colour."""
    first = create_category(cfg, companies.alpha.id, "Sales", "income")
    second = create_category(cfg, companies.alpha.id, "Rent", "expense")
    custom = create_category(cfg, companies.alpha.id, "Fuel", "expense", color="#123456")
    other_company = create_category(cfg, companies.beta.id, "Sales", "income")

    assert first.color == PALETTE[0]
    assert second.color == PALETTE[1]
    assert custom.color == "#123456"
    assert other_company.color == PALETTE[0]


def test_category_validation(cfg, companies):
    with pytest.raises(ValueError):
        create_category(cfg, companies.alpha.id, "", "expense")
    with pytest.raises(ValueError):
        create_category(cfg, companies.alpha.id, "Misc", "asset")

    foreign_parent = create_category(cfg, companies.beta.id, "Parent", "expense")
    with pytest.raises(AuthorizationError):
        create_category(
            cfg, companies.alpha.id, "Child", "expense", parent_id=foreign_parent.id
        )


def test_list_categories_filters_type_and_active(cfg, companies):
    """Listing is per company, by type then name, active only by default."""
    create_category(cfg, companies.alpha.id, "Sales", "income")
    office = create_category(cfg, companies.alpha.id, "Office", "expense")
    create_category(cfg, companies.alpha.id, "Advertising", "expense")
    create_category(cfg, companies.beta.id, "Beta expense", "expense")

    names = [c.name for c in list_categories(cfg, companies.alpha.id, "expense")]
    assert names == ["Advertising", "Office"]

    deactivate_category(cfg, companies.alpha.id, office.id)
    assert [c.name for c in list_categories(cfg, companies.alpha.id, "expense")] == [
        "Advertising"
    ]
    all_expenses = list_categories(cfg, companies.alpha.id, "expense", active_only=False)
    assert len(all_expenses) == 2
    assert [c.type for c in list_categories(cfg, companies.alpha.id)] == [
        "expense",
        "income",
    ]


def test_update_category(cfg, companies):
    category = create_category(cfg, companies.alpha.id, "Ofice", "expense")
    updated = update_category(cfg, companies.alpha.id, category.id, name="Office")
    assert updated.name == "Office"
    assert updated.color == category.color

    with pytest.raises(ValueError):
        update_category(cfg, companies.alpha.id, category.id)
    with pytest.raises(AuthorizationError):
        update_category(cfg, companies.beta.id, category.id, name="Stolen")


def test_find_category_by_name(cfg, companies):
    """Exact names win over partial matches."""
    create_category(cfg, companies.alpha.id, "שכירות משרד", "expense")
    exact = create_category(cfg, companies.alpha.id, "שכירות", "expense")
    categories = list_categories(cfg, companies.alpha.id, "expense")

    assert find_category_by_name(categories, "שכירות").id == exact.id
    assert find_category_by_name(categories, "משרד").name == "שכירות משרד"
    assert find_category_by_name(categories, "דלק") is None
    assert find_category_by_name(categories, None) is None


def test_get_or_create_category(cfg, companies):
    created = get_or_create_category(cfg, companies.alpha.id, "מע״מ", "expense")
    again = get_or_create_category(cfg, companies.alpha.id, "מע״מ", "expense")

    assert created.id == again.id
    assert len(list_categories(cfg, companies.alpha.id, "expense")) == 1


def test_contacts_crud_and_listing(cfg, companies):
    """Suppliers and customers share one table and are listed by name."""
    supplier = create_contact(
        cfg,
        companies.alpha.id,
        "supplier",
        "Paper World",
        contact_name="Yossi",
        phone="050-1234567",
        payment_terms=60,
    )
    customer = create_contact(cfg, companies.alpha.id, "customer", "Cafe Dizengoff")
    create_contact(cfg, companies.beta.id, "customer", "Beta customer")

    assert supplier.payment_terms == 60
    assert customer.payment_terms == 30

    df = list_contacts(cfg, companies.alpha.id)
    assert list(df["name"]) == ["Cafe Dizengoff", "Paper World"]

    suppliers = list_contacts(cfg, companies.alpha.id, "supplier")
    assert list(suppliers["id"]) == [supplier.id]

    by_person = list_contacts(cfg, companies.alpha.id, search="yossi")
    assert list(by_person["name"]) == ["Paper World"]

    updated = update_contact(
        cfg, companies.alpha.id, supplier.id, ContactUpdate(email="orders@paper.test")
    )
    assert updated.email == "orders@paper.test"
    assert updated.phone == "050-1234567"

    deactivate_contact(cfg, companies.alpha.id, customer.id)
    assert list(list_contacts(cfg, companies.alpha.id)["name"]) == ["Paper World"]
    inactive = list_contacts(cfg, companies.alpha.id, active_only=False)
    assert bool(inactive.loc[inactive["id"] == customer.id, "is_active"].iloc[0]) is False


def test_contact_validation_and_isolation(cfg, companies):
    with pytest.raises(ValueError):
        create_contact(cfg, companies.alpha.id, "partner", "Someone")
    with pytest.raises(ValueError):
        create_contact(cfg, companies.alpha.id, "supplier", "  ")
    with pytest.raises(ValueError):
        create_contact(cfg, companies.alpha.id, "supplier", "Late", payment_terms=-1)

    contact = create_contact(cfg, companies.alpha.id, "supplier", "Paper World")
    with pytest.raises(AuthorizationError):
        get_contact(cfg, companies.beta.id, contact.id)
    with pytest.raises(ValueError):
        update_contact(cfg, companies.alpha.id, contact.id, ContactUpdate())


def test_list_contacts_empty(cfg, companies):
    df = list_contacts(cfg, companies.beta.id, "supplier")
    assert df.empty
    assert "payment_terms" in df.columns


def test_reactivate_category_and_contact(cfg, companies):
    company_id = companies.alpha.id
    rent = create_category(cfg, company_id, "Rent", "expense")
    landlord = create_contact(cfg, company_id, "supplier", "Landlord")
    deactivate_category(cfg, company_id, rent.id)
    deactivate_contact(cfg, company_id, landlord.id)

    assert reactivate_category(cfg, company_id, rent.id).is_active is True
    assert reactivate_contact(cfg, company_id, landlord.id).is_active is True
    assert [c.name for c in list_categories(cfg, company_id, "expense")] == ["Rent"]

    with pytest.raises(AuthorizationError):
        reactivate_category(cfg, companies.beta.id, rent.id)
    with pytest.raises(AuthorizationError):
        reactivate_contact(cfg, companies.beta.id, landlord.id)


def test_delete_category_only_when_unused(cfg, companies):
    company_id = companies.alpha.id
    spare = create_category(cfg, company_id, "Spare", "expense")
    rent = create_category(cfg, company_id, "Rent", "expense")
    office = create_category(cfg, company_id, "Office", "expense")
    parent = create_category(cfg, company_id, "Vehicles", "expense")
    create_category(cfg, company_id, "Fuel", "expense", parent_id=parent.id)
    add_entry(cfg, company_id, NewEntry(kind="expense", amount=100, date=date(2025, 3, 1), category_id=rent.id))
    set_budget(cfg, company_id, office.id, 2025, 3, 500)

    with pytest.raises(AuthorizationError):
        delete_category(cfg, companies.beta.id, spare.id)
    for used in (rent, office, parent):
        with pytest.raises(ValueError, match="Deactivate it instead"):
            delete_category(cfg, company_id, used.id)

    delete_category(cfg, company_id, spare.id)
    with pytest.raises(RecordNotFoundError):
        get_category(cfg, company_id, spare.id)


def test_delete_contact_only_when_unused(cfg, companies):
    company_id = companies.alpha.id
    unused = create_contact(cfg, company_id, "customer", "Walk-in")
    landlord = create_contact(cfg, company_id, "supplier", "Landlord")
    create_recurring_expense(
        cfg, company_id, "Rent", 4000, supplier_id=landlord.id, start_date=date(2025, 1, 1)
    )

    with pytest.raises(ValueError):
        delete_contact(cfg, company_id, landlord.id)

    delete_contact(cfg, company_id, unused.id)
    with pytest.raises(RecordNotFoundError):
        get_contact(cfg, company_id, unused.id)
