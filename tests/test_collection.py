from datetime import date

import pytest

from kaspit.catalog import create_contact
from kaspit.collection import (
    collection_items,
    mark_collected,
    needs_reminder,
    record_reminder,
    reminder_history,
    reminder_message,
    update_follow_up,
    weekly_buckets,
    whatsapp_number,
)
from kaspit.errors import AuthorizationError
from kaspit.ledger import NewEntry, add_entry, cancel_document, delete_entry, get_entry, link_document

TODAY = date(2025, 3, 12)  # a Wednesday


def _invoice(cfg, company_id, amount, due, document_type="tax_invoice", status="pending", **kwargs):
    return add_entry(
        cfg,
        company_id,
        NewEntry(
            kind="income",
            amount=amount,
            date=date(2025, 2, 1),
            due_date=due,
            document_type=document_type,
            payment_status=status,
            **kwargs,
        ),
    )


@pytest.fixture
def open_invoices(cfg, companies):
    company_id = companies.alpha.id
    acme = create_contact(
        cfg, company_id, "customer", "Acme", phone="050-1234567", email="pay@acme.test"
    )
    entries = {
        "old": _invoice(cfg, company_id, 1000, date(2025, 3, 2), contact_id=acme.id, invoice_number="1001"),
        "late": _invoice(cfg, company_id, 500, date(2025, 3, 10), document_type="invoice"),
        "friday": _invoice(cfg, company_id, 2000, date(2025, 3, 14)),
        "undated": _invoice(cfg, company_id, 300, None),
        "next": _invoice(cfg, company_id, 800, date(2025, 3, 20)),
        "far": _invoice(cfg, company_id, 400, date(2025, 5, 1)),
    }
    _invoice(cfg, company_id, 700, date(2025, 3, 13), status="paid")
    _invoice(cfg, company_id, 900, date(2025, 3, 13), document_type="receipt")
    _invoice(cfg, companies.beta.id, 5000, date(2025, 3, 13))
    return entries


def test_collection_items_lists_open_invoices(cfg, companies, open_invoices):
    items = collection_items(cfg, companies.alpha.id, today=TODAY)

    assert [i.entry.id for i in items] == [
        open_invoices[k].id for k in ("old", "late", "friday", "next", "far", "undated")
    ]
    first = items[0]
    assert first.customer_name == "Acme"
    assert first.phone == "050-1234567"
    assert first.email == "pay@acme.test"
    assert first.days_overdue == 10
    assert first.days_until_due == 0
    assert first.is_overdue is True
    assert items[2].days_until_due == 2
    assert items[-1].days_until_due == 0
    assert items[-1].is_overdue is False


def test_weekly_buckets(cfg, companies, open_invoices):
    items = collection_items(cfg, companies.alpha.id, today=TODAY)
    buckets = weekly_buckets(items, TODAY)

    assert [b.label for b in buckets] == [
        "באיחור",
        "השבוע",
        "שבוע הבא",
        "שבוע 3",
        "שבוע 4",
        "שבוע 5",
        "מאוחר יותר",
    ]
    overdue, this_week, next_week = buckets[:3]
    assert [i.entry.id for i in overdue.items] == [open_invoices["old"].id, open_invoices["late"].id]
    assert overdue.total == 1500.0
    assert this_week.start == TODAY
    assert this_week.end == date(2025, 3, 15)
    assert this_week.total == 2300.0
    assert next_week.start == date(2025, 3, 16)
    assert next_week.end == date(2025, 3, 22)
    assert [i.entry.id for i in next_week.items] == [open_invoices["next"].id]
    assert buckets[-1].total == 400.0


def test_weekly_buckets_without_overdue_or_late_items():
    buckets = weekly_buckets([], TODAY)
    assert [b.label for b in buckets] == ["השבוע", "שבוע הבא", "שבוע 3", "שבוע 4", "שבוע 5"]
    assert all(b.total == 0 for b in buckets)


def test_reminder_messages(cfg, companies, open_invoices):
    items = collection_items(cfg, companies.alpha.id, today=TODAY)
    old, undated = items[0], items[-1]

    whatsapp = reminder_message(old, "whatsapp", "Alpha Ltd")
    assert whatsapp.startswith("שלום Acme,")
    assert "חשבונית מס׳ 1001 על סך ₪1,000" in whatsapp
    assert "מועד לתשלום: 02/03/2025" in whatsapp
    assert "באיחור של 10 ימים" in whatsapp
    assert whatsapp.endswith("Alpha Ltd")

    email = reminder_message(undated, "email", "Alpha Ltd")
    assert email.startswith("שלום לקוח יקר,")
    assert "ללא מספר" in email
    assert "תאריך לתשלום" not in email
    assert "באיחור" not in email

    phone = reminder_message(old, "phone", "Alpha Ltd")
    assert phone.startswith("להתקשר לAcme - 050-1234567")

    with pytest.raises(ValueError):
        reminder_message(old, "sms", "Alpha Ltd")


def test_whatsapp_number():
    assert whatsapp_number("050-1234567") == "972501234567"
    assert whatsapp_number("+972 50 123 4567") == "972501234567"


def test_closed_and_cancelled_invoices_are_not_collected(cfg, companies, open_invoices):
    company_id = companies.alpha.id
    document = _invoice(cfg, company_id, 500, date(2025, 3, 10), status="paid")
    link_document(cfg, company_id, open_invoices["late"].id, document.id)
    cancel_document(cfg, company_id, open_invoices["far"].id)

    ids = [i.entry.id for i in collection_items(cfg, company_id, today=TODAY)]

    assert open_invoices["late"].id not in ids
    assert open_invoices["far"].id not in ids
    assert open_invoices["old"].id in ids


def test_record_reminder_tracks_follow_up(cfg, companies, open_invoices):
    company_id = companies.alpha.id
    old = open_invoices["old"]
    items = collection_items(cfg, company_id, today=TODAY)
    assert [i.entry.id for i in needs_reminder(items)] == [old.id, open_invoices["late"].id]

    message = reminder_message(items[0], "whatsapp", "Alpha Ltd")
    record_reminder(cfg, company_id, old.id, "whatsapp", message, sent_to="050-1234567", today=date(2025, 3, 10))
    entry = record_reminder(
        cfg, company_id, old.id, "email", "second", sent_to="pay@acme.test", today=TODAY,
        created_by=companies.alpha_user.id,
    )

    assert entry.collection_status == "reminder_sent"
    assert entry.reminder_count == 2
    assert entry.last_reminder_date == TODAY

    history = reminder_history(cfg, company_id, old.id)
    assert list(history["channel"]) == ["email", "whatsapp"]
    assert history["message"].iloc[1] == message

    items = collection_items(cfg, company_id, today=TODAY)
    assert [i.entry.id for i in needs_reminder(items)] == [open_invoices["late"].id]
    reminded = collection_items(cfg, company_id, today=TODAY, collection_status="reminder_sent")
    assert [i.entry.id for i in reminded] == [old.id]

    with pytest.raises(ValueError):
        record_reminder(cfg, company_id, old.id, "sms", "text")
    with pytest.raises(AuthorizationError):
        record_reminder(cfg, companies.beta.id, old.id, "email", "text")
    with pytest.raises(ValueError):
        collection_items(cfg, company_id, today=TODAY, collection_status="lost")

    # The history goes with the invoice.
    delete_entry(cfg, company_id, old.id)


def test_update_follow_up(cfg, companies, open_invoices):
    company_id = companies.alpha.id
    late = open_invoices["late"]

    with pytest.raises(ValueError):
        update_follow_up(cfg, company_id, late.id, "promised")
    with pytest.raises(ValueError):
        update_follow_up(cfg, company_id, late.id, "forgotten")

    promised = update_follow_up(
        cfg, company_id, late.id, "promised", notes=" Will pay Sunday ", promised_date=date(2025, 3, 16)
    )
    assert promised.collection_status == "promised"
    assert promised.collection_notes == "Will pay Sunday"
    assert promised.promised_date == date(2025, 3, 16)

    disputed = update_follow_up(cfg, company_id, late.id, "dispute")
    assert disputed.collection_status == "dispute"
    assert disputed.collection_notes is None
    assert disputed.promised_date is None


def test_mark_collected_ends_follow_up(cfg, companies, open_invoices):
    company_id = companies.alpha.id
    old = open_invoices["old"]
    record_reminder(cfg, company_id, old.id, "phone", "call", today=TODAY)

    paid = mark_collected(cfg, company_id, old.id, payment_date=TODAY, payment_method="bank_transfer")

    assert paid.payment_status == "paid"
    assert paid.payment_date == TODAY
    assert paid.payment_method == "bank_transfer"
    assert paid.collection_status == "none"
    assert paid.reminder_count == 1
    assert old.id not in [i.entry.id for i in collection_items(cfg, company_id, today=TODAY)]

    with pytest.raises(ValueError):
        mark_collected(cfg, company_id, old.id)
    assert get_entry(cfg, company_id, old.id).payment_status == "paid"
