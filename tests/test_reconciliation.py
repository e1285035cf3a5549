from datetime import date

import pandas as pd
import pytest

from kaspit.bank import BankTransaction, import_bank_transactions, load_transactions
from kaspit.catalog import create_contact, list_categories
from kaspit.config import ReconciliationConfig
from kaspit.errors import AuthorizationError
from kaspit.ledger import (
    EntriesFilter,
    LedgerEntry,
    NewEntry,
    add_entry,
    delete_entry,
    get_entry,
    load_entries,
)
from kaspit.reconciliation import (
    amount_score,
    approve_match,
    build_suggestions,
    classify_transaction,
    clean_name,
    create_entry_from_transaction,
    date_score,
    is_card_acquirer,
    match_reasons,
    matched_count,
    score_match,
    similarity,
    similarity_score,
    suggest_matches,
    unmatch,
    unmatched_transactions,
)


def make_tx(amount, day, description=None, tx_id=1) -> BankTransaction:
    """In-memory bank transaction for the pure scoring functions."""
    return BankTransaction(
        id=tx_id,
        company_id=1,
        bank_name=None,
        account_number=None,
        date=day,
        amount=amount,
        description=description,
        balance=None,
        matched_type=None,
        matched_id=None,
        transaction_type="regular",
        is_recurring=False,
        recurring_label=None,
        notes=None,
        import_batch_id=None,
        created_at=None,
    )


def make_entry(
    amount,
    day,
    kind="income",
    counterparty=None,
    description=None,
    payment_method=None,
    entry_id=1,
) -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        company_id=1,
        kind=kind,
        category_id=None,
        contact_id=None,
        amount=amount,
        amount_before_vat=None,
        vat_amount=None,
        vat_exempt=False,
        vat_deductible=True,
        date=day,
        due_date=None,
        payment_date=None,
        description=description,
        invoice_number=None,
        document_type=None,
        payment_status="pending",
        payment_method=payment_method,
        is_recurring=False,
        recurring_day=None,
        recurring_expense_id=None,
        bank_transaction_id=None,
        import_batch_id=None,
        created_by=None,
        created_at=None,
        updated_at=None,
        counterparty=counterparty,
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def test_clean_name_strips_titles_and_punctuation():
    assert clean_name('ד"ר  כהן') == "כהן"
    assert clean_name("לוי בע״מ") == "לוי"
    assert clean_name("Cafe-Dizengoff, Ltd.") == "cafe dizengoff ltd"
    assert clean_name(None) == ""


def test_similarity_levels():
    assert similarity("Cafe Dizengoff", "cafe  dizengoff") == 100
    assert similarity('עו"ד כהן', "כהן") == 100
    assert similarity("dizengoff", "Cafe Dizengoff") == 80
    assert similarity("Levi Plumbing", "Levi Electric") == 50
    assert similarity("Levi Plumbing", "Cohen Bakery") == 0
    assert similarity("", "Cohen") == 0


def test_amount_score_buckets():
    assert amount_score(100, 100) == 50
    assert amount_score(-100, 100) == 50
    assert amount_score(100, 100.5) == 48
    assert amount_score(1000, 990) == 45
    assert amount_score(1000, 975) == 40
    assert amount_score(1000, 960) == 35
    assert amount_score(1000, 920) == 20
    assert amount_score(1000, 800) == 0
    assert amount_score(0, 10) == 0


def test_amount_score_gap_edges_stay_in_the_higher_tier():
    assert amount_score(-1000, 970) == 40
    assert amount_score(-1000, 950) == 35
    assert amount_score(-1000, 900) == 20
    assert amount_score(-1000, 1030) == 40


def test_date_score_buckets():
    base = date(2025, 3, 1)
    assert date_score(base, date(2025, 3, 1)) == 30
    assert date_score(base, date(2025, 3, 3)) == 25
    assert date_score(base, date(2025, 2, 22)) == 20
    assert date_score(base, date(2025, 3, 15)) == 15
    assert date_score(base, date(2025, 3, 31)) == 10
    assert date_score(base, date(2025, 4, 15)) == 5
    assert date_score(base, date(2025, 5, 1)) == 0


def test_date_score_day_edges_stay_in_the_higher_tier():
    base = date(2025, 3, 1)
    assert date_score(base, date(2025, 3, 4)) == 25
    assert date_score(base, date(2025, 3, 8)) == 20
    assert date_score(base, date(2025, 2, 15)) == 15
    assert date_score(base, date(2025, 4, 30)) == 5


def test_similarity_score_buckets():
    assert [similarity_score(v) for v in (100, 80, 60, 40, 20, 19)] == [30, 30, 25, 20, 10, 0]


def test_is_card_acquirer():
    assert is_card_acquirer("ישראכרט - זיכוי")
    assert is_card_acquirer("VISA settlement")
    assert not is_card_acquirer("שכר דירה")
    assert not is_card_acquirer(None)


def test_score_match_is_capped_and_uses_description_fallback():
    tx = make_tx(1180, date(2025, 3, 10), "Cafe Dizengoff")
    named = make_entry(1180, date(2025, 3, 10), counterparty="Cafe Dizengoff")
    described = make_entry(1180, date(2025, 3, 20), description="Cafe Dizengoff catering")
    close = make_entry(1170, date(2025, 3, 12), counterparty="Dizengoff Events")

    assert score_match(tx, named) == 100
    assert score_match(tx, described) == 50 + 15 + 30
    assert score_match(tx, close) == 45 + 25 + 20
    assert match_reasons(tx, named) == ["identical amount", "identical date", "identical name"]
    assert match_reasons(tx, described) == ["identical amount", "identical name"]
    assert match_reasons(tx, close) == ["close amount", "2 days apart", "similar name"]


def test_suggest_matches_ranks_and_filters():
    """Credits are compared with income only, below-threshold candidates are dropped."""
    tx = make_tx(1180, date(2025, 3, 10), "Cafe Dizengoff")
    best = make_entry(1180, date(2025, 3, 10), counterparty="Cafe Dizengoff", entry_id=1)
    same_amount = make_entry(1180, date(2025, 1, 1), description="Other", entry_id=2)
    same_day = make_entry(500, date(2025, 3, 10), counterparty="Someone", entry_id=3)
    unrelated = make_entry(90, date(2024, 1, 1), entry_id=4)
    expense = make_entry(1180, date(2025, 3, 10), kind="expense", entry_id=5)

    suggestions = suggest_matches(tx, [same_day, unrelated, same_amount, best], [expense])

    assert [s.entry.id for s in suggestions] == [1, 2, 3]
    assert [s.score for s in suggestions] == [100, 50, 30]
    assert {s.kind for s in suggestions} == {"income"}

    capped = suggest_matches(
        tx,
        [same_day, unrelated, same_amount, best],
        [],
        ReconciliationConfig(min_score=0, max_suggestions=2),
    )
    assert [s.entry.id for s in capped] == [1, 2]


def test_credit_card_bonus():
    tx = make_tx(-236, date(2025, 3, 2), "ישראכרט")
    by_card = make_entry(
        236, date(2025, 3, 2), kind="expense", description="Office chair", payment_method="credit_card", entry_id=1
    )
    by_transfer = make_entry(
        236, date(2025, 3, 2), kind="expense", description="Office chair", payment_method="bank_transfer", entry_id=2
    )

    suggestions = suggest_matches(tx, [], [by_transfer, by_card])

    assert [(s.entry.id, s.score) for s in suggestions] == [(1, 95), (2, 80)]
    assert "matching payment method (credit card)" in suggestions[0].reasons


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


def _import(cfg, company_id):
    df = pd.DataFrame(
        {
            "date": ["2025-03-10", "2025-03-12", "2025-03-15", "2025-03-20"],
            "amount": ["1180", "-590", "-12000", "-3000"],
            "description": ["Cafe Dizengoff", "Paper World", "משכורות מרץ", "העברה לחיסכון"],
        }
    )
    import_bank_transactions(cfg, company_id, df, "march.csv")
    return {t.description: t for t in load_transactions(cfg, company_id)}


def test_build_suggestions_and_approve_match(cfg, companies):
    company_id = companies.alpha.id
    transactions = _import(cfg, company_id)
    customer = create_contact(cfg, company_id, "customer", "Cafe Dizengoff")
    income = add_entry(
        cfg,
        company_id,
        NewEntry(
            kind="income",
            amount=1180,
            amount_before_vat=1000,
            vat_amount=180,
            date=date(2025, 3, 9),
            contact_id=customer.id,
            document_type="tax_invoice",
        ),
    )

    suggestions = dict(
        (tx.id, found) for tx, found in build_suggestions(cfg, company_id)
    )
    credit = transactions["Cafe Dizengoff"]
    assert [s.entry.id for s in suggestions[credit.id]] == [income.id]
    assert suggestions[credit.id][0].score == 100

    matched = approve_match(cfg, company_id, credit.id, "income", income.id)
    assert matched.matched_type == "income"
    assert matched.matched_id == income.id
    assert get_entry(cfg, company_id, income.id).bank_transaction_id == credit.id
    assert matched_count(cfg, company_id) == 1
    assert credit.id not in {t.id for t in unmatched_transactions(cfg, company_id)}

    # Reconciled entries are neither offered again nor deletable.
    for tx, found in build_suggestions(cfg, company_id):
        assert income.id not in {s.entry.id for s in found}
    with pytest.raises(ValueError):
        delete_entry(cfg, company_id, income.id)


def test_approve_match_refusals(cfg, companies):
    company_id = companies.alpha.id
    transactions = _import(cfg, company_id)
    credit = transactions["Cafe Dizengoff"]
    debit = transactions["Paper World"]
    income = add_entry(
        cfg, company_id, NewEntry(kind="income", amount=1180, date=date(2025, 3, 10))
    )
    expense = add_entry(
        cfg, company_id, NewEntry(kind="expense", amount=590, date=date(2025, 3, 12))
    )

    with pytest.raises(ValueError):
        approve_match(cfg, company_id, debit.id, "income", income.id)
    with pytest.raises(ValueError):
        approve_match(cfg, company_id, credit.id, "income", expense.id)
    with pytest.raises(AuthorizationError):
        approve_match(cfg, companies.beta.id, credit.id, "income", income.id)

    approve_match(cfg, company_id, credit.id, "income", income.id)
    with pytest.raises(ValueError):
        approve_match(cfg, company_id, credit.id, "income", income.id)


def test_unmatch_restores_both_sides(cfg, companies):
    company_id = companies.alpha.id
    transactions = _import(cfg, company_id)
    debit = transactions["Paper World"]
    expense = add_entry(
        cfg, company_id, NewEntry(kind="expense", amount=590, date=date(2025, 3, 12))
    )
    approve_match(cfg, company_id, debit.id, "expense", expense.id)

    restored = unmatch(cfg, company_id, debit.id)

    assert restored.matched_id is None
    assert restored.matched_type is None
    assert get_entry(cfg, company_id, expense.id).bank_transaction_id is None
    with pytest.raises(ValueError):
        unmatch(cfg, company_id, debit.id)
    delete_entry(cfg, company_id, expense.id)


def test_create_entry_from_transaction_with_new_supplier(cfg, companies):
    company_id = companies.alpha.id
    transactions = _import(cfg, company_id)
    debit = transactions["Paper World"]

    entry = create_entry_from_transaction(
        cfg,
        company_id,
        debit.id,
        new_contact_name="Paper World",
        created_by=companies.alpha_user.id,
    )

    assert entry.kind == "expense"
    assert entry.amount == 590.0
    assert entry.date == date(2025, 3, 12)
    assert entry.document_type == "invoice"
    assert entry.payment_status == "paid"
    assert entry.payment_date == date(2025, 3, 12)
    assert entry.counterparty == "Paper World"
    assert entry.bank_transaction_id == debit.id

    tx = [t for t in load_transactions(cfg, company_id) if t.id == debit.id][0]
    assert (tx.matched_type, tx.matched_id) == ("expense", entry.id)

    with pytest.raises(ValueError):
        create_entry_from_transaction(cfg, company_id, debit.id)


def test_create_income_from_credit(cfg, companies):
    company_id = companies.alpha.id
    credit = _import(cfg, company_id)["Cafe Dizengoff"]

    entry = create_entry_from_transaction(
        cfg, company_id, credit.id, description="Catering", payment_status="pending"
    )

    assert entry.kind == "income"
    assert entry.document_type == "receipt"
    assert entry.description == "Catering"
    assert entry.payment_date is None


def test_classify_salary_creates_categorised_expense(cfg, companies):
    """Special debits other than transfers produce a paid expense in a matching category."""
    company_id = companies.alpha.id
    salary_tx = _import(cfg, company_id)["משכורות מרץ"]

    result = classify_transaction(
        cfg, company_id, salary_tx.id, "salary", created_by=companies.alpha_user.id
    )

    assert result.transaction.transaction_type == "salary"
    assert result.transaction.matched_type == "expense"
    assert result.expense is not None
    assert result.expense.amount == 12000.0
    assert result.expense.payment_status == "paid"
    assert result.expense.category_name == "משכורות"
    assert result.expense.description == "משכורת - משכורות מרץ"
    assert [c.name for c in list_categories(cfg, company_id, "expense")] == ["משכורות"]

    with pytest.raises(ValueError):
        classify_transaction(cfg, company_id, salary_tx.id, "salary")


def test_classify_transfer_creates_no_expense(cfg, companies):
    company_id = companies.alpha.id
    transfer = _import(cfg, company_id)["העברה לחיסכון"]

    result = classify_transaction(cfg, company_id, transfer.id, "internal_transfer")

    assert result.expense is None
    assert result.transaction.transaction_type == "internal_transfer"
    assert result.transaction.matched_id is None
    assert load_entries(cfg, company_id, EntriesFilter(kind="expense")) == []
    assert transfer.id not in {t.id for t in unmatched_transactions(cfg, company_id)}

    with pytest.raises(ValueError):
        classify_transaction(cfg, company_id, transfer.id, "regular")


def test_classify_other_debit_is_uncategorised(cfg, companies):
    company_id = companies.alpha.id
    debit = _import(cfg, company_id)["Paper World"]

    result = classify_transaction(cfg, company_id, debit.id, "other")

    assert result.expense is not None
    assert result.expense.category_id is None
    assert result.expense.description == "אחר - Paper World"
