# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Bank reconciliation: matching bank transactions with ledger entries.

The module has two layers.

1) Scoring (pure functions over in-memory rows)
   ------------------------------------------
   A candidate pair (bank transaction, income/expense entry) gets a score out
   of 100 built from three parts:

       amount      up to 50 pts  exact amount, agorot difference, or a
                                 difference within 1/3/5/10 percent (card
                                 acquirers deduct a few percent of fees)
       date        up to 30 pts  same day, then 3/7/14/30/60 days apart
       name        up to 30 pts  similarity between the bank description and
                                 the counterparty (customer or supplier name,
                                 else the entry description)

   The sum is capped at 100. When the bank description names a card acquirer
   and the entry was paid by credit card, a bonus is added before the
   threshold is applied. Credits are only compared with income, debits with
   expenses. Candidates below the threshold (30) are dropped and at most 5
   are kept, best first.

   Names are normalised before comparison: honorifics and company suffixes
   (ד"ר, עו"ד, רו"ח, פרופ', מר, גב', בע"מ, מ.מ.) are removed, punctuation
   becomes spaces, whitespace is collapsed and the text lower-cased.

2) Workflow (company-scoped database operations)
   ---------------------------------------------
   - list what still needs reconciling, and build suggestions for it;
   - approve a match, or undo it;
   - create a new income/expense from a transaction that has none;
   - classify a transaction with a special type (salary, VAT payment,
     owner withdrawal, ...), creating the matching expense when relevant.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .bank import SPECIAL_TYPES, BankTransaction, fetch_transaction, load_transactions
from .catalog import create_contact, get_or_create_category
from .config import ReconciliationConfig
from .db import DatabaseConfig, connect, init_database
from .ledger import EntriesFilter, LedgerEntry, NewEntry, fetch_entry, insert_entry, load_entries

logger = logging.getLogger(__name__)

# Applied in order, before punctuation is replaced.
_HONORIFICS = tuple(
    re.compile(p)
    for p in (
        r'ד["״\']?ר\.?',
        r'עו["״\']?ד\.?',
        r'רו["״\']?ח\.?',
        r"פרופ['׳]?\.?",
        r"מר\.?",
        r"גב['׳]?\.?",
        r'בע["״\']?מ\.?',
        r"מ\.?מ\.?",
    )
)
_PUNCTUATION = re.compile(r"[.,\-_'\"״׳]")
_WHITESPACE = re.compile(r"\s+")

CARD_ACQUIRERS = (
    "ישראכרט",
    "isracard",
    "כאל",
    "cal",
    "מקס",
    "max",
    "לאומי קארד",
    "leumi card",
    "אמריקן אקספרס",
    "american express",
    "דיינרס",
    "diners",
    "ויזה",
    "visa",
    "מסטרקארד",
    "mastercard",
)

# Special types that move money between the owner's own pockets: no expense.
TRANSFER_TYPES = frozenset(
    {"internal_transfer", "owner_withdrawal", "owner_deposit", "credit_card"}
)

SPECIAL_TYPE_LABELS = {
    "salary": "משכורת",
    "vat_payment": "תשלום מע״מ",
    "tax_payment": "מקדמת מס הכנסה",
    "social_security": "ביטוח לאומי",
    "loan_payment": "החזר הלוואה",
    "owner_withdrawal": "משיכת בעלים",
    "owner_deposit": "הפקדת בעלים",
    "internal_transfer": "העברה פנימית",
    "credit_card": "סליקת אשראי",
    "bank_fee": "עמלת בנק",
    "other": "אחר",
}

SPECIAL_TYPE_CATEGORIES = {
    "salary": "משכורות",
    "vat_payment": "מע״מ",
    "tax_payment": "מסים",
    "social_security": "ביטוח לאומי",
    "loan_payment": "הלוואות",
    "bank_fee": "עמלות בנק",
}


@dataclass(frozen=True)
class MatchSuggestion:
    kind: str
    entry: LedgerEntry
    score: int
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Classification:
    """Result of ``classify_transaction``: the tagged line and its expense, if any."""

    transaction: BankTransaction
    expense: LedgerEntry | None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def clean_name(name: str | None) -> str:
    """Normalise a person or company name for comparison."""
    text = name or ""
    for pattern in _HONORIFICS:
        text = pattern.sub("", text)
    text = _PUNCTUATION.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip().lower()


def similarity(a: str | None, b: str | None) -> int:
    """
    Similarity between two names, from 0 to 100.

    Identical normalised names score 100 and containment scores 80.
    Otherwise the score is the share of matching tokens (longer than one
    character) in the shorter name, where two tokens match when they are
    equal or one contains the other.
    """
    s1 = clean_name(a)
    s2 = clean_name(b)
    if not s1 or not s2:
        return 0
    if s1 == s2:
        return 100
    if s1 in s2 or s2 in s1:
        return 80

    words1 = [w for w in s1.split(" ") if len(w) > 1]
    words2 = [w for w in s2.split(" ") if len(w) > 1]
    if not words1 or not words2:
        return 0

    matches = sum(
        1 for w1 in words1 if any(w1 == w2 or w1 in w2 or w2 in w1 for w2 in words2)
    )
    return min(matches * 100 // min(len(words1), len(words2)), 100)


def _amount_gap(bank_amount: float, record_amount: float) -> tuple[float, float]:
    """Return (absolute difference, difference as a percentage of the bank amount)."""
    bank_cents = abs(round(bank_amount * 100))
    diff = abs(bank_cents - round(record_amount * 100)) / 100
    if bank_cents == 0:
        pct = 0.0 if diff == 0 else float("inf")
    else:
        pct = diff / (bank_cents / 100) * 100
    return diff, pct


def amount_score(bank_amount: float, record_amount: float) -> int:
    """Amount proximity, 0 to 50 pts. ``bank_amount`` may be signed."""
    diff, pct = _amount_gap(bank_amount, record_amount)
    if diff == 0:
        return 50
    if diff < 1:
        return 48
    if pct <= 1:
        return 45
    if pct <= 3:
        return 40
    if pct <= 5:
        return 35
    if pct <= 10:
        return 20
    return 0


def date_score(bank_date: date, record_date: date) -> int:
    """Date proximity, 0 to 30 pts."""
    days = abs((bank_date - record_date).days)
    if days == 0:
        return 30
    if days <= 3:
        return 25
    if days <= 7:
        return 20
    if days <= 14:
        return 15
    if days <= 30:
        return 10
    if days <= 60:
        return 5
    return 0


def similarity_score(value: int) -> int:
    """Map a 0-100 similarity to 0-30 pts."""
    if value >= 80:
        return 30
    if value >= 60:
        return 25
    if value >= 40:
        return 20
    if value >= 20:
        return 10
    return 0


def is_card_acquirer(description: str | None) -> bool:
    """Whether a bank description names a credit card acquirer."""
    text = (description or "").lower()
    return any(name in text for name in CARD_ACQUIRERS)


def score_match(bank: BankTransaction, entry: LedgerEntry) -> int:
    """Score of a (bank transaction, ledger entry) pair, 0 to 100, without bonus."""
    score = (
        amount_score(bank.amount, entry.amount)
        + date_score(bank.date, entry.date)
        + similarity_score(similarity(bank.description, entry.counterparty_label))
    )
    return min(score, 100)


def match_reasons(bank: BankTransaction, entry: LedgerEntry) -> list[str]:
    """Human-readable reasons explaining a score."""
    reasons: list[str] = []

    diff, pct = _amount_gap(bank.amount, entry.amount)
    if diff == 0:
        reasons.append("identical amount")
    elif pct <= 5:
        reasons.append("close amount")

    days = abs((bank.date - entry.date).days)
    if days == 0:
        reasons.append("identical date")
    elif days <= 7:
        reasons.append(f"{days} days apart")

    label = entry.counterparty_label
    if label and bank.description:
        value = similarity(bank.description, label)
        if value >= 80:
            reasons.append("identical name")
        elif value >= 40:
            reasons.append("similar name")

    return reasons


def suggest_matches(
    bank: BankTransaction,
    incomes: list[LedgerEntry],
    expenses: list[LedgerEntry],
    settings: ReconciliationConfig = ReconciliationConfig(),
) -> list[MatchSuggestion]:
    """
    Rank the ledger entries that may correspond to a bank transaction.

    Credits are compared with ``incomes``, debits (and zero amounts) with
    ``expenses``. Returns at most ``settings.max_suggestions`` suggestions
    scoring at least ``settings.min_score``, best first; ties keep the order
    of the input lists.
    """
    if bank.amount > 0:
        kind, candidates = "income", incomes
    else:
        kind, candidates = "expense", expenses

    card_charge = is_card_acquirer(bank.description)
    suggestions: list[MatchSuggestion] = []
    for entry in candidates:
        bonus = (
            settings.credit_card_bonus
            if card_charge and entry.payment_method == "credit_card"
            else 0
        )
        score = score_match(bank, entry) + bonus
        if score < settings.min_score:
            continue

        reasons = match_reasons(bank, entry)
        if bonus:
            reasons.append("matching payment method (credit card)")
        suggestions.append(
            MatchSuggestion(kind=kind, entry=entry, score=min(score, 100), reasons=reasons)
        )

    suggestions.sort(key=lambda s: s.score, reverse=True)
    return suggestions[: settings.max_suggestions]


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


def unmatched_transactions(cfg: DatabaseConfig, company_id: int) -> list[BankTransaction]:
    """Transactions neither reconciled nor classified, most recent first."""
    return [
        t
        for t in load_transactions(cfg, company_id)
        if t.matched_id is None and t.transaction_type == "regular"
    ]


def matched_count(cfg: DatabaseConfig, company_id: int) -> int:
    init_database(cfg)

    conn = connect(cfg)
    try:
        (count,) = conn.execute(
            """
            SELECT COUNT(*) FROM bank_transactions
             WHERE company_id = ? AND matched_id IS NOT NULL;
            """,
            (company_id,),
        ).fetchone()
    finally:
        conn.close()
    return int(count)


def _available_entries(
    cfg: DatabaseConfig, company_id: int, kind: str
) -> list[LedgerEntry]:
    """Entries of ``kind`` not yet reconciled, most recent first."""
    linked = {
        t.matched_id
        for t in load_transactions(cfg, company_id)
        if t.matched_type == kind and t.matched_id is not None
    }
    entries = load_entries(
        cfg, company_id, EntriesFilter(kind=kind, unreconciled_only=True)
    )
    return [e for e in reversed(entries) if e.id not in linked]


def build_suggestions(
    cfg: DatabaseConfig,
    company_id: int,
    settings: ReconciliationConfig = ReconciliationConfig(),
) -> list[tuple[BankTransaction, list[MatchSuggestion]]]:
    """
    Suggestions for every unmatched transaction of a company.

    Entries already reconciled with a bank transaction are not offered.
    """
    incomes = _available_entries(cfg, company_id, "income")
    expenses = _available_entries(cfg, company_id, "expense")
    return [
        (t, suggest_matches(t, incomes, expenses, settings))
        for t in unmatched_transactions(cfg, company_id)
    ]


def _expected_kind(transaction: BankTransaction) -> str:
    if transaction.amount > 0:
        return "income"
    if transaction.amount < 0:
        return "expense"
    raise ValueError(
        f"Bank transaction #{transaction.id} has a zero amount and cannot be "
        "reconciled."
    )


def approve_match(
    cfg: DatabaseConfig,
    company_id: int,
    transaction_id: int,
    kind: str,
    entry_id: int,
) -> BankTransaction:
    """
    Reconcile a bank transaction with a ledger entry.

    Both rows are linked: the transaction records (kind, entry id) and the
    entry records the transaction id.

    Raises
    ------
    ValueError
        If the transaction is already reconciled, the direction does not fit
        (credits go with income, debits with expenses), or the entry is
        already reconciled with another transaction.
    RecordNotFoundError, AuthorizationError
        If either row is missing or owned by another company.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        transaction = fetch_transaction(conn, company_id, transaction_id)
        entry = fetch_entry(conn, company_id, entry_id)

        if transaction.matched_id is not None:
            raise ValueError(
                f"Bank transaction #{transaction_id} is already reconciled with "
                f"{transaction.matched_type} #{transaction.matched_id}."
            )
        expected = _expected_kind(transaction)
        if kind != expected or entry.kind != expected:
            raise ValueError(
                f"Bank transaction #{transaction_id} is a "
                f"{'credit' if expected == 'income' else 'debit'} and can only "
                f"be matched with {expected}."
            )
        if entry.bank_transaction_id is not None:
            raise ValueError(
                f"{entry.kind.capitalize()} #{entry_id} is already reconciled with "
                f"bank transaction #{entry.bank_transaction_id}."
            )

        conn.execute(
            """
            UPDATE bank_transactions
               SET matched_type = ?, matched_id = ?
             WHERE id = ? AND company_id = ?;
            """,
            (kind, entry_id, transaction_id, company_id),
        )
        conn.execute(
            """
            UPDATE ledger_entries
               SET bank_transaction_id = ?
             WHERE id = ? AND company_id = ?;
            """,
            (transaction_id, entry_id, company_id),
        )
        conn.commit()
        result = fetch_transaction(conn, company_id, transaction_id)
    finally:
        conn.close()

    logger.info("Matched bank transaction #%s with %s #%s", transaction_id, kind, entry_id)
    return result


def unmatch(cfg: DatabaseConfig, company_id: int, transaction_id: int) -> BankTransaction:
    """
    Undo the reconciliation of a bank transaction.

    Raises
    ------
    ValueError
        If the transaction is not reconciled.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        transaction = fetch_transaction(conn, company_id, transaction_id)
        if transaction.matched_id is None:
            raise ValueError(f"Bank transaction #{transaction_id} is not reconciled.")

        conn.execute(
            """
            UPDATE ledger_entries
               SET bank_transaction_id = NULL
             WHERE company_id = ? AND bank_transaction_id = ?;
            """,
            (company_id, transaction_id),
        )
        conn.execute(
            """
            UPDATE bank_transactions
               SET matched_type = NULL, matched_id = NULL
             WHERE id = ? AND company_id = ?;
            """,
            (transaction_id, company_id),
        )
        conn.commit()
        result = fetch_transaction(conn, company_id, transaction_id)
    finally:
        conn.close()

    logger.info(
        "Unmatched bank transaction #%s from %s #%s",
        transaction_id,
        transaction.matched_type,
        transaction.matched_id,
    )
    return result


def create_entry_from_transaction(
    cfg: DatabaseConfig,
    company_id: int,
    transaction_id: int,
    *,
    category_id: Optional[int] = None,
    contact_id: Optional[int] = None,
    new_contact_name: Optional[str] = None,
    description: Optional[str] = None,
    invoice_number: Optional[str] = None,
    payment_status: str = "paid",
    created_by: Optional[int] = None,
) -> LedgerEntry:
    """
    Create the income (credit) or expense (debit) a transaction stands for.

    The new entry takes the absolute amount and the date of the transaction,
    is recorded as a receipt (income) or an invoice (expense), and is linked
    both ways with the transaction. When ``new_contact_name`` is given and no
    ``contact_id``, a new customer or supplier is created first.

    Raises
    ------
    ValueError
        If the transaction is already reconciled or has a zero amount.
    """
    transaction = get_transaction_for_update(cfg, company_id, transaction_id)
    kind = _expected_kind(transaction)

    if contact_id is None and new_contact_name and new_contact_name.strip():
        contact = create_contact(
            cfg,
            company_id,
            "customer" if kind == "income" else "supplier",
            new_contact_name,
        )
        contact_id = contact.id

    new_entry = NewEntry(
        kind=kind,
        amount=abs(transaction.amount),
        date=transaction.date,
        category_id=category_id,
        contact_id=contact_id,
        description=description or transaction.description,
        invoice_number=invoice_number,
        document_type="receipt" if kind == "income" else "invoice",
        payment_status=payment_status,
        payment_date=transaction.date if payment_status == "paid" else None,
        bank_transaction_id=transaction_id,
    )

    conn = connect(cfg)
    try:
        entry_id = insert_entry(conn, company_id, new_entry, created_by=created_by)
        conn.execute(
            """
            UPDATE bank_transactions
               SET matched_type = ?, matched_id = ?
             WHERE id = ? AND company_id = ?;
            """,
            (kind, entry_id, transaction_id, company_id),
        )
        conn.commit()
        entry = fetch_entry(conn, company_id, entry_id)
    finally:
        conn.close()

    logger.info("Created %s #%s from bank transaction #%s", kind, entry_id, transaction_id)
    return entry


def get_transaction_for_update(
    cfg: DatabaseConfig, company_id: int, transaction_id: int
) -> BankTransaction:
    """Load a transaction that is about to be reconciled or classified."""
    init_database(cfg)

    conn = connect(cfg)
    try:
        transaction = fetch_transaction(conn, company_id, transaction_id)
    finally:
        conn.close()

    if transaction.matched_id is not None:
        raise ValueError(
            f"Bank transaction #{transaction_id} is already reconciled with "
            f"{transaction.matched_type} #{transaction.matched_id}."
        )
    return transaction


def classify_transaction(
    cfg: DatabaseConfig,
    company_id: int,
    transaction_id: int,
    transaction_type: str,
    created_by: Optional[int] = None,
) -> Classification:
    """
    Tag a transaction with a special type.

    For a debit whose type is not a transfer (internal transfer, owner
    withdrawal/deposit, card settlement), a paid expense is also created and
    linked, in the category matching the type (found by name or created).
    Types without a dedicated category (e.g. "other") produce an
    uncategorised expense.

    Raises
    ------
    ValueError
        If the type is not a special type or the transaction is already
        reconciled.
    """
    if transaction_type not in SPECIAL_TYPES:
        raise ValueError(
            f"Unknown special type {transaction_type!r}. "
            f"Expected one of: {', '.join(SPECIAL_TYPES)}."
        )
    transaction = get_transaction_for_update(cfg, company_id, transaction_id)

    category_id = None
    creates_expense = transaction.amount < 0 and transaction_type not in TRANSFER_TYPES
    if creates_expense and transaction_type in SPECIAL_TYPE_CATEGORIES:
        category = get_or_create_category(
            cfg, company_id, SPECIAL_TYPE_CATEGORIES[transaction_type], "expense"
        )
        category_id = category.id

    conn = connect(cfg)
    try:
        conn.execute(
            """
            UPDATE bank_transactions
               SET transaction_type = ?
             WHERE id = ? AND company_id = ?;
            """,
            (transaction_type, transaction_id, company_id),
        )

        expense = None
        if creates_expense:
            label = SPECIAL_TYPE_LABELS[transaction_type]
            expense_id = insert_entry(
                conn,
                company_id,
                NewEntry(
                    kind="expense",
                    amount=abs(transaction.amount),
                    date=transaction.date,
                    description=f"{label} - {transaction.description or ''}",
                    category_id=category_id,
                    payment_status="paid",
                    payment_date=transaction.date,
                    document_type="other",
                    bank_transaction_id=transaction_id,
                ),
                created_by=created_by,
            )
            conn.execute(
                """
                UPDATE bank_transactions
                   SET matched_type = 'expense', matched_id = ?
                 WHERE id = ? AND company_id = ?;
                """,
                (expense_id, transaction_id, company_id),
            )
            expense = fetch_entry(conn, company_id, expense_id)

        conn.commit()
        tagged = fetch_transaction(conn, company_id, transaction_id)
    finally:
        conn.close()

    logger.info(
        "Classified bank transaction #%s as %s%s",
        transaction_id,
        transaction_type,
        f" (expense #{expense.id})" if expense else "",
    )
    return Classification(transaction=tagged, expense=expense)
