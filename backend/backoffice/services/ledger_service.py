# Overview: Service-layer operations for the double-entry ledger; posting, reversal, periods and balances.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func

from ..errors import PreconditionFailed, ResourceNotFound, UnbalancedJournal, ValidationError
from ..extensions import db
from ..models import Account, AccountingPeriod, Journal, JournalLine
from ..money import ZERO, from_db, money, to_decimal
from ..time_utils import utcnow
from .account_service import descendant_ids
from .concurrency import begin_write, run_with_retry
"""
Ledger Invariants (authoritative)

- Every journal has at least two lines and sum(debit) == sum(credit).
- Amounts are non-negative fixed-point decimals (2 dp); a line carries a debit or a credit, not both.
- Journals are append-only. Corrections are reversal journals (reversal_of_id), never edits.
- Header and lines are written in one transaction; readers never see a partial journal.
- Lines may only reference existing, non-deleted accounts.
- A journal dated inside a closed period is rejected unless it is an adjustment.
"""


@dataclass(frozen=True)
class AccountFilter:
    """Which accounts a balance query covers. Exactly one selector should be set."""
    type: Optional[str] = None
    types: tuple[str, ...] = ()
    code: Optional[str] = None
    codes: tuple[str, ...] = ()
    code_prefix: Optional[str] = None
    include_children: bool = False

    def apply(self, query):
        if self.type:
            query = query.filter(Account.type == self.type)
        if self.types:
            query = query.filter(Account.type.in_(self.types))
        if self.code:
            if self.include_children:
                root = db.session.query(Account.id).filter(Account.code == self.code).scalar()
                ids = descendant_ids(root) if root is not None else []
                query = query.filter(Account.id.in_(ids))
            else:
                query = query.filter(Account.code == self.code)
        if self.codes:
            query = query.filter(Account.code.in_(self.codes))
        if self.code_prefix:
            query = query.filter(Account.code.like(f"{self.code_prefix}%"))
        return query


@dataclass(frozen=True)
class DateFilter:
    """Inclusive [start, end] range; `before` is exclusive (opening balances)."""
    start: Optional[date] = None
    end: Optional[date] = None
    before: Optional[date] = None

    def apply(self, query):
        if self.start is not None:
            query = query.filter(Journal.date >= self.start)
        if self.end is not None:
            query = query.filter(Journal.date <= self.end)
        if self.before is not None:
            query = query.filter(Journal.date < self.before)
        return query


def _resolve_account(line: dict, index: int) -> Account:
    if line.get("account_id") is not None:
        account = db.session.get(Account, line["account_id"])
        key = line["account_id"]
    elif line.get("account_code") is not None:
        key = str(line["account_code"])
        account = db.session.query(Account).filter_by(code=key).first()
    else:
        raise ValidationError(
            "Journal line needs account_id or account_code",
            {"line": index, "field": "account"},
        )
    if account is None or account.deleted_at is not None:
        raise ResourceNotFound("Account", key)
    if not account.is_active:
        raise PreconditionFailed(f"Account {account.code} is inactive", {"line": index, "account": account.code})
    return account


def _normalize_lines(lines: Iterable[dict]) -> list[tuple[Account, Decimal, Decimal]]:
    lines = list(lines or [])
    if len(lines) < 2:
        raise UnbalancedJournal("A journal needs at least two lines", {"line_count": len(lines)})

    normalized = []
    total_debit = ZERO
    total_credit = ZERO
    for idx, raw in enumerate(lines):
        debit = money(to_decimal(raw.get("debit", 0), "debit"))
        credit = money(to_decimal(raw.get("credit", 0), "credit"))
        if debit < 0 or credit < 0:
            raise UnbalancedJournal("Debit and credit must be non-negative", {"line": idx})
        if debit > 0 and credit > 0:
            raise UnbalancedJournal("A line carries either a debit or a credit", {"line": idx})
        if debit == 0 and credit == 0:
            raise UnbalancedJournal("A line must carry a non-zero amount", {"line": idx})
        account = _resolve_account(raw, idx)
        normalized.append((account, debit, credit))
        total_debit += debit
        total_credit += credit

    if total_debit != total_credit:
        raise UnbalancedJournal(
            "Journal is not balanced",
            {"total_debit": str(total_debit), "total_credit": str(total_credit)},
        )
    return normalized


def is_period_closed(d: date) -> bool:
    period = (
        db.session.query(AccountingPeriod)
        .filter_by(year=d.year, month=d.month, is_closed=True)
        .first()
    )
    return period is not None


def _post_journal_locked(
    *,
    lines: Iterable[dict],
    date: date,
    reference_type: str | None = None,
    reference_id=None,
    description: str | None = None,
    actor=None,
    is_adjustment: bool = False,
    reversal_of_id: int | None = None,
) -> Journal:
    """Validate and stage a journal in the caller's transaction (no commit)."""
    if date is None:
        raise ValidationError("Journal date is required", {"field": "date"})
    normalized = _normalize_lines(lines)

    if not is_adjustment and is_period_closed(date):
        raise PreconditionFailed(
            f"Accounting period {date.year}-{date.month:02d} is closed",
            {"year": date.year, "month": date.month},
        )

    journal = Journal(
        date=date,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        description=description,
        is_adjustment=is_adjustment,
        reversal_of_id=reversal_of_id,
        created_by=getattr(actor, "id", None),
        posted_at=utcnow(),
    )
    for account, debit, credit in normalized:
        journal.lines.append(JournalLine(account_id=account.id, debit=debit, credit=credit))
    db.session.add(journal)
    db.session.flush()
    return journal


def post_journal(
    *,
    lines: Iterable[dict],
    date: date,
    reference_type: str | None = None,
    reference_id=None,
    description: str | None = None,
    actor=None,
    is_adjustment: bool = False,
) -> Journal:
    """
    Post a balanced journal atomically.

    Args:
        lines: [{"account_code" | "account_id", "debit", "credit"}, ...]
        date: business date of the journal

    Raises:
        UnbalancedJournal: fewer than two lines, negative amounts or debit != credit
        ResourceNotFound: unknown or deleted account
        PreconditionFailed: date falls in a closed period (non-adjustment)
    """
    lines = list(lines or [])

    def _op():
        begin_write()
        journal = _post_journal_locked(
            lines=lines,
            date=date,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            actor=actor,
            is_adjustment=is_adjustment,
        )
        db.session.commit()
        return journal

    return run_with_retry(_op)


def _reverse_journal_locked(journal: Journal, *, actor=None, on_date: date | None = None, description: str | None = None) -> Journal:
    already = db.session.query(Journal.id).filter(Journal.reversal_of_id == journal.id).first()
    if already is not None:
        raise PreconditionFailed(
            f"Journal {journal.id} is already reversed",
            {"journal_id": journal.id, "reversal_id": already[0]},
        )
    if journal.reversal_of_id is not None:
        raise PreconditionFailed("A reversal journal cannot be reversed", {"journal_id": journal.id})

    target_date = on_date or utcnow().date()
    mirrored = [
        {"account_id": line.account_id, "debit": line.credit, "credit": line.debit}
        for line in journal.lines
    ]
    return _post_journal_locked(
        lines=mirrored,
        date=target_date,
        reference_type=journal.reference_type,
        reference_id=journal.reference_id,
        description=description or f"Reversal of journal #{journal.id}",
        actor=actor,
        is_adjustment=journal.is_adjustment or is_period_closed(target_date),
        reversal_of_id=journal.id,
    )


def reverse_journal(journal_id: int, *, actor=None, on_date: date | None = None) -> Journal:
    """Post the mirror image of an existing journal. The original is never touched."""
    def _op():
        begin_write()
        journal = db.session.get(Journal, journal_id)
        if journal is None:
            raise ResourceNotFound("Journal", journal_id)
        reversal = _reverse_journal_locked(journal, actor=actor, on_date=on_date)
        db.session.commit()
        return reversal

    return run_with_retry(_op)


def close_period(year: int, month: int, *, actor=None) -> AccountingPeriod:
    if not (1 <= int(month) <= 12):
        raise ValidationError("month must be 1..12", {"field": "month"})

    def _op():
        begin_write()
        period = db.session.query(AccountingPeriod).filter_by(year=year, month=month).first()
        if period is None:
            period = AccountingPeriod(year=year, month=month)
            db.session.add(period)
        if period.is_closed:
            raise PreconditionFailed(f"Period {year}-{month:02d} is already closed", {"year": year, "month": month})
        period.is_closed = True
        period.closed_at = utcnow()
        period.closed_by = getattr(actor, "id", None)
        db.session.commit()
        return period

    return run_with_retry(_op)


def get_account_balance(
    account_filter: AccountFilter,
    date_filter: DateFilter | None = None,
    invert: bool = False,
) -> Decimal:
    """
    sum(debit - credit) over journal lines matching both filters.

    invert=True returns credit - debit (natural sign for revenue, liability, equity).
    """
    query = (
        db.session.query(func.coalesce(func.sum(JournalLine.debit - JournalLine.credit), 0))
        .join(Journal, Journal.id == JournalLine.journal_id)
        .join(Account, Account.id == JournalLine.account_id)
    )
    query = account_filter.apply(query)
    if date_filter is not None:
        query = date_filter.apply(query)
    balance = from_db(query.scalar())
    return -balance if invert else balance


def account_rollup(code: str, date_filter: DateFilter | None = None, invert: bool = False) -> Decimal:
    """Balance of an account plus all of its descendants."""
    return get_account_balance(AccountFilter(code=code, include_children=True), date_filter, invert)


def list_journals(*, reference_type: str | None = None, reference_id=None, limit: int = 100) -> list[Journal]:
    query = db.session.query(Journal)
    if reference_type:
        query = query.filter(Journal.reference_type == reference_type)
    if reference_id is not None:
        query = query.filter(Journal.reference_id == str(reference_id))
    return query.order_by(Journal.date.desc(), Journal.id.desc()).limit(limit).all()


def unbalanced_journals() -> list[dict]:
    """Journals whose stored lines do not balance. Expected to be empty."""
    rows = (
        db.session.query(
            JournalLine.journal_id,
            func.sum(JournalLine.debit).label("debit"),
            func.sum(JournalLine.credit).label("credit"),
        )
        .group_by(JournalLine.journal_id)
        .all()
    )
    return [
        {"journal_id": r.journal_id, "debit": str(from_db(r.debit)), "credit": str(from_db(r.credit))}
        for r in rows
        if from_db(r.debit) != from_db(r.credit)
    ]
