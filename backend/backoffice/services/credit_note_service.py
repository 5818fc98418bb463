# Overview: Credit notes against issued invoices; draft, posting and cash refund payout.

from __future__ import annotations

from sqlalchemy import func

from ..auth import FINANCE_ROLES, require_role
from ..errors import PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import CreditNote, Invoice
from ..models.invoices import CREDIT_NOTE_MODES
from ..money import ZERO, from_db, money, to_decimal
from ..time_utils import utcnow
from . import account_service as accounts
from .concurrency import begin_write, lock_for_update, run_with_retry
from .invoice_service import receivable_account_for
from .ledger_service import _post_journal_locked
"""
Credit Note Rules (authoritative)

- Only issued invoices (unpaid, cod_pending, paid) can be credited, and the credit notes
  of an invoice never add up to more than its total.
- Posting books Dr 4101 Retur Penjualan (amount - tax), Dr 2201 PPN Keluaran (tax) and
  credits either the invoice's receivable (receivable mode) or 2203 Hutang Refund
  (cash_refund mode). Receivable-mode journals reference the invoice so receivable
  aging nets them against the sale.
- A cash_refund note is refunded by Dr 2203 / Cr 1101 or 1102, at posting (pay_now)
  or later.
"""

CREDITABLE_STATUSES = ("unpaid", "cod_pending", "paid")


def _lock_credit_note(credit_note_id: int) -> CreditNote:
    note = lock_for_update(db.session.query(CreditNote).filter_by(id=credit_note_id)).first()
    if note is None:
        raise ResourceNotFound("CreditNote", credit_note_id)
    return note


def _credited_total(invoice_id: int):
    total = (
        db.session.query(func.coalesce(func.sum(CreditNote.amount), 0))
        .filter(CreditNote.invoice_id == invoice_id)
        .scalar()
    )
    return from_db(total)


def _refund_locked(note: CreditNote, payment_account_code: str, *, actor) -> None:
    journal = _post_journal_locked(
        lines=[
            {"account_code": accounts.REFUND_PAYABLE, "debit": note.amount},
            {"account_code": payment_account_code, "credit": note.amount},
        ],
        date=utcnow().date(),
        reference_type="credit_note",
        reference_id=note.id,
        description=f"Refund payout {note.credit_note_number}",
        actor=actor,
    )
    note.refund_journal_id = journal.id
    note.refunded_at = utcnow()
    note.status = "refunded"


def _check_payment_account(code) -> str:
    code = str(code)
    if code not in accounts.CASH_ACCOUNTS:
        raise ValidationError(
            "Refunds are paid from cash or bank",
            {"field": "payment_account_code", "allowed": list(accounts.CASH_ACCOUNTS)},
        )
    return code


def create_credit_note(
    invoice_id: int,
    *,
    amount,
    actor,
    tax_amount=0,
    reason: str | None = None,
    mode: str = "receivable",
) -> CreditNote:
    """Draft a credit note. amount includes tax_amount."""
    require_role(actor, FINANCE_ROLES, "create credit notes")
    if mode not in CREDIT_NOTE_MODES:
        raise ValidationError("Invalid mode", {"field": "mode", "allowed": list(CREDIT_NOTE_MODES)})
    value = money(to_decimal(amount))
    tax = money(to_decimal(tax_amount, "tax_amount"))
    if value <= 0:
        raise ValidationError("amount must be greater than 0", {"field": "amount"})
    if tax < 0 or tax > value:
        raise ValidationError("tax_amount must be between 0 and amount", {"field": "tax_amount"})

    def _op():
        begin_write()
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
        if invoice is None:
            raise ResourceNotFound("Invoice", invoice_id)
        if invoice.payment_status not in CREDITABLE_STATUSES:
            raise PreconditionFailed(
                f"Cannot credit a {invoice.payment_status} invoice",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )
        remaining = money(invoice.total) - _credited_total(invoice.id)
        if value > remaining:
            raise ValidationError(
                "Credit exceeds what is left on the invoice",
                {"field": "amount", "remaining": str(max(remaining, ZERO))},
            )

        now = utcnow()
        note = CreditNote(
            invoice_id=invoice.id,
            amount=value,
            tax_amount=tax,
            reason=reason.strip() if isinstance(reason, str) else None,
            mode=mode,
            status="draft",
            created_by=getattr(actor, "id", None),
            created_at=now,
        )
        db.session.add(note)
        db.session.flush()
        note.credit_note_number = f"CN-{now:%Y%m%d}-{note.id}"
        db.session.commit()
        return note

    return run_with_retry(_op)


def post_credit_note(
    credit_note_id: int,
    *,
    actor,
    pay_now: bool = False,
    payment_account_code: str = accounts.CASH,
) -> CreditNote:
    require_role(actor, FINANCE_ROLES, "post credit notes")
    source = _check_payment_account(payment_account_code) if pay_now else None

    def _op():
        begin_write()
        note = _lock_credit_note(credit_note_id)
        if note.status != "draft":
            raise PreconditionFailed(
                "Credit note is already posted",
                {"credit_note_id": note.id, "status": note.status},
            )
        invoice = db.session.get(Invoice, note.invoice_id)
        if invoice is None:
            raise ResourceNotFound("Invoice", note.invoice_id)
        if pay_now and note.mode != "cash_refund":
            raise PreconditionFailed("Only cash_refund notes are paid out", {"credit_note_id": note.id})

        amount = money(note.amount)
        tax = money(note.tax_amount)
        base = amount - tax
        lines = []
        if base > 0:
            lines.append({"account_code": accounts.SALES_RETURN, "debit": base})
        if tax > 0:
            lines.append({"account_code": accounts.VAT_OUTPUT, "debit": tax})
        if note.mode == "cash_refund":
            lines.append({"account_code": accounts.REFUND_PAYABLE, "credit": amount})
            reference = ("credit_note", note.id)
        else:
            lines.append({"account_code": receivable_account_for(invoice.payment_method), "credit": amount})
            reference = ("invoice", invoice.id)

        journal = _post_journal_locked(
            lines=lines,
            date=utcnow().date(),
            reference_type=reference[0],
            reference_id=reference[1],
            description=f"Credit note {note.credit_note_number} for {invoice.invoice_number}",
            actor=actor,
        )
        note.journal_id = journal.id
        note.status = "posted"
        note.posted_by = getattr(actor, "id", None)
        note.posted_at = utcnow()
        if source is not None:
            _refund_locked(note, source, actor=actor)
        db.session.commit()
        return note

    return run_with_retry(_op)


def refund_credit_note(credit_note_id: int, *, actor, payment_account_code: str = accounts.CASH) -> CreditNote:
    """Pay out a posted cash_refund note: Dr 2203 / Cr cash or bank."""
    require_role(actor, FINANCE_ROLES, "refund credit notes")
    source = _check_payment_account(payment_account_code)

    def _op():
        begin_write()
        note = _lock_credit_note(credit_note_id)
        if note.mode != "cash_refund" or note.status != "posted":
            raise PreconditionFailed(
                "Only posted cash_refund notes can be refunded",
                {"credit_note_id": note.id, "mode": note.mode, "status": note.status},
            )
        _refund_locked(note, source, actor=actor)
        db.session.commit()
        return note

    return run_with_retry(_op)


def list_credit_notes(*, invoice_id: int | None = None, status: str | None = None, limit: int = 100) -> list[CreditNote]:
    query = db.session.query(CreditNote)
    if invoice_id is not None:
        query = query.filter(CreditNote.invoice_id == invoice_id)
    if status:
        query = query.filter(CreditNote.status == status)
    return query.order_by(CreditNote.id.desc()).limit(limit).all()
