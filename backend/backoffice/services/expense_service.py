# Overview: Operating expenses; request, approval and payment with the expense journal.

from __future__ import annotations

from datetime import date

from ..auth import FINANCE_ROLES, STAFF_ROLES, require_role
from ..errors import PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import Expense
from ..money import money, to_decimal
from ..time_utils import utcnow
from . import account_service as accounts
from .concurrency import begin_write, lock_for_update, run_with_retry
from .ledger_service import _post_journal_locked

# Category keyword -> expense account. First match wins; anything else is operational.
CATEGORY_ACCOUNTS = (
    ("gaji", accounts.SALARY),
    ("salary", accounts.SALARY),
    ("transport", accounts.TRANSPORT),
    ("ongkir", accounts.TRANSPORT),
    ("refund", accounts.REFUND_EXPENSE),
)


def expense_account_for(category: str) -> str:
    lowered = (category or "").lower()
    for keyword, code in CATEGORY_ACCOUNTS:
        if keyword in lowered:
            return code
    return accounts.OPERATIONAL


def _lock_expense(expense_id: int) -> Expense:
    expense = lock_for_update(db.session.query(Expense).filter_by(id=expense_id)).first()
    if expense is None:
        raise ResourceNotFound("Expense", expense_id)
    return expense


def _check_expense_account(code: str) -> str:
    account = accounts.get_account_by_code(code)
    if account.type != "expense":
        raise ValidationError(
            f"Account {code} is not an expense account",
            {"field": "expense_account_code", "type": account.type},
        )
    return account.code


def _check_payment_account(code: str) -> str:
    if code not in accounts.CASH_ACCOUNTS:
        raise ValidationError(
            "Expenses are paid from cash or bank",
            {"field": "payment_account_code", "allowed": list(accounts.CASH_ACCOUNTS)},
        )
    return code


def _new_expense(*, category: str, amount, on_date: date | None, note: str | None,
                 expense_account_code: str | None, actor) -> Expense:
    category = (category or "").strip()
    if not category:
        raise ValidationError("category is required", {"field": "category"})
    value = money(to_decimal(amount))
    if value <= 0:
        raise ValidationError("amount must be greater than 0", {"field": "amount"})
    code = _check_expense_account(expense_account_code or expense_account_for(category))
    return Expense(
        category=category,
        amount=value,
        date=on_date or utcnow().date(),
        note=note,
        status="requested",
        expense_account_code=code,
        created_by=getattr(actor, "id", None),
        created_at=utcnow(),
    )


def _pay_locked(expense: Expense, payment_account_code: str, *, actor) -> Expense:
    """Post Dr expense / Cr cash-or-bank and mark the expense paid. Caller commits."""
    if expense.id is None:
        db.session.flush()
    journal = _post_journal_locked(
        lines=[
            {"account_code": expense.expense_account_code, "debit": expense.amount},
            {"account_code": payment_account_code, "credit": expense.amount},
        ],
        date=utcnow().date(),
        reference_type="expense",
        reference_id=expense.id,
        description=f"Expense: {expense.category}" + (f" - {expense.note}" if expense.note else ""),
        actor=actor,
    )
    expense.status = "paid"
    expense.payment_account_code = payment_account_code
    expense.journal_id = journal.id
    expense.paid_by = getattr(actor, "id", None)
    expense.paid_at = utcnow()
    return expense


def create_expense(
    *,
    category: str,
    amount,
    actor,
    on_date: date | None = None,
    note: str | None = None,
    expense_account_code: str | None = None,
) -> Expense:
    """Record a requested expense. Nothing is posted until it is paid."""
    require_role(actor, STAFF_ROLES, "request expenses")

    def _op():
        expense = _new_expense(
            category=category,
            amount=amount,
            on_date=on_date,
            note=note,
            expense_account_code=expense_account_code,
            actor=actor,
        )
        db.session.add(expense)
        db.session.commit()
        return expense

    return run_with_retry(_op)


def approve_expense(expense_id: int, *, actor) -> Expense:
    require_role(actor, FINANCE_ROLES, "approve expenses")

    def _op():
        expense = _lock_expense(expense_id)
        if expense.status != "requested":
            raise PreconditionFailed(
                f"Expense is {expense.status}, cannot approve",
                {"expense_id": expense.id, "status": expense.status},
            )
        expense.status = "approved"
        expense.approved_by = getattr(actor, "id", None)
        expense.approved_at = utcnow()
        db.session.commit()
        return expense

    return run_with_retry(_op)


def reject_expense(expense_id: int, *, actor, reason: str | None = None) -> Expense:
    require_role(actor, FINANCE_ROLES, "reject expenses")

    def _op():
        expense = _lock_expense(expense_id)
        if expense.status != "requested":
            raise PreconditionFailed(
                f"Expense is {expense.status}, cannot reject",
                {"expense_id": expense.id, "status": expense.status},
            )
        expense.status = "rejected"
        expense.rejected_reason = reason
        db.session.commit()
        return expense

    return run_with_retry(_op)


def pay_expense(expense_id: int, *, actor, payment_account_code: str = accounts.CASH) -> Expense:
    """approved -> paid: Dr expense account / Cr 1101 Kas or 1102 Bank."""
    require_role(actor, FINANCE_ROLES, "pay expenses")
    source = _check_payment_account(str(payment_account_code))

    def _op():
        begin_write()
        expense = _lock_expense(expense_id)
        if expense.status != "approved":
            raise PreconditionFailed(
                f"Expense must be approved before payment. Current status: {expense.status}",
                {"expense_id": expense.id, "status": expense.status},
            )
        _pay_locked(expense, source, actor=actor)
        db.session.commit()
        return expense

    return run_with_retry(_op)


def list_expenses(
    *,
    status: str | None = None,
    category: str | None = None,
    start: date | None = None,
    end: date | None = None,
    limit: int = 100,
) -> list[Expense]:
    query = db.session.query(Expense)
    if status:
        query = query.filter(Expense.status == status)
    if category:
        query = query.filter(Expense.category == category)
    if start:
        query = query.filter(Expense.date >= start)
    if end:
        query = query.filter(Expense.date <= end)
    return query.order_by(Expense.date.desc(), Expense.id.desc()).limit(limit).all()
