# Overview: Pytest coverage for the expense request / approve / pay flow and its journal.

from decimal import Decimal

import pytest

from backoffice.errors import Forbidden, PreconditionFailed, ResourceNotFound, ValidationError
from backoffice.extensions import db
from backoffice.models import Journal
from backoffice.services import expense_service
from backoffice.services.ledger_service import AccountFilter, get_account_balance, unbalanced_journals


def _balance(code):
    return get_account_balance(AccountFilter(code=code))


class TestCreateExpense:
    @pytest.mark.parametrize("category,code", [
        ("Gaji Oktober", "5200"),
        ("Ongkir supplier", "5500"),
        ("Refund Retur", "5400"),
        ("Listrik", "5300"),
    ])
    def test_category_picks_expense_account(self, staff, category, code):
        expense = expense_service.create_expense(category=category, amount="250000", actor=staff.kasir)

        assert expense.status == "requested"
        assert expense.expense_account_code == code
        assert expense.amount == Decimal("250000.00")
        assert db.session.query(Journal).count() == 0

    def test_explicit_account_must_be_an_expense(self, staff):
        with pytest.raises(ValidationError):
            expense_service.create_expense(
                category="Listrik", amount="1000", actor=staff.kasir, expense_account_code="1101"
            )

    def test_unknown_account(self, staff):
        with pytest.raises(ResourceNotFound):
            expense_service.create_expense(
                category="Listrik", amount="1000", actor=staff.kasir, expense_account_code="5999"
            )

    @pytest.mark.parametrize("amount", ["0", "-10", "NaN"])
    def test_amount_must_be_positive(self, staff, amount):
        with pytest.raises(ValidationError):
            expense_service.create_expense(category="Listrik", amount=amount, actor=staff.kasir)

    def test_customer_cannot_request(self, db_session, customer_actor):
        with pytest.raises(Forbidden):
            expense_service.create_expense(category="Listrik", amount="1000", actor=customer_actor)


class TestApproveAndPay:
    def test_paid_expense_posts_journal(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="150000", actor=staff.kasir)
        expense_service.approve_expense(expense.id, actor=staff.finance)

        paid = expense_service.pay_expense(expense.id, actor=staff.finance, payment_account_code="1102")

        assert paid.status == "paid"
        assert paid.payment_account_code == "1102"
        journal = db.session.get(Journal, paid.journal_id)
        assert journal.reference_type == "expense"
        assert journal.reference_id == str(expense.id)
        assert _balance("5300") == Decimal("150000.00")
        assert _balance("1102") == Decimal("-150000.00")
        assert unbalanced_journals() == []

    def test_unapproved_expense_cannot_be_paid(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)
        with pytest.raises(PreconditionFailed):
            expense_service.pay_expense(expense.id, actor=staff.finance)

    def test_paid_twice_is_rejected(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)
        expense_service.approve_expense(expense.id, actor=staff.finance)
        expense_service.pay_expense(expense.id, actor=staff.finance)

        with pytest.raises(PreconditionFailed):
            expense_service.pay_expense(expense.id, actor=staff.finance)
        assert _balance("1101") == Decimal("-1000.00")

    def test_payment_must_come_from_cash_or_bank(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)
        expense_service.approve_expense(expense.id, actor=staff.finance)
        with pytest.raises(ValidationError):
            expense_service.pay_expense(expense.id, actor=staff.finance, payment_account_code="1103")

    def test_rejected_expense_is_closed(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)

        rejected = expense_service.reject_expense(expense.id, actor=staff.finance, reason="No receipt")

        assert rejected.status == "rejected"
        assert rejected.rejected_reason == "No receipt"
        with pytest.raises(PreconditionFailed):
            expense_service.approve_expense(expense.id, actor=staff.finance)

    def test_kasir_cannot_approve(self, staff):
        expense = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)
        with pytest.raises(Forbidden):
            expense_service.approve_expense(expense.id, actor=staff.kasir)


def test_list_filters_by_status(staff):
    first = expense_service.create_expense(category="Listrik", amount="1000", actor=staff.kasir)
    expense_service.create_expense(category="Air", amount="2000", actor=staff.kasir)
    expense_service.approve_expense(first.id, actor=staff.finance)

    assert [e.id for e in expense_service.list_expenses(status="approved")] == [first.id]
    assert len(expense_service.list_expenses()) == 2
