# Overview: Pytest coverage for credit notes; limits, posting to receivable or refund payable, payout.

from decimal import Decimal

import pytest

from backoffice.errors import Forbidden, PreconditionFailed, ValidationError
from backoffice.extensions import db
from backoffice.models import Journal
from backoffice.services import allocation_service, credit_note_service, invoice_service, order_service
from backoffice.services.ledger_service import AccountFilter, get_account_balance, unbalanced_journals


def _balance(code):
    return get_account_balance(AccountFilter(code=code))


@pytest.fixture
def issued_invoice(staff, make_product, make_order):
    """Unpaid transfer invoice for 3 x 10000."""
    product = make_product(qty=10, price="10000", base_price="6000")
    order = make_order([(product, 3)])
    allocation_service.allocate_order(order.id, actor=staff.warehouse)
    order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)
    return invoice_service.issue_invoice(order.id, actor=staff.kasir)


class TestCreateCreditNote:
    def test_draft_gets_a_number_and_posts_nothing(self, staff, issued_invoice):
        note = credit_note_service.create_credit_note(
            issued_invoice.id, amount="10000", reason="Barang cacat", actor=staff.finance
        )

        assert note.status == "draft"
        assert note.credit_note_number.startswith("CN-")
        assert note.credit_note_number.endswith(f"-{note.id}")
        assert note.journal_id is None
        assert _balance("1103") == Decimal("30000.00")

    def test_total_credit_is_capped_at_invoice_total(self, staff, issued_invoice):
        credit_note_service.create_credit_note(issued_invoice.id, amount="25000", actor=staff.finance)
        credit_note_service.create_credit_note(issued_invoice.id, amount="5000", actor=staff.finance)

        with pytest.raises(ValidationError):
            credit_note_service.create_credit_note(issued_invoice.id, amount="0.01", actor=staff.finance)

    @pytest.mark.parametrize("amount,tax", [("0", "0"), ("-5", "0"), ("1000", "1001"), ("1000", "-1")])
    def test_amount_and_tax_bounds(self, staff, issued_invoice, amount, tax):
        with pytest.raises(ValidationError):
            credit_note_service.create_credit_note(
                issued_invoice.id, amount=amount, tax_amount=tax, actor=staff.finance
            )

    def test_draft_invoice_cannot_be_credited(self, staff, make_product, make_order):
        order = make_order([(make_product(), 2)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)
        draft = invoice_service._live_invoice(order.id)

        with pytest.raises(PreconditionFailed):
            credit_note_service.create_credit_note(draft.id, amount="1000", actor=staff.finance)

    def test_invalid_mode(self, staff, issued_invoice):
        with pytest.raises(ValidationError):
            credit_note_service.create_credit_note(
                issued_invoice.id, amount="1000", mode="store_credit", actor=staff.finance
            )

    def test_kasir_cannot_create(self, staff, issued_invoice):
        with pytest.raises(Forbidden):
            credit_note_service.create_credit_note(issued_invoice.id, amount="1000", actor=staff.kasir)


class TestPostCreditNote:
    def test_receivable_mode_reduces_the_invoice_receivable(self, staff, issued_invoice):
        note = credit_note_service.create_credit_note(issued_invoice.id, amount="10000", actor=staff.finance)

        posted = credit_note_service.post_credit_note(note.id, actor=staff.finance)

        assert posted.status == "posted"
        journal = db.session.get(Journal, posted.journal_id)
        assert (journal.reference_type, journal.reference_id) == ("invoice", str(issued_invoice.id))
        assert _balance("4101") == Decimal("10000.00")
        assert _balance("1103") == Decimal("20000.00")
        assert unbalanced_journals() == []

    def test_cash_refund_with_tax_is_paid_out(self, staff, issued_invoice):
        invoice_service.verify_payment(issued_invoice.id, "approve", actor=staff.finance)
        note = credit_note_service.create_credit_note(
            issued_invoice.id, amount="11100", tax_amount="1100", mode="cash_refund", actor=staff.finance
        )

        refunded = credit_note_service.post_credit_note(
            note.id, actor=staff.finance, pay_now=True, payment_account_code="1101"
        )

        assert refunded.status == "refunded"
        assert refunded.refund_journal_id is not None
        assert _balance("4101") == Decimal("10000.00")
        assert _balance("2201") == Decimal("1100.00")
        assert _balance("2203") == Decimal("0.00")
        assert _balance("1101") == Decimal("-11100.00")
        assert unbalanced_journals() == []

    def test_refund_later_clears_refund_payable(self, staff, issued_invoice):
        note = credit_note_service.create_credit_note(
            issued_invoice.id, amount="5000", mode="cash_refund", actor=staff.finance
        )
        credit_note_service.post_credit_note(note.id, actor=staff.finance)
        assert _balance("2203") == Decimal("-5000.00")

        refunded = credit_note_service.refund_credit_note(note.id, actor=staff.finance, payment_account_code="1102")

        assert refunded.status == "refunded"
        assert _balance("2203") == Decimal("0.00")
        assert _balance("1102") == Decimal("-5000.00")
        with pytest.raises(PreconditionFailed):
            credit_note_service.refund_credit_note(note.id, actor=staff.finance)

    def test_posting_twice_is_rejected(self, staff, issued_invoice):
        note = credit_note_service.create_credit_note(issued_invoice.id, amount="1000", actor=staff.finance)
        credit_note_service.post_credit_note(note.id, actor=staff.finance)
        with pytest.raises(PreconditionFailed):
            credit_note_service.post_credit_note(note.id, actor=staff.finance)

    def test_receivable_note_is_never_paid_out(self, staff, issued_invoice):
        note = credit_note_service.create_credit_note(issued_invoice.id, amount="1000", actor=staff.finance)
        with pytest.raises(PreconditionFailed):
            credit_note_service.post_credit_note(note.id, actor=staff.finance, pay_now=True)
        credit_note_service.post_credit_note(note.id, actor=staff.finance)
        with pytest.raises(PreconditionFailed):
            credit_note_service.refund_credit_note(note.id, actor=staff.finance)

    def test_credited_invoice_cannot_be_deleted(self, staff, issued_invoice):
        credit_note_service.create_credit_note(issued_invoice.id, amount="1000", actor=staff.finance)
        with pytest.raises(PreconditionFailed):
            invoice_service.delete_invoice(issued_invoice.id, actor=staff.finance)
