# Overview: Pytest coverage for invoice issuance, tax snapshots, payment verification and COD settlement.

from decimal import Decimal

import pytest

from backoffice.auth import Actor, CUSTOMER
from backoffice.errors import Forbidden, InvalidTransition, PreconditionFailed, ValidationError
from backoffice.extensions import db
from backoffice.models import Invoice, Journal, Order, Product
from backoffice.services import allocation_service, invoice_service, order_service, tax_service
from backoffice.services.ledger_service import AccountFilter, get_account_balance, unbalanced_journals


def _balance(code):
    return get_account_balance(AccountFilter(code=code))


def _waiting_invoice(staff, make_product, make_order, qty=3, stock=10, **kwargs):
    product = make_product(qty=stock, price="10000", base_price="6000")
    order = make_order([(product, qty)], **kwargs)
    allocation_service.allocate_order(order.id, actor=staff.warehouse)
    order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)
    return order


def _journal_lines(invoice_id, reference_type):
    journal = (
        db.session.query(Journal)
        .filter_by(reference_type=reference_type, reference_id=str(invoice_id), reversal_of_id=None)
        .order_by(Journal.id)
        .first()
    )
    return {(line.account.code, line.debit, line.credit) for line in journal.lines}


class TestIssueInvoice:
    def test_non_pkp_invoice_posts_sale_and_cogs(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)

        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)

        assert invoice.payment_status == "unpaid"
        assert invoice.tax_mode_snapshot == "non_pkp"
        assert invoice.subtotal == Decimal("30000.00")
        assert invoice.tax_amount == Decimal("0.00")
        assert invoice.pph_final_amount == Decimal("150.00")
        assert invoice.total == Decimal("30000.00")
        assert invoice.invoice_number.endswith(f"-{order.id}")
        assert db.session.get(Order, order.id).status == "waiting_payment"

        assert _journal_lines(invoice.id, "invoice") == {
            ("1103", Decimal("30000.00"), Decimal("0.00")),
            ("4100", Decimal("0.00"), Decimal("30000.00")),
        }
        assert _journal_lines(invoice.id, "invoice_cogs") == {
            ("5100", Decimal("18000.00"), Decimal("0.00")),
            ("1300", Decimal("0.00"), Decimal("18000.00")),
        }
        assert unbalanced_journals() == []

    def test_pkp_adds_vat_and_freezes_regime(self, staff, make_product, make_order):
        tax_service.update_tax_config(actor=staff.finance, mode="pkp")
        order = _waiting_invoice(staff, make_product, make_order)

        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        tax_service.update_tax_config(actor=staff.finance, mode="non_pkp")

        refreshed = db.session.get(Invoice, invoice.id)
        assert refreshed.tax_mode_snapshot == "pkp"
        assert refreshed.tax_amount == Decimal("3300.00")
        assert refreshed.total == Decimal("33300.00")
        assert _balance("2201") == Decimal("-3300.00")

    def test_discount_and_shipping_form_the_taxable_base(self, staff, make_product, make_order):
        tax_service.update_tax_config(actor=staff.finance, mode="pkp")
        order = _waiting_invoice(staff, make_product, make_order, discount_amount="5000", shipping_fee="2000")

        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)

        assert invoice.subtotal == Decimal("30000.00")
        assert invoice.discount_amount == Decimal("5000.00")
        assert invoice.shipping_fee == Decimal("2000.00")
        assert invoice.tax_amount == Decimal("2970.00")
        assert invoice.total == Decimal("29970.00")

    def test_only_allocated_quantity_is_invoiced(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order, qty=5, stock=2)

        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)

        assert [(item.qty, item.line_total) for item in invoice.items] == [(2, Decimal("20000.00"))]
        assert invoice.total == Decimal("20000.00")

    def test_target_must_match_payment_method(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        with pytest.raises(PreconditionFailed):
            order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)

    def test_order_must_be_waiting_invoice(self, staff, make_product, make_order):
        product = make_product()
        order = make_order([(product, 1)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(InvalidTransition):
            invoice_service.issue_invoice(order.id, actor=staff.kasir)

    def test_warehouse_cannot_issue(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        with pytest.raises(Forbidden):
            invoice_service.issue_invoice(order.id, actor=staff.warehouse)

    def test_preorder_cannot_request_invoice(self, staff, make_product, make_order):
        order = make_order([(make_product(qty=0), 2)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(InvalidTransition):
            order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)


class TestTransferPayment:
    def test_approve_moves_order_and_posts_bank(self, staff, customer_actor, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.upload_payment_proof(invoice.id, "https://cdn.example/tf.jpg", actor=customer_actor)

        paid = invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)

        assert paid.payment_status == "paid"
        assert paid.amount_paid == Decimal("30000.00")
        assert db.session.get(Order, order.id).status == "ready_to_ship"
        assert _balance("1102") == Decimal("30000.00")
        assert _balance("1103") == Decimal("0.00")

    def test_approve_twice_is_idempotent(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)

        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)

        assert _balance("1102") == Decimal("30000.00")

    def test_reject_clears_proof_and_keeps_waiting(self, staff, customer_actor, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.upload_payment_proof(invoice.id, "https://cdn.example/blurry.jpg", actor=customer_actor)

        rejected = invoice_service.verify_payment(invoice.id, "reject", actor=staff.finance)

        assert rejected.payment_status == "unpaid"
        assert rejected.payment_proof_url is None
        assert db.session.get(Order, order.id).status == "waiting_payment"

    def test_other_customer_cannot_upload_proof(self, staff, make_customer, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        stranger = make_customer(name="Stranger")
        with pytest.raises(Forbidden):
            invoice_service.upload_payment_proof(invoice.id, "https://x/y.jpg", actor=Actor(stranger.id, CUSTOMER))

    def test_verify_requires_finance(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        with pytest.raises(Forbidden):
            invoice_service.verify_payment(invoice.id, "approve", actor=staff.kasir)

    def test_unknown_action(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        with pytest.raises(ValidationError):
            invoice_service.verify_payment(invoice.id, "maybe", actor=staff.finance)


class TestCashOnDelivery:
    def test_cod_settlement_completes_order(self, staff, driver, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order, payment_method="cod")
        order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)
        invoice = invoice_service._live_invoice(order.id)
        assert invoice.payment_status == "cod_pending"
        assert _balance("1104") == Decimal("30000.00")

        with pytest.raises(PreconditionFailed):
            invoice_service.settle_cod(invoice.id, "30000", actor=staff.finance)

        order_service.ship_order(order.id, actor=staff.warehouse, courier_id=driver.id)
        order_service.mark_delivered(order.id, actor=driver.actor)

        with pytest.raises(ValidationError):
            invoice_service.settle_cod(invoice.id, "29000", actor=staff.finance)

        settled = invoice_service.settle_cod(invoice.id, "30000", actor=staff.finance)

        assert settled.payment_status == "paid"
        assert db.session.get(Order, order.id).status == "completed"
        assert _balance("1101") == Decimal("30000.00")
        assert _balance("1104") == Decimal("0.00")

    def test_cod_order_cannot_complete_before_settlement(self, staff, driver, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order, payment_method="cod")
        order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)
        order_service.ship_order(order.id, actor=staff.warehouse, courier_id=driver.id)
        order_service.mark_delivered(order.id, actor=driver.actor)
        with pytest.raises(PreconditionFailed):
            order_service.transition_order(order.id, "completed", actor=staff.kasir)


class TestDeleteInvoice:
    def test_unpaid_invoice_is_reversed(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)

        result = invoice_service.delete_invoice(invoice.id, actor=staff.finance)

        assert len(result["reversal_journal_ids"]) == 2
        assert db.session.get(Invoice, invoice.id) is None
        assert db.session.get(Order, order.id).status == "waiting_invoice"
        for code in ("1103", "4100", "5100", "1300"):
            assert _balance(code) == Decimal("0.00")

        reissued = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        assert reissued.total == Decimal("30000.00")
        assert reissued.payment_method == "transfer_manual"
        assert _balance("1103") == Decimal("30000.00")

    @pytest.mark.parametrize("payment_method", ["transfer_manual", "cod"])
    def test_settled_or_cod_pending_is_protected(self, staff, make_product, make_order, payment_method):
        order = _waiting_invoice(staff, make_product, make_order, payment_method=payment_method)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        if payment_method == "transfer_manual":
            invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)
        with pytest.raises(PreconditionFailed):
            invoice_service.delete_invoice(invoice.id, actor=staff.finance)


class TestCancelInvoicedOrder:
    def test_cod_cancel_reverses_sale_and_cogs(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order, payment_method="cod")
        order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)
        invoice_id = invoice_service._live_invoice(order.id).id
        assert _balance("1104") == Decimal("30000.00")

        canceled = order_service.cancel_order(order.id, actor=staff.kasir, reason="Customer unreachable")

        assert canceled.status == "canceled"
        assert db.session.get(Invoice, invoice_id) is None
        for code in ("4100", "5100", "1104", "1300"):
            assert _balance(code) == Decimal("0.00")
        product = db.session.get(Product, order.items[0].product_id)
        assert product.stock_quantity == 10
        assert product.allocated_quantity == 0
        assert unbalanced_journals() == []

    def test_draft_invoice_is_dropped_on_cancel(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)

        order_service.cancel_order(order.id, actor=staff.kasir)

        assert invoice_service._live_invoice(order.id) is None
        assert db.session.query(Journal).filter(Journal.reference_type == "invoice").count() == 0

    def test_paid_order_needs_payment_voided_first(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)

        with pytest.raises(PreconditionFailed):
            order_service.cancel_order(order.id, actor=staff.kasir)
        assert db.session.get(Order, order.id).status == "ready_to_ship"
        assert db.session.get(Invoice, invoice.id).payment_status == "paid"

        invoice_service.void_payment(invoice.id, actor=staff.finance)
        invoice_service.delete_invoice(invoice.id, actor=staff.finance)
        order_service.cancel_order(order.id, actor=staff.kasir)

        assert db.session.get(Order, order.id).status == "canceled"
        for code in ("1102", "1103", "4100", "5100", "1300"):
            assert _balance(code) == Decimal("0.00")


class TestVoidPayment:
    def test_transfer_payment_is_reversed(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)

        voided = invoice_service.void_payment(invoice.id, actor=staff.finance)

        assert voided.payment_status == "unpaid"
        assert voided.amount_paid == Decimal("0.00")
        assert voided.payment_journal_id is None
        assert db.session.get(Order, order.id).status == "waiting_payment"
        assert _balance("1102") == Decimal("0.00")
        assert _balance("1103") == Decimal("30000.00")

        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)
        assert _balance("1102") == Decimal("30000.00")
        assert db.session.get(Order, order.id).status == "ready_to_ship"

    def test_unpaid_invoice_has_nothing_to_void(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        with pytest.raises(PreconditionFailed):
            invoice_service.void_payment(invoice.id, actor=staff.finance)

    def test_completed_order_keeps_its_payment(self, staff, driver, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order, payment_method="cod")
        order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)
        order_service.ship_order(order.id, actor=staff.warehouse, courier_id=driver.id)
        order_service.mark_delivered(order.id, actor=driver.actor)
        invoice = invoice_service.settle_cod(invoice_service._live_invoice(order.id).id, "30000", actor=staff.finance)

        with pytest.raises(PreconditionFailed):
            invoice_service.void_payment(invoice.id, actor=staff.finance)
        assert _balance("1101") == Decimal("30000.00")

    def test_kasir_cannot_void(self, staff, make_product, make_order):
        order = _waiting_invoice(staff, make_product, make_order)
        invoice = invoice_service.issue_invoice(order.id, actor=staff.kasir)
        invoice_service.verify_payment(invoice.id, "approve", actor=staff.finance)
        with pytest.raises(Forbidden):
            invoice_service.void_payment(invoice.id, actor=staff.kasir)
