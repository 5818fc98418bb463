# Overview: Pytest coverage for banning customers and the order cancel cascade.

from decimal import Decimal

import pytest

from backoffice.errors import Forbidden, PreconditionFailed
from backoffice.extensions import db
from backoffice.models import Invoice, Order, Product, User
from backoffice.services import allocation_service, customer_service, inventory_service, invoice_service, order_service
from backoffice.services.ledger_service import AccountFilter, get_account_balance, unbalanced_journals


class TestBanCustomer:
    def test_ban_cancels_open_orders_and_releases_stock(self, staff, customer, make_product, make_order):
        product = make_product(qty=5)
        allocated = make_order([(product, 3)])
        pending = make_order([(product, 1)])
        allocation_service.allocate_order(allocated.id, actor=staff.warehouse)

        result = customer_service.ban_customer(customer.id, actor=staff.kasir, reason="Fraud")

        assert result["status"] == "banned"
        assert {row["order_id"] for row in result["canceled_orders"]} == {allocated.id, pending.id}
        assert db.session.get(User, customer.id).status == "banned"
        for order_id in (allocated.id, pending.id):
            order = db.session.get(Order, order_id)
            assert order.status == "canceled"
            assert order.cancel_reason == "Fraud"
        refreshed = db.session.get(Product, product.id)
        assert refreshed.stock_quantity == 5
        assert refreshed.allocated_quantity == 0
        assert inventory_service.check_stock_consistency(product.id) == []

    def test_ban_voids_unpaid_invoices_and_skips_paid_orders(self, staff, make_product, make_order, customer):
        product = make_product(qty=10, price="10000", base_price="6000")
        cod = make_order([(product, 3)], payment_method="cod")
        paid = make_order([(product, 2)])
        for order in (cod, paid):
            allocation_service.allocate_order(order.id, actor=staff.warehouse)
            order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)
        order_service.transition_order(cod.id, "ready_to_ship", actor=staff.kasir)
        cod_invoice_id = invoice_service._live_invoice(cod.id).id
        paid_invoice = invoice_service.issue_invoice(paid.id, actor=staff.kasir)
        invoice_service.verify_payment(paid_invoice.id, "approve", actor=staff.finance)

        result = customer_service.ban_customer(customer.id, actor=staff.kasir)

        assert [row["order_id"] for row in result["canceled_orders"]] == [cod.id]
        assert result["canceled_orders"][0]["voided_invoice"]["invoice_id"] == cod_invoice_id
        assert [row["order_id"] for row in result["skipped_orders"]] == [paid.id]
        assert db.session.get(Invoice, cod_invoice_id) is None
        assert db.session.get(Order, paid.id).status == "ready_to_ship"
        assert get_account_balance(AccountFilter(code="1104")) == Decimal("0.00")
        assert get_account_balance(AccountFilter(code="4100"), invert=True) == Decimal("20000.00")
        assert db.session.get(Product, product.id).stock_quantity == 8
        assert unbalanced_journals() == []

    def test_other_customers_are_untouched(self, staff, customer, make_customer, make_product, make_order):
        product = make_product(qty=5)
        other = make_customer(name="Other")
        theirs = make_order([(product, 2)], customer_id=other.id)
        allocation_service.allocate_order(theirs.id, actor=staff.warehouse)

        customer_service.ban_customer(customer.id, actor=staff.admin)

        assert db.session.get(Order, theirs.id).status == "allocated"
        assert db.session.get(Product, product.id).allocated_quantity == 2

    def test_staff_cannot_be_banned(self, staff):
        with pytest.raises(PreconditionFailed):
            customer_service.ban_customer(staff.warehouse.id, actor=staff.admin)

    def test_warehouse_may_not_ban(self, staff, customer):
        with pytest.raises(Forbidden):
            customer_service.ban_customer(customer.id, actor=staff.warehouse)


class TestUnbanCustomer:
    def test_unban_keeps_canceled_orders(self, staff, customer, make_product, make_order):
        order = make_order([(make_product(qty=2), 1)])
        customer_service.ban_customer(customer.id, actor=staff.kasir)

        user = customer_service.unban_customer(customer.id, actor=staff.kasir)

        assert user.status == "active"
        assert db.session.get(Order, order.id).status == "canceled"

    def test_unban_requires_ban(self, staff, customer):
        with pytest.raises(PreconditionFailed):
            customer_service.unban_customer(customer.id, actor=staff.kasir)
