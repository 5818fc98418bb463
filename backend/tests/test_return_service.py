# Overview: Pytest coverage for customer returns; request limits, the review / pickup flow, restock and refund.

from decimal import Decimal

import pytest

from backoffice.auth import Actor, CUSTOMER, DRIVER
from backoffice.errors import Forbidden, PreconditionFailed, ValidationError
from backoffice.extensions import db
from backoffice.models import Expense, Journal, Product, User
from backoffice.services import (
    allocation_service,
    inventory_service,
    order_service,
    return_service,
)
from backoffice.services.ledger_service import AccountFilter, get_account_balance, unbalanced_journals


def _balance(code):
    return get_account_balance(AccountFilter(code=code))


@pytest.fixture
def delivered(staff, driver, make_product, make_order):
    """COD order of 3 x 10000 (cost 6000) delivered by the driver fixture."""
    product = make_product(qty=10, price="10000", base_price="6000")
    order = make_order([(product, 3)], payment_method="cod")
    allocation_service.allocate_order(order.id, actor=staff.warehouse)
    order_service.transition_order(order.id, "waiting_invoice", actor=staff.kasir)
    order_service.transition_order(order.id, "ready_to_ship", actor=staff.kasir)
    order_service.ship_order(order.id, actor=staff.warehouse, courier_id=driver.id)
    order_service.mark_delivered(order.id, actor=driver.actor)
    return order


def _received(staff, driver, order, customer_actor, qty=2, refund_amount="20000"):
    row = return_service.request_return(
        order.id, order_item_id=order.items[0].id, qty=qty, reason="Kemasan rusak", actor=customer_actor
    )
    return_service.review_return(row.id, approve=True, actor=staff.warehouse)
    return_service.assign_pickup(row.id, driver.id, refund_amount=refund_amount, actor=staff.warehouse)
    return return_service.receive_return(row.id, actor=driver.actor)


class TestRequestReturn:
    def test_customer_files_return(self, delivered, customer_actor):
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=2, actor=customer_actor
        )

        assert row.status == "pending"
        assert row.product_id == delivered.items[0].product_id
        assert return_service.list_returns(order_id=delivered.id)[0].id == row.id

    def test_order_must_be_delivered(self, staff, make_product, make_order, customer_actor):
        order = make_order([(make_product(), 1)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            return_service.request_return(order.id, order_item_id=order.items[0].id, qty=1, actor=customer_actor)

    def test_other_customer_cannot_return(self, delivered, make_customer):
        stranger = make_customer(name="Stranger")
        with pytest.raises(Forbidden):
            return_service.request_return(
                delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=Actor(stranger.id, CUSTOMER)
            )

    @pytest.mark.parametrize("qty", [0, -1, 4, True])
    def test_qty_bounds(self, delivered, customer_actor, qty):
        with pytest.raises(ValidationError):
            return_service.request_return(
                delivered.id, order_item_id=delivered.items[0].id, qty=qty, actor=customer_actor
            )

    def test_one_return_in_flight_per_item(self, delivered, customer_actor):
        item_id = delivered.items[0].id
        return_service.request_return(delivered.id, order_item_id=item_id, qty=1, actor=customer_actor)
        with pytest.raises(PreconditionFailed):
            return_service.request_return(delivered.id, order_item_id=item_id, qty=1, actor=customer_actor)

    def test_rejected_return_frees_the_quantity(self, staff, delivered, customer_actor):
        item_id = delivered.items[0].id
        first = return_service.request_return(delivered.id, order_item_id=item_id, qty=3, actor=customer_actor)
        return_service.review_return(first.id, approve=False, admin_response="Out of window", actor=staff.warehouse)

        again = return_service.request_return(delivered.id, order_item_id=item_id, qty=3, actor=customer_actor)
        assert again.status == "pending"


class TestReturnFlow:
    def test_back_to_stock_restores_inventory_and_cogs(self, staff, driver, delivered, customer_actor):
        product_id = delivered.items[0].product_id
        cogs_before = _balance("5100")
        inventory_before = _balance("1300")
        row = _received(staff, driver, delivered, customer_actor)

        completed = return_service.complete_return(row.id, is_back_to_stock=True, actor=staff.warehouse)

        assert completed.status == "completed"
        assert db.session.get(Product, product_id).stock_quantity == 9
        assert inventory_service.check_stock_consistency(product_id) == []
        journal = db.session.get(Journal, completed.restock_journal_id)
        assert journal.reference_type == "sales_return"
        assert _balance("5100") == cogs_before - Decimal("12000.00")
        assert _balance("1300") == inventory_before + Decimal("12000.00")
        assert unbalanced_journals() == []

    def test_damaged_goods_stay_out_of_stock(self, staff, driver, delivered, customer_actor):
        product_id = delivered.items[0].product_id
        row = _received(staff, driver, delivered, customer_actor)

        completed = return_service.complete_return(row.id, is_back_to_stock=False, actor=staff.warehouse)

        assert completed.restock_journal_id is None
        assert db.session.get(Product, product_id).stock_quantity == 7

    def test_steps_cannot_be_skipped(self, staff, driver, delivered, customer_actor):
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=customer_actor
        )
        with pytest.raises(PreconditionFailed):
            return_service.assign_pickup(row.id, driver.id, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            return_service.complete_return(row.id, is_back_to_stock=True, actor=staff.warehouse)

    def test_pickup_needs_an_active_driver(self, staff, delivered, customer_actor):
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=customer_actor
        )
        return_service.review_return(row.id, approve=True, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            return_service.assign_pickup(row.id, staff.warehouse.id, actor=staff.warehouse)

    def test_refund_cannot_exceed_price_paid(self, staff, driver, delivered, customer_actor):
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=customer_actor
        )
        return_service.review_return(row.id, approve=True, actor=staff.warehouse)
        with pytest.raises(ValidationError):
            return_service.assign_pickup(row.id, driver.id, refund_amount="10000.01", actor=staff.warehouse)

    def test_only_assigned_driver_receives(self, staff, driver, delivered, customer_actor, db_session):
        other = User(name="Driver Lain", role=DRIVER, status="active")
        db_session.add(other)
        db_session.commit()
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=customer_actor
        )
        return_service.review_return(row.id, approve=True, actor=staff.warehouse)
        return_service.assign_pickup(row.id, driver.id, actor=staff.warehouse)

        with pytest.raises(Forbidden):
            return_service.receive_return(row.id, actor=Actor(other.id, DRIVER))


class TestDisburseRefund:
    def test_refund_is_booked_as_paid_expense(self, staff, driver, delivered, customer_actor):
        row = _received(staff, driver, delivered, customer_actor, refund_amount="20000")

        refunded = return_service.disburse_refund(row.id, actor=staff.finance, payment_account_code="1102")

        expense = db.session.get(Expense, refunded.refund_expense_id)
        assert expense.status == "paid"
        assert expense.category == "Refund Retur"
        assert expense.expense_account_code == "5400"
        assert refunded.refund_disbursed_at is not None
        assert _balance("5400") == Decimal("20000.00")
        assert _balance("1102") == Decimal("-20000.00")

        with pytest.raises(PreconditionFailed):
            return_service.disburse_refund(row.id, actor=staff.finance)
        assert _balance("5400") == Decimal("20000.00")

    def test_pending_return_is_not_refundable(self, staff, delivered, customer_actor):
        row = return_service.request_return(
            delivered.id, order_item_id=delivered.items[0].id, qty=1, actor=customer_actor
        )
        with pytest.raises(PreconditionFailed):
            return_service.disburse_refund(row.id, actor=staff.finance)

    def test_warehouse_cannot_disburse(self, staff, driver, delivered, customer_actor):
        row = _received(staff, driver, delivered, customer_actor)
        with pytest.raises(Forbidden):
            return_service.disburse_refund(row.id, actor=staff.warehouse)
