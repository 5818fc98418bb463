# Overview: Pytest coverage for the allocation engine (reserve, backorder, release, split).

"""
Allocation Engine Tests

Covers full / partial / zero allocation, re-allocation when stock arrives,
backorder cancel and split, release on cancel, and the stock invariant
stock_quantity == sum(mutations) after every flow.
"""

from decimal import Decimal

import pytest

from backoffice.errors import Forbidden, PreconditionFailed, ValidationError
from backoffice.extensions import db
from backoffice.models import Backorder, Order, OrderIssue, Product, StockMutation
from backoffice.services import allocation_service, inventory_service, order_service


def _product(product_id):
    return db.session.get(Product, product_id)


def _open_issues(order_id):
    return (
        db.session.query(OrderIssue)
        .filter(OrderIssue.order_id == order_id, OrderIssue.status == "open")
        .all()
    )


class TestAllocateOrder:
    def test_full_allocation_reserves_stock(self, staff, make_product, make_order):
        product = make_product(qty=10)
        order = make_order([(product, 3)])

        result = allocation_service.allocate_order(order.id, actor=staff.warehouse)

        assert result["status"] == "allocated"
        assert result["granted"] == [{"product_id": product.id, "qty": 3}]
        assert result["total_shortage"] == 0
        p = _product(product.id)
        assert p.stock_quantity == 7
        assert p.allocated_quantity == 3
        mutation = db.session.query(StockMutation).filter_by(product_id=product.id, type="allocate").one()
        assert mutation.qty == -3
        assert mutation.reference_id == str(order.id)

    def test_partial_allocation_creates_backorder_and_issue(self, staff, make_product, make_order):
        product = make_product(qty=2)
        order = make_order([(product, 5)])

        result = allocation_service.allocate_order(order.id, actor=staff.warehouse)

        assert result["status"] == "partially_fulfilled"
        assert result["total_allocated"] == 2
        assert result["total_shortage"] == 3
        p = _product(product.id)
        assert (p.stock_quantity, p.allocated_quantity) == (0, 2)

        backorder = db.session.query(Backorder).one()
        assert backorder.qty_pending == 3
        assert backorder.status == "waiting_stock"

        issues = _open_issues(order.id)
        assert len(issues) == 1
        assert issues[0].issue_type == "shortage"
        assert issues[0].due_at is not None

        assert db.session.get(Order, order.id).total_amount == Decimal("20000.00")

    def test_no_stock_leaves_preorder_pending(self, staff, make_product, make_order):
        product = make_product(qty=0)
        order = make_order([(product, 4)])

        result = allocation_service.allocate_order(order.id, actor=staff.warehouse)

        assert result["status"] == "pending"
        assert result["granted"] == []
        assert result["total_shortage"] == 4
        assert allocation_service.shortage_summary(order.id)["label"] == "preorder"

    def test_rerun_on_allocated_order_is_noop(self, staff, make_product, make_order):
        product = make_product(qty=5)
        order = make_order([(product, 2)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        before = db.session.query(StockMutation).count()

        again = allocation_service.allocate_order(order.id, actor=staff.warehouse)

        assert again["status"] == "allocated"
        assert again["granted"] == []
        assert db.session.query(StockMutation).count() == before
        assert _product(product.id).allocated_quantity == 2

    def test_same_product_on_two_lines_is_covered_in_item_order(self, staff, make_product, make_order):
        product = make_product(qty=4)
        order = make_order([(product, 2), (product, 3)])

        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        summary = allocation_service.shortage_summary(order.id)

        first, second = summary["items"]
        assert (first["allocated_qty"], first["shortage_qty"]) == (2, 0)
        assert (second["allocated_qty"], second["shortage_qty"]) == (2, 1)
        assert summary["label"] == "backorder"
        backorder = db.session.query(Backorder).one()
        assert backorder.order_item_id == second["order_item_id"]
        assert backorder.qty_pending == 1

    def test_requires_warehouse_role(self, staff, make_product, make_order):
        order = make_order([(make_product(qty=1), 1)])
        with pytest.raises(Forbidden):
            allocation_service.allocate_order(order.id, actor=staff.kasir)

    def test_canceled_order_cannot_be_allocated(self, staff, make_product, make_order):
        order = make_order([(make_product(qty=1), 1)])
        order_service.cancel_order(order.id, actor=staff.kasir)
        with pytest.raises(PreconditionFailed):
            allocation_service.allocate_order(order.id, actor=staff.warehouse)


class TestBackorderFulfilment:
    def test_receiving_stock_completes_waiting_order(self, staff, make_product, make_order):
        product = make_product(qty=2)
        order = make_order([(product, 5)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        result = inventory_service.receive_stock(product_id=product.id, qty=5, actor=staff.warehouse)

        assert result["reallocated_orders"] == [
            {"order_id": order.id, "status": "allocated", "granted": [{"product_id": product.id, "qty": 3}]}
        ]
        p = _product(product.id)
        assert (p.stock_quantity, p.allocated_quantity) == (2, 5)
        backorder = db.session.query(Backorder).one()
        assert backorder.status == "fulfilled"
        assert backorder.qty_pending == 0
        assert _open_issues(order.id) == []
        assert inventory_service.check_stock_consistency() == []

    def test_oldest_order_is_served_first(self, staff, make_product, make_order):
        product = make_product(qty=0)
        first = make_order([(product, 3)])
        second = make_order([(product, 3)])
        allocation_service.allocate_order(first.id, actor=staff.warehouse)
        allocation_service.allocate_order(second.id, actor=staff.warehouse)

        inventory_service.receive_stock(product_id=product.id, qty=4, actor=staff.warehouse)

        assert db.session.get(Order, first.id).status == "allocated"
        assert db.session.get(Order, second.id).status == "partially_fulfilled"
        assert allocation_service.shortage_summary(second.id)["total_allocated"] == 1

    def test_receive_without_fulfilment_keeps_stock_free(self, staff, make_product, make_order):
        product = make_product(qty=0)
        order = make_order([(product, 2)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        result = inventory_service.receive_stock(
            product_id=product.id, qty=2, actor=staff.warehouse, fulfill_backorders=False
        )

        assert result["reallocated_orders"] == []
        assert _product(product.id).stock_quantity == 2
        assert db.session.get(Order, order.id).status == "pending"


class TestCancelBackorder:
    def test_partial_order_continues_as_allocated(self, staff, make_product, make_order):
        product = make_product(qty=2)
        order = make_order([(product, 5)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        result = allocation_service.cancel_backorder(order.id, "Supplier discontinued", actor=staff.warehouse)

        assert result["status"] == "allocated"
        assert result["forfeited_qty"] == 3
        summary = allocation_service.shortage_summary(order.id)
        assert summary["total_shortage"] == 0
        assert summary["items"][0]["forfeited_qty"] == 3
        assert _product(product.id).allocated_quantity == 2
        assert _open_issues(order.id) == []
        resolved = db.session.query(OrderIssue).filter_by(order_id=order.id, status="resolved").all()
        assert any(i.note.startswith("[CANCEL_BACKORDER]") for i in resolved)

        # Forfeited demand is not picked up again when stock arrives
        received = inventory_service.receive_stock(product_id=product.id, qty=10, actor=staff.warehouse)
        assert received["reallocated_orders"] == []
        assert _product(product.id).allocated_quantity == 2

    def test_preorder_is_canceled(self, staff, make_product, make_order):
        product = make_product(qty=0)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        result = allocation_service.cancel_backorder(order.id, "Customer gave up", actor=staff.warehouse)

        assert result["status"] == "canceled"
        refreshed = db.session.get(Order, order.id)
        assert refreshed.stock_released is True
        assert refreshed.cancel_reason == "Customer gave up"

    def test_reason_is_required(self, staff, make_product, make_order):
        product = make_product(qty=1)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(ValidationError):
            allocation_service.cancel_backorder(order.id, "  ", actor=staff.warehouse)

    def test_fully_allocated_order_has_nothing_to_cancel(self, staff, make_product, make_order):
        product = make_product(qty=5)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            allocation_service.cancel_backorder(order.id, "nothing short", actor=staff.warehouse)


class TestSplitBackorder:
    def test_shortage_moves_to_child_order(self, staff, make_product, make_order):
        product = make_product(qty=2)
        parent = make_order([(product, 5)])
        allocation_service.allocate_order(parent.id, actor=staff.warehouse)

        result = allocation_service.split_backorder(parent.id, actor=staff.warehouse)

        assert result["parent"]["status"] == "allocated"
        child = result["child"]
        assert child["status"] == "pending"
        assert child["parent_order_id"] == parent.id
        assert [(i["product_id"], i["qty"]) for i in child["items"]] == [(product.id, 3)]
        assert child["total_amount"] == "30000.00"
        assert [c.id for c in allocation_service.list_child_orders(parent.id)] == [child["id"]]
        assert allocation_service.shortage_summary(parent.id)["total_shortage"] == 0

    def test_only_partial_orders_split(self, staff, make_product, make_order):
        product = make_product(qty=5)
        order = make_order([(product, 2)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            allocation_service.split_backorder(order.id, actor=staff.warehouse)


class TestRelease:
    def test_cancel_returns_reservation_to_stock(self, staff, make_product, make_order):
        product = make_product(qty=10)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        order_service.cancel_order(order.id, actor=staff.kasir, reason="Changed mind")

        p = _product(product.id)
        assert (p.stock_quantity, p.allocated_quantity) == (10, 0)
        types = [
            m.type for m in db.session.query(StockMutation)
            .filter_by(product_id=product.id).order_by(StockMutation.id)
        ]
        assert types == ["initial", "allocate", "release"]
        assert db.session.get(Order, order.id).stock_released is True
        assert inventory_service.check_stock_consistency() == []

    def test_release_is_idempotent(self, staff, make_product, make_order):
        product = make_product(qty=10)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        order_service.cancel_order(order.id, actor=staff.kasir)

        again = allocation_service.release_order(order.id, actor=staff.warehouse)

        assert again["released_products"] == []
        assert _product(product.id).stock_quantity == 10

    def test_release_refuses_live_orders(self, staff, make_product, make_order):
        product = make_product(qty=10)
        order = make_order([(product, 3)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)
        with pytest.raises(PreconditionFailed):
            allocation_service.release_order(order.id, actor=staff.warehouse)


class TestAllocationViews:
    def test_pending_list_scopes(self, staff, make_product, make_order):
        short = make_product(qty=1)
        plenty = make_product(qty=10)
        partial = make_order([(short, 3)])
        full = make_order([(plenty, 2)])
        allocation_service.allocate_order(partial.id, actor=staff.warehouse)
        allocation_service.allocate_order(full.id, actor=staff.warehouse)

        shortage = allocation_service.list_pending_allocations("shortage")
        everything = allocation_service.list_pending_allocations("all")

        assert [row["order_id"] for row in shortage] == [partial.id]
        assert shortage[0]["label"] == "backorder"
        assert {row["order_id"] for row in everything} == {partial.id, full.id}
        with pytest.raises(ValidationError):
            allocation_service.list_pending_allocations("bogus")

    def test_product_allocations_sum_reservations(self, staff, make_product, make_order):
        product = make_product(qty=10)
        a = make_order([(product, 2)])
        b = make_order([(product, 3)])
        allocation_service.allocate_order(a.id, actor=staff.warehouse)
        allocation_service.allocate_order(b.id, actor=staff.warehouse)

        view = allocation_service.product_allocations(product.id)

        assert view["total_reserved"] == 5
        assert [row["order_id"] for row in view["allocations"]] == [a.id, b.id]
