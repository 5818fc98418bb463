# Overview: Allocation engine; reserves stock for orders, tracks backorders and shortage issues, releases reservations.

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..auth import SYSTEM_ACTOR, WAREHOUSE_ROLES, require_role
from ..errors import BackofficeError, IntegrityViolation, PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import Backorder, Order, OrderAllocation, OrderIssue, OrderItem, Product
from ..money import ZERO, money
from ..order_status import (
    ALLOCATABLE_STATUSES,
    ALLOCATED,
    CANCELABLE_STATUSES,
    CANCELED,
    EXPIRED,
    HOLD,
    PARTIALLY_FULFILLED,
    PENDING,
)
from ..signals import notify_status_change
from ..time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .inventory_service import _apply_mutation
"""
Allocation Invariants (authoritative)

- Reserving n units: stock_quantity -= n, allocated_quantity += n, StockMutation(allocate, -n).
- Releasing q units: stock_quantity += q, allocated_quantity -= q (floored at 0), StockMutation(release, +q).
- sum(OrderAllocation.allocated_qty) per order+product never exceeds the product's demand,
  where demand = sum(OrderItem.qty) minus quantity forfeited by canceled backorders.
- Product rows are locked in product_id order, so two orders competing for the same
  products serialize instead of deadlocking.
- Order.stock_released makes release idempotent.
- At most one open OrderIssue per order.
"""


@dataclass
class ItemCoverage:
    item: OrderItem
    demand: int
    allocated: int

    @property
    def shortage(self) -> int:
        return self.demand - self.allocated

    @property
    def forfeited(self) -> int:
        return self.item.qty - self.demand


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise ResourceNotFound("Order", order_id)
    return order


def _get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise ResourceNotFound("Order", order_id)
    return order


def _forfeited_qty(item: OrderItem) -> int:
    backorder = item.backorder
    if backorder is not None and backorder.status == "canceled":
        return backorder.qty_pending
    return 0


def _coverage(order: Order) -> list[ItemCoverage]:
    """
    Spread each product's allocated quantity over that product's items in item-id order.
    Shipped allocations still count as covered.
    """
    remaining = {}
    for allocation in order.allocations:
        remaining[allocation.product_id] = remaining.get(allocation.product_id, 0) + allocation.allocated_qty

    rows = []
    for item in sorted(order.items, key=lambda i: i.id):
        demand = max(0, item.qty - _forfeited_qty(item))
        got = min(demand, remaining.get(item.product_id, 0))
        remaining[item.product_id] = remaining.get(item.product_id, 0) - got
        rows.append(ItemCoverage(item=item, demand=demand, allocated=got))
    return rows


def _allocated_total(order: Order):
    """Value of what is actually reserved: max(0, allocated subtotal - discount) + shipping."""
    subtotal = ZERO
    for row in _coverage(order):
        subtotal += money(row.item.price_at_purchase) * row.allocated
    discounted = max(ZERO, money(subtotal) - money(order.discount_amount or 0))
    return money(discounted + money(order.shipping_fee or 0))


def _open_issue(order: Order) -> OrderIssue | None:
    return (
        db.session.query(OrderIssue)
        .filter(OrderIssue.order_id == order.id, OrderIssue.status == "open")
        .order_by(OrderIssue.id.desc())
        .first()
    )


def _upsert_open_issue(order: Order, *, issue_type: str, note: str | None, actor=None) -> OrderIssue:
    """Create the order's single open issue, or refresh the one that is already open."""
    sla = timedelta(hours=int(current_app.config.get("ISSUE_SLA_HOURS", 48)))
    now = utcnow()
    issue = _open_issue(order)
    if issue is None:
        issue = OrderIssue(
            order_id=order.id,
            issue_type=issue_type,
            status="open",
            note=note,
            due_at=now + sla,
            created_by=getattr(actor, "id", None),
            created_at=now,
        )
        db.session.add(issue)
    else:
        issue.issue_type = issue_type
        if note:
            issue.note = note
        issue.due_at = now + sla
    return issue


def _resolve_open_issues(order: Order, *, actor=None, issue_type: str | None = None) -> int:
    query = db.session.query(OrderIssue).filter(OrderIssue.order_id == order.id, OrderIssue.status == "open")
    if issue_type is not None:
        query = query.filter(OrderIssue.issue_type == issue_type)
    now = utcnow()
    count = 0
    for issue in query.all():
        issue.status = "resolved"
        issue.resolved_at = now
        issue.resolved_by = getattr(actor, "id", None)
        count += 1
    return count


def _shortage_note(order: Order, rows: list[ItemCoverage]) -> str:
    parts = [
        f"{row.item.product.sku if row.item.product else row.item.product_id} x{row.shortage}"
        for row in rows
        if row.shortage > 0
    ]
    return "Shortage: " + ", ".join(parts)


def _sync_backorders(rows: list[ItemCoverage]) -> list[Backorder]:
    """One backorder per short item; items that became fully covered are marked fulfilled."""
    touched = []
    now = utcnow()
    for row in rows:
        backorder = row.item.backorder
        if backorder is not None and backorder.status == "canceled":
            continue
        if row.shortage > 0:
            if backorder is None:
                backorder = Backorder(order_item_id=row.item.id, created_at=now)
                db.session.add(backorder)
                row.item.backorder = backorder
            backorder.qty_pending = row.shortage
            backorder.status = "waiting_stock"
            touched.append(backorder)
        elif backorder is not None and backorder.status == "waiting_stock":
            backorder.qty_pending = 0
            backorder.status = "fulfilled"
            touched.append(backorder)
    return touched


def _allocate_locked(order: Order, *, actor=None) -> dict:
    """
    Reserve whatever stock is free for the order's outstanding demand.

    Caller holds the order lock and commits. Products are locked here one by one.
    """
    if order.status not in ALLOCATABLE_STATUSES:
        raise PreconditionFailed(
            f"Order {order.id} cannot be allocated in status {order.status}",
            {"order_id": order.id, "status": order.status, "allowed": sorted(ALLOCATABLE_STATUSES)},
        )

    demand: dict[int, int] = {}
    for item in order.items:
        demand[item.product_id] = demand.get(item.product_id, 0) + max(0, item.qty - _forfeited_qty(item))

    existing = {a.product_id: a for a in order.allocations}
    granted = []
    for product_id in sorted(demand):
        allocation = existing.get(product_id)
        already = allocation.allocated_qty if allocation is not None else 0
        outstanding = demand[product_id] - already
        if outstanding < 0:
            raise IntegrityViolation(
                f"Order {order.id} has more allocated than demanded for product {product_id}",
                {"order_id": order.id, "product_id": product_id, "allocated": already, "demand": demand[product_id]},
            )
        if outstanding == 0:
            continue

        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None or product.deleted_at is not None or not product.is_active:
            continue
        can_allocate = min(outstanding, product.stock_quantity)
        if can_allocate <= 0:
            continue

        if allocation is None:
            allocation = OrderAllocation(order_id=order.id, product_id=product_id, allocated_qty=0, status="pending")
            db.session.add(allocation)
            order.allocations.append(allocation)
            existing[product_id] = allocation
        allocation.allocated_qty += can_allocate
        allocation.status = "pending"
        allocation.allocated_by = getattr(actor, "id", None)

        _apply_mutation(
            product, "allocate", -can_allocate,
            reference_type="order", reference_id=order.id,
            note=f"Reserved for order #{order.id}", actor=actor,
        )
        product.allocated_quantity += can_allocate
        granted.append({"product_id": product_id, "qty": can_allocate})

    rows = _coverage(order)
    backorders = _sync_backorders(rows)
    total_allocated = sum(row.allocated for row in rows)
    total_shortage = sum(row.shortage for row in rows)

    if total_shortage > 0:
        _upsert_open_issue(order, issue_type="shortage", note=_shortage_note(order, rows), actor=actor)
        new_status = PARTIALLY_FULFILLED if total_allocated > 0 else PENDING
    else:
        _resolve_open_issues(order, actor=actor, issue_type="shortage")
        new_status = ALLOCATED

    if total_allocated > 0:
        order.total_amount = _allocated_total(order)
    order.status = new_status
    db.session.flush()

    return {
        "order_id": order.id,
        "status": order.status,
        "granted": granted,
        "allocations": [a.to_dict() for a in order.allocations],
        "backorders": [b.to_dict() for b in backorders],
        "total_allocated": total_allocated,
        "total_shortage": total_shortage,
    }


def allocate_order(order_id: int, *, actor) -> dict:
    """
    Reserve stock for an order.

    Re-entrant: a partially fulfilled order is topped up, a fully allocated order is a no-op.

    Returns:
        {"order_id", "status", "granted", "allocations", "backorders", "total_allocated", "total_shortage"}

    Raises:
        PreconditionFailed: order is not pending / partially_fulfilled / allocated
        ConcurrencyConflict: lock contention survived the bounded retry
    """
    require_role(actor, WAREHOUSE_ROLES, "allocate orders")
    previous = {}

    def _op():
        begin_write()
        order = _lock_order(order_id)
        previous["status"] = order.status
        result = _allocate_locked(order, actor=actor)
        db.session.commit()
        return result

    result = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), result["status"], actor)
    return result


def _release_locked(order: Order, *, actor=None, reason: str | None = None) -> list[dict]:
    """
    Return every unshipped reservation of the order to stock.

    Guarded by Order.stock_released: a second call is a no-op. A product that has
    been deleted is skipped with a warning so the rest of the order still releases.
    """
    if order.stock_released:
        return []

    released = []
    allocations = sorted(order.allocations, key=lambda a: a.product_id)
    for allocation in allocations:
        if allocation.status == "shipped" or allocation.allocated_qty <= 0:
            continue
        product = lock_for_update(db.session.query(Product).filter_by(id=allocation.product_id)).first()
        if product is None or product.deleted_at is not None:
            current_app.logger.warning(
                "Release skipped product %s on order %s: product missing or deleted",
                allocation.product_id, order.id,
            )
            continue
        qty = allocation.allocated_qty
        _apply_mutation(
            product, "release", qty,
            reference_type="order", reference_id=order.id,
            note=f"Released from order #{order.id}" + (f": {reason}" if reason else ""),
            actor=actor,
        )
        product.allocated_quantity = max(0, product.allocated_quantity - qty)
        allocation.allocated_qty = 0
        released.append({"product_id": product.id, "sku": product.sku, "qty": qty})

    for item in order.items:
        backorder = item.backorder
        if backorder is not None and backorder.status == "waiting_stock":
            backorder.status = "canceled"
            backorder.notes = f"Released: {reason}" if reason else "Released"

    order.stock_released = True
    db.session.flush()
    return released


def release_order(order_id: int, *, actor, reason: str | None = None) -> dict:
    """
    Release reservations of a canceled or expired order.

    Cancel, ban and the reaper release inside their own transactions; this entry point
    repairs orders whose release never ran. Idempotent via stock_released.
    """
    require_role(actor, WAREHOUSE_ROLES, "release orders")

    def _op():
        begin_write()
        order = _lock_order(order_id)
        if order.status not in (CANCELED, EXPIRED):
            raise PreconditionFailed(
                "Only canceled or expired orders can be released directly; cancel the order instead",
                {"order_id": order.id, "status": order.status},
            )
        released = _release_locked(order, actor=actor, reason=reason)
        db.session.commit()
        return {"order_id": order.id, "released_products": released}

    return run_with_retry(_op)


def cancel_backorder(order_id: int, reason: str, *, actor) -> dict:
    """
    Forfeit the unfulfilled remainder of an order.

    Allocated stock stays reserved. With something allocated the order continues as
    allocated; a preorder (nothing ever allocated) is canceled instead.
    """
    require_role(actor, WAREHOUSE_ROLES, "cancel backorders")
    if not reason or not str(reason).strip():
        raise ValidationError("A reason is required to cancel a backorder", {"field": "reason"})
    reason = str(reason).strip()
    previous = {}

    def _op():
        begin_write()
        order = _lock_order(order_id)
        previous["status"] = order.status
        if order.status not in CANCELABLE_STATUSES:
            raise PreconditionFailed(
                f"Backorder cannot be canceled in status {order.status}",
                {"order_id": order.id, "status": order.status},
            )
        rows = _coverage(order)
        total_shortage = sum(row.shortage for row in rows)
        total_allocated = sum(row.allocated for row in rows)
        if total_shortage <= 0:
            raise PreconditionFailed("Order has no outstanding shortage", {"order_id": order.id})

        now = utcnow()
        canceled_items = []
        for row in rows:
            if row.shortage <= 0:
                continue
            backorder = row.item.backorder
            if backorder is None:
                backorder = Backorder(order_item_id=row.item.id, created_at=now)
                db.session.add(backorder)
                row.item.backorder = backorder
            backorder.qty_pending = row.shortage
            backorder.status = "canceled"
            backorder.notes = f"Reason: {reason}"
            canceled_items.append({"order_item_id": row.item.id, "qty": row.shortage})

        order.cancel_reason = reason
        _resolve_open_issues(order, actor=actor)
        db.session.add(OrderIssue(
            order_id=order.id,
            issue_type="shortage",
            status="resolved",
            note=f"[CANCEL_BACKORDER] {reason}",
            created_by=getattr(actor, "id", None),
            resolved_by=getattr(actor, "id", None),
            resolved_at=now,
            created_at=now,
        ))

        if total_allocated > 0:
            if order.status in (PENDING, PARTIALLY_FULFILLED):
                order.status = ALLOCATED
            elif order.status == HOLD and order.held_from_status in (PENDING, PARTIALLY_FULFILLED):
                order.held_from_status = ALLOCATED
            order.total_amount = _allocated_total(order)
        else:
            _release_locked(order, actor=actor, reason=reason)
            order.status = CANCELED
            order.held_from_status = None

        db.session.commit()
        return {
            "order_id": order.id,
            "status": order.status,
            "canceled_items": canceled_items,
            "forfeited_qty": total_shortage,
        }

    result = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), result["status"], actor)
    return result


def split_backorder(order_id: int, *, actor) -> dict:
    """
    Move the outstanding shortage into a new child order.

    The parent keeps what is allocated and continues as allocated; the child starts
    pending with the shortage quantities at the parent's price snapshots.
    """
    require_role(actor, WAREHOUSE_ROLES, "split backorders")
    previous = {}

    def _op():
        begin_write()
        parent = _lock_order(order_id)
        previous["status"] = parent.status
        if parent.status != PARTIALLY_FULFILLED:
            raise PreconditionFailed(
                "Only partially fulfilled orders can be split",
                {"order_id": parent.id, "status": parent.status},
            )
        rows = _coverage(parent)
        short_rows = [row for row in rows if row.shortage > 0]
        if not short_rows:
            raise PreconditionFailed("Order has no outstanding shortage", {"order_id": parent.id})

        now = utcnow()
        child = Order(
            customer_id=parent.customer_id,
            customer_name=parent.customer_name,
            source=parent.source,
            payment_method=parent.payment_method,
            status=PENDING,
            parent_order_id=parent.id,
            discount_amount=ZERO,
            shipping_fee=ZERO,
            created_at=now,
        )
        db.session.add(child)
        db.session.flush()

        subtotal = ZERO
        for row in short_rows:
            child.items.append(OrderItem(
                product_id=row.item.product_id,
                qty=row.shortage,
                price_at_purchase=row.item.price_at_purchase,
                cost_at_purchase=row.item.cost_at_purchase,
            ))
            subtotal += money(row.item.price_at_purchase) * row.shortage

            backorder = row.item.backorder
            if backorder is None:
                backorder = Backorder(order_item_id=row.item.id, created_at=now)
                db.session.add(backorder)
                row.item.backorder = backorder
            backorder.qty_pending = row.shortage
            backorder.status = "canceled"
            backorder.notes = f"Split to order #{child.id}"
        child.total_amount = money(subtotal)

        parent.status = ALLOCATED
        parent.total_amount = _allocated_total(parent)
        _resolve_open_issues(parent, actor=actor, issue_type="shortage")
        db.session.commit()
        return {"parent": parent.to_dict(include_items=True), "child": child.to_dict(include_items=True)}

    result = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), result["parent"]["status"], actor)
    return result


def list_child_orders(order_id: int) -> list[Order]:
    _get_order(order_id)
    return (
        db.session.query(Order)
        .filter(Order.parent_order_id == order_id)
        .order_by(Order.id.asc())
        .all()
    )


def fulfill_waiting_backorders(product_id: int, *, actor=SYSTEM_ACTOR) -> list[dict]:
    """
    Re-run allocation, oldest order first, for orders waiting on this product.

    Each order is its own transaction; one failing order is logged and skipped.
    """
    order_ids = [
        row[0]
        for row in (
            db.session.query(Order.id, Order.created_at)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .join(Backorder, Backorder.order_item_id == OrderItem.id)
            .filter(
                OrderItem.product_id == product_id,
                Backorder.status == "waiting_stock",
                Order.status.in_(ALLOCATABLE_STATUSES),
            )
            .order_by(Order.created_at.asc(), Order.id.asc())
            .distinct()
            .all()
        )
    ]

    results = []
    for oid in order_ids:
        product = db.session.get(Product, product_id)
        if product is None or product.stock_quantity <= 0:
            break
        try:
            outcome = allocate_order(oid, actor=actor)
        except BackofficeError as exc:
            current_app.logger.warning("Backorder fulfilment skipped order %s: %s", oid, exc)
            continue
        results.append({"order_id": oid, "status": outcome["status"], "granted": outcome["granted"]})
    return results


def _label(total_allocated: int, total_shortage: int) -> str:
    if total_shortage <= 0:
        return "fulfilled"
    if total_allocated > 0:
        return "backorder"
    return "preorder"


def shortage_summary(order_id: int) -> dict:
    order = _get_order(order_id)
    rows = _coverage(order)
    items = []
    for row in rows:
        backorder = row.item.backorder
        items.append({
            "order_item_id": row.item.id,
            "product_id": row.item.product_id,
            "sku": row.item.product.sku if row.item.product else None,
            "ordered_qty": row.item.qty,
            "demand_qty": row.demand,
            "allocated_qty": row.allocated,
            "shortage_qty": row.shortage,
            "forfeited_qty": row.forfeited,
            "backorder_status": backorder.status if backorder is not None else None,
        })
    total_allocated = sum(row.allocated for row in rows)
    total_shortage = sum(row.shortage for row in rows)
    return {
        "order_id": order.id,
        "status": order.status,
        "items": items,
        "total_ordered": sum(row.item.qty for row in rows),
        "total_allocated": total_allocated,
        "total_shortage": total_shortage,
        "label": _label(total_allocated, total_shortage),
    }


def list_pending_allocations(scope: str = "shortage") -> list[dict]:
    """
    Orders still being worked by the warehouse.

    scope="shortage" keeps only orders with outstanding quantity; "all" lists every open one.
    """
    if scope not in ("shortage", "all"):
        raise ValidationError("scope must be 'shortage' or 'all'", {"field": "scope"})

    orders = (
        db.session.query(Order)
        .filter(Order.status.in_(ALLOCATABLE_STATUSES | {HOLD}))
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )
    result = []
    for order in orders:
        rows = _coverage(order)
        total_allocated = sum(row.allocated for row in rows)
        total_shortage = sum(row.shortage for row in rows)
        if scope == "shortage" and total_shortage <= 0:
            continue
        result.append({
            "order_id": order.id,
            "status": order.status,
            "customer_name": order.customer_name,
            "created_at": order.to_dict()["created_at"],
            "total_ordered": sum(row.item.qty for row in rows),
            "total_allocated": total_allocated,
            "total_shortage": total_shortage,
            "label": _label(total_allocated, total_shortage),
        })
    return result


def product_allocations(product_id: int) -> dict:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ResourceNotFound("Product", product_id)
    rows = (
        db.session.query(OrderAllocation, Order)
        .join(Order, Order.id == OrderAllocation.order_id)
        .filter(
            OrderAllocation.product_id == product_id,
            OrderAllocation.allocated_qty > 0,
            OrderAllocation.status != "shipped",
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )
    return {
        "product": product.to_dict(),
        "allocations": [
            {
                "order_id": order.id,
                "order_status": order.status,
                "customer_name": order.customer_name,
                "allocated_qty": allocation.allocated_qty,
                "allocation_status": allocation.status,
            }
            for allocation, order in rows
        ],
        "total_reserved": sum(allocation.allocated_qty for allocation, _ in rows),
    }
