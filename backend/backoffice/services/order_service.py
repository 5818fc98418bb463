# Overview: Order state machine; checkout, gated status transitions, hold / cancel / ship / deliver.

from __future__ import annotations

from ..auth import (
    CREDIT_ROLES,
    CUSTOMER,
    DELIVERY_ROLES,
    DRIVER,
    STAFF_ROLES,
    WAREHOUSE_ROLES,
    require_role,
)
from ..errors import Forbidden, InvalidTransition, PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import Invoice, Order, OrderItem, Product, User
from ..models.orders import ORDER_SOURCES, PAYMENT_METHODS
from ..money import ZERO, discounted_price, money, to_decimal
from ..order_status import (
    ALL_STATUSES,
    CANCELED,
    COMPLETED,
    DEBT_PENDING,
    DELIVERED,
    ENGINE_ONLY_STATUSES,
    HOLD,
    PARTIALLY_FULFILLED,
    PENDING,
    PROCESSING,
    READY_TO_SHIP,
    SHIPPED,
    TERMINAL_STATUSES,
    WAITING_INVOICE,
    WAITING_PAYMENT,
    can_transition,
)
from ..signals import notify_status_change
from ..time_utils import utcnow
from . import invoice_service
from .allocation_service import (
    _coverage,
    _get_order,
    _lock_order,
    _release_locked,
    _resolve_open_issues,
    _shortage_note,
    _upsert_open_issue,
)
from .concurrency import begin_write, run_with_retry
from .inventory_service import _ship_allocations_locked
"""
Order Lifecycle Rules (authoritative)

- Requesting the status an order already has is a no-op.
- allocated / partially_fulfilled are set by the allocation engine, expired by the reaper;
  asking for them directly is an invalid transition.
- waiting_invoice, and waiting_payment / ready_to_ship out of waiting_invoice, go through
  the invoice service; waiting_payment -> ready_to_ship only through payment verification.
- canceled always releases reservations in the same transaction, and voids an unpaid
  invoice (sale and COGS journals reversed). A paid invoice blocks the cancel.
- hold opens (or refreshes) the single open OrderIssue with the SLA deadline and remembers
  the lane it came from; leaving hold resolves open issues, and going back to
  partially_fulfilled re-opens the shortage issue while items are still short.
- shipped needs an active driver unless the order is a store pickup, and a paid invoice for
  transfer orders (debt_pending orders ship on credit).
"""

ISSUE_TYPES = ("shortage", "missing_item")


def get_order(order_id: int) -> Order:
    return _get_order(order_id)


def create_order(
    *,
    items: list[dict],
    actor,
    customer_id: int | None = None,
    customer_name: str | None = None,
    payment_method: str = "transfer_manual",
    source: str = "web",
    discount_amount=0,
    shipping_fee=0,
) -> Order:
    """
    Checkout. Snapshots price_at_purchase (tier discount applied per line, rounded half
    away from zero) and cost_at_purchase (base_price). The order starts pending.
    """
    if actor.role == CUSTOMER:
        if customer_id is not None and customer_id != actor.id:
            raise Forbidden("Customers may only order for themselves", {"customer_id": customer_id})
        customer_id = actor.id
    elif not actor.is_system:
        require_role(actor, STAFF_ROLES, "create orders")

    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment_method", {"field": "payment_method", "allowed": list(PAYMENT_METHODS)})
    if source not in ORDER_SOURCES:
        raise ValidationError("Invalid source", {"field": "source", "allowed": list(ORDER_SOURCES)})
    if not items:
        raise ValidationError("An order needs at least one item", {"field": "items"})

    discount = money(to_decimal(discount_amount, "discount_amount"))
    shipping = money(to_decimal(shipping_fee, "shipping_fee"))
    if discount < 0 or shipping < 0:
        raise ValidationError("discount_amount and shipping_fee cannot be negative", {"fields": ["discount_amount", "shipping_fee"]})

    def _op():
        customer = None
        if customer_id is not None:
            customer = db.session.get(User, customer_id)
            if customer is None:
                raise ResourceNotFound("Customer", customer_id)
            if customer.status != "active":
                raise PreconditionFailed(
                    f"Customer {customer_id} is {customer.status}",
                    {"customer_id": customer_id, "status": customer.status},
                )
        tier_discount = customer.discount_percent if customer is not None else 0

        order = Order(
            customer_id=customer_id,
            customer_name=customer_name or (customer.name if customer is not None else None),
            source=source,
            payment_method=payment_method,
            status=PENDING,
            discount_amount=discount,
            shipping_fee=shipping,
            created_at=utcnow(),
        )
        subtotal = ZERO
        for idx, raw in enumerate(items):
            product_id = raw.get("product_id")
            qty = raw.get("qty")
            if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
                raise ValidationError("qty must be a positive integer", {"line": idx, "field": "qty"})
            product = db.session.get(Product, product_id) if product_id is not None else None
            if product is None or product.deleted_at is not None or not product.is_active:
                raise ResourceNotFound("Product", product_id)
            price = discounted_price(product.price, tier_discount)
            order.items.append(OrderItem(
                product_id=product.id,
                qty=qty,
                price_at_purchase=price,
                cost_at_purchase=money(product.base_price or 0),
            ))
            subtotal += money(price * qty)

        order.total_amount = money(max(ZERO, subtotal - discount) + shipping)
        db.session.add(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    notify_status_change(order.id, None, PENDING, actor)
    return order


def _require_transition_role(order: Order, target: str, actor) -> None:
    if target == CANCELED:
        if actor.role == CUSTOMER:
            if order.customer_id != actor.id or order.status != PENDING:
                raise Forbidden(
                    "Customers may only cancel their own pending orders",
                    {"order_id": order.id, "status": order.status},
                )
            return
        require_role(actor, STAFF_ROLES, "cancel orders")
    elif target == DELIVERED:
        require_role(actor, DELIVERY_ROLES, "confirm delivery")
        if actor.role == DRIVER and order.courier_id != actor.id:
            raise Forbidden("Only the assigned driver may confirm delivery", {"order_id": order.id})
    elif target == DEBT_PENDING:
        require_role(actor, CREDIT_ROLES, "extend credit")
    elif target == COMPLETED:
        require_role(actor, STAFF_ROLES, "complete orders")
    else:
        require_role(actor, WAREHOUSE_ROLES, f"move orders to {target}")


def _latest_invoice(order: Order) -> Invoice | None:
    return (
        db.session.query(Invoice)
        .filter(Invoice.order_id == order.id)
        .order_by(Invoice.id.desc())
        .first()
    )


def _require_paid(order: Order, action: str) -> None:
    invoice = _latest_invoice(order)
    if invoice is None or invoice.payment_status != "paid":
        raise PreconditionFailed(
            f"Invoice must be paid before {action}",
            {"order_id": order.id, "payment_status": invoice.payment_status if invoice else None},
        )


def _require_courier(order: Order, extra: dict) -> None:
    if order.source == "pos_store":
        return
    courier_id = extra.get("courier_id", order.courier_id)
    courier = db.session.get(User, courier_id) if courier_id is not None else None
    if courier is None or courier.role != DRIVER or courier.status != "active":
        raise PreconditionFailed("driver required for shipped", {"order_id": order.id, "courier_id": courier_id})
    order.courier_id = courier.id


def _transition_locked(order: Order, target: str, *, actor, extra: dict) -> bool:
    """
    Apply one gated edge to a locked order. Returns False for a same-status no-op.
    Caller commits.
    """
    current = order.status
    if current == target:
        return False
    if current in TERMINAL_STATUSES or not can_transition(current, target, order.held_from_status):
        raise InvalidTransition(current, target)
    _require_transition_role(order, target, actor)

    if target == HOLD:
        issue_type = extra.get("issue_type", "missing_item")
        if issue_type not in ISSUE_TYPES:
            raise ValidationError("Invalid issue_type", {"field": "issue_type", "allowed": list(ISSUE_TYPES)})
        order.held_from_status = current
        _upsert_open_issue(order, issue_type=issue_type, note=extra.get("note"), actor=actor)
        order.status = HOLD
        return True

    _resolve_open_issues(order, actor=actor)
    if current == HOLD:
        order.held_from_status = None
        if target == PARTIALLY_FULFILLED:
            rows = _coverage(order)
            if any(row.shortage > 0 for row in rows):
                _upsert_open_issue(order, issue_type="shortage", note=_shortage_note(order, rows), actor=actor)

    if target == CANCELED:
        reason = extra.get("reason")
        if reason:
            order.cancel_reason = reason
        invoice_service._void_for_cancel_locked(order, actor=actor)
        _release_locked(order, actor=actor, reason=reason or "canceled")
    elif target == PROCESSING:
        if order.payment_method == "transfer_manual":
            _require_paid(order, "processing")
    elif target == SHIPPED:
        _require_courier(order, extra)
        if order.payment_method == "transfer_manual" and current != DEBT_PENDING:
            _require_paid(order, "shipping")
        _ship_allocations_locked(order, actor=actor)
    elif target == DELIVERED:
        if extra.get("delivery_proof_url"):
            order.delivery_proof_url = extra["delivery_proof_url"]
    elif target == COMPLETED:
        _require_paid(order, "completion")

    order.status = target
    return True


def transition_order(order_id: int, target_status: str, *, actor, extra: dict | None = None) -> Order:
    """
    Move an order to target_status if the edge, role and state gates allow it.

    Raises:
        ValidationError: unknown status string
        InvalidTransition: edge not allowed from the current status
        Forbidden: actor role not allowed for this edge
        PreconditionFailed: edge allowed but a gate failed (courier, payment, ...)
    """
    extra = dict(extra or {})
    if target_status not in ALL_STATUSES:
        raise ValidationError(
            f"Unknown order status: {target_status}",
            {"field": "status", "allowed": sorted(ALL_STATUSES)},
        )

    order = _get_order(order_id)
    current = order.status
    if current == target_status:
        return order

    returning_from_hold = current == HOLD and target_status == order.held_from_status
    if not returning_from_hold:
        if target_status in ENGINE_ONLY_STATUSES:
            raise InvalidTransition(current, target_status)
        if target_status == WAITING_INVOICE:
            invoice_service.request_invoice(order_id, actor=actor)
            return _get_order(order_id)
        if current == WAITING_INVOICE and target_status in (WAITING_PAYMENT, READY_TO_SHIP):
            invoice_service.issue_invoice(order_id, actor=actor, expected_status=target_status)
            return _get_order(order_id)
        if current == WAITING_PAYMENT and target_status == READY_TO_SHIP:
            raise PreconditionFailed(
                "Transfer orders become ready_to_ship when their payment is verified",
                {"order_id": order_id, "current": current, "requested": target_status},
            )

    previous = {}

    def _op():
        begin_write()
        locked = _lock_order(order_id)
        previous["status"] = locked.status
        _transition_locked(locked, target_status, actor=actor, extra=extra)
        db.session.commit()
        return locked

    order = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), order.status, actor)
    return order


def cancel_order(order_id: int, *, actor, reason: str | None = None) -> Order:
    return transition_order(order_id, CANCELED, actor=actor, extra={"reason": reason})


def hold_order(order_id: int, *, actor, note: str | None = None, issue_type: str = "missing_item") -> Order:
    return transition_order(order_id, HOLD, actor=actor, extra={"note": note, "issue_type": issue_type})


def release_hold(order_id: int, *, actor) -> Order:
    """Return a held order to the lane it was held from."""
    order = _get_order(order_id)
    if order.status != HOLD or not order.held_from_status:
        raise PreconditionFailed("Order is not on hold", {"order_id": order_id, "status": order.status})
    return transition_order(order_id, order.held_from_status, actor=actor)


def ship_order(order_id: int, *, actor, courier_id: int | None = None) -> Order:
    extra = {"courier_id": courier_id} if courier_id is not None else {}
    return transition_order(order_id, SHIPPED, actor=actor, extra=extra)


def mark_delivered(order_id: int, *, actor, delivery_proof_url: str | None = None) -> Order:
    return transition_order(order_id, DELIVERED, actor=actor, extra={"delivery_proof_url": delivery_proof_url})


def assign_courier(order_id: int, courier_id: int, *, actor) -> Order:
    """Assign a driver ahead of shipping."""
    require_role(actor, WAREHOUSE_ROLES, "assign couriers")

    def _op():
        order = _lock_order(order_id)
        if order.status not in (READY_TO_SHIP, PROCESSING, DEBT_PENDING, HOLD):
            raise PreconditionFailed(
                f"Cannot assign a courier in status {order.status}",
                {"order_id": order.id, "status": order.status},
            )
        courier = db.session.get(User, courier_id)
        if courier is None or courier.role != DRIVER or courier.status != "active":
            raise PreconditionFailed("Courier must be an active driver", {"courier_id": courier_id})
        order.courier_id = courier.id
        db.session.commit()
        return order

    return run_with_retry(_op)
