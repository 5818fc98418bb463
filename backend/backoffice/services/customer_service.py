# Overview: Customer moderation; banning cascades into canceling open orders and releasing their stock.

from __future__ import annotations

from flask import current_app

from ..auth import CUSTOMER, CUSTOMER_ADMIN_ROLES, require_role
from ..errors import PreconditionFailed, ResourceNotFound
from ..extensions import db
from ..models import Order, User
from ..order_status import CANCELABLE_STATUSES, CANCELED
from ..signals import notify_status_change
from .allocation_service import _release_locked, _resolve_open_issues
from .concurrency import begin_write, lock_for_update, run_with_retry
from .invoice_service import _live_invoice, _void_for_cancel_locked


def ban_customer(customer_id: int, *, actor, reason: str | None = None) -> dict:
    """
    Ban a customer and cancel every order of theirs still in the cancelable set.

    The user row, the orders, their voided invoices and every released product are
    changed in one transaction: either the whole cascade lands or none of it does.
    Orders with a paid invoice are left alone and reported under skipped_orders.
    """
    require_role(actor, CUSTOMER_ADMIN_ROLES, "ban customers")
    cancel_reason = reason or "Customer banned"
    changed = []

    def _op():
        changed.clear()
        begin_write()
        user = lock_for_update(db.session.query(User).filter_by(id=customer_id)).first()
        if user is None:
            raise ResourceNotFound("Customer", customer_id)
        if user.role != CUSTOMER:
            raise PreconditionFailed("Only customers can be banned", {"user_id": user.id, "role": user.role})
        user.status = "banned"

        orders = (
            lock_for_update(
                db.session.query(Order).filter(
                    Order.customer_id == customer_id,
                    Order.status.in_(CANCELABLE_STATUSES),
                )
            )
            .order_by(Order.id.asc())
            .all()
        )
        canceled = []
        skipped = []
        for order in orders:
            previous = order.status
            invoice = _live_invoice(order.id)
            if invoice is not None and invoice.payment_status == "paid":
                current_app.logger.warning(
                    "Ban of customer %s skipped paid order %s (invoice %s)", customer_id, order.id, invoice.id
                )
                skipped.append({"order_id": order.id, "status": previous, "invoice_id": invoice.id})
                continue
            voided = _void_for_cancel_locked(order, actor=actor)
            _resolve_open_issues(order, actor=actor)
            released = _release_locked(order, actor=actor, reason=cancel_reason)
            order.status = CANCELED
            order.held_from_status = None
            order.cancel_reason = cancel_reason
            changed.append((order.id, previous))
            canceled.append({
                "order_id": order.id,
                "previous_status": previous,
                "released_products": released,
                "voided_invoice": voided,
            })

        db.session.commit()
        return {
            "customer_id": customer_id,
            "status": "banned",
            "canceled_orders": canceled,
            "skipped_orders": skipped,
        }

    result = run_with_retry(_op)
    for order_id, previous in changed:
        notify_status_change(order_id, previous, CANCELED, actor)
    return result


def unban_customer(customer_id: int, *, actor) -> User:
    """Reactivate a banned customer. Canceled orders stay canceled."""
    require_role(actor, CUSTOMER_ADMIN_ROLES, "unban customers")

    def _op():
        user = lock_for_update(db.session.query(User).filter_by(id=customer_id)).first()
        if user is None:
            raise ResourceNotFound("Customer", customer_id)
        if user.status != "banned":
            raise PreconditionFailed("Customer is not banned", {"user_id": user.id, "status": user.status})
        user.status = "active"
        db.session.commit()
        return user

    return run_with_retry(_op)
