# Overview: Customer returns of delivered goods; review, pickup, restock and refund payout.

from __future__ import annotations

from sqlalchemy import func

from ..auth import CUSTOMER, DRIVER, FINANCE_ROLES, WAREHOUSE_ROLES, require_role
from ..errors import Forbidden, PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import OrderItem, SalesReturn, User
from ..models.returns import RETURN_STATUSES
from ..money import money, to_decimal
from ..order_status import COMPLETED, DELIVERED
from ..time_utils import utcnow
from . import account_service as accounts
from .allocation_service import _lock_order
from .concurrency import begin_write, lock_for_update, run_with_retry
from .expense_service import _check_payment_account, _new_expense, _pay_locked
from .inventory_service import _apply_mutation, _lock_product
from .ledger_service import _post_journal_locked
"""
Return Rules (authoritative)

- Only delivered or completed orders take returns; the customer who placed the order
  (or staff on their behalf) files them, one line item at a time.
- The non-rejected returns of an item never exceed what was ordered, and an item has
  at most one return in flight.
- pending -> approved | rejected -> pickup_assigned -> received -> completed.
- Completing a return with is_back_to_stock puts the units back into stock (an "in"
  mutation) and moves their cost out of COGS: Dr 1300 / Cr 5100.
- The refund is paid once, as a paid "Refund Retur" expense on 5400.
"""

OPEN_RETURN_STATUSES = ("pending", "approved", "pickup_assigned", "received")
REFUNDABLE_STATUSES = ("approved", "pickup_assigned", "received", "completed")
REFUND_CATEGORY = "Refund Retur"


def _lock_return(return_id: int) -> SalesReturn:
    row = lock_for_update(db.session.query(SalesReturn).filter_by(id=return_id)).first()
    if row is None:
        raise ResourceNotFound("SalesReturn", return_id)
    return row


def _require_status(row: SalesReturn, expected: str, action: str) -> None:
    if row.status != expected:
        raise PreconditionFailed(
            f"Cannot {action} a {row.status} return",
            {"return_id": row.id, "status": row.status, "expected": expected},
        )


def _returned_qty(order_item_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(SalesReturn.qty), 0))
        .filter(SalesReturn.order_item_id == order_item_id, SalesReturn.status != "rejected")
        .scalar()
    )
    return int(total or 0)


def get_return(return_id: int) -> SalesReturn:
    row = db.session.get(SalesReturn, return_id)
    if row is None:
        raise ResourceNotFound("SalesReturn", return_id)
    return row


def list_returns(*, status: str | None = None, order_id: int | None = None, limit: int = 100) -> list[SalesReturn]:
    query = db.session.query(SalesReturn)
    if status:
        if status not in RETURN_STATUSES:
            raise ValidationError("Invalid status", {"field": "status", "allowed": list(RETURN_STATUSES)})
        query = query.filter(SalesReturn.status == status)
    if order_id is not None:
        query = query.filter(SalesReturn.order_id == order_id)
    return query.order_by(SalesReturn.id.desc()).limit(limit).all()


def request_return(order_id: int, *, order_item_id: int, qty, actor, reason: str | None = None) -> SalesReturn:
    """File a return for one line of a delivered order."""
    if actor is None or not (actor.is_system or actor.is_staff or actor.role == CUSTOMER):
        raise Forbidden("Only the customer or staff may request returns", {"action": "request returns"})
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer", {"field": "qty"})

    def _op():
        begin_write()
        order = _lock_order(order_id)
        if actor.role == CUSTOMER and order.customer_id != actor.id:
            raise Forbidden("Customers may only return their own orders", {"order_id": order.id})
        if order.status not in (DELIVERED, COMPLETED):
            raise PreconditionFailed(
                f"Returns need a delivered order, not {order.status}",
                {"order_id": order.id, "status": order.status},
            )
        item = db.session.get(OrderItem, order_item_id)
        if item is None or item.order_id != order.id:
            raise ResourceNotFound("OrderItem", order_item_id)

        in_flight = (
            db.session.query(SalesReturn.id)
            .filter(SalesReturn.order_item_id == item.id, SalesReturn.status.in_(OPEN_RETURN_STATUSES))
            .first()
        )
        if in_flight is not None:
            raise PreconditionFailed(
                "This item already has a return in progress",
                {"order_item_id": item.id, "return_id": in_flight[0]},
            )
        available = item.qty - _returned_qty(item.id)
        if qty > available:
            raise ValidationError(
                "Return qty exceeds what is left to return",
                {"field": "qty", "available": max(available, 0)},
            )

        row = SalesReturn(
            order_id=order.id,
            order_item_id=item.id,
            product_id=item.product_id,
            qty=qty,
            reason=reason,
            status="pending",
            created_by=getattr(actor, "id", None),
            created_at=utcnow(),
        )
        db.session.add(row)
        db.session.commit()
        return row

    return run_with_retry(_op)


def review_return(return_id: int, *, approve: bool, actor, admin_response: str | None = None) -> SalesReturn:
    require_role(actor, WAREHOUSE_ROLES, "review returns")

    def _op():
        row = _lock_return(return_id)
        _require_status(row, "pending", "review")
        row.status = "approved" if approve else "rejected"
        row.admin_response = admin_response
        db.session.commit()
        return row

    return run_with_retry(_op)


def assign_pickup(return_id: int, courier_id: int, *, actor, refund_amount=None) -> SalesReturn:
    """approved -> pickup_assigned. refund_amount is capped at what the customer paid for the units."""
    require_role(actor, WAREHOUSE_ROLES, "assign return pickups")
    refund = money(to_decimal(refund_amount, "refund_amount")) if refund_amount is not None else None
    if refund is not None and refund < 0:
        raise ValidationError("refund_amount cannot be negative", {"field": "refund_amount"})

    def _op():
        row = _lock_return(return_id)
        _require_status(row, "approved", "assign a pickup for")
        courier = db.session.get(User, courier_id)
        if courier is None or courier.role != DRIVER or courier.status != "active":
            raise PreconditionFailed("Courier must be an active driver", {"courier_id": courier_id})
        if refund is not None:
            ceiling = money(money(row.order_item.price_at_purchase) * row.qty)
            if refund > ceiling:
                raise ValidationError(
                    "refund_amount exceeds the price paid for the returned units",
                    {"field": "refund_amount", "max": str(ceiling)},
                )
            row.refund_amount = refund
        row.courier_id = courier.id
        row.status = "pickup_assigned"
        db.session.commit()
        return row

    return run_with_retry(_op)


def receive_return(return_id: int, *, actor) -> SalesReturn:
    """pickup_assigned -> received, by the warehouse or the driver doing the pickup."""
    require_role(actor, WAREHOUSE_ROLES | {DRIVER}, "receive returns")

    def _op():
        row = _lock_return(return_id)
        if actor.role == DRIVER and row.courier_id != actor.id:
            raise Forbidden("Only the assigned driver may receive this return", {"return_id": row.id})
        _require_status(row, "pickup_assigned", "receive")
        row.status = "received"
        db.session.commit()
        return row

    return run_with_retry(_op)


def complete_return(return_id: int, *, is_back_to_stock: bool, actor) -> SalesReturn:
    require_role(actor, WAREHOUSE_ROLES, "complete returns")

    def _op():
        begin_write()
        row = _lock_return(return_id)
        _require_status(row, "received", "complete")
        row.is_back_to_stock = bool(is_back_to_stock)
        if row.is_back_to_stock:
            product = _lock_product(row.product_id)
            _apply_mutation(
                product,
                "in",
                row.qty,
                reference_type="sales_return",
                reference_id=row.id,
                note=f"Return #{row.id} from order #{row.order_id}",
                actor=actor,
            )
            cost = money(money(row.order_item.cost_at_purchase or 0) * row.qty)
            if cost > 0:
                journal = _post_journal_locked(
                    lines=[
                        {"account_code": accounts.INVENTORY, "debit": cost},
                        {"account_code": accounts.COGS, "credit": cost},
                    ],
                    date=utcnow().date(),
                    reference_type="sales_return",
                    reference_id=row.id,
                    description=f"Restock return #{row.id} ({product.sku} x{row.qty})",
                    actor=actor,
                )
                row.restock_journal_id = journal.id
        row.status = "completed"
        db.session.commit()
        return row

    return run_with_retry(_op)


def disburse_refund(return_id: int, *, actor, payment_account_code: str = accounts.CASH) -> SalesReturn:
    """Pay the agreed refund once, booked as a paid expense (Dr 5400 / Cr cash or bank)."""
    require_role(actor, FINANCE_ROLES, "disburse refunds")
    source = _check_payment_account(str(payment_account_code))

    def _op():
        begin_write()
        row = _lock_return(return_id)
        if row.status not in REFUNDABLE_STATUSES:
            raise PreconditionFailed(
                f"Cannot refund a {row.status} return",
                {"return_id": row.id, "status": row.status},
            )
        if row.refund_expense_id is not None:
            raise PreconditionFailed(
                "Refund already disbursed",
                {"return_id": row.id, "expense_id": row.refund_expense_id},
            )
        if row.refund_amount is None or money(row.refund_amount) <= 0:
            raise PreconditionFailed("Return has no refund amount", {"return_id": row.id})

        now = utcnow()
        expense = _new_expense(
            category=REFUND_CATEGORY,
            amount=row.refund_amount,
            on_date=now.date(),
            note=f"Return #{row.id} order #{row.order_id}",
            expense_account_code=accounts.REFUND_EXPENSE,
            actor=actor,
        )
        expense.status = "approved"
        expense.approved_by = getattr(actor, "id", None)
        expense.approved_at = now
        db.session.add(expense)
        _pay_locked(expense, source, actor=actor)

        row.refund_expense_id = expense.id
        row.refund_disbursed_at = now
        row.refund_disbursed_by = getattr(actor, "id", None)
        db.session.commit()
        return row

    return run_with_retry(_op)
