# Overview: Service-layer operations for inventory; stock mutations, receiving and reservation consumption.

from __future__ import annotations

from datetime import date

from sqlalchemy import func

from ..auth import SYSTEM_ACTOR, WAREHOUSE_ROLES, FINANCE_ROLES, require_role
from ..errors import IntegrityViolation, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import OrderAllocation, Product, StockMutation
from ..models.inventory import MUTATION_TYPES
from ..money import ZERO, money, to_decimal
from ..time_utils import utcnow
from . import account_service as accounts
from .concurrency import begin_write, lock_for_update, run_with_retry
from .ledger_service import _post_journal_locked
"""
Inventory Invariants (authoritative)

- Product.stock_quantity is the quantity free for allocation; it never goes negative.
- Product.stock_quantity == SUM(StockMutation.qty) for the product at every commit.
- allocated_quantity counts reserved units; shipping consumes the reservation without
  touching stock_quantity (the unit already left stock_quantity when it was allocated).
- Every read-modify-write of a Product row happens under a row lock inside one transaction.
"""

# Manual mutation types and the sign each one requires
MANUAL_TYPES = ("initial", "in", "out", "adjustment")


def _lock_product(product_id: int, *, lock: bool = True, allow_deleted: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or (product.deleted_at is not None and not allow_deleted):
        raise ResourceNotFound("Product", product_id)
    return product


def _check_sign(mutation_type: str, qty: int) -> None:
    if mutation_type not in MUTATION_TYPES:
        raise ValidationError("Invalid mutation type", {"field": "type", "allowed": list(MUTATION_TYPES)})
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError("qty must be an integer", {"field": "qty"})
    if mutation_type in ("initial", "in", "release") and qty <= 0:
        raise ValidationError(f"{mutation_type} mutations need a positive qty", {"field": "qty", "value": qty})
    if mutation_type in ("out", "allocate") and qty >= 0:
        raise ValidationError(f"{mutation_type} mutations need a negative qty", {"field": "qty", "value": qty})
    if mutation_type == "adjustment" and qty == 0:
        raise ValidationError("adjustment qty cannot be zero", {"field": "qty"})


def _apply_mutation(
    product: Product,
    mutation_type: str,
    qty: int,
    *,
    reference_type: str | None = None,
    reference_id=None,
    note: str | None = None,
    actor=None,
) -> StockMutation:
    """Append a mutation and move stock_quantity by qty. Caller holds the product lock."""
    _check_sign(mutation_type, qty)
    new_qty = product.stock_quantity + qty
    if new_qty < 0:
        raise IntegrityViolation(
            f"Stock for {product.sku} would go negative",
            {"product_id": product.id, "stock_quantity": product.stock_quantity, "delta": qty},
        )
    product.stock_quantity = new_qty
    mutation = StockMutation(
        product_id=product.id,
        type=mutation_type,
        qty=qty,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        note=note,
        created_by=getattr(actor, "id", None),
        created_at=utcnow(),
    )
    db.session.add(mutation)
    return mutation


def create_product(
    *,
    sku: str,
    name: str,
    price,
    base_price=0,
    min_stock: int = 0,
    initial_qty: int = 0,
    actor=SYSTEM_ACTOR,
) -> Product:
    require_role(actor, WAREHOUSE_ROLES, "create products")
    if not sku or not name:
        raise ValidationError("sku and name are required", {"fields": ["sku", "name"]})
    if db.session.query(Product.id).filter_by(sku=sku).first() is not None:
        raise ValidationError("SKU already exists", {"field": "sku", "value": sku})

    def _op():
        product = Product(
            sku=sku,
            name=name,
            price=money(to_decimal(price, "price")),
            base_price=money(to_decimal(base_price, "base_price")),
            min_stock=min_stock,
            stock_quantity=0,
            allocated_quantity=0,
        )
        db.session.add(product)
        db.session.flush()
        if initial_qty:
            _apply_mutation(product, "initial", int(initial_qty), note="Initial stock", actor=actor)
        db.session.commit()
        return product

    return run_with_retry(_op)


def record_mutation(
    *,
    product_id: int,
    mutation_type: str,
    qty: int,
    reference_type: str | None = None,
    reference_id=None,
    note: str | None = None,
    actor,
) -> StockMutation:
    """Manual stock movement (initial / in / out / adjustment)."""
    require_role(actor, WAREHOUSE_ROLES, "record stock mutations")
    if mutation_type not in MANUAL_TYPES:
        raise ValidationError(
            "Only initial, in, out and adjustment can be recorded manually",
            {"field": "type", "allowed": list(MANUAL_TYPES)},
        )

    def _op():
        begin_write()
        product = _lock_product(product_id)
        mutation = _apply_mutation(
            product, mutation_type, qty,
            reference_type=reference_type, reference_id=reference_id, note=note, actor=actor,
        )
        db.session.commit()
        return mutation

    return run_with_retry(_op)


def receive_stock(
    *,
    product_id: int,
    qty: int,
    unit_cost=None,
    reference_id=None,
    note: str | None = None,
    actor,
    fulfill_backorders: bool = True,
    on_date: date | None = None,
) -> dict:
    """
    Receive purchased stock (type 'in').

    With unit_cost the purchase is posted as Dr 1300 Persediaan / Cr 2100 Hutang Supplier
    in the same transaction. Afterwards orders waiting on this product are re-allocated
    oldest first, each in its own transaction.
    """
    require_role(actor, WAREHOUSE_ROLES, "receive stock")
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer", {"field": "qty"})
    cost = money(to_decimal(unit_cost, "unit_cost")) if unit_cost is not None else None
    if cost is not None and cost < 0:
        raise ValidationError("unit_cost cannot be negative", {"field": "unit_cost"})

    def _op():
        begin_write()
        product = _lock_product(product_id)
        mutation = _apply_mutation(
            product, "in", qty,
            reference_type="purchase", reference_id=reference_id, note=note, actor=actor,
        )
        db.session.flush()
        journal = None
        if cost is not None and cost > 0:
            amount = money(cost * qty)
            journal = _post_journal_locked(
                lines=[
                    {"account_code": accounts.INVENTORY, "debit": amount},
                    {"account_code": accounts.AP_SUPPLIER, "credit": amount},
                ],
                date=on_date or utcnow().date(),
                reference_type="purchase",
                reference_id=reference_id if reference_id is not None else f"mutation-{mutation.id}",
                description=f"Receive {qty} x {product.sku}",
                actor=actor,
            )
        db.session.commit()
        return mutation, journal

    mutation, journal = run_with_retry(_op)

    reallocated = []
    if fulfill_backorders:
        from .allocation_service import fulfill_waiting_backorders
        reallocated = fulfill_waiting_backorders(product_id, actor=SYSTEM_ACTOR)

    return {
        "mutation": mutation.to_dict(),
        "journal_id": journal.id if journal is not None else None,
        "reallocated_orders": reallocated,
    }


def record_supplier_payment(*, amount, reference_id, actor, on_date: date | None = None, note: str | None = None):
    """Pay a supplier from the bank: Dr 2100 Hutang Supplier / Cr 1102 Bank."""
    require_role(actor, FINANCE_ROLES, "record supplier payments")
    value = money(to_decimal(amount))
    if value <= ZERO:
        raise ValidationError("amount must be positive", {"field": "amount"})
    if reference_id is None:
        raise ValidationError("reference_id is required", {"field": "reference_id"})

    def _op():
        begin_write()
        journal = _post_journal_locked(
            lines=[
                {"account_code": accounts.AP_SUPPLIER, "debit": value},
                {"account_code": accounts.BANK, "credit": value},
            ],
            date=on_date or utcnow().date(),
            reference_type="purchase",
            reference_id=reference_id,
            description=note or f"Supplier payment {reference_id}",
            actor=actor,
        )
        db.session.commit()
        return journal

    return run_with_retry(_op)


def _ship_allocations_locked(order, *, actor=None) -> list[dict]:
    """
    Consume the order's reservations when it ships.

    allocated_quantity drops by each allocation; stock_quantity is unchanged because
    the units left it at allocation time.
    """
    shipped = []
    allocations = (
        db.session.query(OrderAllocation)
        .filter(OrderAllocation.order_id == order.id)
        .order_by(OrderAllocation.product_id)
        .all()
    )
    for allocation in allocations:
        if allocation.status == "shipped" or allocation.allocated_qty <= 0:
            continue
        product = _lock_product(allocation.product_id, allow_deleted=True)
        product.allocated_quantity = max(0, product.allocated_quantity - allocation.allocated_qty)
        allocation.status = "shipped"
        shipped.append({"product_id": product.id, "qty": allocation.allocated_qty})
    return shipped


def check_stock_consistency(product_id: int | None = None) -> list[dict]:
    """Products whose stock_quantity differs from the sum of their mutations."""
    sums = (
        db.session.query(StockMutation.product_id, func.coalesce(func.sum(StockMutation.qty), 0).label("total"))
        .group_by(StockMutation.product_id)
        .subquery()
    )
    query = (
        db.session.query(Product.id, Product.sku, Product.stock_quantity, func.coalesce(sums.c.total, 0))
        .outerjoin(sums, sums.c.product_id == Product.id)
    )
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    drift = []
    for pid, sku, stock, total in query.all():
        if int(stock) != int(total):
            drift.append({"product_id": pid, "sku": sku, "stock_quantity": int(stock), "mutation_sum": int(total)})
    return drift


def list_mutations(product_id: int, *, limit: int = 200) -> list[StockMutation]:
    _lock_product(product_id, lock=False, allow_deleted=True)
    return (
        db.session.query(StockMutation)
        .filter(StockMutation.product_id == product_id)
        .order_by(StockMutation.id.desc())
        .limit(limit)
        .all()
    )

