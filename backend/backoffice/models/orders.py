from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z

ORDER_SOURCES = ("web", "whatsapp", "pos_store")
PAYMENT_METHODS = ("transfer_manual", "cod", "cash_store")


class Order(db.Model):
    """
    Customer order. Never physically deleted; canceled / expired orders stay as rows.

    CONCURRENCY:
    - status changes lock the order row (SELECT ... FOR UPDATE) and bump version_id
    - stock_released guards against double release of reservations
    - held_from_status remembers the lane an order was in when put on hold
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    source = db.Column(db.String(16), nullable=False, default="web")
    payment_method = db.Column(db.String(32), nullable=False, default="transfer_manual")

    status = db.Column(db.String(32), nullable=False, default="pending")
    held_from_status = db.Column(db.String(32), nullable=True)

    total_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    shipping_fee = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    courier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    delivery_proof_url = db.Column(db.String(512), nullable=True)

    stock_released = db.Column(db.Boolean, nullable=False, default=False)
    parent_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    expired_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem", backref="order", lazy=True, cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    allocations = db.relationship(
        "OrderAllocation", backref="order", lazy=True, cascade="all, delete-orphan", order_by="OrderAllocation.id"
    )
    issues = db.relationship("OrderIssue", backref="order", lazy=True, order_by="OrderIssue.id")
    customer = db.relationship("User", foreign_keys=[customer_id])
    courier = db.relationship("User", foreign_keys=[courier_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} released={self.stock_released}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "source": self.source,
            "payment_method": self.payment_method,
            "status": self.status,
            "held_from_status": self.held_from_status,
            "total_amount": to_str(self.total_amount),
            "discount_amount": to_str(self.discount_amount),
            "shipping_fee": to_str(self.shipping_fee),
            "courier_id": self.courier_id,
            "delivery_proof_url": self.delivery_proof_url,
            "stock_released": self.stock_released,
            "parent_order_id": self.parent_order_id,
            "cancel_reason": self.cancel_reason,
            "expired_at": to_utc_z(self.expired_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["allocations"] = [a.to_dict() for a in self.allocations]
        return data


class OrderItem(db.Model):
    """Line item. qty and the price/cost snapshots are fixed at checkout."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("qty > 0", name="ck_order_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    qty = db.Column(db.Integer, nullable=False)
    price_at_purchase = db.Column(db.Numeric(16, 2), nullable=False)
    cost_at_purchase = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    product = db.relationship("Product")
    backorder = db.relationship("Backorder", backref="order_item", uselist=False, lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "qty": self.qty,
            "price_at_purchase": to_str(self.price_at_purchase),
            "cost_at_purchase": to_str(self.cost_at_purchase),
        }


class OrderAllocation(db.Model):
    """
    Stock reservation for one product of one order. Top-ups update the same row.

    INVARIANT: allocated_qty <= sum(OrderItem.qty) for the same order+product.
    """
    __tablename__ = "order_allocations"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_allocations_order_product"),
        db.CheckConstraint("allocated_qty >= 0", name="ck_order_allocations_qty_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    allocated_qty = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="pending")
    allocated_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "allocated_qty": self.allocated_qty,
            "status": self.status,
            "allocated_by": self.allocated_by,
            "updated_at": to_utc_z(self.updated_at),
        }


class Backorder(db.Model):
    """
    Outstanding quantity for one order item.

    qty_pending == item qty with nothing allocated is a preorder; a partial
    allocation with a remainder is a true backorder.
    """
    __tablename__ = "backorders"
    __table_args__ = (
        db.Index("ix_backorders_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, unique=True)
    qty_pending = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="waiting_stock")
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "qty_pending": self.qty_pending,
            "status": self.status,
            "notes": self.notes,
        }


class OrderIssue(db.Model):
    """Shortage / missing-item flag. At most one open issue per order (enforced in services)."""
    __tablename__ = "order_issues"
    __table_args__ = (
        db.Index("ix_order_issues_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    issue_type = db.Column(db.String(32), nullable=False, default="shortage")
    status = db.Column(db.String(16), nullable=False, default="open")
    note = db.Column(db.Text, nullable=True)
    due_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "issue_type": self.issue_type,
            "status": self.status,
            "note": self.note,
            "due_at": to_utc_z(self.due_at),
            "resolved_at": to_utc_z(self.resolved_at),
            "created_by": self.created_by,
            "resolved_by": self.resolved_by,
            "created_at": to_utc_z(self.created_at),
        }
