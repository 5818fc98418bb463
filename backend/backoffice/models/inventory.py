from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z

MUTATION_TYPES = ("initial", "in", "out", "adjustment", "allocate", "release")


class Product(db.Model):
    """
    Inventory item.

    STOCK SEMANTICS:
    - stock_quantity is the quantity free for new allocations
    - allocated_quantity is reserved against open orders
    - physical on-hand = stock_quantity + allocated_quantity until the order ships
    - stock_quantity == sum(StockMutation.qty) at all times and is never negative
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_nonneg"),
        db.CheckConstraint("allocated_quantity >= 0", name="ck_products_allocated_nonneg"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    allocated_quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)

    # Selling price and unit cost (HPP)
    price = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    base_price = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity} allocated={self.allocated_quantity}>"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "stock_quantity": self.stock_quantity,
            "allocated_quantity": self.allocated_quantity,
            "min_stock": self.min_stock,
            "price": to_str(self.price),
            "base_price": to_str(self.base_price),
            "is_active": self.is_active,
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
        }


class StockMutation(db.Model):
    """
    Append-only stock ledger. qty is the signed delta applied to Product.stock_quantity.

    - initial / in: qty > 0
    - out: qty < 0
    - adjustment: qty != 0
    - allocate: qty < 0 (reservation moves stock into allocated_quantity)
    - release: qty > 0 (reservation returned)
    """
    __tablename__ = "stock_mutations"
    __table_args__ = (
        db.Index("ix_stock_mutations_product_created", "product_id", "created_at"),
        db.Index("ix_stock_mutations_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("mutations", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "qty": self.qty,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
