from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z

RETURN_STATUSES = ("pending", "approved", "rejected", "pickup_assigned", "received", "completed")


class SalesReturn(db.Model):
    """
    Customer return of delivered goods, one row per order line.

    refund_expense_id points at the paid Expense that disbursed the refund;
    restock_journal_id at the Dr 1300 / Cr 5100 entry when the goods went back on the shelf.
    """
    __tablename__ = "sales_returns"
    __table_args__ = (
        db.Index("ix_sales_returns_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending")
    admin_response = db.Column(db.Text, nullable=True)

    courier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    refund_amount = db.Column(db.Numeric(16, 2), nullable=True)
    is_back_to_stock = db.Column(db.Boolean, nullable=True)
    restock_journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)
    refund_expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=True)
    refund_disbursed_at = db.Column(db.DateTime, nullable=True)
    refund_disbursed_by = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("returns", lazy=True))
    order_item = db.relationship("OrderItem")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "product_id": self.product_id,
            "qty": self.qty,
            "reason": self.reason,
            "status": self.status,
            "admin_response": self.admin_response,
            "courier_id": self.courier_id,
            "refund_amount": to_str(self.refund_amount),
            "is_back_to_stock": self.is_back_to_stock,
            "restock_journal_id": self.restock_journal_id,
            "refund_expense_id": self.refund_expense_id,
            "refund_disbursed_at": to_utc_z(self.refund_disbursed_at),
            "created_at": to_utc_z(self.created_at),
        }
