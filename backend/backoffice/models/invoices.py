from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z

PAYMENT_STATUSES = ("draft", "unpaid", "paid", "cod_pending")
CREDIT_NOTE_MODES = ("receivable", "cash_refund")
CREDIT_NOTE_STATUSES = ("draft", "posted", "refunded")


class Invoice(db.Model):
    """
    Invoice for an order (1:1 today; order_id stays nullable for consolidated invoicing).

    tax_mode_snapshot and tax_percent are frozen at issuance; later tax setting
    changes never touch an issued invoice. paid / cod_pending invoices cannot be deleted.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.Index("ix_invoices_status", "payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    invoice_number = db.Column(db.String(64), nullable=True, unique=True)

    payment_method = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="draft")
    amount_paid = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    subtotal = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    shipping_fee = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    tax_percent = db.Column(db.Numeric(6, 3), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    pph_final_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    tax_mode_snapshot = db.Column(db.String(16), nullable=True)

    payment_proof_url = db.Column(db.String(512), nullable=True)
    verified_by = db.Column(db.Integer, nullable=True)
    payment_journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    issued_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("invoices", lazy=True))
    items = db.relationship(
        "InvoiceItem", backref="invoice", lazy=True, cascade="all, delete-orphan", order_by="InvoiceItem.id"
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "amount_paid": to_str(self.amount_paid),
            "subtotal": to_str(self.subtotal),
            "discount_amount": to_str(self.discount_amount),
            "shipping_fee": to_str(self.shipping_fee),
            "tax_percent": str(self.tax_percent) if self.tax_percent is not None else None,
            "tax_amount": to_str(self.tax_amount),
            "pph_final_amount": to_str(self.pph_final_amount),
            "total": to_str(self.total),
            "tax_mode_snapshot": self.tax_mode_snapshot,
            "payment_proof_url": self.payment_proof_url,
            "verified_by": self.verified_by,
            "verified_at": to_utc_z(self.verified_at),
            "payment_journal_id": self.payment_journal_id,
            "issued_at": to_utc_z(self.issued_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(16, 2), nullable=False)
    unit_cost = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(16, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "qty": self.qty,
            "unit_price": to_str(self.unit_price),
            "unit_cost": to_str(self.unit_cost),
            "line_total": to_str(self.line_total),
        }


class CreditNote(db.Model):
    """
    Reduction of an issued invoice (return, price correction).

    receivable mode credits the invoice's receivable; cash_refund mode books a refund
    payable (2203) that is cleared when the money is paid out.
    """
    __tablename__ = "credit_notes"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    credit_note_number = db.Column(db.String(64), nullable=True, unique=True)
    amount = db.Column(db.Numeric(16, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    reason = db.Column(db.Text, nullable=True)
    mode = db.Column(db.String(16), nullable=False, default="receivable")
    status = db.Column(db.String(16), nullable=False, default="draft")

    journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)
    refund_journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    posted_by = db.Column(db.Integer, nullable=True)
    posted_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", backref=db.backref("credit_notes", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "credit_note_number": self.credit_note_number,
            "amount": to_str(self.amount),
            "tax_amount": to_str(self.tax_amount),
            "reason": self.reason,
            "mode": self.mode,
            "status": self.status,
            "journal_id": self.journal_id,
            "refund_journal_id": self.refund_journal_id,
            "posted_at": to_utc_z(self.posted_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
        }
