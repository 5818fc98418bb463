from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z, to_iso_date

EXPENSE_STATUSES = ("requested", "approved", "paid", "rejected")


class Expense(db.Model):
    """
    Operating expense. requested -> approved -> paid, or requested -> rejected.

    Nothing is posted until the expense is paid; payment books
    Dr expense account / Cr the cash or bank account the money left from.
    """
    __tablename__ = "expenses"
    __table_args__ = (
        db.Index("ix_expenses_status_date", "status", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(100), nullable=False)
    amount = db.Column(db.Numeric(16, 2), nullable=False)
    date = db.Column(db.Date, nullable=False)
    note = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="requested")

    expense_account_code = db.Column(db.String(16), nullable=False)
    payment_account_code = db.Column(db.String(16), nullable=True)
    journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_reason = db.Column(db.Text, nullable=True)
    paid_by = db.Column(db.Integer, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "amount": to_str(self.amount),
            "date": to_iso_date(self.date),
            "note": self.note,
            "status": self.status,
            "expense_account_code": self.expense_account_code,
            "payment_account_code": self.payment_account_code,
            "journal_id": self.journal_id,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_reason": self.rejected_reason,
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
        }
