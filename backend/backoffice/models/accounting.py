from __future__ import annotations

from ..extensions import db
from ..money import to_str
from ..time_utils import utcnow, to_utc_z, to_iso_date

ACCOUNT_TYPES = ("asset", "liability", "equity", "revenue", "expense")


class Account(db.Model):
    """
    Chart-of-accounts node.

    INVARIANTS:
    - code is the stable key used by postings ("1101", "4100", ...)
    - parent_id forms a tree; rollups sum an account with all its descendants
    - soft-deleted accounts (deleted_at set) may not receive new journal lines
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.Index("ix_accounts_type_active", "type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)
    deleted_at = db.Column(db.DateTime, nullable=True)

    parent = db.relationship("Account", remote_side=[id], backref=db.backref("children", lazy=True))

    def __repr__(self) -> str:
        return f"<Account {self.code} {self.name!r} {self.type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "is_active": self.is_active,
            "parent_id": self.parent_id,
            "deleted_at": to_utc_z(self.deleted_at),
        }


class Journal(db.Model):
    """
    Journal header. Append-only: never updated after commit. Reversals are new
    journals pointing back through reversal_of_id.

    reference_type / reference_id are a loose back-reference (order, invoice,
    purchase, ...) and are not foreign keys.
    """
    __tablename__ = "journals"
    __table_args__ = (
        db.Index("ix_journals_reference", "reference_type", "reference_id"),
        db.Index("ix_journals_date", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    is_adjustment = db.Column(db.Boolean, nullable=False, default=False)
    reversal_of_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    posted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    lines = db.relationship(
        "JournalLine",
        backref="journal",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="JournalLine.id",
    )

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "date": to_iso_date(self.date),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "is_adjustment": self.is_adjustment,
            "reversal_of_id": self.reversal_of_id,
            "created_by": self.created_by,
            "posted_at": to_utc_z(self.posted_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class JournalLine(db.Model):
    __tablename__ = "journal_lines"
    __table_args__ = (
        db.CheckConstraint("debit >= 0", name="ck_journal_lines_debit_nonneg"),
        db.CheckConstraint("credit >= 0", name="ck_journal_lines_credit_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    journal_id = db.Column(db.Integer, db.ForeignKey("journals.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    debit = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    credit = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    account = db.relationship("Account")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "account_code": self.account.code if self.account else None,
            "debit": to_str(self.debit),
            "credit": to_str(self.credit),
        }


class AccountingPeriod(db.Model):
    """A calendar month. Once closed, only adjustment journals may be dated inside it."""
    __tablename__ = "accounting_periods"
    __table_args__ = (
        db.UniqueConstraint("year", "month", name="uq_accounting_periods_year_month"),
    )

    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    is_closed = db.Column(db.Boolean, nullable=False, default=False)
    closed_at = db.Column(db.DateTime, nullable=True)
    closed_by = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "is_closed": self.is_closed,
            "closed_at": to_utc_z(self.closed_at),
            "closed_by": self.closed_by,
        }
