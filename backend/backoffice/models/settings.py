from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class Setting(db.Model):
    """Key/value settings store (JSON values), e.g. company_tax_config."""
    __tablename__ = "settings"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.JSON, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    updated_by = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
            "updated_by": self.updated_by,
        }
