from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z

USER_STATUSES = ("active", "banned", "inactive")


class User(db.Model):
    """Staff member or customer. Credentials live with the upstream auth service."""
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role_status", "role", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="customer")
    status = db.Column(db.String(16), nullable=False, default="active")
    whatsapp_number = db.Column(db.String(32), nullable=True, unique=True)
    # Tier discount applied to price_at_purchase at checkout
    discount_percent = db.Column(db.Numeric(6, 3), nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "whatsapp_number": self.whatsapp_number,
            "discount_percent": str(self.discount_percent) if self.discount_percent is not None else None,
            "created_at": to_utc_z(self.created_at),
        }


class ChatSession(db.Model):
    """Chat thread state; the sweep switches the bot back on after staff go idle."""
    __tablename__ = "chat_sessions"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    platform = db.Column(db.String(16), nullable=False, default="whatsapp")
    is_bot_active = db.Column(db.Boolean, nullable=False, default=True)
    last_message_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "platform": self.platform,
            "is_bot_active": self.is_bot_active,
            "last_message_at": to_utc_z(self.last_message_at),
        }
