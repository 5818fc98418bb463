# Overview: Periodic sweeps; expiring stale pending orders (with stock release) and reactivating idle chat bots.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..auth import SYSTEM_ACTOR
from ..extensions import db
from ..models import ChatSession, Order
from ..order_status import EXPIRED, PENDING
from ..signals import notify_status_change
from ..time_utils import utcnow
from .allocation_service import _lock_order, _release_locked, _resolve_open_issues
from .concurrency import begin_write, run_with_retry


def expire_stale_orders(now: datetime | None = None) -> dict:
    """
    Expire pending orders older than ORDER_EXPIRY_DAYS.

    Each order is fetched, released and marked expired in its own transaction, so a
    partial reservation always goes back to stock. A failing order is logged and the
    sweep moves on. Re-running is safe: expired orders no longer match status=pending
    and released ones are guarded by stock_released.
    """
    now = now or utcnow()
    days = int(current_app.config.get("ORDER_EXPIRY_DAYS", 30))
    cutoff = now - timedelta(days=days)

    order_ids = [
        row[0]
        for row in (
            db.session.query(Order.id)
            .filter(Order.status == PENDING, Order.created_at < cutoff)
            .order_by(Order.id.asc())
            .all()
        )
    ]

    expired = []
    failed = []
    for order_id in order_ids:
        def _op(order_id=order_id):
            begin_write()
            order = _lock_order(order_id)
            if order.status != PENDING or order.created_at >= cutoff:
                db.session.rollback()
                return None
            released = _release_locked(order, actor=SYSTEM_ACTOR, reason="expired")
            _resolve_open_issues(order, actor=SYSTEM_ACTOR)
            order.status = EXPIRED
            order.expired_at = now
            db.session.commit()
            return released

        try:
            released = run_with_retry(_op)
        except Exception:
            current_app.logger.exception("Failed to expire order %s", order_id)
            failed.append(order_id)
            continue
        if released is None:
            continue
        expired.append({"order_id": order_id, "released_products": released})
        notify_status_change(order_id, PENDING, EXPIRED, SYSTEM_ACTOR)

    if expired or failed:
        current_app.logger.info("Order reaper expired %d order(s), %d failed", len(expired), len(failed))
    return {"expired": expired, "failed": failed, "cutoff": cutoff.isoformat()}


def reactivate_idle_bot_sessions(now: datetime | None = None) -> int:
    """Switch the bot back on for chats idle longer than BOT_SESSION_IDLE_MINUTES."""
    now = now or utcnow()
    minutes = int(current_app.config.get("BOT_SESSION_IDLE_MINUTES", 120))
    cutoff = now - timedelta(minutes=minutes)

    def _op():
        count = (
            db.session.query(ChatSession)
            .filter(ChatSession.is_bot_active.is_(False), ChatSession.last_message_at < cutoff)
            .update({ChatSession.is_bot_active: True}, synchronize_session=False)
        )
        db.session.commit()
        return count

    return run_with_retry(_op)


def run_sweeps(now: datetime | None = None) -> dict:
    """One pass of every periodic job."""
    reaper = expire_stale_orders(now)
    bots = reactivate_idle_bot_sessions(now)
    return {"expired_orders": len(reaper["expired"]), "failed_orders": reaper["failed"], "bots_reactivated": bots}
