# Overview: Post-commit notifications (order status changes) on Flask's blinker signals.

from __future__ import annotations

from blinker import Namespace
from flask import current_app

_signals = Namespace()

# Receivers get: order_id, previous, current, actor (dict). Sent only after the
# transaction that changed the status has committed.
order_status_changed = _signals.signal("order-status-changed")


def notify_status_change(order_id: int, previous: str | None, current: str, actor=None) -> None:
    """
    Fire-and-forget dispatch. A failing receiver (e.g. a WhatsApp sender) never
    affects the committed state, so errors are logged and not re-raised.
    """
    if previous == current:
        return
    try:
        order_status_changed.send(
            current_app._get_current_object(),
            order_id=order_id,
            previous=previous,
            current=current,
            actor=actor.to_dict() if actor is not None else None,
        )
    except Exception:
        current_app.logger.exception(
            "Status-change receiver failed for order %s (%s -> %s)", order_id, previous, current
        )


def log_status_change(sender, order_id, previous, current, actor=None, **_):
    sender.logger.info("Order %s status %s -> %s", order_id, previous, current)


# Receivers get: whatsapp_number, code. The delivery channel subscribes here.
otp_issued = _signals.signal("otp-issued")


def notify_otp_issued(whatsapp_number: str, code: str) -> None:
    try:
        otp_issued.send(current_app._get_current_object(), whatsapp_number=whatsapp_number, code=code)
    except Exception:
        current_app.logger.exception("OTP receiver failed for %s", whatsapp_number)
