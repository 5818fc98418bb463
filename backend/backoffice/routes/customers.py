# Overview: Flask API routes for customer moderation and phone verification.

from flask import Blueprint, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import BackofficeError
from ..services import customer_service
from ..signals import notify_otp_issued
from ..validation import json_body, require_fields
from . import error_response, internal_error

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


def _otp_service():
    return current_app.extensions["otp_service"]


@customers_bp.post("/<int:customer_id>/ban")
@require_actor
def ban_customer_route(customer_id: int):
    try:
        data = json_body()
        result = customer_service.ban_customer(customer_id, actor=g.actor, reason=data.get("reason"))
        return jsonify(result), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to ban customer")
        return internal_error("Failed to ban customer")


@customers_bp.post("/<int:customer_id>/unban")
@require_actor
def unban_customer_route(customer_id: int):
    try:
        user = customer_service.unban_customer(customer_id, actor=g.actor)
        return jsonify({"customer": user.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to unban customer")
        return internal_error("Failed to unban customer")


@customers_bp.post("/otp/send")
def send_otp_route():
    """Issue a code; the WhatsApp channel receives it through the otp_issued signal."""
    try:
        data = json_body()
        require_fields(data, "whatsapp_number")
        issued = _otp_service().issue(data["whatsapp_number"])
        notify_otp_issued(issued["whatsapp_number"], issued["code"])
        return jsonify({
            "whatsapp_number": issued["whatsapp_number"],
            "expires_in_seconds": issued["expires_in_seconds"],
            "resend_in_seconds": issued["resend_in_seconds"],
        }), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to send OTP")
        return internal_error("Failed to send OTP")


@customers_bp.post("/otp/verify")
def verify_otp_route():
    try:
        data = json_body()
        require_fields(data, "whatsapp_number", "otp_code")
        ok = _otp_service().verify(data["whatsapp_number"], str(data["otp_code"]))
        if not ok:
            return jsonify({"verified": False, "error": "invalid_code", "message": "Code is wrong or expired"}), 400
        return jsonify({"verified": True}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify OTP")
        return internal_error("Failed to verify OTP")
