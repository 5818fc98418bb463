# Overview: Flask API routes for customer returns; request, review, pickup, restock and refund.

from flask import Blueprint, jsonify, g, current_app, request

from ..auth import STAFF_ROLES
from ..decorators import require_actor, require_role
from ..errors import BackofficeError, Forbidden, ValidationError
from ..services import return_service
from ..validation import coerce_int, json_body, require_fields
from . import error_response, internal_error

returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("")
@require_actor
def request_return_route():
    try:
        data = json_body()
        require_fields(data, "order_id", "order_item_id", "qty")
        row = return_service.request_return(
            coerce_int(data["order_id"], "order_id"),
            order_item_id=coerce_int(data["order_item_id"], "order_item_id"),
            qty=coerce_int(data["qty"], "qty"),
            reason=data.get("reason"),
            actor=g.actor,
        )
        return jsonify({"return": row.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to request return")
        return internal_error("Failed to request return")


@returns_bp.get("")
@require_actor
@require_role(*STAFF_ROLES)
def list_returns_route():
    try:
        rows = return_service.list_returns(
            status=request.args.get("status"),
            order_id=request.args.get("order_id", type=int),
        )
        return jsonify({"returns": [r.to_dict() for r in rows]}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list returns")
        return internal_error("Failed to list returns")


@returns_bp.get("/<int:return_id>")
@require_actor
def get_return_route(return_id: int):
    try:
        row = return_service.get_return(return_id)
        if not g.actor.is_staff and row.order.customer_id != g.actor.id and row.courier_id != g.actor.id:
            raise Forbidden("Return belongs to another customer", {"return_id": return_id})
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load return")
        return internal_error("Failed to load return")


@returns_bp.post("/<int:return_id>/review")
@require_actor
def review_return_route(return_id: int):
    try:
        data = json_body()
        decision = data.get("decision")
        if decision not in ("approve", "reject"):
            raise ValidationError("decision must be approve or reject", {"field": "decision"})
        row = return_service.review_return(
            return_id, approve=decision == "approve", admin_response=data.get("admin_response"), actor=g.actor
        )
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to review return")
        return internal_error("Failed to review return")


@returns_bp.post("/<int:return_id>/pickup")
@require_actor
def assign_pickup_route(return_id: int):
    try:
        data = json_body()
        require_fields(data, "courier_id")
        row = return_service.assign_pickup(
            return_id,
            coerce_int(data["courier_id"], "courier_id"),
            refund_amount=data.get("refund_amount"),
            actor=g.actor,
        )
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign return pickup")
        return internal_error("Failed to assign return pickup")


@returns_bp.post("/<int:return_id>/receive")
@require_actor
def receive_return_route(return_id: int):
    try:
        row = return_service.receive_return(return_id, actor=g.actor)
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive return")
        return internal_error("Failed to receive return")


@returns_bp.post("/<int:return_id>/complete")
@require_actor
def complete_return_route(return_id: int):
    try:
        data = json_body()
        if not isinstance(data.get("is_back_to_stock"), bool):
            raise ValidationError("is_back_to_stock must be true or false", {"field": "is_back_to_stock"})
        row = return_service.complete_return(return_id, is_back_to_stock=data["is_back_to_stock"], actor=g.actor)
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete return")
        return internal_error("Failed to complete return")


@returns_bp.post("/<int:return_id>/refund")
@require_actor
def disburse_refund_route(return_id: int):
    try:
        data = json_body()
        row = return_service.disburse_refund(
            return_id, actor=g.actor, payment_account_code=str(data.get("payment_account_code", "1101"))
        )
        return jsonify({"return": row.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to disburse refund")
        return internal_error("Failed to disburse refund")
