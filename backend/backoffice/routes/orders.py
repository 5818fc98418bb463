# Overview: Flask API routes for orders; checkout, listing and status transitions.

from flask import Blueprint, jsonify, g, current_app, request

from ..auth import CUSTOMER
from ..decorators import require_actor
from ..errors import BackofficeError, Forbidden
from ..services import allocation_service, order_service
from ..services.order_query import from_request_args
from ..validation import coerce_int, coerce_items, json_body, require_fields
from . import error_response, internal_error

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _visible_order(order_id: int):
    order = order_service.get_order(order_id)
    if g.actor.role == CUSTOMER and order.customer_id != g.actor.id:
        raise Forbidden("Order belongs to another customer", {"order_id": order_id})
    return order


@orders_bp.post("")
@require_actor
def create_order_route():
    try:
        data = json_body()
        order = order_service.create_order(
            items=coerce_items(data.get("items")),
            actor=g.actor,
            customer_id=coerce_int(data.get("customer_id"), "customer_id", required=False),
            customer_name=data.get("customer_name"),
            payment_method=data.get("payment_method", "transfer_manual"),
            source=data.get("source", "web"),
            discount_amount=data.get("discount_amount", 0),
            shipping_fee=data.get("shipping_fee", 0),
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return internal_error("Failed to create order")


@orders_bp.get("")
@require_actor
def list_orders_route():
    """
    List orders: ?status=a,b&search=&start=&end=&limit=&offset=
    Customers only ever see their own orders.
    """
    try:
        customer_id = g.actor.id if g.actor.role == CUSTOMER else request.args.get("customer_id", type=int)
        rows, total = from_request_args(request.args, customer_id=customer_id).run()
        return jsonify({"orders": [o.to_dict() for o in rows], "total": total}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return internal_error("Failed to list orders")


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = _visible_order(order_id)
        data = order.to_dict(include_items=True)
        data["issues"] = [i.to_dict() for i in order.issues]
        data["invoices"] = [inv.to_dict() for inv in order.invoices]
        return jsonify({"order": data}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return internal_error("Failed to load order")


@orders_bp.post("/<int:order_id>/status")
@require_actor
def transition_order_route(order_id: int):
    """Generic transition: {"status": "...", ...extra gate inputs}."""
    try:
        data = json_body()
        require_fields(data, "status")
        target = data.pop("status")
        order = order_service.transition_order(order_id, target, actor=g.actor, extra=data)
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return internal_error("Failed to transition order")


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    try:
        data = json_body()
        order = order_service.cancel_order(order_id, actor=g.actor, reason=data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return internal_error("Failed to cancel order")


@orders_bp.post("/<int:order_id>/hold")
@require_actor
def hold_order_route(order_id: int):
    try:
        data = json_body()
        order = order_service.hold_order(
            order_id,
            actor=g.actor,
            note=data.get("note"),
            issue_type=data.get("issue_type", "missing_item"),
        )
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to hold order")
        return internal_error("Failed to hold order")


@orders_bp.post("/<int:order_id>/release-hold")
@require_actor
def release_hold_route(order_id: int):
    try:
        order = order_service.release_hold(order_id, actor=g.actor)
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to release hold")
        return internal_error("Failed to release hold")


@orders_bp.post("/<int:order_id>/courier")
@require_actor
def assign_courier_route(order_id: int):
    try:
        data = json_body()
        order = order_service.assign_courier(order_id, coerce_int(data.get("courier_id"), "courier_id"), actor=g.actor)
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign courier")
        return internal_error("Failed to assign courier")


@orders_bp.post("/<int:order_id>/ship")
@require_actor
def ship_order_route(order_id: int):
    try:
        data = json_body()
        order = order_service.ship_order(
            order_id,
            actor=g.actor,
            courier_id=coerce_int(data.get("courier_id"), "courier_id", required=False),
        )
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to ship order")
        return internal_error("Failed to ship order")


@orders_bp.post("/<int:order_id>/deliver")
@require_actor
def deliver_order_route(order_id: int):
    try:
        data = json_body()
        order = order_service.mark_delivered(
            order_id, actor=g.actor, delivery_proof_url=data.get("delivery_proof_url")
        )
        return jsonify({"order": order.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark order delivered")
        return internal_error("Failed to mark order delivered")


@orders_bp.get("/<int:order_id>/children")
@require_actor
def child_orders_route(order_id: int):
    try:
        _visible_order(order_id)
        children = allocation_service.list_child_orders(order_id)
        return jsonify({"orders": [c.to_dict() for c in children]}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list child orders")
        return internal_error("Failed to list child orders")
