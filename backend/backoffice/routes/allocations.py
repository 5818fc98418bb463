# Overview: Flask API routes for stock allocation; reserve, release, backorders and shortage views.

from flask import Blueprint, jsonify, g, current_app, request

from ..auth import STAFF_ROLES
from ..decorators import require_actor, require_role
from ..errors import BackofficeError
from ..services import allocation_service
from ..validation import json_body
from . import error_response, internal_error

allocations_bp = Blueprint("allocations", __name__, url_prefix="/api/allocations")


@allocations_bp.post("/orders/<int:order_id>/allocate")
@require_actor
def allocate_order_route(order_id: int):
    try:
        result = allocation_service.allocate_order(order_id, actor=g.actor)
        return jsonify(result), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to allocate order")
        return internal_error("Failed to allocate order")


@allocations_bp.post("/orders/<int:order_id>/release")
@require_actor
def release_order_route(order_id: int):
    try:
        data = json_body()
        result = allocation_service.release_order(order_id, actor=g.actor, reason=data.get("reason"))
        return jsonify(result), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to release order")
        return internal_error("Failed to release order")


@allocations_bp.post("/orders/<int:order_id>/cancel-backorder")
@require_actor
def cancel_backorder_route(order_id: int):
    try:
        data = json_body()
        result = allocation_service.cancel_backorder(order_id, data.get("reason"), actor=g.actor)
        return jsonify(result), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel backorder")
        return internal_error("Failed to cancel backorder")


@allocations_bp.post("/orders/<int:order_id>/split")
@require_actor
def split_backorder_route(order_id: int):
    try:
        result = allocation_service.split_backorder(order_id, actor=g.actor)
        return jsonify(result), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to split backorder")
        return internal_error("Failed to split backorder")


@allocations_bp.get("/orders/<int:order_id>/shortage")
@require_actor
@require_role(*STAFF_ROLES)
def shortage_summary_route(order_id: int):
    try:
        return jsonify(allocation_service.shortage_summary(order_id)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load shortage summary")
        return internal_error("Failed to load shortage summary")


@allocations_bp.get("/pending")
@require_actor
@require_role(*STAFF_ROLES)
def pending_allocations_route():
    try:
        scope = request.args.get("scope", "shortage")
        return jsonify({"orders": allocation_service.list_pending_allocations(scope)}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list pending allocations")
        return internal_error("Failed to list pending allocations")


@allocations_bp.get("/products/<int:product_id>")
@require_actor
@require_role(*STAFF_ROLES)
def product_allocations_route(product_id: int):
    try:
        return jsonify(allocation_service.product_allocations(product_id)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load product allocations")
        return internal_error("Failed to load product allocations")
