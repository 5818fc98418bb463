# Overview: Flask API routes for inventory; products, stock mutations, receiving and consistency checks.

from flask import Blueprint, jsonify, g, current_app, request

from ..auth import STAFF_ROLES
from ..decorators import require_actor, require_role
from ..errors import BackofficeError
from ..services import inventory_service
from ..validation import coerce_int, json_body, require_fields
from . import error_response, internal_error

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/products")
@require_actor
def create_product_route():
    try:
        data = json_body()
        require_fields(data, "sku", "name", "price")
        product = inventory_service.create_product(
            sku=data["sku"],
            name=data["name"],
            price=data["price"],
            base_price=data.get("base_price", 0),
            min_stock=coerce_int(data.get("min_stock", 0), "min_stock"),
            initial_qty=coerce_int(data.get("initial_qty", 0), "initial_qty"),
            actor=g.actor,
        )
        return jsonify({"product": product.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return internal_error("Failed to create product")


@inventory_bp.post("/products/<int:product_id>/mutations")
@require_actor
def record_mutation_route(product_id: int):
    try:
        data = json_body()
        require_fields(data, "type", "qty")
        mutation = inventory_service.record_mutation(
            product_id=product_id,
            mutation_type=data["type"],
            qty=coerce_int(data["qty"], "qty"),
            reference_type=data.get("reference_type"),
            reference_id=data.get("reference_id"),
            note=data.get("note"),
            actor=g.actor,
        )
        return jsonify({"mutation": mutation.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record stock mutation")
        return internal_error("Failed to record stock mutation")


@inventory_bp.get("/products/<int:product_id>/mutations")
@require_actor
@require_role(*STAFF_ROLES)
def list_mutations_route(product_id: int):
    try:
        limit = max(1, min(request.args.get("limit", default=200, type=int), 1000))
        rows = inventory_service.list_mutations(product_id, limit=limit)
        return jsonify({"mutations": [m.to_dict() for m in rows]}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock mutations")
        return internal_error("Failed to list stock mutations")


@inventory_bp.post("/products/<int:product_id>/receive")
@require_actor
def receive_stock_route(product_id: int):
    try:
        data = json_body()
        require_fields(data, "qty")
        result = inventory_service.receive_stock(
            product_id=product_id,
            qty=coerce_int(data["qty"], "qty"),
            unit_cost=data.get("unit_cost"),
            reference_id=data.get("reference_id"),
            note=data.get("note"),
            actor=g.actor,
            fulfill_backorders=bool(data.get("fulfill_backorders", True)),
        )
        return jsonify(result), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return internal_error("Failed to receive stock")


@inventory_bp.get("/consistency")
@require_actor
@require_role(*STAFF_ROLES)
def stock_consistency_route():
    try:
        drift = inventory_service.check_stock_consistency(request.args.get("product_id", type=int))
        return jsonify({"consistent": not drift, "drift": drift}), 200
    except Exception:
        current_app.logger.exception("Failed to check stock consistency")
        return internal_error("Failed to check stock consistency")
