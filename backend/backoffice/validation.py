# Overview: Request payload helpers shared by the API routes.

from __future__ import annotations

from typing import Any

from flask import request

from .errors import ValidationError


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", {"field": "body"})
    return data


def require_fields(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields", {"fields": missing})


def coerce_int(value: Any, field: str, *, required: bool = True) -> int | None:
    """Strict integer parsing: rejects bools, floats, decimals and scientific notation."""
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", {"field": field})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", {"field": field})
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    raise ValidationError(f"{field} must be an integer", {"field": field})


def coerce_items(raw: Any) -> list[dict]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list", {"field": "items"})
    items = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError("Each item must be an object", {"field": "items", "line": idx})
        items.append({
            "product_id": coerce_int(entry.get("product_id"), f"items[{idx}].product_id"),
            "qty": coerce_int(entry.get("qty"), f"items[{idx}].qty"),
        })
    return items
