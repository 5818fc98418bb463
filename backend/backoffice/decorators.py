# Overview: Request decorators that establish the actor context for API routes.

from functools import wraps
from flask import request, jsonify, g

from .auth import Actor, ROLES


def _read_actor():
    raw_id = request.headers.get("X-Actor-Id")
    role = (request.headers.get("X-Actor-Role") or "").strip()
    if not raw_id or not role:
        return None
    try:
        actor_id = int(raw_id)
    except ValueError:
        return None
    if role not in ROLES:
        return None
    return Actor(id=actor_id, role=role)


def require_actor(f):
    """
    Require an authenticated actor.

    The upstream auth middleware verifies the session and forwards the identity as
    X-Actor-Id / X-Actor-Role. Sets g.actor for the route and the services it calls.
    Returns 401 when the headers are missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = _read_actor()
        if actor is None:
            return jsonify({"error": "unauthenticated", "message": "Authentication required"}), 401
        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require one of `roles`. Must be stacked under @require_actor."""
    allowed = frozenset(roles)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return jsonify({"error": "unauthenticated", "message": "Authentication required"}), 401
            if actor.role not in allowed:
                return jsonify({
                    "error": "forbidden",
                    "message": "Permission denied",
                    "details": {"role": actor.role, "allowed_roles": sorted(allowed)},
                }), 403
            return f(*args, **kwargs)
        return decorated_function

    return decorator
