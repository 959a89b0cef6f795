# Overview: Request actor and role decorators for API routes.

from dataclasses import dataclass
from functools import wraps

from flask import current_app, g, jsonify, request

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

ROLES = {"admin", "manager", "cashier", "inventory_clerk", "accountant"}


@dataclass(frozen=True)
class Actor:
    id: int
    role: str


def _is_authenticated() -> bool:
    return isinstance(getattr(g, "actor", None), Actor)


def require_actor(f):
    """
    Require an authenticated actor.

    Authentication happens upstream; the gateway in front of this service
    forwards the user as headers:
    - X-Actor-Id: numeric user id
    - X-Actor-Role: one of ROLES

    Sets g.actor. Returns 401 when either header is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
        role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip().lower()

        if not raw_id.isdigit() or int(raw_id) <= 0:
            return jsonify({"error": "Authentication required"}), 401
        if role not in ROLES:
            return jsonify({"error": "Invalid actor role"}), 401

        g.actor = Actor(id=int(raw_id), role=role)
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require g.actor to hold one of roles. Use after @require_actor."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.actor.role not in roles:
                current_app.logger.warning(
                    "Role %s denied on %s %s", g.actor.role, request.method, request.path,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                    "message": f"Requires one of: {', '.join(roles)}",
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
