# Overview: Request decorators for API routes; resolve the trusted principal and enforce roles.

from functools import wraps
from flask import request, jsonify, g

from .errors import ValidationError
from .principal import Principal


PRINCIPAL_ID_HEADER = "X-User-Id"
PRINCIPAL_ROLE_HEADER = "X-User-Role"


def require_auth(f):
    """
    Require an authenticated principal.

    The gateway in front of this service validates credentials and forwards
    the caller identity in X-User-Id / X-User-Role. Sets g.principal.

    Returns 401 if either header is missing or the role is unknown.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = (request.headers.get(PRINCIPAL_ID_HEADER) or "").strip()
        role = (request.headers.get(PRINCIPAL_ROLE_HEADER) or "").strip()

        if not user_id or not role:
            return jsonify({"error": "Authentication required"}), 401

        try:
            g.principal = Principal(user_id=user_id, role=role)
        except ValidationError:
            return jsonify({"error": "Invalid principal"}), 401

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the authenticated principal to hold one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "principal"):
                return jsonify({"error": "Authentication required"}), 401

            if g.principal.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
