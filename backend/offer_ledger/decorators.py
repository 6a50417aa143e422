# Overview: Request decorators for API routes; bearer authentication and role gates.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def _is_authenticated() -> bool:
    return getattr(g, "principal", None) is not None


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.principal (user id + role) for the route, which hands it to the
    service layer explicitly.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, revoked or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()

        principal = session_service.validate_session(token)
        if principal is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.principal = principal
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the authenticated principal to hold one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.principal.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_role": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
