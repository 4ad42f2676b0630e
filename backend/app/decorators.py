# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'session_context')


def require_auth(f):
    """
    Require authentication.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.session_context: The full SessionContext (roles, vendor_id)

    Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"status": "error", "message": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"status": "error", "message": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*role_names):
    """
    Require any of the given roles. Must be stacked under @require_auth.

    A vendor role only counts when the user is linked to a vendor row.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"status": "error", "message": "Authentication required"}), 401

            context = g.session_context
            allowed = False
            for role in role_names:
                if role == "vendor":
                    allowed = allowed or context.is_vendor
                else:
                    allowed = allowed or role in context.roles

            if not allowed:
                return jsonify({
                    "status": "error",
                    "message": f"Requires one of roles: {', '.join(role_names)}",
                    "required_roles": list(role_names),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
