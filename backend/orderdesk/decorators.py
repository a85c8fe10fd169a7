# Overview: Request decorators that resolve the calling customer for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import identity_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def optional_customer(f):
    """
    Resolve the caller if a token is present; guests pass through.

    Sets g.current_customer to the Customer or None. A token that does not
    resolve is rejected rather than silently downgraded to guest.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        g.current_customer = None
        if token:
            customer = identity_service.resolve_customer(token)
            if customer is None:
                return jsonify({"error": "Invalid or expired token"}), 401
            g.current_customer = customer
        return f(*args, **kwargs)

    return decorated_function


def require_customer(f):
    """Require an authenticated customer. Sets g.current_customer."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        customer = identity_service.resolve_customer(token)
        if customer is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_customer = customer
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require an authenticated admin customer."""
    @wraps(f)
    @require_customer
    def decorated_function(*args, **kwargs):
        if not g.current_customer.is_admin:
            return jsonify({"error": "Permission denied"}), 403
        return f(*args, **kwargs)

    return decorated_function
