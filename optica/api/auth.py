"""
JWT authentication helpers and decorators for the Flask API.
"""

from functools import wraps
from typing import Optional

from flask import current_app, request

from optica.authz import require_admin
from optica.errors import Unauthorized
from optica.identity import validate_token


def get_db():
    """The request-scoped SQLAlchemy session registered by create_app."""
    return current_app.extensions["optica_db"]


def extract_bearer_token() -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header, or None."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthorized("Invalid authorization header format")
    return parts[1]


def token_required(f):
    """Decorator that protects endpoints with JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = extract_bearer_token()
        if not token:
            raise Unauthorized("Authentication token is missing")

        user = validate_token(get_db(), token, current_app.config["SECRET_KEY"])

        # Attach the actor to the request context
        request.current_user = user
        request.token = token

        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    """Decorator for user-management endpoints; stack below token_required."""
    @wraps(f)
    def decorated(*args, **kwargs):
        require_admin(getattr(request, "current_user", None))
        return f(*args, **kwargs)

    return decorated
