"""
Application error taxonomy.

Every error raised by the service layer derives from AppError and carries
the HTTP status it maps to; the API converts them to JSON in one place.
"""

from typing import List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(AppError):
    """One or more field-level constraint violations."""
    status_code = 422
    default_message = "Validation failed"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message or "; ".join(errors) or self.default_message)
        self.errors = list(errors)

    def to_dict(self) -> dict:
        return {"errors": self.errors}


class ConflictError(ValidationError):
    """Uniqueness violation detected at write time."""


class BadRequest(AppError):
    status_code = 400
    default_message = "Bad request"


class Unauthorized(AppError):
    status_code = 401
    default_message = "You need to sign in or sign up before continuing."


class InvalidCredentials(Unauthorized):
    default_message = "Invalid email or password"


class TokenInvalid(Unauthorized):
    default_message = "Invalid or expired token"


class UserNotFound(Unauthorized):
    default_message = "Invalid token or user not found."


class Forbidden(AppError):
    status_code = 403
    default_message = "You don't have permission to perform this action."


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"
