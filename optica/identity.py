"""
Identity & roles – credentials, bearer tokens and user accounts.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from sqlalchemy import func, select
from werkzeug.security import check_password_hash, generate_password_hash

from optica.config import (
    DEFAULT_ROLE, MIN_PASSWORD_LENGTH, ROLES, SECRET_KEY, TEMP_PASSWORD_BYTES,
    TOKEN_ALGORITHM, TOKEN_EXPIRY_HOURS,
)
from optica.database import transaction
from optica.errors import (
    BadRequest, ConflictError, InvalidCredentials, NotFound, TokenInvalid,
    UserNotFound,
)
from optica.fields import is_valid_email
from optica.models import User, new_revocation_marker

# Checked against when the email is unknown so both failure paths hash once.
_DUMMY_HASH = generate_password_hash(secrets.token_hex(16))


# ── Credentials ──────────────────────────────────────────────────────

def normalize_email(email: Optional[str]) -> str:
    if not isinstance(email, str):
        return ""
    return email.strip().lower()


def find_user_by_email(session, email: str) -> Optional[User]:
    stmt = select(User).where(func.lower(User.email) == normalize_email(email))
    return session.execute(stmt).scalar_one_or_none()


def authenticate(session, email: str, password: str) -> User:
    """Return the user for a valid email/password pair.

    Unknown email and wrong password raise the same InvalidCredentials.
    """
    user = find_user_by_email(session, email) if email else None
    if user is None:
        check_password_hash(_DUMMY_HASH, password or "")
        raise InvalidCredentials()
    if not check_password_hash(user.password_hash, password or ""):
        raise InvalidCredentials()
    return user


def is_admin(user: Optional[User]) -> bool:
    return user is not None and user.is_admin()


# ── Tokens ───────────────────────────────────────────────────────────

def issue_token(user: User, secret: str = SECRET_KEY,
                expiry_hours: int = TOKEN_EXPIRY_HOURS) -> str:
    """Generate a signed JWT bound to the user's current revocation marker."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "jti": user.jti,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(hours=expiry_hours),
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def decode_token(token: str, secret: str = SECRET_KEY) -> Dict[str, Any]:
    """Verify signature and expiry and return the payload."""
    try:
        return jwt.decode(
            token, secret, algorithms=[TOKEN_ALGORITHM],
            options={"require": ["sub", "jti", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenInvalid("Token has expired")
    except jwt.InvalidTokenError:
        raise TokenInvalid()


def validate_token(session, token: str, secret: str = SECRET_KEY) -> User:
    """Resolve a bearer token to its user, or raise an Unauthorized subclass."""
    payload = decode_token(token, secret)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise TokenInvalid()

    user = session.get(User, user_id)
    if user is None:
        raise UserNotFound()
    if payload.get("jti") != user.jti:
        raise TokenInvalid("Token has been revoked")
    return user


def revoke(session, user: User) -> None:
    """Rotate the revocation marker; every previously issued token dies."""
    with transaction(session):
        user.jti = new_revocation_marker()


# ── User management ──────────────────────────────────────────────────

def validate_password_strength(password: Optional[str]) -> bool:
    return isinstance(password, str) and len(password) >= MIN_PASSWORD_LENGTH


def _check_role(role: Optional[str]) -> str:
    if role is None or role == "":
        return DEFAULT_ROLE
    role = str(role).strip().lower()
    if role not in ROLES:
        raise BadRequest("Invalid role specified")
    return role


def _check_email_available(session, email: str, exclude_id: Optional[int] = None):
    existing = find_user_by_email(session, email)
    if existing is not None and existing.id != exclude_id:
        raise ConflictError(["Email already exists"])


def create_user(session, email: str, password: str, role: Optional[str] = None) -> User:
    email = normalize_email(email)
    if not is_valid_email(email):
        raise BadRequest("Invalid email format")
    if not validate_password_strength(password):
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    role = _check_role(role)
    _check_email_available(session, email)

    user = User(email=email, password_hash=generate_password_hash(password), role=role)
    with transaction(session):
        session.add(user)
    return user


def update_user(session, user: User, email: Optional[str] = None,
                role: Optional[str] = None) -> User:
    """Change email and/or role. Passwords go through reset_password."""
    changes = {}
    if email:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise BadRequest("Invalid email format")
        if email != user.email:
            _check_email_available(session, email, exclude_id=user.id)
        changes["email"] = email
    if role:
        changes["role"] = _check_role(role)

    with transaction(session):
        for key, value in changes.items():
            setattr(user, key, value)
    return user


def delete_user(session, user: User) -> None:
    with transaction(session):
        session.delete(user)


def set_password(session, user: User, password: str) -> None:
    """Store a new password hash and revoke tokens issued under the old one."""
    if not validate_password_strength(password):
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    with transaction(session):
        user.password_hash = generate_password_hash(password)
        user.jti = new_revocation_marker()


def reset_password(session, user: User, new_password: Optional[str] = None) -> Optional[str]:
    """Reset *user*'s password.

    With *new_password* the admin-chosen value is stored and None is
    returned. Without it a random temporary password is generated and
    returned; only its hash is stored, so the caller hands the plaintext
    back exactly once.
    """
    if new_password is not None:
        set_password(session, user, new_password)
        return None
    temporary_password = secrets.token_hex(TEMP_PASSWORD_BYTES)
    set_password(session, user, temporary_password)
    return temporary_password


def get_user(session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(session, role: Optional[str] = None) -> List[User]:
    stmt = select(User).order_by(User.id)
    if role:
        if role not in ROLES:
            raise BadRequest("Invalid role parameter")
        stmt = stmt.where(User.role == role)
    return list(session.execute(stmt).scalars())
