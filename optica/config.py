"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Database ─────────────────────────────────────────────────────────
DEFAULT_DB_URI = "sqlite:///optica.db"

# ── Auth / tokens ────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_ALGORITHM = "HS256"
TOKEN_EXPIRY_HOURS = int(os.getenv("TOKEN_EXPIRY_HOURS", "24"))

# "admin-only": only admins create users. "open": anyone may sign up as sales.
REGISTRATION_MODES = {"admin-only", "open"}
REGISTRATION_MODE = os.getenv("REGISTRATION_MODE", "admin-only").strip().lower()

MIN_PASSWORD_LENGTH = 6
TEMP_PASSWORD_BYTES = 8

# ── Roles / enums ────────────────────────────────────────────────────
ROLES = ("sales", "admin")
DEFAULT_ROLE = "sales"

PRESCRIPTION_STATUSES = ("pending", "completed", "delivered", "cancelled")
EYE_TYPES = ("OD", "OS")
LENS_EYE_TYPES = ("OD", "OS", "Both")

# ── Patient rules ────────────────────────────────────────────────────
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PHONE_MIN_LENGTH = 9
PHONE_MAX_LENGTH = 15
DNI_LENGTH = 8

PATIENT_SORT_OPTIONS = (
    "name_asc", "name_desc", "email_asc", "email_desc",
    "created_asc", "created_desc", "age_asc", "age_desc",
)
DEFAULT_PATIENT_SORT = "name_asc"

# ── Listing limits ───────────────────────────────────────────────────
DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100
DEFAULT_SEARCH_LIMIT = 10
RECENT_PATIENTS_COUNT = 5

# ── API server ───────────────────────────────────────────────────────
API_VERSION = "1.0.0"


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value


def get_db_uri() -> str:
    """Database URI from DB_URI, falling back to a local SQLite file."""
    return os.getenv("DB_URI", DEFAULT_DB_URI)


def get_registration_mode() -> str:
    """Validated registration mode; unknown values fall back to admin-only."""
    mode = os.getenv("REGISTRATION_MODE", REGISTRATION_MODE).strip().lower()
    if mode not in REGISTRATION_MODES:
        print(f"[config] Unknown REGISTRATION_MODE '{mode}', using admin-only", file=sys.stderr)
        return "admin-only"
    return mode
