"""
Management CLI for Optica Manager.

    optica-cli init      create the schema and the first admin account
    optica-cli secret    print a fresh JWT_SECRET_KEY line for .env
"""

import secrets
import sys
from getpass import getpass

from optica.config import get_db_uri
from optica.database import create_schema, init_engine, init_session_factory
from optica.errors import AppError
from optica.identity import create_user, find_user_by_email

USAGE = "usage: optica-cli [init|secret]"


def generate_secret() -> str:
    return secrets.token_hex(32)


def print_secret():
    print("=" * 60)
    print("JWT Secret Key Generator")
    print("=" * 60)
    print(f"\nJWT_SECRET_KEY={generate_secret()}")
    print("\n" + "=" * 60)
    print("Copy the line above to your .env file")
    print("=" * 60)


def init_database(db_uri=None, prompt=input, prompt_secret=getpass) -> int:
    """Create tables, then interactively create an admin if none was given."""
    print("=== Optica Manager: database setup ===\n")

    engine = init_engine(db_uri or get_db_uri())
    create_schema(engine)
    print("[init] Schema ready.")

    session = init_session_factory(engine)()
    try:
        try:
            email = prompt("Admin email (blank to skip): ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            return 0

        if not email:
            print("No admin created. Goodbye.")
            return 0

        if find_user_by_email(session, email) is not None:
            print(f"[init] A user with email {email} already exists.")
            return 1

        password = prompt_secret("Admin password: ")
        confirmation = prompt_secret("Repeat password: ")
        if password != confirmation:
            print("\n[ERROR] Passwords do not match.")
            return 1

        try:
            admin = create_user(session, email, password, role="admin")
        except AppError as e:
            print("\n[ERROR] Could not create admin.")
            print("Details:", e.message)
            return 1

        print(f"\n[init] Created admin {admin.email} (id={admin.id})")
        return 0
    finally:
        session.close()


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    command = argv[0] if argv else "init"

    if command == "secret":
        print_secret()
        return 0
    if command == "init":
        return init_database()

    print(USAGE, file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
