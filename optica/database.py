"""
Database engine initialisation, session factory and transaction helper.
"""

import math
import sys
from contextlib import contextmanager

from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from optica.config import DEFAULT_PER_PAGE, MAX_PER_PAGE, get_db_uri
from optica.errors import ConflictError
from optica.models import Base


def init_engine(db_uri=None, check_connection=True):
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = db_uri or get_db_uri()
    kwargs = {"echo": False, "future": True}
    if db_uri.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_uri in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_uri, **kwargs)

    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    if check_connection:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            print("ERROR: could not connect to DB:", e, file=sys.stderr)
            sys.exit(1)
        print("[init] Connected to DB.")
    return engine


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_schema(engine):
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)


def init_session_factory(engine):
    """Thread-local session registry bound to *engine*."""
    return scoped_session(
        sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    )


@contextmanager
def transaction(session):
    """Commit on success, roll back on any error.

    Unique-constraint violations that slip past the explicit checks (two
    concurrent writers) surface as ConflictError instead of a raw DB error.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise ConflictError([_describe_integrity_error(e)]) from e
    except Exception:
        session.rollback()
        raise


def _describe_integrity_error(exc: IntegrityError) -> str:
    msg = str(exc.orig).lower()
    for column, label in (
        ("email", "Email"),
        ("dni", "DNI"),
        ("order_number", "Order number"),
        ("jti", "Revocation marker"),
    ):
        if column in msg:
            return f"{label} has already been taken"
    return "Record conflicts with existing data"


def clamp_pagination(page, per_page):
    page = page if isinstance(page, int) and page > 0 else 1
    if not isinstance(per_page, int) or per_page <= 0:
        per_page = DEFAULT_PER_PAGE
    return page, min(per_page, MAX_PER_PAGE)


def paginate(session, stmt, page, per_page):
    """Return (items, pagination dict) for a SELECT statement."""
    page, per_page = clamp_pagination(page, per_page)
    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    items = list(session.execute(stmt.limit(per_page).offset((page - 1) * per_page)).scalars())
    pagination = {
        "current_page": page,
        "total_pages": math.ceil(total / per_page) if total else 0,
        "total_count": total,
        "per_page": per_page,
    }
    return items, pagination
