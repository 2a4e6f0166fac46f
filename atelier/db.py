from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from atelier.config import settings

UNDEFINED_TABLE_PGCODE = '42P01'

engine = create_engine(settings.database_url_normalized, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_missing_table(exc: Exception) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    pgcode = getattr(orig, 'sqlstate', None) or getattr(orig, 'pgcode', None)
    if pgcode == UNDEFINED_TABLE_PGCODE:
        return True
    # SQLite reports no SQLSTATE.
    return 'no such table' in str(orig).lower()
