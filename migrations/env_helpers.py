"""Database URL helper for Alembic migrations.

Kept apart from env.py so it can be tested without an alembic context.
"""

from __future__ import annotations

import os

SQLALCHEMY_SCHEME = "postgresql+psycopg2://"


def _get_database_url() -> str:
    """Return DATABASE_URL as a SQLAlchemy URL using the psycopg2 driver."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return SQLALCHEMY_SCHEME + url[len(prefix):]
    return url
