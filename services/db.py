# services/db.py

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert


def normalize_database_url(url: str) -> str:
    url = (url or "").strip()
    # Force psycopg3; bare postgres/postgresql URLs resolve to the psycopg2 dialect.
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]
    return url


def database_url() -> str:
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required")
    return normalize_database_url(url)


def create_db_engine(url: Optional[str] = None) -> sa.Engine:
    return sa.create_engine(
        normalize_database_url(url) if url else database_url(),
        pool_pre_ping=True,
        future=True,
    )


def as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def insert_if_absent(
    conn: sa.Connection,
    table: sa.Table,
    values: Dict[str, Any],
    *,
    key_columns: Sequence[str],
) -> bool:
    """
    INSERT … ON CONFLICT DO NOTHING on the given unique key.

    Returns True when a row was written, False when it already existed.
    """
    dialect = conn.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=list(key_columns)
        )
        return conn.execute(stmt).rowcount == 1
    if dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=list(key_columns)
        )
        return conn.execute(stmt).rowcount == 1

    exists = conn.execute(
        sa.select(sa.literal(1))
        .select_from(table)
        .where(sa.and_(*[table.c[c] == values[c] for c in key_columns]))
        .limit(1)
    ).first()
    if exists is not None:
        return False
    conn.execute(table.insert().values(**values))
    return True
