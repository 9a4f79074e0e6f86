from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_SQLITE_PATH = "study_aid.db"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def dt_to_utc_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def json_dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def json_loads(raw: Any, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def get_database_url() -> str:
    """
    Get database connection URL from environment.

    ENVIRONMENT selects DATABASE_URL_PROD or DATABASE_URL_STAGING; DATABASE_URL
    is the generic fallback. Without any of them a local SQLite file is used
    (MATERIAL_SQLITE_PATH, default ./study_aid.db) so the worker runs standalone.
    """
    env = os.getenv("ENVIRONMENT", "").lower()

    if env in ("production", "prod"):
        url = os.getenv("DATABASE_URL_PROD")
        if url:
            return url

    if env in ("staging", "stage"):
        url = os.getenv("DATABASE_URL_STAGING")
        if url:
            return url

    url = os.getenv("DATABASE_URL")
    if url:
        return url

    path = os.getenv("MATERIAL_SQLITE_PATH", DEFAULT_SQLITE_PATH).strip().strip('"').strip("'")
    path = os.path.abspath(os.path.expanduser(path or DEFAULT_SQLITE_PATH))
    return f"sqlite:///{path}"


_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Get or create the SQLAlchemy engine."""
    global _engine
    if _engine is None:
        database_url = get_database_url()
        if database_url.startswith("sqlite"):
            # Repositories are also called from asyncio.to_thread workers.
            _engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False,
            )
        else:
            _engine = create_engine(
                database_url,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=False,
            )
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the cached engine so the next call re-reads the environment."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Context manager for database sessions.

    Commits on success, rolls back on exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_table_exists(table_name: str) -> bool:
    """Check if a table exists in the configured database."""
    return inspect(get_engine()).has_table(table_name)
