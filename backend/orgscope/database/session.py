"""
Database session management with connection pooling.

Two engines exist:

- the primary engine (DATABASE_URL), connected as the application role.
  Row-level security is enforced on every connection; requests reach data
  only through orgscope.platform.authorization_context.with_authorization.
- the maintenance engine (MAINTENANCE_DATABASE_URL), connected as a role
  with BYPASSRLS. It is reachable only through privileged_maintenance_session,
  which requires a reason and logs every use. No route depends on it.

Usage:
    from orgscope.database.session import get_db_session

    @router.get("/items")
    def get_items(db: Session = Depends(get_db_session)):
        ...
"""

import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from orgscope.config.settings import get_settings
from orgscope.platform.audit import BYPASS_INFO_KEY

logger = logging.getLogger(__name__)

# Module-level engine singletons
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None
_maintenance_engine: Optional[Engine] = None


def _create_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("postgresql"):
        timeout_ms = get_settings().db_statement_timeout_ms
        connect_args["options"] = f"-c statement_timeout={timeout_ms}"
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
        connect_args=connect_args,
    )


def get_engine() -> Engine:
    """Get or create the primary (row-security enforced) engine."""
    global _engine
    if _engine is None:
        database_url = get_settings().database_url
        if not database_url:
            raise ValueError("DATABASE_URL environment variable is not set")
        _engine = _create_engine(database_url)
        logger.info("Database engine created with connection pooling")
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _get_maintenance_engine() -> Engine:
    global _maintenance_engine
    if _maintenance_engine is None:
        url = get_settings().maintenance_database_url
        if not url:
            raise ValueError("MAINTENANCE_DATABASE_URL environment variable is not set")
        _maintenance_engine = _create_engine(url)
    return _maintenance_engine


@contextmanager
def privileged_maintenance_session(reason: str, engine: Optional[Engine] = None) -> Iterator[Session]:
    """
    Session that bypasses row-level security and the ORM guard.

    For migrations, backfills and operator tooling only. Commits on success,
    rolls back on error.

    Args:
        reason: Why isolation is being bypassed. Logged with every use.
        engine: Override the maintenance engine (tests).
    """
    if not reason or not reason.strip():
        raise ValueError("privileged_maintenance_session requires a reason")

    bind = engine or _get_maintenance_engine()
    session = Session(bind=bind, autoflush=False)
    session.info[BYPASS_INFO_KEY] = reason
    logger.warning("Row-level security bypass session opened", extra={"reason": reason})
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        logger.warning("Row-level security bypass session closed", extra={"reason": reason})


def reset_engines() -> None:
    """Dispose engines (for tests only)."""
    global _engine, _SessionLocal, _maintenance_engine
    for engine in (_engine, _maintenance_engine):
        if engine is not None:
            engine.dispose()
    _engine = None
    _SessionLocal = None
    _maintenance_engine = None
