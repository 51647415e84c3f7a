# WORKFLOW: Engine, sessions and connectivity checks for the duty reference database.
# Used by: API dependencies (get_db), bootstrap script (session_scope), readiness probe
# Functions:
# 1. get_engine() - Lazily build the engine for settings.database_url
# 2. get_db() - FastAPI dependency yielding a request-scoped session
# 3. session_scope() - Commit/rollback wrapper for scripts and seed jobs
# 4. init_db() - Create tariff, policy, agreement and audit tables
# 5. check_db_connection() - SELECT 1 round trip for /readyz
#
# In-memory SQLite shares one connection (StaticPool) so every session sees the
# same tables; server databases use the regular connection pool.

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
        return options
    # Policy windows are compared as UTC calendar dates
    return {
        "pool_pre_ping": True,
        "connect_args": {"options": "-c timezone=utc"},
    }


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, echo=settings.debug, **_engine_options(settings.database_url))
        logger.info(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def get_db() -> Iterator[Session]:
    """
    Request-scoped session for FastAPI endpoints.
    Uncommitted work is rolled back when the handler raises.
    """
    db = get_session_factory()()
    try:
        yield db
    except Exception as e:
        logger.error(f"Rolling back request session: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that commits on success and rolls back on any error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    from db.models import Base

    Base.metadata.create_all(bind=get_engine())
    logger.info(f"Created {len(Base.metadata.tables)} tables")


def check_db_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1")).scalar()
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False
