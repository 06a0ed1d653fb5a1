# pledgr/db.py
import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import Settings
from .errors import StorageError, StorageTimeoutError

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Build & normalize DATABASE_URL
#   - Accepts postgres:// or postgresql://; converts to postgresql+psycopg://
#   - Appends ?sslmode=require for non-local connections if not present
# -----------------------------------------------------------------------------

def _normalize_db_url(raw: Optional[str]) -> str:
    db_url = (raw or "").strip()

    if not db_url:
        # Local dev fallback
        return "sqlite:///./pledgr.db"

    db_url = db_url.replace("postgres://", "postgresql://", 1)

    # psycopg (v3) unless a driver was given explicitly
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if db_url.startswith("postgresql") and "localhost" not in db_url \
            and "127.0.0.1" not in db_url and "sslmode=" not in db_url:
        db_url += ("&" if "?" in db_url else "?") + "sslmode=require"

    return db_url


# -----------------------------------------------------------------------------
# SQLAlchemy setup
# -----------------------------------------------------------------------------

Base = declarative_base()


def _enable_sqlite_fks(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(settings: Settings) -> Engine:
    """Engine with a bounded pool and a per-statement timeout."""
    url = _normalize_db_url(settings.database_url)
    kwargs = dict(pool_pre_ping=True, future=True)

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {
            "check_same_thread": False,   # needed for SQLite + threads
            "timeout": settings.db_timeout_seconds,
        }
    else:
        kwargs["connect_args"] = {
            "connect_timeout": settings.db_timeout_seconds,
            "options": f"-c statement_timeout={settings.db_timeout_seconds * 1000}",
        }

    if ":memory:" not in url and url != "sqlite://":
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_timeout_seconds,
        )

    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_fks)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist yet."""
    from . import models  # noqa: F401  ensure models are registered
    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session and ensures close."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit on success; roll back on any error.

    Pool exhaustion surfaces as StorageTimeoutError, other driver failures as
    StorageError. IntegrityError is re-raised untouched so callers can map it.
    """
    try:
        yield db
        db.commit()
    except PoolTimeoutError as e:
        db.rollback()
        logger.error("Database pool timeout: %s", e)
        raise StorageTimeoutError() from e
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Database error, transaction rolled back")
        raise StorageError() from e
    except Exception:
        db.rollback()
        raise
