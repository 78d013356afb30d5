"""Database configuration and session management"""

from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Generator, Iterator, TypeVar
import logging

from sqlalchemy import create_engine, text, inspect
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from app.config import settings
from app.core.exceptions import DependencyTimeoutError, ServiceUnavailableError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# PostgreSQL "query_canceled", raised when statement_timeout fires
_PG_QUERY_CANCELED = "57014"


def build_engine_options(url: str) -> Dict[str, Any]:
    """Engine keyword arguments with bounded waits for the given backend."""
    if url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False, "timeout": settings.DATABASE_POOL_TIMEOUT},
            "echo": settings.DEBUG,
        }

    options: Dict[str, Any] = {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "echo": settings.DEBUG,
    }
    if url.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": settings.DATABASE_POOL_TIMEOUT,
            "options": f"-c statement_timeout={settings.DATABASE_STATEMENT_TIMEOUT_MS}",
        }
    return options


_database_url = settings.get_database_url()
engine = create_engine(_database_url, **build_engine_options(_database_url))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Import models after Base is defined so metadata is populated.
from app import models  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session

    Yields:
        Session: Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """
    Translate store outages into retryable service errors.

    Pool exhaustion and statement timeouts surface as DependencyTimeoutError,
    other operational failures (connection refused, database locked) as
    ServiceUnavailableError.
    """
    try:
        yield
    except PoolTimeoutError as exc:
        logger.error("Store pool timeout during %s: %s", operation, exc)
        raise DependencyTimeoutError(f"Timed out waiting for the store during {operation}") from exc
    except OperationalError as exc:
        if getattr(exc.orig, "pgcode", None) == _PG_QUERY_CANCELED:
            logger.error("Store statement timeout during %s", operation)
            raise DependencyTimeoutError(f"Store statement timed out during {operation}") from exc
        logger.error("Store unavailable during %s: %s", operation, exc)
        raise ServiceUnavailableError(f"Store unavailable during {operation}") from exc


def store_operation(operation: str) -> Callable[[F], F]:
    """Decorator form of store_guard for service methods."""
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with store_guard(operation):
                return func(*args, **kwargs)
        return wrapper  # type: ignore[return-value]
    return decorator


def init_db() -> None:
    """
    Initialize database according to configured strategy.

    DB_INIT_MODE:
      - migrate: require alembic_version table (migration-first discipline)
      - create_all: legacy behavior for local/dev bootstrap
      - off: skip initialization check
    """
    mode = settings.DB_INIT_MODE.lower().strip()
    if mode == "off":
        logger.info("DB initialization check skipped (DB_INIT_MODE=off)")
        return

    if mode == "create_all":
        Base.metadata.create_all(bind=engine)
        logger.warning("Using create_all database initialization (recommended only for local development).")
        return

    if mode == "migrate":
        with engine.connect() as conn:
            if engine.dialect.name == "postgresql":
                version_table_exists = conn.execute(
                    text("SELECT to_regclass('public.alembic_version')")
                ).scalar()
                exists = bool(version_table_exists)
            elif engine.dialect.name == "sqlite":
                version_table_exists = conn.execute(
                    text(
                        "SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'"
                    )
                ).fetchone()
                exists = bool(version_table_exists)
            else:
                exists = "alembic_version" in inspect(conn).get_table_names()
            if settings.DB_REQUIRE_HEAD and not exists:
                raise RuntimeError(
                    "Migration table missing. Run Alembic migrations before starting the API."
                )
        logger.info("Migration metadata detected.")
        return

    raise RuntimeError(f"Unknown DB_INIT_MODE: {settings.DB_INIT_MODE}")
