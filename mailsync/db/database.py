import contextlib
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from mailsync.config import settings
from mailsync.utils.logging import get_logger

logger = get_logger("database")

Base = declarative_base()


def create_sync_engine(database_url: str = None):
    """
    Create the synchronous engine shared by API handlers and Celery tasks.

    SQLite URLs (used by the test suite) get a single shared connection instead
    of a server-style pool.
    """
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.debug,
        )

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=settings.debug,
    )


sync_engine = create_sync_engine()

sync_session_factory = sessionmaker(
    bind=sync_engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


@contextlib.contextmanager
def get_celery_db_session() -> Iterator[Session]:
    """
    Context manager for synchronous database sessions in Celery tasks.

    Usage:
        with get_celery_db_session() as db:
            account = db.get(Account, account_id)
            # Commit happens automatically on context exit
    """
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Celery database session error - rolled back transaction")
        raise
    finally:
        session.close()


def check_database_health() -> bool:
    """Check database connectivity."""
    try:
        with get_celery_db_session() as session:
            session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def create_tables():
    """Create all tables."""
    from mailsync.db import models  # noqa: F401  register mappers
    Base.metadata.create_all(bind=sync_engine)


def drop_tables():
    """Drop all tables."""
    from mailsync.db import models  # noqa: F401
    Base.metadata.drop_all(bind=sync_engine)
