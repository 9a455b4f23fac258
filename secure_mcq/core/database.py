import logging
from contextlib import contextmanager
from typing import Generator, Iterator
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from secure_mcq.core.config import settings

logger = logging.getLogger(__name__)


def _engine_options() -> dict:
    if settings.is_sqlite():
        # one shared connection so an in-memory database survives across sessions
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    opts = {
        "pool_pre_ping": True,
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
    }
    if settings.DATABASE_ISOLATION_LEVEL:
        opts["isolation_level"] = settings.DATABASE_ISOLATION_LEVEL
    return opts


engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, future=True, **_engine_options())
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit the unit of work on success, roll everything back on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    """Create tables if they don't exist."""
    from secure_mcq.models.orm import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready")


def close_db() -> None:
    engine.dispose()
