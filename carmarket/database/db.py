import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from carmarket.config.settings import get_settings
from carmarket.database.models import Base

logger = logging.getLogger(__name__)

settings = get_settings()

engine_kwargs = {"echo": settings.debug}

if "sqlite" in settings.database_url:
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    engine_kwargs["pool_size"] = 10
    engine_kwargs["max_overflow"] = 20
    engine_kwargs["pool_pre_ping"] = True

engine = create_engine(settings.database_url, **engine_kwargs)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db():
    """Create the listing and history tables (development only; production uses Alembic)."""
    Base.metadata.create_all(bind=engine)
    logger.info("Created tables: %s", ", ".join(sorted(Base.metadata.tables)))


def get_db() -> Session:
    """FastAPI dependency: one session per request.

    A request that fails discards anything it flushed but did not commit,
    such as a history row written ahead of a listing update that lost.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
