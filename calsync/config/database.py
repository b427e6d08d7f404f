"""Database configuration and connection setup"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from calsync.config.settings import get_settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Get or create the database engine"""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs = {"pool_pre_ping": True, "echo": False}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs["pool_size"] = settings.DB_POOL_SIZE
            kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
        _engine = create_engine(settings.DATABASE_URL, **kwargs)
    return _engine


def SessionLocal():
    """Open a new session bound to the configured engine"""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory()


def create_tables():
    """Create all sync tables that do not exist yet"""
    from calsync.models import Base

    Base.metadata.create_all(bind=get_engine())
    logger.info("✅ Calendar sync tables created")


if __name__ == "__main__":
    create_tables()
