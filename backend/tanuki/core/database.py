from sqlalchemy.orm import sessionmaker
from sqlalchemy import create_engine
import logging

from tanuki.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


# pool_pre_ping: verify connections before using them
# pool_recycle: recycle connections after N seconds to prevent stale connections
engine = create_engine(
    DATABASE_URL,
    pool_size=10,
    max_overflow=20,
    pool_timeout=30,
    pool_recycle=3600,
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None):
    """Create all tables. Idempotent; existing tables are left alone."""
    from tanuki.models import Base
    target = bind if bind is not None else engine
    Base.metadata.create_all(bind=target)
    logger.info("Database schema ensured")
