"""Database base configuration"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from taskbridge.config import settings

logger = logging.getLogger(__name__)

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _purge_expired_entries():
    """Drop KV rows whose TTL already passed. Failures are logged, not raised."""
    from taskbridge.models.kv_entry import KVEntry, utcnow

    db = SessionLocal()
    try:
        removed = db.query(KVEntry).filter(KVEntry.expires_at <= utcnow()).delete(synchronize_session=False)
        db.commit()
        if removed:
            logger.info(f"Purged {removed} expired KV entries")
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not purge expired KV entries: {e}")
    finally:
        db.close()


def init_db():
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    # (Without this, create_all() may create no tables in some import orders.)
    import taskbridge.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=engine)
    _purge_expired_entries()
