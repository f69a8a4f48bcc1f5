# backend/database.py
import logging
import threading

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import DATABASE_URL

logger = logging.getLogger(__name__)

# For SQLite
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
else:
    # For PostgreSQL
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

_init_lock = threading.Lock()
_initialized = False


def init_db(bind=None):
    """Create tables once per process, even if startup runs concurrently."""
    global _initialized
    with _init_lock:
        if _initialized and bind is None:
            return
        # models must be imported so the tables are registered on Base
        import models  # noqa: F401

        Base.metadata.create_all(bind=bind or engine)
        if bind is None:
            _initialized = True
        logger.info("Database schema ready")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
