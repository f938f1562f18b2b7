"""
Database session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shopfloor.core.settings import get_settings
from shopfloor.db.base import Base
from shopfloor.logging_config import get_logger

logger = get_logger(__name__)
settings = get_settings()

connection_string = settings.database_url

if settings.DATABASE_URL:
    logger.info("Database connection: explicit DATABASE_URL")
else:
    # Log connection info (without password)
    logger.info(f"Database connection: {settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME} (PostgreSQL)")

engine_kwargs = {
    "echo": False,  # Set to True for SQL query logging
    "pool_pre_ping": True,  # Verify connections before using
}
if connection_string.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    engine_kwargs["pool_recycle"] = 3600  # Recycle connections after 1 hour

engine = create_engine(connection_string, **engine_kwargs)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(bind=None):
    """Create all tables (idempotent)."""
    import shopfloor.models  # noqa: F401

    logger.info("Checking database tables...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")


def get_db():
    """
    Generator yielding a session that is always closed afterwards.

    Usage:
        for db in get_db():
            engine = WorkOrderEngine(db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
