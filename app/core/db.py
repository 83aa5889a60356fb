from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .settings import config_settings

DATABASE_URL = config_settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    options = {"connect_args": {"check_same_thread": False}}
    # An in-memory database only lives as long as its single connection
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return options


# 1. SQLAlchemy Engine
# Manages the connection pool and dialect.
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# 2. SessionLocal
# Each request (and each background analytics dispatch) gets its own session.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Creates any missing tables for the ORM models."""
    # Importing the models registers them on Base.metadata
    from app.models.orm import assignment, event, experiment  # noqa: F401
    from app.models.orm.base import Base

    Base.metadata.create_all(bind=engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        # Ensures the session is closed even if an exception occurs
        db.close()
