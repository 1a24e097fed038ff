from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from persona_engine.core.settings import config_settings
from persona_engine.models.orm.base import Base

DATABASE_URL = config_settings.DATABASE_URL

# 1. SQLAlchemy Engine
# Manages the connection pool and dialect.
engine = create_engine(
    DATABASE_URL,
    # Only needed for SQLite to handle concurrent requests
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)

# 2. SessionLocal
# Each request gets its own session (a unit of work).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> None:
    """Creates every table registered on the ORM Base."""
    # Import for side effects: registers the tables on Base.metadata
    from persona_engine.models.orm import (  # noqa: F401
        assignment,
        content,
        conversion,
        engagement,
        experiment,
        insight_cache,
        profile,
    )

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
