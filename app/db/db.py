import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# SQLAlchemy Database URL (SQLite for simplicity)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/coverage.db")


def make_engine(database_url: str = DATABASE_URL):
    """Create an engine; SQLite connections are shared with the store's writer thread"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url)


engine = make_engine()

# Create session
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create the coverage tables if they do not exist"""
    # Import models so they register on Base.metadata
    from app.models import coverage_record  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
