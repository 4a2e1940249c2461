from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from newsreader.config import settings


def make_engine(url: str = settings.DATABASE_URL):
    """Create an engine for the article cache."""
    # connect_args is required for SQLite to allow multi-threaded access (FastAPI runs async)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(bind):
    """Each store operation gets its own short-lived session from this factory."""
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


# Base class for all ORM models
Base = declarative_base()
