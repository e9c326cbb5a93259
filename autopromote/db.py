# autopromote/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    """
    Build an engine for the given URL.

    SQLite needs check_same_thread=False because ingestion and evaluation run on
    different threads; an in-memory SQLite database must also share a single
    connection or every session would see an empty database.
    """
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine()

SessionLocal = make_session_factory(engine)

# Base class for models
Base = declarative_base()
