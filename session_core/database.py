"""
Engine and session factory for the durable session store. SQLite by default.
"""
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from session_core.models import Base


def create_store_engine(url: str) -> Engine:
    """
    Build an engine for the store.
    In-memory SQLite needs StaticPool so every connection (and every instance in tests) shares one DB;
    file-based SQLite needs check_same_thread=False because uvicorn may use worker threads.
    """
    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if "sqlite" in url else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create the kv_entries and kv_changes tables if missing."""
    Base.metadata.create_all(bind=engine)
