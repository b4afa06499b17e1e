"""
Engine and session factory for the SQL revocation index.
"""
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from token_broker.models import Base


def make_engine(url: str) -> Engine:
    # In-memory SQLite needs StaticPool so every connection sees the same DB (tests);
    # SQLite in general needs check_same_thread=False under FastAPI's threadpool.
    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create the revocation tables if missing."""
    Base.metadata.create_all(bind=engine)
