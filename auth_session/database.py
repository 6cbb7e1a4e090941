"""
SQLAlchemy engine and session factory behind the credential store.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth_session.config import DATABASE_URL
from auth_session.models import Base


def _create_engine(url: str) -> Engine:
    if "sqlite" not in url:
        return create_engine(url)
    # Credential store calls run in asyncio.to_thread workers, never on the creating thread
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url.startswith("sqlite:///:memory:"):
        # One shared connection; each worker would otherwise open its own empty database
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = _create_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create the credentials table if missing."""
    Base.metadata.create_all(bind=engine)
