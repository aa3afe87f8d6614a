"""Database connection and session management."""

from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config

# Global engine instance
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()


def get_database_engine(database_url: Optional[str] = None,
                        echo: Optional[bool] = None,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the database engine."""
    global _engine

    if _engine is None:
        config = get_config()
        if database_url is None:
            database_url = config.database_url
        if echo is None:
            echo = config.database_echo

        if connect_args is None:
            if database_url.startswith("sqlite"):
                connect_args = {"check_same_thread": False}
            else:
                connect_args = {}

        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            _engine = create_engine(
                database_url,
                echo=echo,
                connect_args=connect_args,
                pool_pre_ping=True
            )

    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


engine = get_database_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(bind=engine)


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)


@contextmanager
def session_scope(db_session: Optional[Session] = None) -> Iterator[Session]:
    """Yield the caller's session, or a fresh one that is closed afterwards."""
    if db_session is not None:
        yield db_session
        return
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def configure_database(database_url: str, echo: bool = False) -> Engine:
    """Point the module engine and session factory at another database."""
    global engine
    reset_database_engine()
    engine = get_database_engine(database_url, echo)
    SessionLocal.configure(bind=engine)
    return engine
