"""Database connection and session management."""

from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def init_database(database_url: str = "sqlite:///./verbapath.db",
                  echo: bool = False,
                  connect_args: Optional[dict] = None) -> Engine:
    """Create the engine and bind the session factory to it."""
    global _engine
    
    reset_database_engine()
    
    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    
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
            connect_args=connect_args
        )
    
    SessionLocal.configure(bind=_engine)
    return _engine


def get_database_engine() -> Engine:
    """Return the current engine, creating the default one on first use."""
    if _engine is None:
        return init_database()
    return _engine


def reset_database_engine():
    """Dispose the global engine (mainly for testing)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def get_db():
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    Base.metadata.drop_all(bind=get_database_engine())
