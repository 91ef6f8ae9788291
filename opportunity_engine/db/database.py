"""Database connection and session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator

Base = declarative_base()

# Global engine and session maker
_engine = None
_SessionLocal = None


def init_database(database_url: str) -> None:
    """
    Initialize database engine and session maker.

    Args:
        database_url: PostgreSQL connection URL (or SQLite URL for tests)
    """
    global _engine, _SessionLocal

    if database_url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        _engine = create_engine(
            database_url,
            pool_pre_ping=True,  # Verify connections before using
            pool_size=5,
            max_overflow=10,
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=_engine
    )


def get_engine():
    """Get database engine"""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_session() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Database session
    """
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    db = _SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables() -> None:
    """Create all tables (for testing purposes)"""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    # Import models so they register on Base.metadata
    import opportunity_engine.db.models  # noqa: F401
    Base.metadata.create_all(bind=_engine)


def drop_all_tables() -> None:
    """Drop all tables (for testing purposes)"""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    Base.metadata.drop_all(bind=_engine)
