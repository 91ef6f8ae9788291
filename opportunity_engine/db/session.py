"""Database session utilities"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from opportunity_engine.db.database import get_session


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Unit-of-work session: commits on success, rolls back on any error.

    Each pipeline worker opens its own session per symbol so no session is
    shared between concurrently running symbols.

    Usage:
        with get_db_session() as db:
            ...
    """
    session_gen = get_session()
    db = next(session_gen)
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        session_gen.close()


def commit_or_rollback(db: Session) -> bool:
    """
    Commit the pending unit of work.

    Returns:
        True when committed, False when a unique constraint rejected it
        (the session is rolled back and stays usable)
    """
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False
