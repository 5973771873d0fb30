"""
Database engine, session factory and transaction helper.
"""
import logging
import random
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from habit_ledger.constants import (
    DATABASE_URL,
    STORAGE_MAX_RETRIES,
    STORAGE_RETRY_BASE_DELAY,
    STORAGE_RETRY_MAX_DELAY,
)
from habit_ledger.exceptions import TransientStorageException

logger = logging.getLogger("habit_ledger.database")

T = TypeVar("T")

Base = declarative_base()


def create_db_engine(url: str = DATABASE_URL, **kwargs):
    """Create engine; SQLite connections are shared across request threads"""
    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 5)
    return create_engine(url, connect_args=connect_args, **kwargs)


engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding a session per request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def calculate_backoff(attempt: int) -> float:
    """
    Exponential backoff with 10% jitter.

    Attempt 1: ~0.05s, 2: ~0.1s, 3: ~0.2s ... capped at STORAGE_RETRY_MAX_DELAY.
    """
    delay = min(STORAGE_RETRY_BASE_DELAY * (2 ** (attempt - 1)), STORAGE_RETRY_MAX_DELAY)
    return delay + random.uniform(0, delay * 0.1)


def run_in_transaction(
    db: Session,
    operation: Callable[[], T],
    name: str,
    max_retries: int = STORAGE_MAX_RETRIES
) -> T:
    """
    Run operation as a single unit of work and commit it.

    On a transient storage error (lock timeout, dropped connection) the
    transaction is rolled back and the WHOLE operation is re-run, so
    existence checks are repeated together with the insert. Any other
    exception rolls back and propagates unchanged.

    Args:
        db: Session the operation works on
        operation: Callable doing reads/writes without committing
        name: Operation name for logs and errors
        max_retries: Retries before giving up

    Returns:
        Whatever operation returns

    Raises:
        TransientStorageException: storage still failing after max_retries
    """
    attempt = 0
    while True:
        try:
            result = operation()
            db.commit()
            return result
        except OperationalError as e:
            db.rollback()
            attempt += 1
            if attempt > max_retries:
                logger.error(f"{name} failed after {attempt} attempts: {e.orig}")
                raise TransientStorageException(name, str(e.orig), attempts=attempt) from e
            delay = calculate_backoff(attempt)
            logger.warning(
                f"{name}: transient storage failure ({e.orig}), "
                f"retry {attempt}/{max_retries} in {delay:.2f}s"
            )
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise
