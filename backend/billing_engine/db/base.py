"""
Database engine, session factory and declarative base.
"""
import logging
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_engine.core.config import settings
from billing_engine.core.exceptions import StoreError

logger = logging.getLogger(__name__)

Base = declarative_base()

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=settings.db_echo_sql,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

T = TypeVar("T")

# Commit attempts made before a write is reported as a StoreError
COMMIT_ATTEMPTS = 3


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting a database session.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    description: str,
    attempts: int = COMMIT_ATTEMPTS,
) -> T:
    """
    Apply ``work`` to the session and commit, retrying transient failures.

    ``work`` is re-invoked from scratch after each rollback, so it must rebuild
    every pending change itself (new rows and field assignments). Used for
    writes that follow a real gateway call, where losing the record is a
    reconciliation problem.

    Args:
        db: Database session
        work: Callable that stages changes on the session and returns a result
        description: Human readable label used in logs (e.g. the order id)
        attempts: Maximum commit attempts

    Returns:
        Whatever ``work`` returned on the successful attempt

    Raises:
        StoreError: If every attempt failed
    """
    try:
        for attempt in Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(OperationalError),
            reraise=False,
        ):
            with attempt:
                try:
                    result = work(db)
                    db.commit()
                except OperationalError:
                    db.rollback()
                    logger.warning(
                        f"Transient store failure while persisting {description} "
                        f"(attempt {attempt.retry_state.attempt_number}/{attempts})"
                    )
                    raise
            return result
    except RetryError as e:
        logger.critical(
            f"Failed to persist {description} after {attempts} attempts: "
            f"{e.last_attempt.exception()}"
        )
        raise StoreError(
            f"Failed to persist {description}",
            data={"description": description},
        ) from e
    except Exception:
        db.rollback()
        raise
