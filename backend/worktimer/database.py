from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import StoreUnavailableError, TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_URL = f"sqlite:///{settings.sqlite_path}" if settings.storage_backend == "sqlite" else None
if settings.storage_backend != "sqlite":
    raise NotImplementedError("Only the sqlite backend is implemented")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    future=True,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


@contextmanager
def db_session(factory: Callable[[], Session] = SessionLocal) -> Generator:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _is_conflict(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    message = str(exc.orig).lower() if getattr(exc, "orig", None) is not None else str(exc).lower()
    if isinstance(exc, IntegrityError):
        # concurrent first insert; CHECK violations are not retried
        return "unique" in message or "primary key" in message
    if isinstance(exc, OperationalError):
        return "locked" in message or "busy" in message
    return False


def run_transaction(
    factory: Callable[[], Session],
    fn: Callable[[Session], T],
    *,
    retries: int | None = None,
    label: str = "transaction",
) -> T:
    """Run ``fn`` inside one commit, retrying when a concurrent writer wins.

    ``fn`` must be safe to call again: every attempt starts from a fresh
    session, so all reads inside it see the latest committed data.
    """
    attempts = retries if retries is not None else settings.transaction_retries
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        session = factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except (StaleDataError, DBAPIError) as exc:
            session.rollback()
            if not _is_conflict(exc):
                raise StoreUnavailableError(f"{label} failed: {exc}") from exc
            last_error = exc
            logger.warning("%s conflicted (attempt %s/%s): %s", label, attempt, attempts, exc)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
    raise TransactionConflictError(
        f"{label} did not commit after {attempts} attempts", attempts=attempts
    ) from last_error
