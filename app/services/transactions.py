from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.services.room_locks import RoomLockTimeout, release_pending_locks
from app.settings import get_settings

logger = logging.getLogger("app.transactions")

T = TypeVar("T")

SERIALIZABLE = "SERIALIZABLE"


def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    isolation_level: str = SERIALIZABLE,
    attempts: int | None = None,
    backoff_base: float | None = None,
) -> T:
    """
    Run ``work`` in its own transaction and commit it.

    Any implicit transaction already open on the session is committed first so
    the isolation level applies to a fresh transaction. Serialization failures,
    deadlocks and room lock timeouts roll back and retry with exponential
    backoff; any other exception rolls back and propagates unchanged.
    """
    settings = get_settings()
    max_attempts = max(1, attempts if attempts is not None else settings.reservation_max_attempts)
    backoff = backoff_base if backoff_base is not None else settings.reservation_retry_backoff_seconds

    for attempt in range(max_attempts):
        if db.in_transaction():
            db.commit()
        try:
            db.connection(execution_options={"isolation_level": isolation_level})
            result = work(db)
            db.commit()
            return result
        except (OperationalError, RoomLockTimeout) as exc:
            db.rollback()
            logger.warning(
                "transaction_retryable_failure",
                extra={
                    "attempt": attempt + 1,
                    "max_attempts": max_attempts,
                    "error": exc.__class__.__name__,
                },
            )
            if attempt >= max_attempts - 1:
                raise ApiError(
                    status_code=500,
                    code="TRANSACTION_FAILED",
                    message="Could not complete the operation, please retry.",
                ) from exc
            time.sleep(backoff * (2**attempt))
        except Exception:
            db.rollback()
            raise
        finally:
            release_pending_locks(db)

    raise ApiError(status_code=500, code="TRANSACTION_FAILED", message="Could not complete the operation.")
