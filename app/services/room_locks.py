from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.settings import get_settings

logger = logging.getLogger("app.room_locks")

PENDING_RELEASES_KEY = "room_lock_releases"


class RoomLockTimeout(Exception):
    def __init__(self, room_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Timed out after {timeout_seconds}s waiting for room {room_id}")
        self.room_id = room_id
        self.timeout_seconds = timeout_seconds


class RoomLock(Protocol):
    def acquire(self, db: Session, room_id: str) -> None:
        """Block until the caller holds the room; released when the transaction ends."""


def register_release(db: Session, release: Callable[[], None]) -> None:
    db.info.setdefault(PENDING_RELEASES_KEY, []).append(release)


def release_pending_locks(db: Session) -> None:
    releases: list[Callable[[], None]] = db.info.pop(PENDING_RELEASES_KEY, [])
    for release in reversed(releases):
        try:
            release()
        except RuntimeError:
            logger.exception("room_lock_release_failed")


class AdvisoryRoomLock:
    """PostgreSQL transaction-scoped advisory lock; the server frees it on commit/rollback."""

    def acquire(self, db: Session, room_id: str) -> None:
        db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:room_id))"), {"room_id": room_id})


class InProcessRoomLock:
    """Per-room mutex map for single-instance deployments."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, room_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[room_id] = lock
            return lock

    def acquire(self, db: Session, room_id: str) -> None:
        timeout = self.timeout_seconds
        if timeout is None:
            timeout = get_settings().room_lock_timeout_seconds
        lock = self._lock_for(room_id)
        if not lock.acquire(timeout=max(0.0, float(timeout))):
            raise RoomLockTimeout(room_id, float(timeout))
        register_release(db, lock.release)


_in_process_lock = InProcessRoomLock()
_advisory_lock = AdvisoryRoomLock()


def get_room_lock(db: Session) -> RoomLock:
    backend = (get_settings().room_lock_backend or "auto").strip().lower()
    if backend == "advisory":
        return _advisory_lock
    if backend == "memory":
        return _in_process_lock
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        return _advisory_lock
    return _in_process_lock
