from __future__ import annotations

import json
import logging
import os
import socket
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from ralph_mode.atomic import atomic_write_text

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class SessionLockError(RuntimeError):
    """Raised when the session lock cannot be acquired or kept."""


class AlreadyLockedError(SessionLockError):
    """Raised when another live controller holds the session lock."""

    def __init__(self, owner_id: str, acquired_at: str) -> None:
        super().__init__(
            f"Task list is locked by {owner_id} (acquired {acquired_at}). "
            "Wait for it to finish or let its heartbeat go stale."
        )
        self.owner_id = owner_id
        self.acquired_at = acquired_at


class LockLostError(SessionLockError):
    """Raised when a held lock was reclaimed by another controller."""


@dataclass(slots=True)
class SessionLock:
    owner_id: str
    acquired_at: str
    heartbeat_at: str
    heartbeat_epoch: float
    pid: int
    hostname: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> SessionLock:
        return cls(
            owner_id=str(payload["owner_id"]),
            acquired_at=str(payload["acquired_at"]),
            heartbeat_at=str(payload["heartbeat_at"]),
            heartbeat_epoch=float(payload["heartbeat_epoch"]),  # type: ignore[arg-type]
            pid=int(payload.get("pid", 0)),  # type: ignore[arg-type]
            hostname=str(payload.get("hostname", "")),
        )


class SessionGuard:
    """Keeps a single live controller per task list.

    The lock is a JSON file created with ``O_EXCL``. Liveness is judged by
    the heartbeat timestamp only: a holder that stops heartbeating for longer
    than ``liveness_seconds`` loses the lock even if its process still runs.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        liveness_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.lock_path = lock_path
        self.liveness_seconds = liveness_seconds
        self._clock = clock

    def _read(self) -> SessionLock | None:
        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return SessionLock.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable session lock at %s", self.lock_path)
            return None

    def current(self) -> SessionLock | None:
        return self._read()

    def is_stale(self, lock: SessionLock) -> bool:
        return self._clock() - lock.heartbeat_epoch > self.liveness_seconds

    def _new_lock(self, owner_id: str) -> SessionLock:
        now_iso = _utcnow_iso()
        return SessionLock(
            owner_id=owner_id,
            acquired_at=now_iso,
            heartbeat_at=now_iso,
            heartbeat_epoch=self._clock(),
            pid=os.getpid(),
            hostname=socket.gethostname(),
        )

    def _create_exclusive(self, lock: SessionLock) -> bool:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(lock.to_dict(), ensure_ascii=False))
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def _reclaim(self, stale: SessionLock | None) -> None:
        # Move the stale file aside first so only one contender can win the re-create.
        tombstone = self.lock_path.with_name(f"{self.lock_path.name}.stale-{uuid4().hex[:8]}")
        try:
            os.replace(self.lock_path, tombstone)
        except FileNotFoundError:
            return
        moved = None
        try:
            moved = SessionLock.from_dict(json.loads(tombstone.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
            moved = None
        finally:
            try:
                tombstone.unlink()
            except FileNotFoundError:
                pass
        if moved is not None and not self.is_stale(moved):
            # Another contender re-created a live lock in between; put it back.
            self._create_exclusive(moved)
            raise AlreadyLockedError(moved.owner_id, moved.acquired_at)
        logger.info(
            "Reclaimed stale session lock from %s",
            stale.owner_id if stale is not None else "unreadable lock file",
        )

    def _check_unreadable_lock(self) -> None:
        # A lock file that exists but cannot be parsed may be mid-creation.
        try:
            modified = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return
        if self._clock() - modified <= self.liveness_seconds:
            acquired_at = datetime.fromtimestamp(modified, UTC).replace(microsecond=0)
            raise AlreadyLockedError("unknown", acquired_at.isoformat())

    def acquire(self, owner_id: str | None = None) -> SessionLock:
        owner = owner_id or f"ralph-{uuid4().hex[:12]}"
        for _ in range(3):
            lock = self._new_lock(owner)
            if self._create_exclusive(lock):
                logger.debug("Acquired session lock %s for %s", self.lock_path, owner)
                return lock
            existing = self._read()
            if existing is None:
                self._check_unreadable_lock()
            if existing is not None and existing.owner_id == owner and not self.is_stale(existing):
                return self.heartbeat(existing)
            if existing is not None and not self.is_stale(existing):
                raise AlreadyLockedError(existing.owner_id, existing.acquired_at)
            self._reclaim(existing)
        current = self._read()
        if current is not None:
            raise AlreadyLockedError(current.owner_id, current.acquired_at)
        raise SessionLockError(f"Could not acquire session lock at {self.lock_path}")

    def heartbeat(self, lock: SessionLock) -> SessionLock:
        current = self._read()
        if current is None or current.owner_id != lock.owner_id:
            holder = current.owner_id if current is not None else "nobody"
            raise LockLostError(
                f"Session lock for {lock.owner_id} was lost (now held by {holder})."
            )
        lock.heartbeat_at = _utcnow_iso()
        lock.heartbeat_epoch = self._clock()
        atomic_write_text(self.lock_path, json.dumps(lock.to_dict(), ensure_ascii=False))
        return lock

    def release(self, lock: SessionLock) -> None:
        current = self._read()
        if current is None or current.owner_id != lock.owner_id:
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Released session lock %s for %s", self.lock_path, lock.owner_id)
