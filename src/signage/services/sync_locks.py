"""Database-backed distributed locks (one row per worker role)."""
from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signage.db.base import as_naive_utc, utcnow
from signage.db.models import SyncLock


def default_owner() -> str:
    """Unique per handle: host, pid and a random suffix."""
    host = os.getenv("HOSTNAME") or socket.gethostname()
    return f"{host}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class LockResult:
    ok: bool
    reason: Optional[str] = None
    was_stale: bool = False


class SyncLockService:
    """Acquire/release rows in sync_locks. Expired locks are broken on acquire."""

    @staticmethod
    def acquire(
        session: Session,
        lock_id: str,
        *,
        owner: str,
        timeout_seconds: int = 30,
    ) -> LockResult:
        now = utcnow()
        expires_at = now + timedelta(seconds=timeout_seconds)

        existing = session.get(SyncLock, lock_id)
        was_stale = bool(
            existing
            and existing.locked
            and existing.expires_at is not None
            and as_naive_utc(existing.expires_at) < now
        )
        if was_stale:
            logger.warning(f"[LOCK] Stale lock detected for {lock_id} (held by {existing.locked_by}), breaking it")

        if existing is None:
            session.add(SyncLock(
                id=lock_id,
                locked=True,
                locked_at=now,
                locked_by=owner,
                expires_at=expires_at,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return LockResult(ok=False, reason=f"Lock {lock_id} created concurrently by another owner")
            return LockResult(ok=True)

        # Status-guarded update: only one contender can flip an unlocked/expired row
        result = session.execute(
            update(SyncLock)
            .where(
                SyncLock.id == lock_id,
                or_(
                    SyncLock.locked.is_(False),
                    SyncLock.expires_at.is_(None),
                    SyncLock.expires_at < now,
                ),
            )
            .values(locked=True, locked_at=now, locked_by=owner, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            session.expire_all()
            return LockResult(ok=True, was_stale=was_stale)

        session.rollback()
        remaining = None
        if existing.expires_at is not None:
            remaining = max(0, int((as_naive_utc(existing.expires_at) - now).total_seconds()))
        return LockResult(
            ok=False,
            reason=f"Lock already held by {existing.locked_by}, expires in {remaining}s",
        )

    @staticmethod
    def release(
        session: Session,
        lock_id: str,
        *,
        owner: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> bool:
        lock = session.get(SyncLock, lock_id)
        if not lock:
            return False
        if owner is not None and lock.locked_by not in (None, owner):
            logger.warning(f"[LOCK] {owner} tried to release {lock_id} held by {lock.locked_by}")
            return False

        lock.locked = False
        lock.locked_at = None
        lock.locked_by = None
        lock.expires_at = None
        if error:
            lock.last_error = error[:1000]
            lock.retry_count = (lock.retry_count or 0) + 1
        elif success:
            lock.last_success_at = utcnow()
            lock.retry_count = 0
        session.commit()
        return True

    @staticmethod
    def extend(session: Session, lock_id: str, *, owner: str, timeout_seconds: int = 30) -> bool:
        """Push expires_at forward. Fails if `owner` no longer holds the lock."""
        result = session.execute(
            update(SyncLock)
            .where(SyncLock.id == lock_id, SyncLock.locked.is_(True), SyncLock.locked_by == owner)
            .values(expires_at=utcnow() + timedelta(seconds=timeout_seconds))
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.expire_all()
        if result.rowcount != 1:
            logger.warning(f"[LOCK] {owner} lost {lock_id} before it could be extended")
            return False
        return True

    @staticmethod
    def force_break(session: Session, lock_id: str) -> None:
        lock = session.get(SyncLock, lock_id)
        if not lock:
            return
        lock.locked = False
        lock.locked_at = None
        lock.locked_by = None
        lock.expires_at = None
        lock.last_error = "Manually broken by admin"
        session.commit()
        logger.info(f"[LOCK] Lock {lock_id} manually broken")

    @staticmethod
    def get_status(session: Session, lock_id: str) -> Optional[SyncLock]:
        return session.get(SyncLock, lock_id)

    @staticmethod
    def cleanup_expired(session: Session) -> int:
        now = utcnow()
        locks = session.execute(
            select(SyncLock).where(SyncLock.locked.is_(True), SyncLock.expires_at < now)
        ).scalars().all()
        for lock in locks:
            lock.locked = False
            lock.locked_at = None
            lock.locked_by = None
            lock.expires_at = None
        session.commit()
        return len(locks)


class SyncLockHandle:
    """A lock owned by one worker instance. Opens a short-lived session per call."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lock_id: str,
        *,
        owner: Optional[str] = None,
        timeout_seconds: int = 30,
    ):
        self.session_factory = session_factory
        self.lock_id = lock_id
        self.owner = owner or default_owner()
        self.timeout_seconds = timeout_seconds
        self.held = False
        self.last_result: Optional[LockResult] = None

    def acquire(self) -> bool:
        session = self.session_factory()
        try:
            self.last_result = SyncLockService.acquire(
                session, self.lock_id, owner=self.owner, timeout_seconds=self.timeout_seconds
            )
        finally:
            session.close()
        self.held = self.last_result.ok
        return self.held

    def release(self, success: bool = True, error: Optional[str] = None) -> None:
        if not self.held:
            return
        session = self.session_factory()
        try:
            SyncLockService.release(session, self.lock_id, owner=self.owner, success=success, error=error)
        finally:
            session.close()
            self.held = False

    def extend(self) -> bool:
        if not self.held:
            return False
        session = self.session_factory()
        try:
            ok = SyncLockService.extend(session, self.lock_id, owner=self.owner, timeout_seconds=self.timeout_seconds)
        finally:
            session.close()
        if not ok:
            self.held = False
        return ok
