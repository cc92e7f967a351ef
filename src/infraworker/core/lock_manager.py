"""Lock manager for provisioning concurrency control.

Provides owner-based, time-bounded locking so that at most one worker
instance provisions a given environment at a time. Locks carry an expiry;
an expired lock is abandoned and may be seized by the next acquirer.

Every check-and-write goes through ``DurableRecord.compare_and_swap`` so
two ticks racing for an abandoned lock cannot both believe they won.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import ValidationError

from ..constants import MAX_LOCK_RETRIES
from ..errors import InfraWorkerError, LockHeld, LockLostError
from ..models import LockInfo, utcnow
from .records import DurableRecord

logger = logging.getLogger(__name__)


def _parse(raw: str) -> LockInfo | None:
    try:
        return LockInfo.model_validate_json(raw)
    except (ValidationError, UnicodeError):
        # Corrupted lock file - treat as abandoned
        return None


class LockManager:
    """Acquire, refresh and release the per-environment provisioning lock."""

    def __init__(
        self,
        record: DurableRecord,
        environment: str,
        timeout: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.record = record
        self.environment = environment
        self.timeout = timeout
        self._clock = clock

    def current(self) -> LockInfo | None:
        """Get the recorded lock, expired or not. None if absent or corrupted."""
        raw = self.record.read()
        if raw is None:
            return None
        return _parse(raw)

    def is_held(self) -> tuple[bool, LockInfo | None]:
        """Return whether an unexpired lock exists, and the lock itself."""
        lock = self.current()
        if lock is None or lock.is_expired(self._clock()):
            return False, lock
        return True, lock

    def acquire(self, owner_id: str, timeout: timedelta | None = None) -> LockInfo:
        """Acquire the lock for ``owner_id``.

        Args:
            owner_id: Identifier of the acquiring worker
            timeout: Lock lifetime (defaults to the manager's timeout)

        Returns:
            The lock now held by ``owner_id``

        Raises:
            LockHeld: If another owner holds an unexpired lock
            InfraWorkerError: If the record stayed contended for every attempt
        """
        lifetime = timeout or self.timeout

        for _ in range(MAX_LOCK_RETRIES):
            now = self._clock()
            raw = self.record.read()
            existing = _parse(raw) if raw is not None else None

            if existing is not None and not existing.is_expired(now):
                if existing.owner != owner_id or existing.environment != self.environment:
                    raise LockHeld(existing)
                # We already own the lock - extend it
                lock = existing.model_copy(update={"expires_at": now + lifetime})
            else:
                if existing is not None:
                    logger.warning(
                        f"Seizing abandoned lock {existing.id} from {existing.owner} "
                        f"(expired {existing.expires_at.isoformat()})"
                    )
                lock = LockInfo(
                    owner=owner_id,
                    acquired_at=now,
                    expires_at=now + lifetime,
                    environment=self.environment,
                )

            if self.record.compare_and_swap(raw, lock.model_dump_json(indent=2)):
                logger.debug(f"Lock {lock.id} acquired by {owner_id}")
                return lock
            # Record changed between read and swap - re-evaluate

        raise InfraWorkerError("Failed to acquire lock after multiple attempts")

    def refresh(self, lock: LockInfo) -> LockInfo:
        """Push ``expires_at`` forward on a lock we hold.

        Raises:
            LockLostError: If the lock is gone, owned by someone else, or expired
        """
        now = self._clock()
        raw = self.record.read()
        current = _parse(raw) if raw is not None else None

        if current is None or current.id != lock.id or current.owner != lock.owner:
            raise LockLostError(f"Lock {lock.id} is no longer held by {lock.owner}")
        if current.is_expired(now):
            raise LockLostError(
                f"Lock {lock.id} expired at {current.expires_at.isoformat()} before refresh"
            )

        refreshed = current.model_copy(update={"expires_at": now + self.timeout})
        if not self.record.compare_and_swap(raw, refreshed.model_dump_json(indent=2)):
            raise LockLostError(f"Lock {lock.id} changed while refreshing")
        return refreshed

    def release(self, lock: LockInfo) -> bool:
        """Release ``lock`` if its owner is still the recorded owner.

        Returns:
            True if the lock record was removed
        """
        raw = self.record.read()
        if raw is None:
            return False
        current = _parse(raw)
        if current is None or current.id != lock.id or current.owner != lock.owner:
            holder = current.owner if current else "unknown"
            logger.warning(f"Not releasing lock {lock.id}: now held by {holder}")
            return False
        return self.record.compare_and_swap(raw, None)

    def cleanup_expired(self) -> bool:
        """Remove the lock record if it has expired. Returns True if removed."""
        raw = self.record.read()
        if raw is None:
            return False
        current = _parse(raw)
        if current is not None and not current.is_expired(self._clock()):
            return False
        return self.record.compare_and_swap(raw, None)

    def force_clear(self) -> None:
        """Drop the lock regardless of owner. Used by forced restarts only."""
        self.record.delete()
