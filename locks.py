"""Per-user fair locks.

Every mutation of a user's balance runs while holding that user's
``FairLock``. Locks are created on first demand by the ``LockRegistry`` and
live for the rest of the process.
"""
from collections import deque
from typing import Deque, Dict, Optional
import threading


class LockInterruptedError(Exception):
    """Raised to a thread waiting on (or about to acquire) an interrupted lock."""


class FairLock:
    """Non-reentrant mutual exclusion granted in arrival order.

    A thread arriving while others are queued always joins the back of the
    queue, even if the lock happens to be free at that instant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._waiters: Deque[object] = deque()
        self._owner: Optional[int] = None
        self._interrupted = False

    def acquire(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._interrupted:
                raise LockInterruptedError("lock was interrupted")
            if self._owner is None and not self._waiters:
                self._owner = me
                return

            ticket = object()
            self._waiters.append(ticket)
            try:
                while self._owner is not None or self._waiters[0] is not ticket:
                    self._cond.wait()
                    if self._interrupted:
                        raise LockInterruptedError("lock was interrupted")
            except BaseException:
                self._waiters.remove(ticket)
                self._cond.notify_all()
                raise
            self._waiters.popleft()
            self._owner = me

    def release(self) -> None:
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("cannot release un-acquired lock")
            self._owner = None
            self._cond.notify_all()

    def interrupt(self) -> None:
        """Wake every waiter with LockInterruptedError and refuse new acquirers."""
        with self._cond:
            self._interrupted = True
            self._cond.notify_all()

    def locked(self) -> bool:
        with self._cond:
            return self._owner is not None

    @property
    def queue_length(self) -> int:
        with self._cond:
            return len(self._waiters)

    def __enter__(self) -> "FairLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LockRegistry:
    """Maps user ids to their FairLock; locks are never evicted."""

    def __init__(self):
        self._locks: Dict[int, FairLock] = {}
        self._guard = threading.Lock()
        self._interrupted = False

    def lock_for(self, user_id: int) -> FairLock:
        lock = self._locks.get(user_id)
        if lock is not None:
            return lock

        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = FairLock()
                if self._interrupted:
                    lock.interrupt()
                self._locks[user_id] = lock
        return lock

    def interrupt(self) -> None:
        """Interrupt all current and future locks (used at shutdown)."""
        with self._guard:
            self._interrupted = True
            locks = list(self._locks.values())
        for lock in locks:
            lock.interrupt()

    def __len__(self) -> int:
        return len(self._locks)


_lock_registry = LockRegistry()


def get_lock_registry() -> LockRegistry:
    return _lock_registry


def reset_lock_registry():
    """Replace the registry with an empty one (for testing only)."""
    global _lock_registry
    _lock_registry = LockRegistry()
