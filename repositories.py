from abc import ABC, abstractmethod
from typing import Dict, List
import random
import threading
import time

from config import get_settings
from models import PointHistory, TransactionType, UserPoint, current_millis


class UserPointRepository(ABC):
    @abstractmethod
    def select_by_id(self, user_id: int) -> UserPoint:
        """Get a user's balance. Returns an empty record if the user was never stored."""
        pass

    @abstractmethod
    def insert_or_update(self, user_id: int, point: int) -> UserPoint:
        """Overwrite a user's balance and return the stored record."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of stored users."""
        pass


class PointHistoryRepository(ABC):
    @abstractmethod
    def insert(
        self, user_id: int, amount: int, type: TransactionType, update_millis: int
    ) -> PointHistory:
        """Append a history entry with a freshly allocated id."""
        pass

    @abstractmethod
    def select_all_by_user_id(self, user_id: int) -> List[PointHistory]:
        """Get a user's entries in insertion order. Empty list if there are none."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of history entries."""
        pass


def _throttle(latency_ms: int) -> None:
    if latency_ms > 0:
        time.sleep(random.uniform(0, latency_ms) / 1000)


class InMemoryUserPointRepository(UserPointRepository):
    # No locking here: writers to one key are serialized by the caller's
    # per-user lock, and dict operations on distinct keys do not interfere.
    def __init__(self, latency_ms: int = 0):
        self.table: Dict[int, UserPoint] = {}
        self.latency_ms = latency_ms

    def select_by_id(self, user_id: int) -> UserPoint:
        _throttle(self.latency_ms)
        stored = self.table.get(user_id)
        if stored is None:
            return UserPoint.empty(user_id)
        return stored

    def insert_or_update(self, user_id: int, point: int) -> UserPoint:
        _throttle(self.latency_ms)
        user_point = UserPoint(id=user_id, point=point, updateMillis=current_millis())
        self.table[user_id] = user_point
        return user_point

    def count(self) -> int:
        return len(self.table)


class InMemoryPointHistoryRepository(PointHistoryRepository):
    def __init__(self, latency_ms: int = 0):
        self.entries: List[PointHistory] = []
        self.by_user: Dict[int, List[PointHistory]] = {}
        self.latency_ms = latency_ms
        self._cursor = 1
        self._lock = threading.Lock()

    def insert(
        self, user_id: int, amount: int, type: TransactionType, update_millis: int
    ) -> PointHistory:
        _throttle(self.latency_ms)
        with self._lock:
            entry = PointHistory(
                id=self._cursor,
                userId=user_id,
                amount=amount,
                type=type,
                updateMillis=update_millis,
            )
            self._cursor += 1
            self.entries.append(entry)
            self.by_user.setdefault(user_id, []).append(entry)
        return entry

    def select_all_by_user_id(self, user_id: int) -> List[PointHistory]:
        _throttle(self.latency_ms)
        with self._lock:
            return list(self.by_user.get(user_id, ()))

    def count(self) -> int:
        return len(self.entries)


def _build_repositories():
    latency_ms = get_settings().store_latency_ms
    return (
        InMemoryUserPointRepository(latency_ms=latency_ms),
        InMemoryPointHistoryRepository(latency_ms=latency_ms),
    )


# Process-wide singletons; state is lost on restart
_user_point_repo, _point_history_repo = _build_repositories()


def get_user_point_repository() -> UserPointRepository:
    return _user_point_repo


def get_point_history_repository() -> PointHistoryRepository:
    return _point_history_repo


def reset_repositories():
    """Reset all repositories to an empty state (for testing only)."""
    global _user_point_repo, _point_history_repo
    _user_point_repo, _point_history_repo = _build_repositories()
