from typing import Callable, List
import structlog

from exceptions import PointError, PointInternalError, PointInterruptedError
from locks import FairLock, LockInterruptedError, LockRegistry
from models import PointHistory, TransactionType, UserPoint, current_millis
from repositories import PointHistoryRepository, UserPointRepository

# Configure structured logging
logger = structlog.get_logger()


class PointService:
    def __init__(
        self,
        user_point_repo: UserPointRepository,
        history_repo: PointHistoryRepository,
        lock_registry: LockRegistry,
    ):
        self.user_point_repo = user_point_repo
        self.history_repo = history_repo
        self.lock_registry = lock_registry

    def charge(self, user_id: int, amount: int) -> UserPoint:
        """Add ``amount`` points to a user's balance."""
        return self._transact(user_id, amount, TransactionType.CHARGE, UserPoint.charged)

    def use(self, user_id: int, amount: int) -> UserPoint:
        """Subtract ``amount`` points from a user's balance."""
        return self._transact(user_id, amount, TransactionType.USE, UserPoint.used)

    def get_balance(self, user_id: int) -> UserPoint:
        # Lock-free: may observe state between two writes on the same user
        return self.user_point_repo.select_by_id(user_id)

    def get_histories(self, user_id: int) -> List[PointHistory]:
        histories = self.history_repo.select_all_by_user_id(user_id)
        if not histories:
            return []
        return histories

    def _transact(
        self,
        user_id: int,
        amount: int,
        type: TransactionType,
        apply: Callable[[UserPoint, int], int],
    ) -> UserPoint:
        """Run one charge/use under the user's lock and audit it exactly once.

        The history entry carries the requested amount and is tagged ``type``
        on success, FAIL otherwise. It is appended before the lock is released,
        so a user's entries follow the order in which the lock was granted.
        """
        try:
            lock = self._acquire(user_id)
        except PointError as e:
            self._log_rejection(user_id, amount, type, e)
            self._record(user_id, amount, TransactionType.FAIL)
            raise

        outcome = TransactionType.FAIL
        try:
            current = self._select(user_id)
            next_point = apply(current, amount)
            updated = self._write(user_id, next_point)
            outcome = type
        except PointError as e:
            self._log_rejection(user_id, amount, type, e)
            raise
        finally:
            try:
                self._record(user_id, amount, outcome)
            finally:
                lock.release()

        logger.debug(
            "Point transaction applied",
            user_id=user_id,
            type=type.value,
            amount=amount,
            old_point=current.point,
            new_point=updated.point,
        )
        return updated

    def _log_rejection(self, user_id: int, amount: int, type: TransactionType, error: PointError) -> None:
        logger.warning(
            "Point transaction rejected",
            user_id=user_id,
            type=type.value,
            amount=amount,
            error=error.kind,
            detail=error.message,
        )

    def _acquire(self, user_id: int) -> FairLock:
        lock = self.lock_registry.lock_for(user_id)
        try:
            lock.acquire()
        except LockInterruptedError as e:
            raise PointInterruptedError() from e
        return lock

    def _select(self, user_id: int) -> UserPoint:
        try:
            return self.user_point_repo.select_by_id(user_id)
        except Exception as e:
            logger.error("Failed to read user point", user_id=user_id, error=str(e), exc_info=True)
            raise PointInternalError() from e

    def _write(self, user_id: int, point: int) -> UserPoint:
        try:
            return self.user_point_repo.insert_or_update(user_id, point)
        except Exception as e:
            logger.error(
                "Failed to write user point", user_id=user_id, point=point, error=str(e), exc_info=True
            )
            raise PointInternalError() from e

    def _record(self, user_id: int, amount: int, type: TransactionType) -> PointHistory:
        try:
            return self.history_repo.insert(user_id, amount, type, current_millis())
        except Exception as e:
            logger.critical(
                "Point history append failed, audit record lost",
                user_id=user_id,
                amount=amount,
                type=type.value,
                error=str(e),
                exc_info=True,
            )
            raise PointInternalError("Point history could not be recorded") from e


# Factory function for dependency injection
def get_point_service(
    user_point_repo: UserPointRepository,
    history_repo: PointHistoryRepository,
    lock_registry: LockRegistry,
) -> PointService:
    return PointService(user_point_repo, history_repo, lock_registry)
