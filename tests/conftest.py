import os

# Select quiet, unthrottled settings before any project module is imported
os.environ.setdefault("POINT_ENV", "testing")

import pytest

from locks import LockRegistry, reset_lock_registry
from repositories import (
    InMemoryPointHistoryRepository,
    InMemoryUserPointRepository,
    reset_repositories,
)
from services import PointService


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories, locks and rate limits before each test."""
    from main import limiter

    reset_repositories()
    reset_lock_registry()
    limiter.reset()


@pytest.fixture
def user_point_repo():
    return InMemoryUserPointRepository()


@pytest.fixture
def history_repo():
    return InMemoryPointHistoryRepository()


@pytest.fixture
def lock_registry():
    return LockRegistry()


@pytest.fixture
def service(user_point_repo, history_repo, lock_registry):
    return PointService(user_point_repo, history_repo, lock_registry)
