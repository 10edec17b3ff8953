"""
User Repository.
Callers are created lazily on first sight with their plan's starting credits.
"""
import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Optional

from .models import User, Plan, STARTING_CREDITS

logger = logging.getLogger(__name__)


class BaseUserRepository(ABC):

    @abstractmethod
    def get(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def get_or_create(self, user_id: str, plan: Plan = Plan.FREE) -> User:
        """Return the caller, registering it with starting credits if new."""
        pass

    @abstractmethod
    def save(self, user: User) -> User:
        """Persist profile fields (plan). Balances move only through the ledger."""
        pass


class InMemoryUserRepository(BaseUserRepository):
    """Dict-backed repository for development and tests."""

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = Lock()

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def get_or_create(self, user_id: str, plan: Plan = Plan.FREE) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                user = User(user_id=user_id, plan=plan, credits=STARTING_CREDITS[plan])
                self._users[user_id] = user
                logger.info(f"Registered caller {user_id} (plan={plan.value}, credits={user.credits})")
            return user

    def save(self, user: User) -> User:
        with self._lock:
            user.touch()
            self._users[user.user_id] = user
            return user


_repository: Optional[BaseUserRepository] = None


def get_user_repository() -> BaseUserRepository:
    """User repository for the backend named by STORAGE_BACKEND."""
    global _repository

    if _repository is None:
        from mediaflow.persistence import is_sqlite_backend, SQLiteUserRepository

        _repository = SQLiteUserRepository() if is_sqlite_backend() else InMemoryUserRepository()
        logger.info(f"Using {type(_repository).__name__}")

    return _repository


def reset_repository() -> None:
    """Reset repository singleton (for testing)."""
    global _repository
    _repository = None
