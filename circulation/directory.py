import logging
import threading
from typing import Callable, Iterator, List, Optional

from circulation.models import User, UserRole, as_fields, build, utcnow
from circulation.schemas import UserCreate, UserUpdate
from exceptions.exceptions import ConflictError, UserNotFoundError

logger = logging.getLogger(__name__)


class DirectoryStore:
    """User accounts and their roles.

    With ``require_admin`` on, the last admin can be neither removed nor
    demoted.  Which views a role may reach is decided by the caller.
    """

    def __init__(self, lock: Optional[threading.RLock] = None, require_admin: bool = True):
        self._lock = lock or threading.RLock()
        self._users: dict[str, User] = {}
        self._removal_guards: List[Callable[[str], bool]] = []
        self.require_admin = require_admin

    def add_removal_guard(self, guard: Callable[[str], bool]) -> None:
        self._removal_guards.append(guard)

    def _require(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _check_email_free(self, email: str, user_id: Optional[str] = None) -> None:
        for user in self._users.values():
            if user.email.lower() == email.lower() and user.id != user_id:
                raise ConflictError(f"Email {email} is already registered")

    def _is_last_admin(self, user: User) -> bool:
        if not self.require_admin or user.role != UserRole.ADMIN:
            return False
        return not any(
            other.role == UserRole.ADMIN and other.id != user.id
            for other in self._users.values()
        )

    def add_user(self, fields: UserCreate | dict) -> User:
        data = as_fields(fields)
        data.pop("password", None)
        user = build(User, data)
        with self._lock:
            if user.id in self._users:
                raise ConflictError(f"User with id {user.id} already exists")
            self._check_email_free(user.email)
            self._users[user.id] = user
        logger.info(f"Added {user.role.value} {user.email}")
        return user.model_copy()

    def update_user(self, user_id: str, fields: UserUpdate | dict) -> User:
        patch = as_fields(fields, exclude_unset=True)
        for key in ("id", "created_at", "password"):
            patch.pop(key, None)
        with self._lock:
            current = self._require(user_id)
            merged = current.model_dump()
            merged.update({k: v for k, v in patch.items() if v is not None})
            merged["updated_at"] = utcnow()
            user = build(User, merged)
            self._check_email_free(user.email, user_id)
            if user.role != UserRole.ADMIN and self._is_last_admin(current):
                raise ConflictError("The last admin cannot be demoted")
            self._users[user_id] = user
        logger.info(f"Updated user {user_id}")
        return user.model_copy()

    def remove_user(self, user_id: str) -> User:
        with self._lock:
            user = self._require(user_id)
            if self._is_last_admin(user):
                raise ConflictError("The last admin cannot be removed")
            if any(guard(user_id) for guard in self._removal_guards):
                raise ConflictError(
                    f"User with id {user_id} has open transactions and cannot be removed"
                )
            del self._users[user_id]
        logger.info(f"Removed user {user_id}")
        return user

    def get_user(self, user_id: str) -> User:
        with self._lock:
            return self._require(user_id).model_copy()

    def find_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email:
                    return user.model_copy()
        return None

    def find_users(self, predicate: Optional[Callable[[User], bool]] = None) -> Iterator[User]:
        with self._lock:
            snapshot = [user.model_copy() for user in self._users.values()]
        return (user for user in snapshot if predicate is None or predicate(user))

    def merge_user(self, row: dict) -> Optional[User]:
        user = build(User, row)
        with self._lock:
            current = self._users.get(user.id)
            if current is not None and user.updated_at < current.updated_at:
                logger.info(f"Skipping stale row for user {user.id}")
                return None
            self._users[user.id] = user
        return user.model_copy()

    def discard_user(self, user_id: str) -> bool:
        with self._lock:
            return self._users.pop(user_id, None) is not None

    def restore_user(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = user.model_copy()
