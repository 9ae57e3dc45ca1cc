from __future__ import annotations

import logging
from threading import Lock

from userapi.models.schemas import User, UserIn
from userapi.observability.operations import OperationRecorder

logger = logging.getLogger(__name__)

_SEED_USERS = (
    User(id=1, name="Alice", email="alice@example.com"),
    User(id=2, name="Bob", email="bob@example.com"),
)


class UserNotFoundError(LookupError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class UserStore:
    """In-memory keyed user collection.

    Every operation is timed as a dependency call through the recorder, the way
    a database round trip would be.
    """

    def __init__(self, recorder: OperationRecorder, seed: tuple[User, ...] = _SEED_USERS) -> None:
        self._recorder = recorder
        self._lock = Lock()
        self._users: dict[int, User] = {user.id: user.model_copy() for user in seed}

    def list_users(self) -> list[User]:
        with self._recorder.time_dependency("select"), self._lock:
            return [user.model_copy() for user in self._users.values()]

    def create_user(self, payload: UserIn) -> User:
        with self._recorder.time_dependency("insert"), self._lock:
            user_id = max(self._users, default=0) + 1
            user = User(id=user_id, name=payload.name, email=payload.email)
            self._users[user_id] = user
        logger.info("user.created", extra={"user_id": user_id})
        return user.model_copy()

    def update_user(self, user_id: int, payload: UserIn) -> User:
        with self._recorder.time_dependency("update"), self._lock:
            if user_id not in self._users:
                raise UserNotFoundError(user_id)
            user = User(id=user_id, name=payload.name, email=payload.email)
            self._users[user_id] = user
        logger.info("user.updated", extra={"user_id": user_id})
        return user.model_copy()

    def delete_user(self, user_id: int) -> None:
        with self._recorder.time_dependency("delete"), self._lock:
            if self._users.pop(user_id, None) is None:
                raise UserNotFoundError(user_id)
        logger.info("user.deleted", extra={"user_id": user_id})
