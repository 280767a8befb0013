from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokengate.logging import get_logger
from tokengate.service.errors import DuplicateIdentityError
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import User

logger = get_logger(__name__)

_PASSWORD_ALGO = "argon2id"


class IdentityStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


class UserService:
    """Registration and password checks for the identities tokens are issued to."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def register(
        self, username: str, email: str, password: str, *, role: str = "user"
    ) -> User:
        if self.store.get_user_by_username(username):
            raise DuplicateIdentityError(
                "username already exists", detail={"field": "username"}
            )
        if self.store.get_user_by_email(email):
            raise DuplicateIdentityError(
                "email already exists", detail={"field": "email"}
            )
        try:
            user = self.store.create_user(username, email, role=role)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            raise DuplicateIdentityError(
                f"{exc.field or 'user'} already exists", detail=exc.detail
            ) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, username=username)
        return user

    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_username(username)
        if not user or not user.is_active:
            self.logger.info("login_unknown_or_inactive_user", username=username)
            return None
        if not self.verify_password(user.id, password):
            return None
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _PASSWORD_ALGO

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: int, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)


__all__ = ["IdentityStore", "UserService"]
