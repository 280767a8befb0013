from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tokengate.logging import get_logger
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import TokenRecord, User, utcnow


class MemoryStore:
    """In-process identity and token store used for tests and local runs.

    Every public method takes ``_data_lock`` for its whole body, so a single
    read or write is atomic the way a row write is in Postgres. Nothing locks
    across calls. Records handed out are copies; callers must ``save`` to
    change stored state.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.tokens: Dict[int, TokenRecord] = {}
        self._user_id_seq: int = 1
        self._token_id_seq: int = 1
        self._seq_lock = threading.Lock()
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    token_records=len(self.tokens),
                )

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    def _next_user_id(self) -> int:
        with self._seq_lock:
            next_id = self._user_id_seq
            self._user_id_seq += 1
            return next_id

    def _next_token_id(self) -> int:
        with self._seq_lock:
            next_id = self._token_id_seq
            self._token_id_seq += 1
            return next_id

    def ping(self) -> bool:
        return True

    # identities
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_user_id(),
                username=username,
                email=email,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            for record_id in [
                rid for rid, rec in self.tokens.items() if rec.user_id == user_id
            ]:
                self.tokens.pop(record_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # token records
    def find_by_access_token(self, access_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.tokens.values() if r.access_token == access_token),
                None,
            )
            return replace(record) if record else None

    def find_by_refresh_token(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.tokens.values() if r.refresh_token == refresh_token),
                None,
            )
            return replace(record) if record else None

    def all_active_for(
        self, user_id: int, *, now: Optional[datetime] = None
    ) -> List[TokenRecord]:
        now = now or utcnow()
        with self._data_lock:
            return [
                replace(r)
                for r in self.tokens.values()
                if r.user_id == user_id and not r.refresh_expired(now)
            ]

    def save(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "token owner does not exist", {"user_id": record.user_id}
                )
            if record.access_token_expires_at > record.refresh_token_expires_at:
                raise ConstraintViolation(
                    "access token outlives refresh token",
                    {"field": "access_token_expires_at"},
                )
            if record.id is not None and record.id not in self.tokens:
                raise ConstraintViolation("token record not found", {"id": record.id})
            for other in self.tokens.values():
                if other.id == record.id:
                    continue
                if other.access_token == record.access_token:
                    raise ConstraintViolation(
                        "access token already stored", {"field": "access_token"}
                    )
                if other.refresh_token == record.refresh_token:
                    raise ConstraintViolation(
                        "refresh token already stored", {"field": "refresh_token"}
                    )
            stored = replace(record)
            if stored.id is None:
                stored.id = self._next_token_id()
            self.tokens[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def delete(self, record: TokenRecord) -> None:
        if record.id is None:
            return
        with self._data_lock:
            if self.tokens.pop(record.id, None) is not None:
                self._persist_state()

    def delete_all_for(self, user_id: int) -> int:
        with self._data_lock:
            stale = [rid for rid, rec in self.tokens.items() if rec.user_id == user_id]
            for rid in stale:
                self.tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # snapshot
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(entry["user_id"]): (
                entry["password_hash"],
                entry.get("password_algo", ""),
            )
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            int(t["id"]): self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self._user_id_seq = max(self.users, default=0) + 1
        self._token_id_seq = max(self.tokens, default=0) + 1
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
            "is_active": user.is_active,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            email=data["email"],
            role=data.get("role", "user"),
            created_at=datetime.fromisoformat(data["created_at"]),
            is_active=data.get("is_active", True),
        )

    @staticmethod
    def _serialize_token(record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "access_token_expires_at": record.access_token_expires_at.isoformat(),
            "refresh_token_expires_at": record.refresh_token_expires_at.isoformat(),
            "created_at": record.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_token(data: dict) -> TokenRecord:
        return TokenRecord(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            access_token_expires_at=datetime.fromisoformat(
                data["access_token_expires_at"]
            ),
            refresh_token_expires_at=datetime.fromisoformat(
                data["refresh_token_expires_at"]
            ),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
