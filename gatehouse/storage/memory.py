from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    ANY_REFRESH_TOKEN,
    Role,
    IdentityRecord,
    PasswordRecord,
)


class MemoryStore:
    """In-process identity store used for tests and single-node development.

    When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/identity_store.json`` after every write and reloaded
    on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, IdentityRecord] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        # RLock for all data operations; nested acquisition happens on
        # delete -> persist paths
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _now(at: Optional[datetime]) -> datetime:
        return at or datetime.now(timezone.utc)

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = Role.USER.value,
        is_active: bool = True,
        at: Optional[datetime] = None,
    ) -> IdentityRecord:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._now(at)
            user = IdentityRecord(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def load_identity(self, user_id: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(
        self, *, include_inactive: bool = False, limit: int = 100
    ) -> List[IdentityRecord]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if include_inactive or u.is_active
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[IdentityRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and email != user.email:
                if any(
                    other.email == email
                    for other in self.users.values()
                    if other.id != user_id
                ):
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}
                    )
                user.email = email
            if name is not None:
                user.name = name
            user.updated_at = self._now(at)
            self._persist_state()
            return replace(user)

    def update_user_role(
        self, user_id: str, role: str, *, at: Optional[datetime] = None
    ) -> Optional[IdentityRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = self._now(at)
            self._persist_state()
            return replace(user)

    def set_active(
        self, user_id: str, is_active: bool, *, at: Optional[datetime] = None
    ) -> Optional[IdentityRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            if not is_active:
                user.refresh_token = None
            user.updated_at = self._now(at)
            self._persist_state()
            return replace(user)

    def mark_password_changed(
        self, user_id: str, changed_at: datetime
    ) -> Optional[IdentityRecord]:
        """Advance the password epoch and drop the live refresh token."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_changed_at = changed_at
            user.refresh_token = None
            user.updated_at = changed_at
            self._persist_state()
            return replace(user)

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Any, new_token: Optional[str]
    ) -> bool:
        """Atomically replace the stored refresh token.

        The write happens only when the stored value equals ``expected``
        (or ``expected`` is ``ANY_REFRESH_TOKEN``). Returns False when the
        user is gone or the comparison fails.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if expected is not ANY_REFRESH_TOKEN and user.refresh_token != expected:
                return False
            user.refresh_token = new_token
            self._persist_state()
            return True

    def clear_refresh_token(self, user_id: str) -> bool:
        return self.compare_and_set_refresh_token(user_id, ANY_REFRESH_TOKEN, None)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self._persist_state()
            return True

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                updated_at=self._now(at),
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            if not record:
                return None
            return record.password_hash, record.password_algo

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": rec.user_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                    "updated_at": rec.updated_at.isoformat(),
                }
                for rec in self.credentials.values()
            ],
        }
        path = self._state_path()
        tmp_path = None
        try:
            # Write to a temp file then rename so a crash never leaves half a file
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".identity_store_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(state, indent=2).encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: PasswordRecord(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                updated_at=datetime.fromisoformat(entry["updated_at"]),
            )
            for entry in data.get("credentials", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_user(user: IdentityRecord) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
            "password_changed_at": (
                user.password_changed_at.isoformat()
                if user.password_changed_at
                else None
            ),
            "refresh_token": user.refresh_token,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> IdentityRecord:
        changed_raw = data.get("password_changed_at")
        return IdentityRecord(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", Role.USER.value),
            is_active=data.get("is_active", True),
            password_changed_at=(
                datetime.fromisoformat(changed_raw) if changed_raw else None
            ),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
