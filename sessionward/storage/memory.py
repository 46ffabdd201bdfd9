from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation, StoreUnavailable
from sessionward.storage.models import Identity, normalize_login_key, utcnow


class MemoryStore:
    """In-process credential store with optional JSON snapshots.

    Every public operation holds ``_data_lock`` for its whole read-modify-write
    cycle, so each call is atomic per record and compare-and-set is
    linearizable. The lock is acquired with ``timeout_seconds``; a caller that
    cannot get it in time receives ``StoreUnavailable`` instead of blocking.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.fs_root = Path(fs_root) if fs_root else None
        self.timeout_seconds = timeout_seconds
        # RLock so helpers may re-enter while a public call holds it
        self._data_lock = threading.RLock()
        self._connected = False

    # lifecycle
    def connect(self) -> None:
        with self._locked("connect"):
            if self._connected:
                return
            if self.fs_root is not None:
                self._load_state()
            self._connected = True
            self.logger.info(
                "credential_store_connected",
                backend="memory",
                persistent=self.fs_root is not None,
                identities=len(self.identities),
            )

    def close(self) -> None:
        with self._locked("close"):
            self._connected = False
        self.logger.info("credential_store_closed", backend="memory")

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.timeout_seconds):
            self.logger.warning(
                "credential_store_lock_timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise StoreUnavailable(
                f"{operation} timed out after {self.timeout_seconds}s",
                operation=operation,
            )
        try:
            yield
        finally:
            self._data_lock.release()

    def _require_connected(self, operation: str) -> None:
        if not self._connected:
            raise StoreUnavailable("credential store is not connected", operation=operation)

    # reads
    def find_by_handle_or_email(self, value: str) -> Optional[Identity]:
        key = normalize_login_key(value)
        if not key:
            return None
        with self._locked("find_by_handle_or_email"):
            self._require_connected("find_by_handle_or_email")
            for identity in self.identities.values():
                if identity.handle == key or identity.email == key:
                    return self._copy(identity)
            return None

    def find_by_id(self, user_id: str) -> Optional[Identity]:
        with self._locked("find_by_id"):
            self._require_connected("find_by_id")
            identity = self.identities.get(user_id)
            return self._copy(identity) if identity else None

    # writes
    def create(
        self,
        handle: str,
        email: str,
        fullname: str,
        password_hash: str,
        *,
        avatar_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> Identity:
        identity = Identity.new(
            handle,
            email,
            fullname,
            password_hash,
            avatar_url=avatar_url,
            cover_image_url=cover_image_url,
        )
        with self._locked("create"):
            self._require_connected("create")
            for existing in self.identities.values():
                if existing.handle == identity.handle:
                    raise ConstraintViolation("handle already exists", {"field": "handle"})
                if existing.email == identity.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            self._commit(identity)
            return self._copy(identity)

    def set_refresh_token(self, user_id: str, token: Optional[str]) -> bool:
        with self._locked("set_refresh_token"):
            self._require_connected("set_refresh_token")
            identity = self.identities.get(user_id)
            if identity is None:
                return False
            self._commit(replace(identity, refresh_token=token, updated_at=utcnow()))
            return True

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Optional[str], token: Optional[str]
    ) -> bool:
        with self._locked("compare_and_set_refresh_token"):
            self._require_connected("compare_and_set_refresh_token")
            identity = self.identities.get(user_id)
            if identity is None or identity.refresh_token != expected:
                return False
            self._commit(replace(identity, refresh_token=token, updated_at=utcnow()))
            return True

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._locked("set_password_hash"):
            self._require_connected("set_password_hash")
            identity = self.identities.get(user_id)
            if identity is None:
                return False
            self._commit(replace(identity, password_hash=password_hash, updated_at=utcnow()))
            return True

    # persistence
    @staticmethod
    def _copy(identity: Identity) -> Identity:
        # Callers get detached records; mutations only happen under the lock
        return Identity(**identity.__dict__)

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        return self.fs_root / "state" / "credentials.json"

    @staticmethod
    def _serialize_identity(identity: Identity) -> Dict[str, Any]:
        return {
            "id": identity.id,
            "handle": identity.handle,
            "email": identity.email,
            "fullname": identity.fullname,
            "password_hash": identity.password_hash,
            "avatar_url": identity.avatar_url,
            "cover_image_url": identity.cover_image_url,
            "refresh_token": identity.refresh_token,
            "created_at": identity.created_at.isoformat(),
            "updated_at": identity.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_identity(data: Dict[str, Any]) -> Identity:
        return Identity(
            id=data["id"],
            handle=data["handle"],
            email=data["email"],
            fullname=data.get("fullname", ""),
            password_hash=data["password_hash"],
            avatar_url=data.get("avatar_url"),
            cover_image_url=data.get("cover_image_url"),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def _commit(self, identity: Identity) -> None:
        # The snapshot is written first; a failed write leaves memory untouched
        candidate = dict(self.identities)
        candidate[identity.id] = identity
        self._persist_state(candidate)
        self.identities = candidate

    def _persist_state(self, identities: Dict[str, Identity]) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [
                self._serialize_identity(identity)
                for identity in identities.values()
            ]
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailable(
                f"failed to persist credential state: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreUnavailable(
                f"failed to load credential state: {exc}", operation="connect"
            ) from exc
        self.identities = {
            entry["id"]: self._deserialize_identity(entry)
            for entry in data.get("identities", [])
        }
        return True


__all__ = ["MemoryStore"]
