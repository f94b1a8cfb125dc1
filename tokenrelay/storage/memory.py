from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from tokenrelay.logging import get_logger
from tokenrelay.storage.errors import ConstraintViolation
from tokenrelay.storage.models import SessionRecord, User, utcnow

STATE_VERSION = 1


class MemoryStore:
    """Identity and refresh-session store held in process memory.

    Every mutation rewrites ``<fs_root>/state/memory_store.json`` so users,
    password digests and sessions survive a restart. It serves both the
    identity and the session protocol of :class:`AuthService`; a Redis
    session store can replace the latter for multi-process deployments.
    """

    def __init__(self, fs_root: str = "/tmp/tokenrelay") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._user_ids_by_email: Dict[str, str] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.session_records: Dict[str, SessionRecord] = {}
        self._data_lock = threading.RLock()
        self.state_path = Path(fs_root) / "state" / "memory_store.json"
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_state()

    # identity
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if email in self._user_ids_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, role=role, is_active=is_active)
            self.users[user.id] = user
            self._user_ids_by_email[email] = user.id
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._user_ids_by_email.get(email)
            return self.users.get(user_id) if user_id else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("unknown user", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh sessions
    def put(self, subject: str, refresh_token_hash: str, expires_at: datetime) -> SessionRecord:
        record = SessionRecord(subject, refresh_token_hash, expires_at)
        with self._data_lock:
            self.session_records[subject] = record
            self._persist_state()
        return record

    def get(self, subject: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.session_records.get(subject)
            if record is not None and record.is_expired():
                del self.session_records[subject]
                self._persist_state()
                return None
            return record

    def remove(self, subject: str) -> None:
        with self._data_lock:
            if self.session_records.pop(subject, None) is not None:
                self._persist_state()

    def replace_if_match(
        self,
        subject: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool:
        """Rotate the subject's record only while it still holds ``expected_hash``."""
        with self._data_lock:
            current = self.session_records.get(subject)
            if current is None or current.refresh_token_hash != expected_hash:
                return False
            self.session_records[subject] = SessionRecord(subject, new_hash, new_expires_at)
            self._persist_state()
            return True

    def purge_expired_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            expired = [
                subject
                for subject, record in self.session_records.items()
                if record.is_expired(now)
            ]
            for subject in expired:
                del self.session_records[subject]
            if expired:
                self._persist_state()
        if expired:
            self.logger.info("expired_sessions_purged", count=len(expired))
        return len(expired)

    # persistence
    def _snapshot(self) -> dict:
        return {
            "version": STATE_VERSION,
            "users": [user.to_dict() for user in self.users.values()],
            "credentials": {
                user_id: {"hash": digest, "algo": algo}
                for user_id, (digest, algo) in self.credentials.items()
            },
            "sessions": [record.to_dict() for record in self.session_records.values()],
        }

    def _persist_state(self) -> None:
        payload = json.dumps(self._snapshot(), indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.state_path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            # The file holds password and refresh-token digests
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("persist_state_failed", error=str(exc), path=str(self.state_path))
            raise

    def _load_state(self) -> None:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return
        if data.get("version") != STATE_VERSION:
            self.logger.warning(
                "state_version_unsupported",
                version=data.get("version"),
                path=str(self.state_path),
            )
            return
        users = [User.from_dict(raw) for raw in data.get("users", [])]
        self.users = {user.id: user for user in users}
        self._user_ids_by_email = {user.email: user.id for user in users}
        self.credentials = {
            user_id: (entry["hash"], entry.get("algo", ""))
            for user_id, entry in data.get("credentials", {}).items()
        }
        self.session_records = {
            raw["subject"]: SessionRecord.from_dict(raw) for raw in data.get("sessions", [])
        }
