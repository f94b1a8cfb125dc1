from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

from tokenrelay.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientSession:
    """Token pair held by the client between requests."""

    subject: str
    access_token: str
    refresh_token: str
    role: str = "user"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ClientSession":
        return cls(
            subject=str(data["user_id"] if "user_id" in data else data["subject"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            role=data.get("role") or "user",
        )


class SessionCache(Protocol):
    def save(self, session: ClientSession) -> None: ...

    def load(self) -> Optional[ClientSession]: ...

    def clear(self) -> None: ...


class MemorySessionCache:
    """Process-local cache for tests and short-lived tools."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session

    def save(self, session: ClientSession) -> None:
        self._session = session

    def load(self) -> Optional[ClientSession]:
        return self._session

    def clear(self) -> None:
        self._session = None


class FileSessionCache:
    """Session cache persisted as a JSON file readable only by the owner.

    Writes go to a temp file in the same directory and are renamed into place,
    so a crash never leaves half a token pair on disk.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def save(self, session: ClientSession) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path: str | None = None
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(self.path.parent), prefix=".session_", suffix=".tmp"
                )
                os.fchmod(fd, 0o600)
                with os.fdopen(fd, "w") as handle:
                    json.dump(session.to_dict(), handle)
                os.replace(tmp_path, self.path)
            except OSError as exc:
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                logger.error("session_cache_write_failed", error=str(exc), path=str(self.path))
                raise

    def load(self) -> Optional[ClientSession]:
        with self._lock:
            try:
                data = json.loads(self.path.read_text())
            except FileNotFoundError:
                return None
            except (OSError, ValueError) as exc:
                logger.warning("session_cache_unreadable", error=str(exc), path=str(self.path))
                return None
        try:
            return ClientSession.from_dict(data)
        except (KeyError, TypeError) as exc:
            logger.warning("session_cache_corrupt", error=str(exc), path=str(self.path))
            return None

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
