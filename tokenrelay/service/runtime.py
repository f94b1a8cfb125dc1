from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenrelay.config import get_settings, reset_settings_cache
from tokenrelay.logging import get_logger
from tokenrelay.service.auth import AuthService, SessionStore
from tokenrelay.service.hashing import CredentialHasher
from tokenrelay.service.tokens import TokenCodec
from tokenrelay.storage.errors import StoreUnavailable
from tokenrelay.storage.memory import MemoryStore
from tokenrelay.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        self.session_store: SessionStore = self._build_session_store()

        self.codec = TokenCodec.from_settings(self.settings)
        self.hasher = CredentialHasher(
            time_cost=self.settings.hash_time_cost,
            memory_cost=self.settings.hash_memory_cost_kib,
        )
        self.auth = AuthService(
            self.store,
            self.session_store,
            self.codec,
            self.hasher,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            session_store=type(self.session_store).__name__,
            signing_kid=self.codec.active_kid,
            verification_kids=sorted(self.settings.signing_keys()),
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    def _build_session_store(self) -> SessionStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                sessions = RedisSessionStore(self.settings.redis_url)
                sessions.verify_connection()
                return sessions
            except StoreUnavailable as exc:
                redis_error = exc

        if not self.settings.use_memory_store and not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for shared refresh sessions; start Redis or set "
                "USE_MEMORY_STORE=true for a single-process deployment."
            ) from redis_error

        if redis_error is not None:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error),
                message="Refresh sessions are held in-process only.",
            )
        return self.store

    def close(self) -> None:
        if isinstance(self.session_store, RedisSessionStore):
            self.session_store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
