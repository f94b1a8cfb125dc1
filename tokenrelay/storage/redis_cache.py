from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from tokenrelay.logging import get_logger
from tokenrelay.storage.errors import StoreUnavailable
from tokenrelay.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class RedisSessionStore:
    """Refresh-session records kept in Redis, shared by every server process."""

    KEY_PREFIX = "auth:refresh_session:"

    # Compare-and-swap: rotate only while the stored hash is the one the caller verified
    _REPLACE_IF_MATCH_SCRIPT = """
local key = KEYS[1]
local expected = ARGV[1]
local new_hash = ARGV[2]
local expires_at = ARGV[3]
local created_at = ARGV[4]
local ttl = tonumber(ARGV[5])

local current = redis.call('HGET', key, 'hash')
if current ~= expected then
  return 0
end

redis.call('HSET', key, 'hash', new_hash, 'expires_at', expires_at, 'created_at', created_at)
redis.call('EXPIRE', key, math.max(ttl, 1))
return 1
"""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: Redis | None = None,
        socket_timeout: float = 5.0,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._replace_if_match = self.client.register_script(
            self._REPLACE_IF_MATCH_SCRIPT
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - utcnow()).total_seconds()))

    def _key(self, subject: str) -> str:
        return f"{self.KEY_PREFIX}{subject}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is used."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StoreUnavailable(f"redis unreachable: {exc}") from exc

    def put(self, subject: str, refresh_token_hash: str, expires_at: datetime) -> SessionRecord:
        record = SessionRecord(
            subject=subject, refresh_token_hash=refresh_token_hash, expires_at=expires_at
        )
        key = self._key(subject)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={
                "hash": record.refresh_token_hash,
                "expires_at": record.expires_at.isoformat(),
                "created_at": record.created_at.isoformat(),
            },
        )
        pipe.expire(key, self._ttl_seconds(record.expires_at))
        pipe.execute()
        return record

    def get(self, subject: str) -> Optional[SessionRecord]:
        raw = self.client.hgetall(self._key(subject))
        if not raw or "hash" not in raw:
            return None
        try:
            record = SessionRecord(
                subject=subject,
                refresh_token_hash=raw["hash"],
                expires_at=datetime.fromisoformat(raw["expires_at"]),
                created_at=datetime.fromisoformat(raw["created_at"]),
            )
        except (KeyError, ValueError) as exc:
            logger.warning("refresh_session_record_corrupt", subject=subject, error=str(exc))
            return None
        if record.is_expired():
            return None
        return record

    def remove(self, subject: str) -> None:
        self.client.delete(self._key(subject))

    def replace_if_match(
        self,
        subject: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool:
        result = self._replace_if_match(
            keys=[self._key(subject)],
            args=[
                expected_hash,
                new_hash,
                new_expires_at.isoformat(),
                utcnow().isoformat(),
                self._ttl_seconds(new_expires_at),
            ],
        )
        return bool(int(result))

    def close(self) -> None:
        self.client.close()
