from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenrelay.logging import get_logger
from tokenrelay.service.errors import InvalidInputError

logger = get_logger(__name__)

HASH_ALGO = "argon2id"


class CredentialHasher:
    """Salted argon2id hashing for secrets stored at rest.

    Used for refresh tokens in the session store and for login passwords.
    """

    algo = HASH_ALGO

    def __init__(
        self,
        *,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
    ) -> None:
        params = {"type": Type.ID}
        if time_cost is not None:
            params["time_cost"] = time_cost
        if memory_cost is not None:
            params["memory_cost"] = memory_cost
        self._hasher = PasswordHasher(**params)

    @staticmethod
    def _require_text(value, name: str) -> str:
        if not isinstance(value, str) or not value:
            raise InvalidInputError(f"{name} must be a non-empty string")
        return value

    def hash(self, secret: str) -> str:
        return self._hasher.hash(self._require_text(secret, "secret"))

    def verify(self, secret: str, digest: str) -> bool:
        self._require_text(secret, "secret")
        self._require_text(digest, "digest")
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_digest_unreadable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        """True when ``digest`` was produced with older cost parameters."""
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True
