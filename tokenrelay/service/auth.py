from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from tokenrelay.config import Settings
from tokenrelay.logging import get_logger
from tokenrelay.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    NoSessionError,
    TokenError,
    TokenReuseDetectedError,
)
from tokenrelay.service.hashing import CredentialHasher
from tokenrelay.service.tokens import ACCESS, REFRESH, TokenClaims, TokenCodec
from tokenrelay.storage.models import SessionRecord, User


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    def put(
        self, subject: str, refresh_token_hash: str, expires_at: datetime
    ) -> SessionRecord: ...

    def get(self, subject: str) -> Optional[SessionRecord]: ...

    def remove(self, subject: str) -> None: ...

    def replace_if_match(
        self,
        subject: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    expires_at: datetime
    token_id: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    subject: str
    role: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "user_id": self.subject,
            "role": self.role,
            "access_expires_at": self.access_expires_at,
        }


class AuthService:
    """Login, refresh-token rotation and logout for single-session subjects.

    Each subject holds at most one :class:`SessionRecord` carrying the argon2id
    hash of the refresh token issued last. Refreshing verifies the presented
    token against that hash and swaps in the hash of a newly issued token; a
    token that no longer matches is treated as reuse and ends the session.

    Session-store calls from coroutines run in a worker thread, since the
    Redis store uses the blocking client and must not stall the event loop.
    """

    def __init__(
        self,
        store: IdentityStore,
        sessions: SessionStore,
        codec: TokenCodec,
        hasher: CredentialHasher,
        settings: Settings,
    ) -> None:
        self.store: IdentityStore = store
        self.sessions: SessionStore = sessions
        self.codec = codec
        self.hasher = hasher
        self.settings = settings
        self.logger = get_logger(__name__)
        # Entries vanish once no coroutine holds the lock
        self._subject_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _subject_lock(self, subject: str) -> asyncio.Lock:
        lock = self._subject_locks.get(subject)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[subject] = lock
        return lock

    # identity helpers
    def create_user(self, email: str, password: str, *, role: str = "user") -> User:
        user = self.store.create_user(email, role=role)
        self.save_password(user.id, password)
        return user

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        self.store.save_password(user_id, self.hasher.hash(password), self.hasher.algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self.hasher.algo:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        if not self.hasher.verify(password, stored_hash):
            return False
        if self.hasher.needs_rehash(stored_hash):
            self.save_password(user_id, password)
            self.logger.info("password_rehashed", user_id=user_id)
        return True

    # session lifecycle
    async def login(self, email: str, password: str) -> TokenPair:
        if not email or not password:
            raise InvalidCredentialsError("invalid credentials")
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info("login_rejected", reason="unknown_or_inactive_user")
            raise InvalidCredentialsError("invalid credentials")
        if not await asyncio.to_thread(self.verify_password, user.id, password):
            self.logger.info("login_rejected", user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError("invalid credentials")
        return await self._start_session(user.id, user.role)

    async def issue_session(self, subject: str, *, role: Optional[str] = None) -> TokenPair:
        """Deposit a fresh pair for an already-authenticated subject.

        Used by the OAuth callback once the provider has vouched for the
        user; no password is checked. Any existing session is replaced.
        """
        user = self.store.get_user(subject)
        if user is not None and not user.is_active:
            raise InvalidCredentialsError("user is inactive")
        resolved_role = role or (user.role if user else "user")
        return await self._start_session(subject, resolved_role)

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_token, REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.error_code)
            raise
        subject = claims.subject

        async with self._subject_lock(subject):
            record = await asyncio.to_thread(self.sessions.get, subject)
            if record is None:
                self.logger.info("refresh_no_session", user_id=subject)
                raise NoSessionError("no active session for subject")

            matches = await asyncio.to_thread(
                self.hasher.verify, refresh_token, record.refresh_token_hash
            )
            if not matches:
                await self._end_session_on_reuse(subject, claims)
                raise TokenReuseDetectedError("refresh token already used")

            user = self.store.get_user(subject)
            if user is not None and not user.is_active:
                await asyncio.to_thread(self.sessions.remove, subject)
                self.logger.info("refresh_user_inactive", user_id=subject)
                raise NoSessionError("user is inactive")
            role = user.role if user else str(claims.claims.get("role", "user"))

            pair = self._issue_pair(subject, role)
            new_hash = await asyncio.to_thread(self.hasher.hash, pair.refresh_token)
            # Another process may have rotated the record while we hashed
            swapped = await asyncio.to_thread(
                self.sessions.replace_if_match,
                subject,
                record.refresh_token_hash,
                new_hash,
                pair.refresh_expires_at,
            )
            if not swapped:
                await self._end_session_on_reuse(subject, claims)
                raise TokenReuseDetectedError("refresh token already used")

        self.logger.info("refresh_rotated", user_id=subject, previous_jti=claims.token_id)
        return pair

    async def logout(self, subject: str) -> None:
        """End the subject's session. Idempotent."""
        async with self._subject_lock(subject):
            await asyncio.to_thread(self.sessions.remove, subject)
        self.logger.info("session_ended", user_id=subject)

    async def logout_with_tokens(
        self,
        *,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Optional[str]:
        """Resolve the subject from whichever presented token verifies and end its session.

        Verification failures are ignored so logout always succeeds; returns the
        subject whose session was ended, if any.
        """
        candidates = ((refresh_token, REFRESH), (access_token, ACCESS))
        for token, kind in candidates:
            if not token:
                continue
            try:
                claims = self.codec.verify(token, kind)
            except TokenError as exc:
                self.logger.debug("logout_token_ignored", kind=kind, reason=exc.error_code)
                continue
            await self.logout(claims.subject)
            return claims.subject
        return None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.verify_access_token(token)
        return AuthContext(
            user_id=claims.subject,
            role=str(claims.claims.get("role", "user")),
            expires_at=claims.expires_at,
            token_id=claims.token_id,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.codec.verify(token, ACCESS)

    async def _end_session_on_reuse(self, subject: str, claims: TokenClaims) -> None:
        await asyncio.to_thread(self.sessions.remove, subject)
        self.logger.warning(
            "refresh_reuse_detected", user_id=subject, presented_jti=claims.token_id
        )

    async def _start_session(self, subject: str, role: str) -> TokenPair:
        pair = self._issue_pair(subject, role)
        digest = await asyncio.to_thread(self.hasher.hash, pair.refresh_token)
        async with self._subject_lock(subject):
            await asyncio.to_thread(
                self.sessions.put, subject, digest, pair.refresh_expires_at
            )
        self.logger.info("session_started", user_id=subject)
        return pair

    def _issue_pair(self, subject: str, role: str) -> TokenPair:
        access_token, access_claims = self.codec.mint(
            subject, ACCESS, self.access_ttl, {"role": role}
        )
        refresh_token, refresh_claims = self.codec.mint(
            subject, REFRESH, self.refresh_ttl, {"role": role}
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            subject=subject,
            role=role,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
        )

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
