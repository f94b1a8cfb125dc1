"""Unit tests for the auth service.

Tests for:
- Login and credential checks
- Refresh-token rotation and reuse detection
- Logout
- Bearer authentication
- Concurrent refreshes presenting the same token
"""

import asyncio
import threading

import pytest

from tokenrelay.service.auth import AuthService
from tokenrelay.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    KindMismatchError,
    MalformedTokenError,
    NoSessionError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenReuseDetectedError,
)
from tokenrelay.service.hashing import CredentialHasher
from tokenrelay.service.tokens import TokenCodec
from tokenrelay.storage.memory import MemoryStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    import time

    return FakeClock(time.time())


@pytest.fixture
def auth_service(memory_store, settings, clock):
    return AuthService(
        memory_store,
        memory_store,
        TokenCodec.from_settings(settings, clock=clock),
        CredentialHasher(time_cost=1, memory_cost=64),
        settings,
    )


@pytest.fixture
def test_user(auth_service):
    return auth_service.create_user("test@example.com", "TestPassword123!")


class TestLogin:
    async def test_login_issues_pair_and_stores_hash(self, auth_service, memory_store, test_user):
        pair = await auth_service.login("test@example.com", "TestPassword123!")

        assert pair.subject == test_user.id
        assert pair.access_token != pair.refresh_token
        record = memory_store.get(test_user.id)
        assert record is not None
        assert record.refresh_token_hash != pair.refresh_token
        assert auth_service.hasher.verify(pair.refresh_token, record.refresh_token_hash)

    async def test_wrong_password_rejected(self, auth_service, memory_store, test_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("test@example.com", "WrongPassword!")
        assert memory_store.get(test_user.id) is None

    async def test_unknown_user_rejected(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@example.com", "TestPassword123!")

    async def test_inactive_user_rejected(self, auth_service, memory_store, test_user):
        memory_store.set_user_active(test_user.id, False)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("test@example.com", "TestPassword123!")

    async def test_second_login_replaces_first_session(self, auth_service, test_user):
        first = await auth_service.login("test@example.com", "TestPassword123!")
        await auth_service.login("test@example.com", "TestPassword123!")

        with pytest.raises(TokenReuseDetectedError):
            await auth_service.refresh(first.refresh_token)

    def test_password_rehashed_when_parameters_change(self, auth_service, memory_store, test_user):
        old_digest, _ = memory_store.get_password_record(test_user.id)
        auth_service.hasher = CredentialHasher(time_cost=2, memory_cost=64)

        assert auth_service.verify_password(test_user.id, "TestPassword123!") is True
        new_digest, _ = memory_store.get_password_record(test_user.id)
        assert new_digest != old_digest
        assert "t=2" in new_digest


class TestRotation:
    async def test_rotation_scenario(self, auth_service, memory_store):
        """login(42) -> R1; refresh(R1) -> R2; replaying R1 ends the session."""
        first = await auth_service.issue_session("42")
        assert auth_service.hasher.verify(
            first.refresh_token, memory_store.get("42").refresh_token_hash
        )

        second = await auth_service.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert auth_service.hasher.verify(
            second.refresh_token, memory_store.get("42").refresh_token_hash
        )

        with pytest.raises(TokenReuseDetectedError):
            await auth_service.refresh(first.refresh_token)
        assert memory_store.get("42") is None

        with pytest.raises(NoSessionError):
            await auth_service.refresh(second.refresh_token)

    async def test_refresh_returns_usable_access_token(self, auth_service, test_user):
        pair = await auth_service.login("test@example.com", "TestPassword123!")
        rotated = await auth_service.refresh(pair.refresh_token)

        ctx = auth_service.authenticate(f"Bearer {rotated.access_token}")

        assert ctx.user_id == test_user.id
        assert ctx.role == "user"

    async def test_expired_refresh_fails_without_touching_store(
        self, auth_service, memory_store, clock
    ):
        pair = await auth_service.issue_session("42")
        clock.advance(auth_service.refresh_ttl.total_seconds() + 1)

        with pytest.raises(TokenExpiredError):
            await auth_service.refresh(pair.refresh_token)
        assert memory_store.session_records.get("42") is not None

    async def test_access_token_cannot_refresh(self, auth_service):
        pair = await auth_service.issue_session("42")

        with pytest.raises(KindMismatchError):
            await auth_service.refresh(pair.access_token)

    async def test_garbage_refresh_token_is_malformed(self, auth_service):
        with pytest.raises(MalformedTokenError):
            await auth_service.refresh("not-a-token")

    async def test_foreign_signature_rejected(self, auth_service, settings, clock):
        other = TokenCodec(
            {"primary": "some-other-secret"},
            "primary",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )
        forged = other.issue("42", "refresh", auth_service.refresh_ttl)

        with pytest.raises(SignatureInvalidError):
            await auth_service.refresh(forged)

    async def test_inactive_user_cannot_refresh(self, auth_service, memory_store, test_user):
        pair = await auth_service.login("test@example.com", "TestPassword123!")
        memory_store.set_user_active(test_user.id, False)

        with pytest.raises(NoSessionError):
            await auth_service.refresh(pair.refresh_token)
        assert memory_store.get(test_user.id) is None


class TestConcurrentRefresh:
    async def test_same_token_twice_has_one_winner(self, auth_service, memory_store):
        pair = await auth_service.issue_session("42")

        results = await asyncio.gather(
            auth_service.refresh(pair.refresh_token),
            auth_service.refresh(pair.refresh_token),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], TokenReuseDetectedError)
        # The loser's reuse signal ends the session, winner included
        assert memory_store.get("42") is None

    async def test_compare_and_swap_loss_counts_as_reuse(self, auth_service, memory_store):
        pair = await auth_service.issue_session("42")
        original_replace = memory_store.replace_if_match

        def rotated_elsewhere(subject, expected_hash, new_hash, new_expires_at):
            memory_store.put(subject, "rotated-by-another-process", new_expires_at)
            return original_replace(subject, expected_hash, new_hash, new_expires_at)

        memory_store.replace_if_match = rotated_elsewhere

        with pytest.raises(TokenReuseDetectedError):
            await auth_service.refresh(pair.refresh_token)
        assert memory_store.get("42") is None


class TestLogout:
    async def test_logout_is_idempotent(self, auth_service, memory_store):
        pair = await auth_service.issue_session("42")

        await auth_service.logout("42")
        await auth_service.logout("42")

        assert memory_store.get("42") is None
        with pytest.raises(NoSessionError):
            await auth_service.refresh(pair.refresh_token)

    async def test_logout_with_refresh_token(self, auth_service, memory_store):
        pair = await auth_service.issue_session("42")

        subject = await auth_service.logout_with_tokens(refresh_token=pair.refresh_token)

        assert subject == "42"
        assert memory_store.get("42") is None

    async def test_logout_with_access_token(self, auth_service, memory_store):
        pair = await auth_service.issue_session("42")

        assert await auth_service.logout_with_tokens(access_token=pair.access_token) == "42"
        assert memory_store.get("42") is None

    async def test_logout_ignores_invalid_tokens(self, auth_service, memory_store):
        await auth_service.issue_session("42")

        subject = await auth_service.logout_with_tokens(
            refresh_token="garbage", access_token="also.garbage.here"
        )

        assert subject is None
        assert memory_store.get("42") is not None


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        pair = await auth_service.issue_session("42", role="admin")

        ctx = auth_service.authenticate(f"Bearer {pair.access_token}")

        assert ctx.user_id == "42"
        assert ctx.role == "admin"

    def test_missing_header(self, auth_service):
        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(None)
        assert excinfo.value.error_code == "unauthorized"

    def test_non_bearer_scheme(self, auth_service):
        with pytest.raises(AuthenticationError):
            auth_service.authenticate("Basic dXNlcjpwYXNz")

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        pair = await auth_service.issue_session("42")

        with pytest.raises(KindMismatchError):
            auth_service.authenticate(f"Bearer {pair.refresh_token}")

    async def test_expired_access_token(self, auth_service, clock):
        pair = await auth_service.issue_session("42")
        clock.advance(auth_service.access_ttl.total_seconds())

        with pytest.raises(TokenExpiredError):
            auth_service.authenticate(f"Bearer {pair.access_token}")


class ThreadRecordingSessions:
    """Session store wrapper noting which thread each call ran on."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self.inner, name)

        def recorded(*args):
            self.calls.append((name, threading.current_thread() is threading.main_thread()))
            return method(*args)

        return recorded


class TestSessionStoreOffLoop:
    async def test_session_store_never_called_on_event_loop(
        self, memory_store, settings, clock
    ):
        sessions = ThreadRecordingSessions(memory_store)
        service = AuthService(
            memory_store,
            sessions,
            TokenCodec.from_settings(settings, clock=clock),
            CredentialHasher(time_cost=1, memory_cost=64),
            settings,
        )

        pair = await service.issue_session("42")
        rotated = await service.refresh(pair.refresh_token)
        with pytest.raises(TokenReuseDetectedError):
            await service.refresh(pair.refresh_token)
        await service.issue_session("42")
        await service.logout_with_tokens(refresh_token=rotated.refresh_token)
        await service.logout("42")

        called = {name for name, _ in sessions.calls}
        assert {"put", "get", "replace_if_match", "remove"} <= called
        assert not any(on_loop for _, on_loop in sessions.calls)
