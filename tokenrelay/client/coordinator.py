from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from tokenrelay.client.session_cache import ClientSession, SessionCache
from tokenrelay.logging import get_logger
from tokenrelay.service.errors import ServiceError, SessionExpiredError

logger = get_logger(__name__)

RefreshCall = Callable[[str], Awaitable[ClientSession]]
TerminationListener = Callable[[str], None]

DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0


class PendingRefresh:
    """The single in-flight renewal and the generation it belongs to."""

    def __init__(self, generation: int, task: "asyncio.Task[ClientSession]") -> None:
        self.generation = generation
        self.task = task

    @property
    def done(self) -> bool:
        return self.task.done()


def _consume_outcome(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; keep asyncio from warning about it
    if not task.cancelled():
        task.exception()


class RefreshCoordinator:
    """Single-flight renewal of the cached token pair.

    Requests that fail authentication call :meth:`ensure_refreshed`. The first
    caller starts one refresh task; everyone arriving while it runs awaits the
    same task. The outcome fans out to all of them: the rotated session, or a
    uniform :class:`SessionExpiredError` once the cache has been cleared.

    ``logout`` and ``adopt`` bump a generation counter so a refresh started
    before them cannot write its result into the cache afterwards.
    """

    def __init__(
        self,
        cache: SessionCache,
        refresh_call: RefreshCall,
        *,
        timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        on_session_terminated: Optional[TerminationListener] = None,
    ) -> None:
        self.cache = cache
        self.refresh_call = refresh_call
        self.timeout = timeout
        self._pending: Optional[PendingRefresh] = None
        self._generation = 0
        # Why the current session ended; listeners hear about each ending once
        self._ended_reason: Optional[str] = None
        self._listeners: List[TerminationListener] = []
        if on_session_terminated is not None:
            self._listeners.append(on_session_terminated)

    @property
    def pending(self) -> Optional[PendingRefresh]:
        return self._pending

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    def current_access_token(self) -> Optional[str]:
        session = self.cache.load()
        return session.access_token if session else None

    async def ensure_refreshed(self, stale_access_token: Optional[str]) -> ClientSession:
        """Return a session to replay a request that failed with ``stale_access_token``.

        Raises :class:`SessionExpiredError` when renewal is impossible or fails.
        """
        pending = self._pending
        if pending is None:
            session = self.cache.load()
            if session is None or not session.refresh_token:
                if self._ended_reason is not None:
                    raise SessionExpiredError(reason=self._ended_reason)
                self.terminate("no_refresh_token")
                raise SessionExpiredError(reason="no_refresh_token")
            if stale_access_token is not None and session.access_token != stale_access_token:
                # Renewal already finished since this request was sent
                return session
            # No await between the check above and publishing the pending refresh
            task = asyncio.ensure_future(
                self._run_refresh(session.refresh_token, self._generation)
            )
            task.add_done_callback(_consume_outcome)
            pending = PendingRefresh(self._generation, task)
            self._pending = pending
            logger.info("client_refresh_started", subject=session.subject)
        return await asyncio.shield(pending.task)

    async def _run_refresh(self, refresh_token: str, generation: int) -> ClientSession:
        try:
            try:
                session = await asyncio.wait_for(
                    self.refresh_call(refresh_token), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                reason = "timeout"
            except ServiceError as exc:
                reason = exc.error_code
            except Exception as exc:
                logger.warning(
                    "client_refresh_transport_error",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                reason = "transport_error"
            else:
                if generation != self._generation:
                    logger.info("client_refresh_discarded", reason="session_reset")
                    raise SessionExpiredError(reason="logged_out")
                self.cache.save(session)
                self._ended_reason = None
                logger.info("client_refresh_succeeded", subject=session.subject)
                return session

            logger.warning("client_refresh_failed", reason=reason)
            if generation == self._generation:
                self.terminate(reason)
            raise SessionExpiredError(reason=reason)
        finally:
            if self._pending is not None and self._pending.generation == generation:
                self._pending = None

    def adopt(self, session: ClientSession) -> None:
        """Replace the cached pair with one obtained outside the refresh flow."""
        self._reset()
        self._ended_reason = None
        self.cache.save(session)

    def logout(self) -> None:
        """Clear local state; an in-flight refresh resolves to ``SessionExpiredError``."""
        self._reset()
        self.cache.clear()
        self._ended_reason = "logged_out"

    def terminate(self, reason: str) -> None:
        """Clear local state and notify listeners that the session is over.

        Listeners are told once per session; later calls only clear state.
        """
        self._reset()
        self.cache.clear()
        if self._ended_reason is not None:
            return
        self._ended_reason = reason
        logger.info("client_session_terminated", reason=reason)
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("session_terminated_listener_failed")

    def _reset(self) -> None:
        self._generation += 1
        self._pending = None
