from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Type

import httpx

from tokenrelay.client.coordinator import RefreshCoordinator, TerminationListener
from tokenrelay.client.session_cache import (
    ClientSession,
    FileSessionCache,
    MemorySessionCache,
    SessionCache,
)
from tokenrelay.config import ClientSettings
from tokenrelay.logging import get_logger
from tokenrelay.service.errors import ServiceError, SessionExpiredError, error_types

logger = get_logger(__name__)

# Subclasses come after their bases, so the most specific class wins a shared code
_ERROR_TYPES: Dict[str, Type[ServiceError]] = {cls.error_code: cls for cls in error_types()}


def _error_from_response(response: httpx.Response) -> ServiceError:
    """Rebuild the typed service error from an error envelope."""
    code: Optional[str] = None
    message = f"request failed with status {response.status_code}"
    details = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code")
        message = body["error"].get("message") or message
        details = body["error"].get("details")
    error_cls = _ERROR_TYPES.get(code or "", ServiceError)
    return error_cls(
        message,
        status_code=response.status_code,
        detail=details if isinstance(details, dict) else None,
        error_code=code or ("server_error" if response.status_code >= 500 else None),
    )


class AuthClient:
    """Calls the auth endpoints and converts envelopes into sessions or errors."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def _post(self, path: str, *, json: Any = None, headers: Optional[Mapping[str, str]] = None) -> dict:
        response = await self.http.post(path, json=json, headers=headers)
        if response.status_code >= 400:
            raise _error_from_response(response)
        body = response.json()
        return body.get("data") or {}

    async def login(self, email: str, password: str) -> ClientSession:
        data = await self._post("/v1/auth/login", json={"email": email, "password": password})
        return ClientSession.from_dict(data)

    async def refresh(self, refresh_token: str) -> ClientSession:
        data = await self._post("/v1/auth/refresh", json={"refresh_token": refresh_token})
        return ClientSession.from_dict(data)

    async def logout(
        self,
        *,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        body = {"refresh_token": refresh_token} if refresh_token else None
        await self._post("/v1/auth/logout", json=body, headers=headers)


class AuthenticatedClient:
    """HTTP client that attaches the cached access token and renews it on 401.

    Concurrent requests failing with 401 share one refresh through the
    :class:`RefreshCoordinator`; each is replayed once with the new token.
    Any other response, success or not, is returned untouched.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        cache: Optional[SessionCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[ClientSettings] = None,
        refresh_timeout: Optional[float] = None,
        on_session_terminated: Optional[TerminationListener] = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        self.http = httpx.AsyncClient(
            base_url=base_url or self.settings.base_url,
            transport=transport,
            timeout=httpx.Timeout(30.0, connect=10.0),
        )
        if cache is None:
            cache = (
                FileSessionCache(self.settings.session_cache_path)
                if self.settings.session_cache_path
                else MemorySessionCache()
            )
        self.cache = cache
        self.auth = AuthClient(self.http)
        self.coordinator = RefreshCoordinator(
            cache,
            self.auth.refresh,
            timeout=refresh_timeout or self.settings.refresh_timeout_seconds,
            on_session_terminated=on_session_terminated,
        )

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    @property
    def session(self) -> Optional[ClientSession]:
        return self.cache.load()

    async def login(self, email: str, password: str) -> ClientSession:
        session = await self.auth.login(email, password)
        self.coordinator.adopt(session)
        return session

    def adopt_session(self, session: ClientSession | Mapping[str, Any]) -> ClientSession:
        """Store a pair obtained elsewhere, e.g. deposited by an OAuth callback."""
        if not isinstance(session, ClientSession):
            session = ClientSession.from_dict(dict(session))
        self.coordinator.adopt(session)
        return session

    async def logout(self) -> None:
        """Forget the local session at once, then tell the server."""
        session = self.cache.load()
        self.coordinator.logout()
        if session is None:
            return
        try:
            await self.auth.logout(
                refresh_token=session.refresh_token, access_token=session.access_token
            )
        except (httpx.HTTPError, ServiceError) as exc:
            logger.warning("client_logout_server_call_failed", error=str(exc))

    async def _send(self, method: str, url: str, access_token: Optional[str], **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.pop("Authorization", None)
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return await self.http.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        access_token = self.coordinator.current_access_token()
        response = await self._send(method, url, access_token, **kwargs)
        if response.status_code != 401:
            return response
        await response.aclose()

        session = await self.coordinator.ensure_refreshed(access_token)
        replay = await self._send(method, url, session.access_token, **kwargs)
        if replay.status_code == 401:
            # A fresh token rejected again cannot be fixed by another renewal
            await replay.aclose()
            self.coordinator.terminate("replay_rejected")
            raise SessionExpiredError(reason="replay_rejected")
        return replay

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
