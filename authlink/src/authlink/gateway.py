"""
Authenticated HTTP gateway.

Every call-response exchange with the backend goes through
:class:`RequestGateway`.  Before a call is sent the gateway reads the token
pair from the credential store and

* sends the call unauthenticated when there is no access token,
* attaches ``Authorization: Bearer <access>`` when the token is still valid,
* renews the token first when it has expired and a refresh token exists.

Renewal is single-flight: however many calls discover the expired token at
the same moment, one ``POST <refresh_path>`` is issued and every caller
waits on the same :class:`asyncio.Future`.  The check for an in-flight
renewal and the creation of a new one happen without an ``await`` in
between, which makes them atomic on the event loop.

An unrecoverable situation (renewal failed, no refresh token, or the server
answering 401/403) ends the session through the :class:`SessionTerminator`
and surfaces as :class:`AuthExpired` or :class:`AuthDenied`.  Transport
errors raised by aiohttp are never retried here and reach the caller
unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import aiohttp
from aiohttp import ClientResponse
from pydantic import ValidationError

from .credential_store import BaseCredentialStore
from .errors import AuthDenied, AuthExpired, TransportError
from .metrics import RENEWALS
from .models import RefreshResponse, RequestSpec, TokenPair
from .session import SessionTerminator
from .tokens import is_expired

logger = logging.getLogger(__name__)

AUTH_DENIED_STATUSES = frozenset({401, 403})


class RequestGateway:
    """Asynchronous REST client that keeps calls authenticated."""

    def __init__(
        self,
        store: BaseCredentialStore,
        terminator: Optional[SessionTerminator] = None,
        *,
        base_url: str = "http://localhost:8000",
        refresh_path: str = "/api/token/refresh/",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Construct the gateway.

        Args:
            store: Credential store holding the access/refresh pair.
            terminator: Session terminator invoked on fatal authentication
                failure.  Defaults to one that only clears ``store``.
            base_url: Backend base URL; relative paths are joined onto it.
            refresh_path: Path of the renewal endpoint.
            session: Optional aiohttp session.  When omitted the gateway
                creates one lazily and closes it in :meth:`close`.
            timeout: Total timeout in seconds for sessions the gateway creates.
            clock: Source of the current UNIX time, used for expiry checks.
        """
        self.store = store
        self.terminator = terminator or SessionTerminator(store)
        self.base_url = base_url.rstrip("/")
        self.refresh_path = refresh_path
        self.timeout = timeout
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        # Shared result of the renewal currently in flight, if any
        self._pending_renewal: Optional[asyncio.Future] = None
        self._renewal_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "RequestGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._renewal_task is not None and not self._renewal_task.done():
            self._renewal_task.cancel()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _targets_refresh_endpoint(self, url: str) -> bool:
        return urlsplit(url).path.rstrip("/") == urlsplit(self.url_for(self.refresh_path)).path.rstrip("/")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(self, spec: Optional[RequestSpec] = None, **kwargs: Any) -> ClientResponse:
        """Send one call and return the underlying response.

        Accepts either a :class:`RequestSpec` or its fields as keyword
        arguments.  The returned response has its body already read, so
        ``await resp.json()`` and ``await resp.text()`` remain usable after
        the connection has been released.

        Raises:
            AuthExpired: the access token expired and could not be renewed.
            AuthDenied: the server answered 401 or 403.
            ValueError: the call targets the renewal endpoint.
        """
        if spec is None:
            spec = RequestSpec(**kwargs)
        url = self.url_for(spec.path)
        if self._targets_refresh_endpoint(url):
            raise ValueError("The renewal endpoint cannot be called through the gateway")

        headers: Dict[str, str] = dict(spec.headers)
        if spec.authenticated:
            access = await self._resolve_access()
            if access:
                headers["Authorization"] = f"Bearer {access}"

        resp = await self._send(spec.method, url, headers, spec.json_body, spec.params)
        if spec.authenticated and resp.status in AUTH_DENIED_STATUSES:
            self.terminator.terminate(f"server answered HTTP {resp.status}")
            raise AuthDenied(resp.status)
        return resp

    async def get(self, path: str, **kwargs: Any) -> ClientResponse:
        return await self.request(method="GET", path=path, **kwargs)

    async def post(self, path: str, json_body: Any = None, **kwargs: Any) -> ClientResponse:
        return await self.request(method="POST", path=path, json_body=json_body, **kwargs)

    async def put(self, path: str, json_body: Any = None, **kwargs: Any) -> ClientResponse:
        return await self.request(method="PUT", path=path, json_body=json_body, **kwargs)

    async def patch(self, path: str, json_body: Any = None, **kwargs: Any) -> ClientResponse:
        return await self.request(method="PATCH", path=path, json_body=json_body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> ClientResponse:
        return await self.request(method="DELETE", path=path, **kwargs)

    async def fetch(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET ``path`` and return its decoded JSON body.

        Non-2xx statuses other than 401/403 raise :class:`TransportError`.
        """
        resp = await self.request(method="GET", path=path, params=params or {})
        await self._raise_for_status(resp)
        return await resp.json(content_type=None)

    # ------------------------------------------------------------------
    # Credential resolution and renewal
    # ------------------------------------------------------------------

    async def _resolve_access(self) -> Optional[str]:
        pair = self.store.get()
        if not pair.access:
            return None
        if not is_expired(pair.access, self._clock):
            return pair.access
        if not pair.refresh:
            self.terminator.terminate("access token expired and no refresh token is available")
            raise AuthExpired("Access token expired and no refresh token is available")
        try:
            # shield: a cancelled caller must not cancel the renewal shared by others
            return await asyncio.shield(self._join_renewal())
        except AuthExpired:
            self.terminator.terminate("access token renewal failed")
            raise

    def _join_renewal(self) -> asyncio.Future:
        """Return the in-flight renewal, starting one if there is none.

        Must stay free of ``await``: the check and the assignment form one
        atomic step on the event loop.
        """
        if self._pending_renewal is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._pending_renewal = future
            self._renewal_task = loop.create_task(self._run_renewal(future))
        return self._pending_renewal

    async def _run_renewal(self, future: asyncio.Future) -> None:
        refresh = self.store.get().refresh
        logger.info("Access token expired; renewing")
        try:
            access = await self._refresh_access(refresh or "")
            current = self.store.get()
            # A logout during the renewal must not be undone by writing the new token
            if current.refresh == refresh:
                self.store.set(TokenPair(access=access, refresh=refresh))
        except asyncio.CancelledError:
            future.cancel()
            raise
        except AuthExpired as exc:
            self._fail_renewal(future, exc)
        except Exception as exc:
            logger.exception("Unexpected error while renewing the access token")
            error = AuthExpired(f"Token renewal failed: {exc.__class__.__name__}")
            error.__cause__ = exc
            self._fail_renewal(future, error)
        else:
            RENEWALS.labels(outcome="success").inc()
            logger.info("Access token renewed")
            future.set_result(access)
        finally:
            self._pending_renewal = None
            self._renewal_task = None

    @staticmethod
    def _fail_renewal(future: asyncio.Future, exc: AuthExpired) -> None:
        RENEWALS.labels(outcome="failure").inc()
        logger.warning("Access token renewal failed: %s", exc)
        future.set_exception(exc)
        # Consumers may all have been cancelled; avoid "exception never retrieved"
        future.exception()

    async def _refresh_access(self, refresh: str) -> str:
        """Call the renewal endpoint directly, bypassing :meth:`request`."""
        session = self._get_session()
        url = self.url_for(self.refresh_path)
        try:
            async with session.post(url, json={"refresh": refresh}) as resp:
                if not 200 <= resp.status < 300:
                    raise AuthExpired(f"Token renewal rejected (HTTP {resp.status})")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise AuthExpired(f"Token renewal failed: {exc.__class__.__name__}") from exc
        try:
            return RefreshResponse.model_validate(data).access
        except ValidationError as exc:
            raise AuthExpired("Token renewal returned no access token") from exc

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        params: Dict[str, str],
    ) -> ClientResponse:
        session = self._get_session()
        async with session.request(
            method, url, headers=headers, json=body, params=params or None
        ) as resp:
            await resp.read()
            return resp

    @staticmethod
    async def _raise_for_status(resp: ClientResponse) -> None:
        if resp.status >= 400:
            # Avoid logging full response bodies; truncate to prevent leakage
            text = await resp.text()
            truncated = text[:200] if text else ""
            logger.error("REST API error %s: %s", resp.status, truncated)
            raise TransportError(f"REST API error {resp.status}", status=resp.status)
