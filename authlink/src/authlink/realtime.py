"""
Realtime channel.

A :class:`RealtimeChannel` owns one logical WebSocket connection to the
backend.  The access token is read from the credential store once per
connection attempt and passed as the ``token`` query parameter; it is not
refreshed while the connection stays open, but every reconnect picks up the
current value.

Inbound frames are JSON objects carrying a ``type`` discriminator.  Each
frame is delivered synchronously, in registration order, to every handler
registered for its type (``"message"`` when the frame has none).  Frames
that do not parse are dropped without surfacing an error.

When the connection closes for any reason other than :meth:`disconnect`,
or a handshake fails, the channel reconnects in the background.  Attempt
``n`` waits ``reconnect_base_delay * n`` seconds; after
``max_reconnect_attempts`` consecutive failures the channel gives up and
stays closed until :meth:`connect` is called again.  A successful open
resets the counter.  Disconnect handlers run once per outage: when an open
connection closes, or when a handshake fails while they have not yet been
told the channel is down.

Outbound messages are fire-and-forget: :meth:`send` connects on demand and
drops the message if that fails.  There is no outbound queue.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt
from websockets.exceptions import ConnectionClosed

from .credential_store import BaseCredentialStore
from .errors import ConnectError, ConnectTimeout, MalformedFrame
from .metrics import FRAMES_DROPPED, REALTIME_CONNECTED, RECONNECT_ATTEMPTS

logger = logging.getLogger(__name__)

DEFAULT_KIND = "message"
CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"

Handler = Callable[..., Any]
Unsubscribe = Callable[[], None]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def build_ws_url(base_url: str, path: str, token: Optional[str] = None) -> str:
    """Derive the WebSocket URL from the HTTP base URL.

    ``http`` becomes ``ws`` and ``https`` becomes ``wss``; ``path`` is
    appended to any path already present in ``base_url`` and ``token`` is
    added as a query parameter when given.
    """
    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if not path.startswith("/"):
        path = "/" + path
    full_path = parts.path.rstrip("/") + path
    query = urlencode({"token": token}) if token else ""
    return urlunsplit((scheme, parts.netloc, full_path, query, ""))


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse an inbound frame into a JSON object.

    Raises:
        MalformedFrame: the frame is not valid UTF-8 JSON or not an object.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError, TypeError) as exc:
        raise MalformedFrame(f"Unparseable frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedFrame(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def encode_frame(message: Any) -> str:
    return json.dumps(message)


def frame_kind(payload: Dict[str, Any]) -> str:
    kind = payload.get("type")
    if isinstance(kind, str) and kind:
        return kind
    return DEFAULT_KIND


class HandlerRegistry:
    """
    Ordered callback lists keyed by message kind or lifecycle event.

    Every registration gets its own token, so registering the same callable
    twice yields two independent registrations and each returned
    unsubscribe callable removes exactly one of them.  Dispatch iterates a
    snapshot, so handlers may register or unregister while being called.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[object, Handler]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def add(self, key: str, handler: Handler) -> Unsubscribe:
        entry = (object(), handler)
        self._handlers[key].append(entry)

        def unsubscribe() -> None:
            entries = self._handlers.get(key)
            if entries and entry in entries:
                entries.remove(entry)

        return unsubscribe

    def handlers(self, key: str) -> List[Handler]:
        return [handler for _, handler in self._handlers.get(key, ())]

    def dispatch(self, key: str, *args: Any) -> int:
        """Call every handler registered under ``key``; return how many ran.

        A handler that raises is logged and does not prevent the remaining
        handlers from running.  Coroutine handlers are scheduled as tasks.
        """
        snapshot = self.handlers(key)
        for handler in snapshot:
            try:
                result = handler(*args)
            except Exception:
                logger.exception("Handler for %r raised", key)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        return len(snapshot)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async handler raised", exc_info=task.exception())


def _default_connector(url: str) -> Awaitable[Any]:
    # The channel enforces its own handshake timeout
    return websockets.connect(url, open_timeout=None)


class RealtimeChannel:
    """Self-healing WebSocket connection with kind-based message dispatch."""

    def __init__(
        self,
        store: BaseCredentialStore,
        *,
        base_url: str = "http://localhost:8000",
        path: str = "/ws/chatbot/",
        connect_timeout: float = 10.0,
        reconnect_base_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        :param store: Credential store read at every connection attempt.
        :param base_url: HTTP base URL of the backend.
        :param path: Path of the WebSocket endpoint.
        :param connect_timeout: Seconds allowed for the handshake.
        :param reconnect_base_delay: Delay unit of the linear backoff.
        :param max_reconnect_attempts: Consecutive failed reconnects before
            the channel gives up.
        :param connector: Coroutine factory opening the socket for a URL;
            defaults to :func:`websockets.connect`.
        :param sleep: Awaitable used for backoff delays.
        """
        self.store = store
        self.base_url = base_url
        self.path = path
        self.connect_timeout = connect_timeout
        self.reconnect_base_delay = reconnect_base_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._connector: Connector = connector or _default_connector
        self._sleep = sleep

        self._state = ConnectionState.IDLE
        self._ws: Any = None
        self._connecting: Optional[asyncio.Future] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._should_reconnect = True
        # Disconnect handlers already told about the current outage
        self._down_notified = False

        self._messages = HandlerRegistry()
        self._lifecycle = HandlerRegistry()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def url(self) -> str:
        return build_ws_url(self.base_url, self.path, self.store.get().access)

    def backoff_delay(self, attempt: int) -> float:
        return self.reconnect_base_delay * attempt

    async def __aenter__(self) -> "RealtimeChannel":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_message(self, kind: str, handler: Handler) -> Unsubscribe:
        """Register ``handler(payload)`` for frames whose ``type`` is ``kind``."""
        return self._messages.add(kind, handler)

    def on_connect(self, handler: Handler) -> Unsubscribe:
        return self._lifecycle.add(CONNECT_EVENT, handler)

    def on_disconnect(self, handler: Handler) -> Unsubscribe:
        return self._lifecycle.add(DISCONNECT_EVENT, handler)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, or join the attempt already in progress.

        Re-enables automatic reconnection if :meth:`disconnect` disabled it.

        Raises:
            ConnectTimeout: the handshake did not finish in time.
            ConnectError: the handshake failed.
        """
        self._should_reconnect = True
        await self._open()

    async def _open(self) -> None:
        if self.is_open:
            return
        if self._connecting is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._connecting = future
            self._handshake_task = loop.create_task(self._handshake(future))
        await asyncio.shield(self._connecting)

    async def _handshake(self, future: asyncio.Future) -> None:
        self._set_state(ConnectionState.CONNECTING)
        url = self.url()
        safe_url = build_ws_url(self.base_url, self.path)
        logger.info("Connecting to realtime channel at %s", safe_url)
        try:
            ws = await asyncio.wait_for(self._connector(url), timeout=self.connect_timeout)
        except asyncio.CancelledError:
            self._fail_attempt(future, ConnectError("Connection attempt aborted"))
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "Realtime handshake with %s timed out after %.1fs", safe_url, self.connect_timeout
            )
            self._fail_attempt(
                future, ConnectTimeout(f"Handshake timed out after {self.connect_timeout}s")
            )
            self._notify_down()
            self._handle_close()
            return
        except Exception as exc:
            logger.warning("Realtime handshake with %s failed: %s", safe_url, exc)
            error = ConnectError(f"Handshake failed: {exc}")
            error.__cause__ = exc
            self._fail_attempt(future, error)
            self._notify_down()
            self._handle_close()
            return

        if self._connecting is future:
            self._connecting = None
        self._handshake_task = None
        self._ws = ws
        self._reconnect_attempts = 0
        self._down_notified = False
        self._set_state(ConnectionState.OPEN)
        REALTIME_CONNECTED.inc()
        logger.info("Realtime channel open at %s", safe_url)
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(ws))
        self._lifecycle.dispatch(CONNECT_EVENT)
        if not future.done():
            future.set_result(None)

    def _fail_attempt(self, future: asyncio.Future, error: Exception) -> None:
        if self._connecting is future:
            self._connecting = None
            self._handshake_task = None
            self._set_state(ConnectionState.CLOSED)
        if not future.done():
            future.set_exception(error)
            # Nobody may be waiting (background reconnect); mark as retrieved
            future.exception()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            logger.info("Realtime connection closed: %s", exc)
        except OSError as exc:
            logger.warning("Realtime connection error: %s", exc)
        if self._ws is not ws:
            # Replaced or shut down by disconnect()
            return
        self._ws = None
        self._reader_task = None
        self._set_state(ConnectionState.CLOSED)
        REALTIME_CONNECTED.dec()
        self._notify_down()
        self._handle_close()

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            payload = decode_frame(raw)
        except MalformedFrame as exc:
            FRAMES_DROPPED.inc()
            logger.debug("Dropping realtime frame: %s", exc)
            return
        self._messages.dispatch(frame_kind(payload), payload)

    def _handle_close(self) -> None:
        """React to a closed connection or failed handshake."""
        if not self._should_reconnect or self.max_reconnect_attempts <= 0:
            return
        if self.reconnecting:
            # The running reconnect loop accounts for this failure
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    def _notify_down(self) -> None:
        """Fire disconnect handlers once per outage."""
        if self._down_notified:
            return
        self._down_notified = True
        self._lifecycle.dispatch(DISCONNECT_EVENT)

    async def _reconnect(self) -> None:
        try:
            while self._should_reconnect:
                await self._reconnect_until_open()
                # A socket that closed before this task resumed had its close
                # ignored by _handle_close; start a fresh round for it.
                if self.is_open or not self._should_reconnect:
                    break
                logger.info("Realtime connection closed right after reconnecting")
        except (ConnectError, ConnectTimeout):
            logger.warning(
                "Giving up on realtime channel after %d reconnection attempts",
                self._reconnect_attempts,
            )
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _reconnect_until_open(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_reconnect_attempts),
            retry=retry_if_exception_type((ConnectError, ConnectTimeout)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                self._reconnect_attempts = number
                delay = self.backoff_delay(number)
                logger.info(
                    "Reconnecting in %.1fs (attempt %d/%d)",
                    delay,
                    number,
                    self.max_reconnect_attempts,
                )
                await self._sleep(delay)
                RECONNECT_ATTEMPTS.inc()
                await self._open()

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting until :meth:`connect`."""
        self._should_reconnect = False
        was_open = self._state is ConnectionState.OPEN
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._handshake_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._reader_task = None
        if self._connecting is not None:
            self._fail_attempt(self._connecting, ConnectError("Connection attempt aborted by disconnect"))
        ws, self._ws = self._ws, None
        self._set_state(ConnectionState.CLOSED)
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as exc:
                logger.debug("Error while closing realtime connection: %s", exc)
        if was_open:
            REALTIME_CONNECTED.dec()
            self._notify_down()
            logger.info("Realtime channel disconnected")

    async def send(self, message: Any) -> bool:
        """Send ``message`` as JSON; return ``False`` if it was dropped."""
        if not self.is_open:
            try:
                await self.connect()
            except (ConnectError, ConnectTimeout) as exc:
                logger.warning("Dropping realtime message, channel unavailable: %s", exc)
                return False
        ws = self._ws
        if ws is None:
            logger.warning("Dropping realtime message, channel closed")
            return False
        try:
            await ws.send(encode_frame(message))
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Dropping realtime message, send failed: %s", exc)
            return False
        return True

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("Realtime channel %s -> %s", self._state.value, state.value)
            self._state = state
