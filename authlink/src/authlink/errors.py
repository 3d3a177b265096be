"""
Exception hierarchy for the authenticated transport layer.

Callers generally only need to distinguish two families:

* :class:`AuthError` – the session is no longer usable.  Both subclasses
  (:class:`AuthExpired` and :class:`AuthDenied`) have already triggered the
  session terminator by the time they reach the caller, so the only sensible
  reaction is to stop and let the user log in again.
* :class:`TransportError` – something below the authentication layer failed
  (handshake timeout, refused connection, unexpected HTTP status from
  ``fetch``).  Raw ``aiohttp`` errors raised by :meth:`RequestGateway.request`
  are *not* wrapped; they reach the caller exactly as aiohttp raised them.

:class:`MalformedFrame` never escapes the realtime channel.  It exists so
that frame decoding can be tested in isolation.
"""

from __future__ import annotations

from typing import Optional


class AuthlinkError(Exception):
    """Base class for all errors raised by this package."""


class AuthError(AuthlinkError):
    """The current session cannot authenticate any further calls."""


class AuthExpired(AuthError):
    """The access token expired and could not be renewed."""


class AuthDenied(AuthError):
    """The server rejected the credential outright (HTTP 401/403)."""

    def __init__(self, status: int, message: Optional[str] = None) -> None:
        self.status = status
        super().__init__(message or f"Authentication denied by server (HTTP {status})")


class TransportError(AuthlinkError):
    """A lower-level network or protocol failure."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class ConnectTimeout(TransportError):
    """The realtime handshake did not complete within the configured window."""


class ConnectError(TransportError):
    """The realtime handshake failed before completing."""


class MalformedFrame(AuthlinkError):
    """An inbound realtime frame could not be decoded into a JSON object."""
