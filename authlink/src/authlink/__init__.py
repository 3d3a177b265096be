"""
Authenticated transport layer for the clinic web client.

The package provides two cooperating components built on a shared credential
store:

* :class:`RequestGateway` authenticates every REST call, renews an expired
  access token exactly once however many calls notice it at the same time,
  and ends the session when the server rejects the credential.
* :class:`RealtimeChannel` keeps a WebSocket connection alive with bounded
  backoff and dispatches inbound messages to handlers by type.

:class:`ApiClient` wires both together from environment settings.
"""

from .auth_api import AuthApi  # noqa: F401
from .client import ApiClient  # noqa: F401
from .config import Settings  # noqa: F401
from .credential_store import (  # noqa: F401
    BaseCredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)
from .errors import (  # noqa: F401
    AuthDenied,
    AuthError,
    AuthExpired,
    AuthlinkError,
    ConnectError,
    ConnectTimeout,
    MalformedFrame,
    TransportError,
)
from .gateway import RequestGateway  # noqa: F401
from .models import RequestSpec, TokenPair  # noqa: F401
from .realtime import ConnectionState, RealtimeChannel  # noqa: F401
from .session import SessionTerminator  # noqa: F401

__version__ = "0.1.0"
