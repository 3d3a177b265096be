"""
credential_store
================

Storage backends for the access/refresh token pair.

The store is the single shared mutable resource of the transport layer.  It
is mutated in exactly three situations: a successful login, a successful
renewal of the access token, and logout or fatal authentication failure.
All methods are synchronous so that a read-check-write sequence performed by
the gateway never contains a suspension point and is therefore atomic with
respect to other coroutines on the same event loop.

Two implementations are provided:

* :class:`MemoryCredentialStore` keeps the pair in process memory.  It is
  the default and the natural fake for tests.
* :class:`FileCredentialStore` additionally persists the pair as JSON so a
  restarted CLI keeps its session.  The file holds exactly
  ``{"access": ..., "refresh": ...}``.

Example usage::

    from authlink.credential_store import MemoryCredentialStore
    from authlink.models import TokenPair

    store = MemoryCredentialStore()
    store.set(TokenPair(access="...", refresh="..."))
    store.get().access
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from .models import TokenPair

logger = logging.getLogger(__name__)


class BaseCredentialStore:
    """Abstract base class for credential stores."""

    def get(self) -> TokenPair:  # pragma: no cover - override
        """Return the current pair.  Missing tokens are ``None``."""
        raise NotImplementedError

    def set(self, pair: TokenPair) -> None:  # pragma: no cover - override
        raise NotImplementedError

    def clear(self) -> None:  # pragma: no cover - override
        raise NotImplementedError


class MemoryCredentialStore(BaseCredentialStore):
    """Keep the token pair in memory for the lifetime of the process."""

    def __init__(self, pair: Optional[TokenPair] = None) -> None:
        self._pair = pair or TokenPair()

    def get(self) -> TokenPair:
        return self._pair

    def set(self, pair: TokenPair) -> None:
        self._pair = pair

    def clear(self) -> None:
        self._pair = TokenPair()


class FileCredentialStore(MemoryCredentialStore):
    """
    Persist the token pair to a JSON file.

    The file is read once at construction time; afterwards the in-memory
    copy is authoritative and every mutation is written through.  A missing
    or unreadable file starts an empty session.  The file is created with
    owner-only permissions because it contains bearer credentials.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        super().__init__(self._read_file())

    def _read_file(self) -> TokenPair:
        if not self.path.exists():
            return TokenPair()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return TokenPair(access=data.get("access"), refresh=data.get("refresh"))
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, exc)
            return TokenPair()

    def _write_file(self, pair: TokenPair) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"access": pair.access, "refresh": pair.refresh}, f)

    def set(self, pair: TokenPair) -> None:
        super().set(pair)
        self._write_file(pair)

    def clear(self) -> None:
        super().clear()
        self._write_file(TokenPair())
