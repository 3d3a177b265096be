"""
Composition root.

:class:`ApiClient` wires one credential store, one session terminator, one
gateway and the realtime channels together from :class:`Settings`.  Host
applications normally create a single instance and share it.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .auth_api import AuthApi
from .config import Settings
from .credential_store import BaseCredentialStore, FileCredentialStore, MemoryCredentialStore
from .gateway import RequestGateway
from .realtime import RealtimeChannel
from .session import Navigator, SessionTerminator

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> BaseCredentialStore:
    if settings.token_file:
        logger.debug("Using token file %s", settings.token_file)
        return FileCredentialStore(settings.token_file)
    return MemoryCredentialStore()


class ApiClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[BaseCredentialStore] = None,
        navigate: Optional[Navigator] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.store = store or build_store(self.settings)
        self.terminator = SessionTerminator(
            self.store, login_redirect=self.settings.login_redirect, navigate=navigate
        )
        self.gateway = RequestGateway(
            self.store,
            self.terminator,
            base_url=self.settings.backend_url,
            refresh_path=self.settings.refresh_path,
            timeout=self.settings.request_timeout,
        )
        self.auth = AuthApi(
            self.gateway,
            login_path=self.settings.login_path,
            logout_path=self.settings.logout_path,
            verify_path=self.settings.verify_path,
            me_path=self.settings.me_path,
        )
        self._channels: Dict[str, RealtimeChannel] = {}

    def channel(self, path: str) -> RealtimeChannel:
        """Return the realtime channel for ``path``, creating it once."""
        if path not in self._channels:
            self._channels[path] = RealtimeChannel(
                self.store,
                base_url=self.settings.backend_url,
                path=path,
                connect_timeout=self.settings.connect_timeout,
                reconnect_base_delay=self.settings.reconnect_base_delay,
                max_reconnect_attempts=self.settings.max_reconnect_attempts,
            )
        return self._channels[path]

    @property
    def chatbot(self) -> RealtimeChannel:
        return self.channel(self.settings.ws_path)

    async def close(self) -> None:
        for channel in self._channels.values():
            await channel.disconnect()
        await self.gateway.close()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
