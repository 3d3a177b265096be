"""
Runtime configuration for the transport layer.

Configuration is read from environment variables so the same package can be
pointed at a local backend during development and at the deployed API in
production without code changes.  The following keys are recognised:

``AUTHLINK_BACKEND_URL``
    Base HTTP URL of the REST backend, e.g. ``https://api.example.com``.
    The realtime URL is derived from it by swapping the scheme.

``AUTHLINK_REFRESH_PATH`` / ``AUTHLINK_LOGIN_PATH`` / ``AUTHLINK_LOGOUT_PATH`` /
``AUTHLINK_VERIFY_PATH`` / ``AUTHLINK_ME_PATH``
    Endpoint paths of the authentication API.

``AUTHLINK_LOGIN_REDIRECT``
    Login entry point the user is sent to when the session ends.

``AUTHLINK_WS_PATH``
    Path of the default realtime channel.

``AUTHLINK_CONNECT_TIMEOUT`` / ``AUTHLINK_RECONNECT_BASE_DELAY`` /
``AUTHLINK_MAX_RECONNECT_ATTEMPTS`` / ``AUTHLINK_REQUEST_TIMEOUT``
    Realtime handshake timeout, backoff base, reconnect cap and HTTP timeout.

``AUTHLINK_TOKEN_FILE``
    When set, tokens are persisted to this JSON file instead of memory.

``AUTHLINK_METRICS``
    ``true``/``1``/``yes`` to expose Prometheus metrics from the CLI on
    ``PROMETHEUS_PORT`` (default 9108).

Malformed numeric values are logged and replaced with the default.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_TRUTHY = {"true", "1", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid value for %s: %r; using default %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid value for %s: %r; using default %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    backend_url: str = "http://localhost:8000"
    refresh_path: str = "/api/token/refresh/"
    login_path: str = "/api/login/"
    logout_path: str = "/api/logout/"
    verify_path: str = "/api/token/verify/"
    me_path: str = "/api/usuarios/me/"
    login_redirect: str = "/auth/login"
    ws_path: str = "/ws/chatbot/"
    connect_timeout: float = 10.0
    reconnect_base_delay: float = 3.0
    max_reconnect_attempts: int = 5
    request_timeout: float = 30.0
    token_file: Optional[str] = None
    metrics_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        defaults = cls()
        return cls(
            backend_url=os.getenv("AUTHLINK_BACKEND_URL", defaults.backend_url).rstrip("/"),
            refresh_path=os.getenv("AUTHLINK_REFRESH_PATH", defaults.refresh_path),
            login_path=os.getenv("AUTHLINK_LOGIN_PATH", defaults.login_path),
            logout_path=os.getenv("AUTHLINK_LOGOUT_PATH", defaults.logout_path),
            verify_path=os.getenv("AUTHLINK_VERIFY_PATH", defaults.verify_path),
            me_path=os.getenv("AUTHLINK_ME_PATH", defaults.me_path),
            login_redirect=os.getenv("AUTHLINK_LOGIN_REDIRECT", defaults.login_redirect),
            ws_path=os.getenv("AUTHLINK_WS_PATH", defaults.ws_path),
            connect_timeout=_env_float("AUTHLINK_CONNECT_TIMEOUT", defaults.connect_timeout),
            reconnect_base_delay=_env_float(
                "AUTHLINK_RECONNECT_BASE_DELAY", defaults.reconnect_base_delay
            ),
            max_reconnect_attempts=_env_int(
                "AUTHLINK_MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts
            ),
            request_timeout=_env_float("AUTHLINK_REQUEST_TIMEOUT", defaults.request_timeout),
            token_file=os.getenv("AUTHLINK_TOKEN_FILE") or None,
            metrics_enabled=os.getenv("AUTHLINK_METRICS", "false").lower() in _TRUTHY,
        )
