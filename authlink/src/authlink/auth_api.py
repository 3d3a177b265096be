"""
Authentication endpoints.

Thin wrappers around the login, logout, token verification and current-user
endpoints.  Login is the only place where a brand new token pair enters the
credential store; it also re-arms the session terminator so that a later
fatal failure ends the new session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

import aiohttp
from pydantic import ValidationError

from .errors import AuthError, TransportError
from .gateway import RequestGateway
from .models import LoginRequest, LoginResponse, TokenPair

logger = logging.getLogger(__name__)


class AuthApi:
    def __init__(
        self,
        gateway: RequestGateway,
        *,
        login_path: str = "/api/login/",
        logout_path: str = "/api/logout/",
        verify_path: str = "/api/token/verify/",
        me_path: str = "/api/usuarios/me/",
    ) -> None:
        self.gateway = gateway
        self.login_path = login_path
        self.logout_path = logout_path
        self.verify_path = verify_path
        self.me_path = me_path

    async def login(self, dni: str, password: str) -> Dict[str, Any]:
        """Log in and store the returned token pair.

        Returns the full login response body (tokens plus any user fields).

        Raises:
            TransportError: the server rejected the credentials or returned
                a body without tokens.
        """
        body = LoginRequest(dni=dni, password=password).model_dump()
        resp = await self.gateway.request(
            method="POST", path=self.login_path, json_body=body, authenticated=False
        )
        if resp.status >= 400:
            logger.warning("Login rejected (HTTP %s)", resp.status)
            raise TransportError(f"Login rejected (HTTP {resp.status})", status=resp.status)
        data = await resp.json(content_type=None)
        try:
            login = LoginResponse.model_validate(data)
        except ValidationError as exc:
            raise TransportError("Login response did not contain a token pair") from exc
        self.gateway.store.set(TokenPair(access=login.access, refresh=login.refresh))
        self.gateway.terminator.rearm()
        logger.info("Logged in")
        return login.model_dump()

    async def logout(self) -> None:
        """Invalidate the refresh token server-side and clear local tokens.

        The server call is best effort: backends without a logout endpoint,
        or an unreachable backend, must not keep the user logged in locally.
        """
        refresh = self.gateway.store.get().refresh
        if refresh:
            try:
                resp = await self.gateway.request(
                    method="POST",
                    path=self.logout_path,
                    json_body={"refresh": refresh},
                    authenticated=False,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.info("Server-side logout failed: %s", exc)
            else:
                if resp.status >= 400:
                    logger.info("Server-side logout returned HTTP %s", resp.status)
        self.gateway.store.clear()
        logger.info("Logged out")

    async def verify_token(self, token: str) -> bool:
        """Ask the server whether ``token`` is valid."""
        resp = await self.gateway.request(
            method="POST",
            path=self.verify_path,
            json_body={"token": token},
            authenticated=False,
        )
        return 200 <= resp.status < 300

    async def current_user(self) -> Any:
        """Return the profile of the logged-in user.

        Raises:
            AuthError: no usable session (the session has been terminated).
        """
        try:
            return await self.gateway.fetch(self.me_path)
        except AuthError:
            logger.info("No authenticated user")
            raise
