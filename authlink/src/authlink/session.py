"""
Session termination.

When the gateway decides the session is unrecoverable (renewal failed, no
refresh token, or the server answered 401/403) it clears the credential
store and sends the user to the login entry point.  This is the only effect
the transport layer has on the surrounding application, and it has to be
idempotent: a burst of concurrent calls that all fail at once must produce
exactly one clear and one redirect.

The application plugs its navigation in as a plain callable receiving the
login path.  Without one, the redirect is only logged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .credential_store import BaseCredentialStore
from .metrics import SESSION_TERMINATIONS

logger = logging.getLogger(__name__)

Navigator = Callable[[str], Any]


def _log_redirect(path: str) -> None:
    logger.info("Redirect to %s requested", path)


class SessionTerminator:
    """Clear the store and redirect to login, at most once per session."""

    def __init__(
        self,
        store: BaseCredentialStore,
        *,
        login_redirect: str = "/auth/login",
        navigate: Optional[Navigator] = None,
    ) -> None:
        self.store = store
        self.login_redirect = login_redirect
        self._navigate: Navigator = navigate or _log_redirect
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def rearm(self) -> None:
        """Mark a fresh session as started (called after a successful login)."""
        self._terminated = False

    def terminate(self, reason: str) -> bool:
        """End the session.

        Returns ``True`` if this call performed the clear and redirect, and
        ``False`` if the session had already been terminated.  A session
        counts as a new one again as soon as the store holds tokens.
        """
        if self._terminated and self.store.get().is_empty:
            return False
        self._terminated = True
        self.store.clear()
        SESSION_TERMINATIONS.inc()
        logger.warning("Session terminated (%s); redirecting to %s", reason, self.login_redirect)
        try:
            self._navigate(self.login_redirect)
        except Exception:
            logger.exception("Login redirect handler failed")
        return True
