"""
Access token inspection.

The client never holds the signing key, so tokens are decoded *without*
signature verification purely to read the embedded ``exp`` claim.  The
server remains authoritative: a token that looks valid here can still be
rejected with HTTP 401/403, which the gateway treats as a fatal
authentication failure.

Expiry uses zero leeway: a token is expired once ``exp`` is strictly less
than the current whole second.  Tokens without ``exp`` or that cannot be
decoded at all are treated as expired.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, Optional

import jwt

logger = logging.getLogger(__name__)


def decode_claims(token: str) -> Optional[Dict[str, Any]]:
    """Return the unverified claims of ``token`` or ``None`` if undecodable."""
    try:
        claims = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=["HS256", "HS384", "HS512", "RS256", "RS384", "RS512", "ES256"],
        )
    except jwt.PyJWTError as exc:
        logger.debug("Could not decode access token: %s", exc)
        return None
    if not isinstance(claims, dict):
        return None
    return claims


def expires_at(token: str) -> Optional[float]:
    """Return the ``exp`` claim of ``token`` as a UNIX timestamp, if any."""
    claims = decode_claims(token)
    if not claims:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def is_expired(token: str, clock: Callable[[], float] = time.time) -> bool:
    """Check whether ``token`` is expired at the time given by ``clock``."""
    exp = expires_at(token)
    if exp is None:
        return True
    return exp < math.floor(clock())
