"""Tests for the authenticated request gateway.

The gateway talks to a real ``aiohttp.web`` backend on localhost (see
``tests/helpers/fake_backend.py``), so these tests check what actually goes
over the wire: which ``Authorization`` header was sent and how many times
the renewal endpoint was hit.
"""

from __future__ import annotations

import asyncio
import time

import aiohttp
import pytest  # type: ignore

from authlink.credential_store import MemoryCredentialStore
from authlink.errors import AuthDenied, AuthExpired, TransportError
from authlink.gateway import RequestGateway
from authlink.models import RequestSpec, TokenPair
from authlink.session import SessionTerminator
from tests.helpers.tokens import expired_token, fresh_token, make_token, refresh_token


@pytest.mark.asyncio  # type: ignore
async def test_request_without_token_is_unauthenticated(gateway, backend) -> None:
    resp = await gateway.get("/api/echo/")
    assert resp.status == 200
    assert (await resp.json())["authorization"] is None
    assert backend.refresh_calls == []


@pytest.mark.asyncio  # type: ignore
async def test_valid_token_is_attached_without_renewal(gateway, backend, store) -> None:
    access = fresh_token()
    store.set(TokenPair(access=access, refresh=refresh_token()))
    resp = await gateway.get("/api/echo/")
    assert (await resp.json())["authorization"] == f"Bearer {access}"
    # No renewal when the token is still valid
    assert backend.refresh_calls == []


@pytest.mark.asyncio  # type: ignore
async def test_request_accepts_spec_object(gateway, backend, store) -> None:
    access = fresh_token()
    store.set(TokenPair(access=access))
    spec = RequestSpec(
        method="POST",
        path="/api/echo/",
        json_body={"a": 1},
        headers={"X-Trace": "1"},
        params={"page": "2"},
    )
    resp = await gateway.request(spec)
    data = await resp.json()
    assert data["authorization"] == f"Bearer {access}"
    assert data["body"] == {"a": 1}
    assert data["query"] == {"page": "2"}


@pytest.mark.asyncio  # type: ignore
async def test_concurrent_expired_calls_renew_once(gateway, backend, store) -> None:
    refresh = refresh_token()
    store.set(TokenPair(access=expired_token(), refresh=refresh))

    responses = await asyncio.gather(*(gateway.get("/api/echo/") for _ in range(8)))

    # Exactly one renewal call, with the stored refresh token
    assert backend.refresh_calls == [refresh]
    assert len(backend.issued_access) == 1
    renewed = backend.issued_access[0]
    # Every call observed the same renewed token
    for resp in responses:
        assert resp.status == 200
        assert (await resp.json())["authorization"] == f"Bearer {renewed}"
    # The store holds the renewed access token and keeps the refresh token
    assert store.get() == TokenPair(access=renewed, refresh=refresh)


@pytest.mark.asyncio  # type: ignore
async def test_renewed_token_is_reused_by_later_calls(gateway, backend, store) -> None:
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    await gateway.get("/api/echo/")
    await gateway.get("/api/echo/")
    assert len(backend.refresh_calls) == 1
    assert backend.authorization_headers[0] == backend.authorization_headers[1]


@pytest.mark.asyncio  # type: ignore
async def test_separate_expiry_events_renew_separately(backend, store, terminator) -> None:
    # The clock moves past the renewed token's expiry between the two calls
    now = [0.0]
    gateway = RequestGateway(store, terminator, base_url=backend.base_url, clock=lambda: now[0])
    try:
        store.set(TokenPair(access=make_token(expires_in=-60), refresh=refresh_token()))
        now[0] = time.time()
        await gateway.get("/api/echo/")
        now[0] = time.time() + 3600
        await gateway.get("/api/echo/")
    finally:
        await gateway.close()
    assert len(backend.refresh_calls) == 2


@pytest.mark.asyncio  # type: ignore
async def test_failed_renewal_is_shared_and_terminates_once(
    gateway, backend, store, navigator
) -> None:
    backend.refresh_mode = "fail"
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))

    results = await asyncio.gather(
        *(gateway.get("/api/echo/") for _ in range(5)), return_exceptions=True
    )

    assert all(isinstance(r, AuthExpired) for r in results)
    assert len(backend.refresh_calls) == 1
    # The original calls were never sent
    assert backend.authorization_headers == []
    # One clear, one redirect
    assert store.get().is_empty
    assert navigator.calls == ["/auth/login"]


@pytest.mark.asyncio  # type: ignore
async def test_renewal_without_access_in_body_fails(gateway, backend, store, navigator) -> None:
    backend.refresh_mode = "garbage"
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    with pytest.raises(AuthExpired):
        await gateway.get("/api/echo/")
    assert navigator.calls == ["/auth/login"]


@pytest.mark.asyncio  # type: ignore
async def test_gateway_recovers_after_failed_renewal(gateway, backend, store) -> None:
    backend.refresh_mode = "fail"
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    with pytest.raises(AuthExpired):
        await gateway.get("/api/echo/")
    # The in-flight marker was released: a new session can renew again
    backend.refresh_mode = "ok"
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    resp = await gateway.get("/api/echo/")
    assert resp.status == 200
    assert len(backend.refresh_calls) == 2


@pytest.mark.asyncio  # type: ignore
async def test_expired_without_refresh_fails_immediately(
    gateway, backend, store, navigator
) -> None:
    store.set(TokenPair(access=expired_token()))
    with pytest.raises(AuthExpired):
        await gateway.get("/api/echo/")
    assert backend.refresh_calls == []
    assert navigator.calls == ["/auth/login"]
    assert store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_undecodable_token_counts_as_expired(gateway, backend, store) -> None:
    store.set(TokenPair(access="not-a-jwt", refresh=refresh_token()))
    resp = await gateway.get("/api/echo/")
    assert resp.status == 200
    assert len(backend.refresh_calls) == 1


@pytest.mark.asyncio  # type: ignore
@pytest.mark.parametrize("path,status", [("/api/unauthorized/", 401), ("/api/forbidden/", 403)])
async def test_auth_denied_status_terminates_session(
    gateway, store, navigator, path, status
) -> None:
    store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
    with pytest.raises(AuthDenied) as excinfo:
        await gateway.get(path)
    assert excinfo.value.status == status
    assert store.get().is_empty
    assert navigator.calls == ["/auth/login"]


@pytest.mark.asyncio  # type: ignore
async def test_concurrent_denials_redirect_once(gateway, store, navigator) -> None:
    store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
    results = await asyncio.gather(
        *(gateway.get("/api/unauthorized/") for _ in range(4)), return_exceptions=True
    )
    assert all(isinstance(r, AuthDenied) for r in results)
    assert navigator.calls == ["/auth/login"]


@pytest.mark.asyncio  # type: ignore
async def test_unauthenticated_call_ignores_denied_status(gateway, store, navigator) -> None:
    store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
    resp = await gateway.request(method="GET", path="/api/unauthorized/", authenticated=False)
    assert resp.status == 401
    assert navigator.calls == []
    assert not store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_transport_error_passes_through(store, terminator, navigator) -> None:
    store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
    gateway = RequestGateway(store, terminator, base_url="http://127.0.0.1:1", timeout=5)
    try:
        with pytest.raises(aiohttp.ClientError):
            await gateway.get("/api/echo/")
    finally:
        await gateway.close()
    # Transport failures never end the session
    assert navigator.calls == []
    assert not store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_renewal_endpoint_cannot_be_routed_through_gateway(gateway) -> None:
    with pytest.raises(ValueError):
        await gateway.post("/api/token/refresh/", {"refresh": "x"})


@pytest.mark.asyncio  # type: ignore
async def test_fetch_returns_json_and_raises_on_error_status(gateway, store) -> None:
    store.set(TokenPair(access=fresh_token()))
    data = await gateway.fetch("/api/usuarios/me/")
    assert data == {"id": 1, "username": "admin"}
    with pytest.raises(TransportError) as excinfo:
        await gateway.fetch("/api/missing/")
    assert excinfo.value.status == 404


@pytest.mark.asyncio  # type: ignore
async def test_logout_during_renewal_is_not_undone(gateway, backend, store) -> None:
    backend.refresh_delay = 0.1
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    call = asyncio.ensure_future(gateway.get("/api/echo/"))
    await asyncio.sleep(0.03)
    store.clear()
    resp = await call
    assert resp.status == 200
    # The renewed token was not written back into the cleared store
    assert store.get().is_empty


class FailingWriteStore(MemoryCredentialStore):
    """Store whose writes fail, like a token file on a full disk."""

    def set(self, pair: TokenPair) -> None:
        raise OSError("disk full")


@pytest.mark.asyncio  # type: ignore
async def test_store_failure_during_renewal_releases_every_caller(backend, navigator) -> None:
    store = FailingWriteStore(TokenPair(access=expired_token(), refresh=refresh_token()))
    terminator = SessionTerminator(store, navigate=navigator)
    gateway = RequestGateway(store, terminator, base_url=backend.base_url)
    try:
        results = await asyncio.wait_for(
            asyncio.gather(*(gateway.get("/api/echo/") for _ in range(3)), return_exceptions=True),
            timeout=2,
        )
    finally:
        await gateway.close()

    assert all(isinstance(r, AuthExpired) for r in results)
    assert len(backend.refresh_calls) == 1
    assert backend.authorization_headers == []
    assert navigator.calls == ["/auth/login"]
    assert store.get().is_empty


def test_url_for_joins_and_passes_absolute_urls(store) -> None:
    gateway = RequestGateway(store, base_url="https://api.example.com/")
    assert gateway.url_for("/api/x/") == "https://api.example.com/api/x/"
    assert gateway.url_for("api/x/") == "https://api.example.com/api/x/"
    assert gateway.url_for("https://other.example.com/y") == "https://other.example.com/y"
