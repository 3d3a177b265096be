"""Tests for the login, logout, verify and current-user wrappers."""

from __future__ import annotations

import pytest  # type: ignore
import pytest_asyncio

from authlink.auth_api import AuthApi
from authlink.errors import AuthError, TransportError
from authlink.gateway import RequestGateway
from authlink.models import TokenPair
from tests.helpers.fake_backend import VALID_DNI, VALID_PASSWORD
from tests.helpers.tokens import expired_token, fresh_token, refresh_token


@pytest_asyncio.fixture
async def auth(gateway):
    return AuthApi(gateway)


@pytest.mark.asyncio  # type: ignore
async def test_login_stores_token_pair(auth, store) -> None:
    data = await auth.login(VALID_DNI, VALID_PASSWORD)
    pair = store.get()
    assert pair.access == data["access"]
    assert pair.refresh == data["refresh"]
    # Extra fields of the response are passed through
    assert data["user"] == {"id": 1, "rol": "admin"}


@pytest.mark.asyncio  # type: ignore
async def test_rejected_login_leaves_store_untouched(auth, store, navigator) -> None:
    with pytest.raises(TransportError) as excinfo:
        await auth.login(VALID_DNI, "wrong")
    assert excinfo.value.status == 401
    assert store.get().is_empty
    # A failed login is not a fatal session failure
    assert navigator.calls == []


@pytest.mark.asyncio  # type: ignore
async def test_login_rearms_terminated_session(auth, store, navigator, terminator) -> None:
    terminator.terminate("earlier failure")
    await auth.login(VALID_DNI, VALID_PASSWORD)
    assert not terminator.terminated


@pytest.mark.asyncio  # type: ignore
async def test_logout_sends_refresh_and_clears(auth, backend, store) -> None:
    refresh = refresh_token()
    store.set(TokenPair(access=fresh_token(), refresh=refresh))
    await auth.logout()
    assert backend.logout_calls == [{"refresh": refresh}]
    assert store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_logout_clears_even_when_server_refuses(auth, backend, store) -> None:
    backend.logout_status = 404
    store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
    await auth.logout()
    assert store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_logout_clears_when_backend_unreachable(store, terminator) -> None:
    gateway = RequestGateway(store, terminator, base_url="http://127.0.0.1:1", timeout=5)
    try:
        store.set(TokenPair(access=fresh_token(), refresh=refresh_token()))
        await AuthApi(gateway).logout()
    finally:
        await gateway.close()
    assert store.get().is_empty


@pytest.mark.asyncio  # type: ignore
async def test_logout_without_session_skips_server(auth, backend, store) -> None:
    await auth.logout()
    assert backend.logout_calls == []


@pytest.mark.asyncio  # type: ignore
async def test_verify_token(auth) -> None:
    assert await auth.verify_token(fresh_token()) is True
    assert await auth.verify_token(expired_token()) is False
    assert await auth.verify_token("garbage") is False


@pytest.mark.asyncio  # type: ignore
async def test_current_user_renews_expired_access(auth, backend, store) -> None:
    store.set(TokenPair(access=expired_token(), refresh=refresh_token()))
    assert await auth.current_user() == {"id": 1, "username": "admin"}
    assert len(backend.refresh_calls) == 1


@pytest.mark.asyncio  # type: ignore
async def test_current_user_without_session(auth, navigator) -> None:
    with pytest.raises(AuthError):
        await auth.current_user()
    assert navigator.calls == ["/auth/login"]
