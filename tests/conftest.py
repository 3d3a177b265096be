"""Pytest configuration and shared fixtures.

The package lives under ``authlink/src``.  When pytest runs from a checkout
without the package installed, neither the repository root (needed for
``tests.helpers``) nor ``authlink/src`` is on ``sys.path``; both are added
here before any test module is collected.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

for _path in (ROOT / "authlink" / "src", ROOT):
    _path_str = str(_path)
    if _path_str not in sys.path:
        sys.path.insert(0, _path_str)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from authlink.credential_store import MemoryCredentialStore  # noqa: E402
from authlink.gateway import RequestGateway  # noqa: E402
from authlink.session import SessionTerminator  # noqa: E402
from tests.helpers.fake_backend import FakeBackend, RecordingNavigator  # noqa: E402


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def terminator(store: MemoryCredentialStore, navigator: RecordingNavigator) -> SessionTerminator:
    return SessionTerminator(store, login_redirect="/auth/login", navigate=navigator)


@pytest_asyncio.fixture
async def backend():
    server = FakeBackend()
    await server.start()
    try:
        yield server
    finally:
        await server.close()


@pytest_asyncio.fixture
async def gateway(store, terminator, backend):
    gw = RequestGateway(store, terminator, base_url=backend.base_url)
    try:
        yield gw
    finally:
        await gw.close()
