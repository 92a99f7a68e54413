"""Shared pytest fixtures for all tests."""

import asyncio

import pytest

from src.core.config import Settings
from src.core.ledger import SessionLedger
from src.core.logging import setup_logging
from tests.helpers import BASE_URL, FakeBackend, make_api

setup_logging()


@pytest.fixture
def backend():
    """Scripted backend."""
    return FakeBackend()


@pytest.fixture
async def api(backend):
    """API client wired to the scripted backend."""
    api = make_api(backend)
    yield api
    await api.aclose()


@pytest.fixture
def ledger(tmp_path):
    """Ledger for one browser session, stored under tmp_path."""
    return SessionLedger("test-session", directory=tmp_path)


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with all delays zeroed."""
    return Settings(
        _env_file=None,
        api_base_url=BASE_URL,
        ledger_dir=tmp_path,
        grace_delay=0,
        retry_interval=0,
        redirect_delay=0,
    )


@pytest.fixture
def sleeps():
    """Delays requested through fake_sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Records the delay and yields to the loop instead of sleeping."""
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)
    return _sleep
