"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from unsend.app import create_app
from unsend.config import Settings
from unsend.relay import Relay

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        storage_dir=tmp_path / "storage",
        pbkdf2_iterations=1000,
        trust_forwarded_for=True,
        stream_keepalive_seconds=0.05,
    )


@pytest.fixture
def relay(settings) -> Relay:
    r = Relay(settings)
    r.startup()
    return r


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c
