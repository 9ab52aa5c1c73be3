"""Shared fixtures for session-broker tests."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import httpx
import pytest

from session_broker.config import BrokerConfig, Identity
from session_broker.constants import APP_NAME
from tests.fakes import AUTH_URL, GRAPHQL_URL, FakeBackend, FakeClock

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def reset_broker_logger() -> Iterator[None]:
    """Undo configure_logging() calls made by a test (CLI, plugin)."""
    yield
    logger = logging.getLogger(APP_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at a fixed unix time."""
    return FakeClock()


@pytest.fixture
def backend() -> FakeBackend:
    """Scripted identity service and query backend."""
    return FakeBackend()


@pytest.fixture
async def http_client(backend: FakeBackend) -> AsyncIterator[httpx.AsyncClient]:
    """AsyncClient routed to the fake backend."""
    async with backend.client() as client:
        yield client


@pytest.fixture
def config(tmp_path: Path) -> BrokerConfig:
    """Configuration with isolated cache and lock directories."""
    return BrokerConfig(
        auth_url=AUTH_URL,
        graphql_url=GRAPHQL_URL,
        cache_dir=tmp_path / "cache",
        lock_dir=tmp_path / "locks",
    )


@pytest.fixture
def identity() -> Identity:
    """Fixture account u1."""
    return Identity(email="u1@example.com", password="p1")
