"""pytest plugin exposing broker fixtures.

Enable it from a conftest.py:

    pytest_plugins = ["session_broker.pytest_plugin"]

Fixtures:
    broker_config   - BrokerConfig from the environment (session scope); tests
                      using it are skipped when configuration is missing
    session_broker  - SessionBroker for broker_config, closed after the test
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from session_broker.broker import SessionBroker
from session_broker.config import BrokerConfig
from session_broker.exceptions import ConfigurationError
from session_broker.telemetry import configure_logging


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("session-broker")
    group.addoption(
        "--broker-env-file",
        action="store",
        default=None,
        help="Dotenv file with broker configuration (default: ./.env when present)",
    )


@pytest.fixture(scope="session")
def broker_config(pytestconfig: pytest.Config) -> BrokerConfig:
    """Broker configuration; skips the requesting test when it is incomplete."""
    env_file = pytestconfig.getoption("--broker-env-file")
    try:
        config = BrokerConfig.from_env(env_file=Path(env_file) if env_file else None)
    except ConfigurationError as e:
        pytest.skip(f"session-broker not configured: {e}")
    configure_logging(config.log_level, config.log_file)
    return config


@pytest_asyncio.fixture
async def session_broker(broker_config: BrokerConfig) -> AsyncIterator[SessionBroker]:
    """SessionBroker sharing the on-disk session cache with other processes."""
    async with SessionBroker(broker_config) as broker:
        yield broker
