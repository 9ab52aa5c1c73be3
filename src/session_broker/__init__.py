"""session-broker: shared, cache-aware authenticated sessions for integration tests.

Signs fixture accounts in against an identity service once, shares the
session across concurrent tests and test processes, refreshes it before it
expires, and sends GraphQL requests with bounded retry.
"""

__version__ = "0.3.0"

from session_broker.broker import Session, SessionBroker, test_suffix
from session_broker.config import BrokerConfig, FixtureAccount, Identity
from session_broker.exceptions import (
    AuthenticationRejectedError,
    BrokerError,
    ConfigurationError,
    GraphQLResponseError,
    ProtocolError,
    RefreshError,
    RetryExhaustedError,
    SignInError,
    TransportError,
)

__all__ = [
    "AuthenticationRejectedError",
    "BrokerConfig",
    "BrokerError",
    "ConfigurationError",
    "FixtureAccount",
    "GraphQLResponseError",
    "Identity",
    "ProtocolError",
    "RefreshError",
    "RetryExhaustedError",
    "Session",
    "SessionBroker",
    "SignInError",
    "TransportError",
    "__version__",
    "test_suffix",
]
