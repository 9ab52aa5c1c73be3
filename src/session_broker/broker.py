"""Session broker facade used by integration tests.

Wires the lifecycle manager, the in-process memoizer and the query executor
together behind the handful of calls a test suite needs:

    async with SessionBroker(BrokerConfig.from_env()) as broker:
        session = await broker.session_for("a")
        data = await broker.gql_as("a", "query { me { id } }")
"""

from __future__ import annotations

__all__ = [
    "Session",
    "SessionBroker",
    "test_suffix",
]

import random
import string
import time
from dataclasses import dataclass
from typing import Any

import httpx

from session_broker.cache import SessionRecord
from session_broker.clock import Clock
from session_broker.config import BrokerConfig, Identity
from session_broker.exceptions import GraphQLResponseError
from session_broker.executor import QueryExecutor, TransientPredicate
from session_broker.memo import AcquisitionMemoizer
from session_broker.session import SessionManager
from session_broker.telemetry import get_logger
from session_broker.transport import create_http_client

_logger = get_logger("broker")

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_RANDOM_CHARS = 5


@dataclass(frozen=True)
class Session:
    """Credentials handed to tests.

    Attributes:
        subject_id: Identity-service user id.
        token: Bearer access token.
        access_expiry: Unix seconds after which the token is invalid.
    """

    subject_id: str
    token: str
    access_expiry: int

    def __repr__(self) -> str:
        return f"Session(subject_id={self.subject_id!r}, access_expiry={self.access_expiry})"

    @classmethod
    def from_record(cls, record: SessionRecord) -> "Session":
        return cls(subject_id=record.subject_id, token=record.access_token, access_expiry=record.access_expiry)


class SessionBroker:
    """Shared, cache-aware sessions and resilient queries for test suites.

    Safe for concurrent use: concurrent get_session() calls for the same
    identity share one acquisition, and raw_request() keeps no per-call state.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        is_transient: TransientPredicate | None = None,
    ) -> None:
        """Initialize the broker.

        Args:
            config: Broker configuration.
            http_client: Client shared by all components. Without one, the
                broker creates a client and closes it in aclose().
            clock: Time source (tests pass a fake).
            rng: Random source for backoff jitter.
            is_transient: Custom predicate for retriable GraphQL errors.
        """
        self._config = config
        self._clock = clock or Clock()
        self._rng = rng or random.Random()
        self._owns_client = http_client is None
        if http_client is None:
            http_client = create_http_client(config.http_timeout_seconds)
        self._http_client = http_client
        self._manager = SessionManager(config, http_client=http_client, clock=self._clock, rng=self._rng)
        self._executor = QueryExecutor(
            config,
            http_client=http_client,
            clock=self._clock,
            rng=self._rng,
            is_transient=is_transient,
        )
        self._memo: AcquisitionMemoizer[SessionRecord] = AcquisitionMemoizer()

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def manager(self) -> SessionManager:
        return self._manager

    async def __aenter__(self) -> "SessionBroker":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Forget memoized sessions and close the HTTP client the broker created."""
        self._memo.clear()
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, identity: Identity, preset_token: str | None = None) -> Session:
        """Return a usable session for ``identity``.

        Acquisitions are shared per (environment, email, preset flag) for the
        life of the broker, failures included. A shared session that has
        entered the refresh skew window is acquired again.

        Raises:
            SignInError: If sign-in failed.
        """
        key = (self._config.environment_key, identity.email, bool(preset_token))

        def acquire() -> Any:
            return self._manager.acquire(identity, preset_token)

        shared = self._memo.start(key, acquire)
        record = await self._memo.wait(shared)
        if not preset_token and not self._manager.is_fresh(record):
            # No-op when another caller already replaced the stale task
            self._memo.invalidate(key, shared)
            _logger.debug(
                {
                    "event": "session_reacquire",
                    "message": f"Shared session for {identity.email} near expiry, acquiring again",
                }
            )
            record = await self._memo.memoize(key, acquire)
        return Session.from_record(record)

    async def session_for(self, label: str) -> Session:
        """Session for the configured fixture account ``label`` ("a", "b").

        Raises:
            ConfigurationError: If the account is not configured.
            SignInError: If sign-in failed.
        """
        account = self._config.account(label)
        return await self.get_session(account, account.bearer)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def raw_request(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Send a GraphQL request; backend ``errors`` come back in the payload."""
        return await self._executor.execute(query, variables, token)

    async def gql_as(self, label: str, query: str, variables: dict[str, Any] | None = None) -> Any:
        """Run a query as fixture account ``label`` and return its ``data``.

        Raises:
            GraphQLResponseError: If the backend reported errors.
        """
        session = await self.session_for(label)
        payload = await self.raw_request(query, variables, session.token)
        errors = payload.get("errors")
        if errors:
            raise GraphQLResponseError(errors if isinstance(errors, list) else [errors])
        return payload.get("data")


def test_suffix(prefix: str = "t") -> str:
    """Unique suffix for test data, e.g. ``t-1718000000000-x4k9q``."""
    millis = int(time.time() * 1000)
    tail = "".join(random.choices(_SUFFIX_ALPHABET, k=_SUFFIX_RANDOM_CHARS))
    return f"{prefix}-{millis}-{tail}"


# Not a test function despite the name.
test_suffix.__test__ = False  # type: ignore[attr-defined]
