"""Resilient GraphQL request execution.

Retry policy (at most ``query_max_attempts`` attempts):
    - 429 / 5xx: wait Retry-After (+ jitter) or query backoff
    - transport failure: query transient backoff
    - 2xx with transient GraphQL errors: query transient backoff
    - other non-2xx, malformed 2xx body: fail immediately

Application-level ``errors`` that are not transient are returned to the
caller unchanged.
"""

from __future__ import annotations

__all__ = [
    "QueryExecutor",
    "TransientPredicate",
    "transient_error_predicate",
]

import json
import random
import re
from collections.abc import Callable
from typing import Any

import httpx

from session_broker.clock import Clock, parse_retry_after
from session_broker.config import BrokerConfig
from session_broker.constants import ERROR_SNIPPET_CHARS
from session_broker.exceptions import ProtocolError, RetryExhaustedError, TransportError
from session_broker.telemetry import get_logger
from session_broker.transport import client_scope, is_retriable_status, response_snippet

_logger = get_logger("executor")

TransientPredicate = Callable[[list[Any]], bool]


def transient_error_predicate(pattern: str) -> TransientPredicate:
    """Build a predicate matching GraphQL ``errors`` against ``pattern``.

    The pattern is applied case-insensitively to all error messages joined
    with " | ".
    """
    compiled = re.compile(pattern, re.IGNORECASE)

    def is_transient(errors: list[Any]) -> bool:
        joined = " | ".join(
            str(error.get("message", "")) if isinstance(error, dict) else str(error) for error in errors
        )
        return bool(compiled.search(joined))

    return is_transient


class QueryExecutor:
    """Send GraphQL requests with bounded retry.

    Usage:
        executor = QueryExecutor(config)
        payload = await executor.execute("query { me { id } }", token=session.token)
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
        self._config = config
        self._http_client = http_client
        self._clock = clock or Clock()
        self._rng = rng or random.Random()
        self._is_transient = is_transient or transient_error_predicate(config.transient_error_pattern)

    async def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Send a query and return the decoded payload.

        Args:
            query: GraphQL document.
            variables: Query variables.
            token: Bearer token; the request is anonymous when None.

        Returns:
            Response object, possibly carrying non-transient ``errors``.

        Raises:
            ConfigurationError: If no query endpoint is configured.
            RetryExhaustedError: If 429/5xx persisted through every attempt.
            TransportError: If transport failures persisted through every attempt.
            ProtocolError: On a non-retriable status or malformed body.
        """
        config = self._config
        url = config.require_graphql_url()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        body = {"query": query, "variables": variables or {}}
        max_attempts = config.query_max_attempts

        async with client_scope(self._http_client, config.http_timeout_seconds) as client:
            for attempt in range(1, max_attempts + 1):
                retry_index = attempt - 1
                has_next = attempt < max_attempts

                try:
                    response = await client.post(url, json=body, headers=headers)
                except httpx.TransportError as e:
                    cause = f"{type(e).__name__}: {e}"
                    if not has_next:
                        raise TransportError(
                            f"GraphQL request failed after {attempt} attempts: {cause}",
                            attempts=attempt,
                        ) from e
                    await self._pause(attempt, config.query_transient_backoff.delay(retry_index, self._rng), cause)
                    continue

                status = response.status_code
                if is_retriable_status(status):
                    cause = f"HTTP {status}"
                    if not has_next:
                        raise RetryExhaustedError(
                            f"GraphQL request failed after {attempt} attempts: {cause}: "
                            f"{response_snippet(response, ERROR_SNIPPET_CHARS)}",
                            status=status,
                            attempts=attempt,
                        )
                    retry_after = parse_retry_after(response.headers.get("retry-after"), self._clock.now())
                    if retry_after is not None:
                        delay = retry_after + self._rng.uniform(0, config.query_backoff.jitter_seconds)
                    else:
                        delay = config.query_backoff.delay(retry_index, self._rng)
                    await self._pause(attempt, delay, cause)
                    continue

                if not response.is_success:
                    raise ProtocolError(
                        f"GraphQL HTTP {status}: {response_snippet(response, ERROR_SNIPPET_CHARS)}",
                        status=status,
                        attempts=attempt,
                    )

                payload = _decode_payload(response, attempt)
                errors = payload.get("errors")
                if errors and isinstance(errors, list) and has_next and self._is_transient(errors):
                    await self._pause(
                        attempt,
                        config.query_transient_backoff.delay(retry_index, self._rng),
                        "transient GraphQL error",
                    )
                    continue
                return payload

        raise AssertionError("query retry loop exited without a result")

    async def _pause(self, attempt: int, delay: float, cause: str) -> None:
        _logger.warning(
            {
                "event": "query_retry",
                "message": (
                    f"GraphQL request failed (attempt {attempt}/{self._config.query_max_attempts}, "
                    f"retrying in {delay:.2f}s): {cause}"
                ),
                "attempt": attempt,
                "delay_seconds": round(delay, 3),
            }
        )
        await self._clock.sleep(delay)


def _decode_payload(response: httpx.Response, attempt: int) -> dict[str, Any]:
    """Decode a 2xx body into a JSON object.

    Raises:
        ProtocolError: If the body is empty, not JSON or not an object.
    """
    if not response.content:
        raise ProtocolError("GraphQL response body is empty", status=response.status_code, attempts=attempt)
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(
            f"GraphQL response is not JSON: {response_snippet(response, ERROR_SNIPPET_CHARS)}",
            status=response.status_code,
            attempts=attempt,
        ) from e
    if not isinstance(payload, dict):
        raise ProtocolError(
            f"GraphQL response is not a JSON object: {type(payload).__name__}",
            status=response.status_code,
            attempts=attempt,
        )
    return payload
