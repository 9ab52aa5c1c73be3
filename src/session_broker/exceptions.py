"""Custom exceptions for session-broker.

All errors raised to callers derive from BrokerError. Each terminal error
identifies its cause and, where retries were involved, the attempt count.
Individual attempt failures (httpx exceptions, retriable statuses) never
escape; the final error chains the last one via ``raise ... from``.

Retried internally, surfaced only on exhaustion:
    - TransportError: timeouts, connection resets
    - RetryExhaustedError: HTTP 429 / 5xx

Surfaced immediately:
    - ConfigurationError: Missing or invalid configuration
    - ProtocolError: Malformed success body, non-retriable HTTP status
    - SignInError / AuthenticationRejectedError: Sign-in refused
    - GraphQLResponseError: Backend errors seen by the gql_as helper

Handled by the broker itself:
    - RefreshError: Caller falls back to a full sign-in

Usage:
    from session_broker.exceptions import BrokerError, SignInError
"""

from __future__ import annotations

__all__ = [
    "AuthenticationRejectedError",
    "BrokerError",
    "ConfigurationError",
    "GraphQLResponseError",
    "ProtocolError",
    "RefreshError",
    "RetryExhaustedError",
    "SignInError",
    "TransportError",
]

from typing import Any


class BrokerError(Exception):
    """Base exception for session-broker failures.

    Attributes:
        message: Human-readable description of the terminal cause.
        attempts: Number of attempts made before giving up (None if not applicable).
    """

    def __init__(self, message: str, *, attempts: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.attempts = attempts

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BrokerError):
    """Configuration is missing or invalid.

    Raised when:
    - The identity service URL is not set
    - The query endpoint is needed but not set
    - A fixture account is requested but not configured
    - A numeric setting cannot be parsed

    Never retried.
    """


class TransportError(BrokerError):
    """Network-level failure persisted through every attempt (timeout, reset)."""


class RetryExhaustedError(BrokerError):
    """Backend kept answering 429 or 5xx until the retry ceiling was hit.

    Attributes:
        status: Last HTTP status received.
    """

    def __init__(self, message: str, *, status: int, attempts: int | None = None) -> None:
        super().__init__(message, attempts=attempts)
        self.status = status


class ProtocolError(BrokerError):
    """Response could not be used: non-retriable status or malformed body.

    Attributes:
        status: HTTP status of the offending response.
    """

    def __init__(self, message: str, *, status: int | None = None, attempts: int | None = None) -> None:
        super().__init__(message, attempts=attempts)
        self.status = status


class SignInError(BrokerError):
    """Sign-in against the identity service failed.

    Attributes:
        status: Last HTTP status received (None for transport failures).
    """

    def __init__(self, message: str, *, status: int | None = None, attempts: int | None = None) -> None:
        super().__init__(message, attempts=attempts)
        self.status = status


class AuthenticationRejectedError(SignInError):
    """Identity service answered 401 and no (further) provisioning is possible."""


class RefreshError(BrokerError):
    """Refresh token exchange failed.

    Signals the lifecycle manager to fall back to a full sign-in.

    Attributes:
        status: HTTP status if the service answered (None for transport failures).
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class GraphQLResponseError(BrokerError):
    """Query succeeded at the HTTP level but the backend reported errors.

    Only raised by convenience helpers that want data or nothing;
    ``raw_request`` returns such payloads unchanged.

    Attributes:
        errors: The backend's ``errors`` array.
    """

    def __init__(self, errors: list[Any]) -> None:
        messages = " | ".join(_error_message(e) for e in errors)
        super().__init__(messages or "GraphQL request returned errors")
        self.errors = errors


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", ""))
    return str(error)
