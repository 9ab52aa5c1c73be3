"""Identity-service response parsing.

The identity service has returned several shapes over time (tokens nested
under "session" or at the top level, camelCase or snake_case). The helpers
here accept all of them, shared by sign-in and refresh.
"""

from __future__ import annotations

__all__ = [
    "compute_expiry",
    "parse_refresh_response",
    "parse_sign_in_response",
    "subject_from_token",
]

import math
from typing import Any

import jwt

from session_broker.cache import SessionRecord
from session_broker.constants import HASURA_CLAIMS_NAMESPACE, HASURA_USER_ID_CLAIM

# Candidate paths, first match wins
_ACCESS_TOKEN_PATHS = (
    ("session", "accessToken"),
    ("session", "access_token"),
    ("accessToken",),
    ("access_token",),
)
_SUBJECT_PATHS = (
    ("session", "user", "id"),
    ("user", "id"),
)
_REFRESH_TOKEN_PATHS = (
    ("session", "refreshToken"),
    ("session", "refresh_token"),
    ("refreshToken",),
    ("refresh_token",),
)
_EXPIRES_IN_PATHS = (
    ("session", "accessTokenExpiresIn"),
    ("accessTokenExpiresIn",),
    ("expires_in",),
)


def _lookup(data: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first_value(data: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> Any:
    for path in paths:
        value = _lookup(data, path)
        if value not in (None, ""):
            return value
    return None


def compute_expiry(now: float, expires_in: Any, floor_seconds: int, default_seconds: int) -> int:
    """Absolute expiry in unix seconds.

    ``expires_in`` values that are missing or not numeric fall back to
    ``default_seconds``; the lifetime is never shorter than ``floor_seconds``.
    """
    try:
        seconds = float(expires_in)
    except (TypeError, ValueError):
        seconds = float(default_seconds)
    if not math.isfinite(seconds):
        seconds = float(default_seconds)
    return int(now) + max(floor_seconds, int(seconds))


def parse_sign_in_response(
    data: Any,
    now: float,
    floor_seconds: int,
    default_expires_in: int,
) -> SessionRecord:
    """Build a SessionRecord from a sign-in response body.

    Args:
        data: Decoded JSON body.
        now: Current unix time.
        floor_seconds: Minimum token lifetime.
        default_expires_in: Lifetime assumed when the body has none.

    Returns:
        SessionRecord for the signed-in identity.

    Raises:
        ValueError: If the body lacks an access token, user id or refresh token.
    """
    if not isinstance(data, dict):
        raise ValueError("Sign-in response is not a JSON object")

    access_token = _first_value(data, _ACCESS_TOKEN_PATHS)
    subject_id = _first_value(data, _SUBJECT_PATHS)
    refresh_token = _first_value(data, _REFRESH_TOKEN_PATHS)

    missing = [
        name
        for name, value in (
            ("access token", access_token),
            ("user id", subject_id),
            ("refresh token", refresh_token),
        )
        if value is None
    ]
    if missing:
        raise ValueError(f"Sign-in response missing fields: {', '.join(missing)}")

    return SessionRecord(
        subject_id=str(subject_id),
        access_token=str(access_token),
        refresh_token=str(refresh_token),
        access_expiry=compute_expiry(now, _first_value(data, _EXPIRES_IN_PATHS), floor_seconds, default_expires_in),
    )


def parse_refresh_response(
    data: Any,
    now: float,
    floor_seconds: int,
    default_expires_in: int,
) -> tuple[str, int]:
    """Extract the new access token and its expiry from a refresh response.

    Raises:
        ValueError: If the body has no access token.
    """
    if not isinstance(data, dict):
        raise ValueError("Refresh response is not a JSON object")

    access_token = _first_value(data, _ACCESS_TOKEN_PATHS)
    if access_token is None:
        raise ValueError("Refresh response missing access token")

    expiry = compute_expiry(now, _first_value(data, _EXPIRES_IN_PATHS), floor_seconds, default_expires_in)
    return str(access_token), expiry


def subject_from_token(token: str) -> str | None:
    """Read the user id from a bearer token's claims, if it is a readable JWT.

    WARNING: Does not validate the signature. Only used to label sessions
    built from tokens the caller supplied.

    Returns:
        Hasura user-id claim, else ``sub``, else None.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None

    namespaced = claims.get(HASURA_CLAIMS_NAMESPACE)
    if isinstance(namespaced, dict) and namespaced.get(HASURA_USER_ID_CLAIM):
        return str(namespaced[HASURA_USER_ID_CLAIM])
    if claims.get("sub"):
        return str(claims["sub"])
    return None
