"""Broker configuration for session-broker.

The configuration is built once at process entry (CLI, pytest plugin or the
caller's own setup) and passed to every component. Components never read
``os.environ`` themselves.

Example usage:
    # From the process environment (plus ./.env when present)
    config = BrokerConfig.from_env()

    # Explicit values
    config = BrokerConfig(auth_url="https://auth.example.com/v1")
"""

from __future__ import annotations

__all__ = [
    "BackoffPolicy",
    "BrokerConfig",
    "FixtureAccount",
    "Identity",
    "environment_fingerprint",
    "sanitize_key",
]

import hashlib
import os
import random
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from session_broker.clock import backoff_delay
from session_broker.constants import (
    ACCOUNT_LABELS,
    DEFAULT_EXPIRES_IN_SECONDS,
    DEFAULT_EXPIRY_FLOOR_SECONDS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_LOCK_WAIT_SLICE_SECONDS,
    DEFAULT_PRESET_TOKEN_TTL_SECONDS,
    DEFAULT_PROVISION_SETTLE_SECONDS,
    DEFAULT_QUERY_MAX_ATTEMPTS,
    DEFAULT_REFRESH_SKEW_SECONDS,
    DEFAULT_SIGN_IN_MAX_ATTEMPTS,
    DEFAULT_STATE_DIR,
    DEFAULT_TRANSIENT_ERROR_PATTERN,
    ENV_ACCOUNT_BEARER,
    ENV_ACCOUNT_EMAIL,
    ENV_ACCOUNT_PASSWORD,
    ENV_ADMIN_SECRET,
    ENV_AUTH_URL,
    ENV_CACHE_DIR,
    ENV_GRAPHQL_URLS,
    ENV_HTTP_TIMEOUT_MS,
    ENV_LOCK_DIR,
    ENV_LOG_FILE,
    ENV_LOG_LEVEL,
)
from session_broker.exceptions import ConfigurationError

# Characters kept verbatim in file-name keys
_UNSAFE_KEY_CHARS = re.compile(r"[^a-z0-9_.@-]", re.IGNORECASE)
_URL_SCHEME = re.compile(r"^https?://", re.IGNORECASE)

# Hex digits of the email digest appended to sanitized identity keys
_IDENTITY_DIGEST_CHARS = 10

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# Key derivation
# =============================================================================


def sanitize_key(value: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_.@-]`` with ``_``."""
    return _UNSAFE_KEY_CHARS.sub("_", value)


def environment_fingerprint(auth_url: str) -> str:
    """Derive the environment fingerprint from the identity-service URL.

    Sessions are scoped by this value so that a session obtained against one
    environment (e.g. local development) is never presented to another.

    Args:
        auth_url: Identity-service base URL (e.g. "https://auth.example.com/v1").

    Returns:
        URL without scheme, unsafe characters replaced (e.g. "auth.example.com_v1").
    """
    return sanitize_key(_URL_SCHEME.sub("", auth_url.rstrip("/")))


# =============================================================================
# Identities
# =============================================================================


class Identity(BaseModel):
    """An email/password pair for a test fixture account.

    Attributes:
        email: Sign-in email; also the cache and lock key.
        password: Sign-in secret (never logged or shown in repr).
    """

    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)

    @property
    def key(self) -> str:
        """File-name safe key, unique per email.

        The sanitized email keeps file names readable; the digest suffix keeps
        emails that sanitize identically (``a+b@x`` vs ``a_b@x``) apart.
        """
        digest = hashlib.sha256(self.email.encode()).hexdigest()[:_IDENTITY_DIGEST_CHARS]
        return f"{sanitize_key(self.email)}-{digest}"


class FixtureAccount(Identity):
    """A configured test account, optionally with a pre-fetched bearer token.

    Attributes:
        bearer: Access token obtained out of band (skips sign-in when set).
    """

    bearer: str | None = Field(default=None, repr=False)


# =============================================================================
# Backoff
# =============================================================================


class BackoffPolicy(BaseModel):
    """Capped exponential backoff with jitter.

    Attributes:
        base_seconds: Delay for the first retry.
        cap_seconds: Maximum exponential delay.
        jitter_seconds: Maximum random seconds added to each delay.
    """

    model_config = ConfigDict(frozen=True)

    base_seconds: float = Field(gt=0)
    cap_seconds: float = Field(gt=0)
    jitter_seconds: float = Field(default=0.0, ge=0)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before the retry following zero-based ``attempt``."""
        return backoff_delay(attempt, self.base_seconds, self.cap_seconds, self.jitter_seconds, rng)


# =============================================================================
# Broker configuration
# =============================================================================


class BrokerConfig(BaseModel):
    """Configuration shared by every broker component.

    Attributes:
        auth_url: Identity-service base URL (trailing slashes stripped).
        graphql_url: Query endpoint; required only for query execution.
        admin_secret: Privileged secret enabling auto-provisioning.
        http_timeout_seconds: Per-request timeout.
        cache_dir: Directory for session cache files.
        lock_dir: Directory for sign-in lock markers.
        refresh_skew_seconds: Tokens this close to expiry count as expired.
        expiry_floor_seconds: Minimum lifetime applied to backend expires-in.
        default_expires_in_seconds: Lifetime assumed when expires-in is missing.
        preset_token_ttl_seconds: Nominal lifetime of caller-supplied tokens.
        lock_ttl_seconds: Lock staleness threshold and maximum lock wait.
        lock_wait_slice_seconds: Sleep between lock attempts.
        provision_settle_seconds: Pause after auto-provisioning.
        sign_in_max_attempts: Sign-in attempt ceiling.
        query_max_attempts: Query attempt ceiling.
        transient_error_pattern: Regex marking GraphQL errors as retriable.
        accounts: Fixture accounts by label ("a", "b").
        log_level: Console log level.
        log_file: Optional JSONL log file.
    """

    model_config = ConfigDict(extra="ignore")

    auth_url: str = Field(min_length=1)
    graphql_url: str | None = None
    admin_secret: str | None = Field(default=None, repr=False)

    http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    cache_dir: Path = Path(DEFAULT_STATE_DIR)
    lock_dir: Path = Path(DEFAULT_STATE_DIR)

    refresh_skew_seconds: int = Field(default=DEFAULT_REFRESH_SKEW_SECONDS, ge=0)
    expiry_floor_seconds: int = Field(default=DEFAULT_EXPIRY_FLOOR_SECONDS, ge=1)
    default_expires_in_seconds: int = Field(default=DEFAULT_EXPIRES_IN_SECONDS, ge=1)
    preset_token_ttl_seconds: int = Field(default=DEFAULT_PRESET_TOKEN_TTL_SECONDS, ge=1)

    lock_ttl_seconds: float = Field(default=DEFAULT_LOCK_TTL_SECONDS, gt=0)
    lock_wait_slice_seconds: float = Field(default=DEFAULT_LOCK_WAIT_SLICE_SECONDS, gt=0)
    provision_settle_seconds: float = Field(default=DEFAULT_PROVISION_SETTLE_SECONDS, ge=0)

    sign_in_max_attempts: int = Field(default=DEFAULT_SIGN_IN_MAX_ATTEMPTS, ge=1)
    query_max_attempts: int = Field(default=DEFAULT_QUERY_MAX_ATTEMPTS, ge=1)

    sign_in_rate_limit_backoff: BackoffPolicy = BackoffPolicy(
        base_seconds=1.0, cap_seconds=15.0, jitter_seconds=0.25
    )
    sign_in_server_backoff: BackoffPolicy = BackoffPolicy(base_seconds=0.8, cap_seconds=8.0, jitter_seconds=0.2)
    sign_in_transport_backoff: BackoffPolicy = BackoffPolicy(
        base_seconds=0.8, cap_seconds=8.0, jitter_seconds=0.2
    )
    query_backoff: BackoffPolicy = BackoffPolicy(base_seconds=0.5, cap_seconds=5.0, jitter_seconds=0.2)
    query_transient_backoff: BackoffPolicy = BackoffPolicy(
        base_seconds=0.4, cap_seconds=3.0, jitter_seconds=0.2
    )

    transient_error_pattern: str = DEFAULT_TRANSIENT_ERROR_PATTERN

    accounts: dict[str, FixtureAccount] = Field(default_factory=dict)

    log_level: str = "WARNING"
    log_file: Path | None = None

    @field_validator("auth_url")
    @classmethod
    def _normalize_auth_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("auth_url must not be empty")
        return value

    @field_validator("graphql_url")
    @classmethod
    def _normalize_graphql_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/") or None

    @field_validator("transient_error_pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid transient_error_pattern: {e}") from e
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @property
    def environment_key(self) -> str:
        """Fingerprint of the identity-service environment."""
        return environment_fingerprint(self.auth_url)

    def require_graphql_url(self) -> str:
        """Return the query endpoint.

        Raises:
            ConfigurationError: If no query endpoint is configured.
        """
        if not self.graphql_url:
            raise ConfigurationError(
                f"GraphQL endpoint missing: set {' or '.join(ENV_GRAPHQL_URLS)}"
            )
        return self.graphql_url

    def account(self, label: str) -> FixtureAccount:
        """Return the fixture account for ``label``.

        Raises:
            ConfigurationError: If the account is not configured.
        """
        account = self.accounts.get(label.lower())
        if account is None:
            upper = label.upper()
            raise ConfigurationError(
                f"Fixture account {label!r} not configured: set "
                f"{ENV_ACCOUNT_EMAIL.format(label=upper)} and {ENV_ACCOUNT_PASSWORD.format(label=upper)}"
            )
        return account

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: str | Path | None = None,
    ) -> "BrokerConfig":
        """Build configuration from environment variables.

        Values from ``env_file`` (or ``./.env`` when it exists and no file is
        given) fill in variables missing from the environment.

        Args:
            environ: Variables to read (os.environ if None).
            env_file: Dotenv file to merge.

        Returns:
            Validated BrokerConfig.

        Raises:
            ConfigurationError: If a required variable is missing, the dotenv
                file does not exist, or a value is invalid.
        """
        env = _merged_environment(environ, env_file)

        auth_url = _first(env, ENV_AUTH_URL)
        if not auth_url:
            raise ConfigurationError(f"Missing {ENV_AUTH_URL} in environment")

        values: dict[str, object] = {
            "auth_url": auth_url,
            "graphql_url": _first(env, *ENV_GRAPHQL_URLS) or None,
            "admin_secret": _first(env, ENV_ADMIN_SECRET) or None,
            "accounts": _accounts_from_env(env),
        }

        timeout_ms = _first(env, ENV_HTTP_TIMEOUT_MS)
        if timeout_ms:
            try:
                values["http_timeout_seconds"] = float(timeout_ms) / 1000
            except ValueError as e:
                raise ConfigurationError(f"{ENV_HTTP_TIMEOUT_MS} must be a number of milliseconds") from e

        for field_name, var in (("cache_dir", ENV_CACHE_DIR), ("lock_dir", ENV_LOCK_DIR)):
            directory = _first(env, var)
            if directory:
                values[field_name] = Path(directory).expanduser()

        log_level = _first(env, ENV_LOG_LEVEL)
        if log_level:
            values["log_level"] = log_level
        log_file = _first(env, ENV_LOG_FILE)
        if log_file:
            values["log_file"] = Path(log_file).expanduser()

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid broker configuration: {e}") from e


# =============================================================================
# Environment helpers
# =============================================================================


def _merged_environment(environ: Mapping[str, str] | None, env_file: str | Path | None) -> dict[str, str]:
    """Merge a dotenv file under the given environment (environment wins)."""
    merged: dict[str, str] = {}

    if env_file is not None:
        path = Path(env_file).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Environment file not found: {path}")
    else:
        path = Path.cwd() / ".env"

    if path.is_file():
        merged.update({k: v for k, v in dotenv_values(path).items() if v is not None})

    merged.update(os.environ if environ is None else environ)
    return merged


def _first(env: Mapping[str, str], *names: str) -> str:
    """Return the first non-empty (stripped) value among ``names``."""
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return ""


def _accounts_from_env(env: Mapping[str, str]) -> dict[str, FixtureAccount]:
    accounts: dict[str, FixtureAccount] = {}
    for label in ACCOUNT_LABELS:
        upper = label.upper()
        email = _first(env, ENV_ACCOUNT_EMAIL.format(label=upper))
        password = _first(env, ENV_ACCOUNT_PASSWORD.format(label=upper))
        if not email or not password:
            continue
        bearer = _first(env, ENV_ACCOUNT_BEARER.format(label=upper)) or None
        accounts[label] = FixtureAccount(email=email, password=password, bearer=bearer)
    return accounts
