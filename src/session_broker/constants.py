"""Application-wide constants for session-broker.

Constants that define broker behavior.
For per-environment settings, see config.py.
"""

import os
import tempfile

__all__ = [
    # Application identity
    "APP_NAME",
    # Filesystem layout
    "DEFAULT_STATE_DIR",
    "SESSION_FILE_PREFIX",
    "SESSION_FILE_SUFFIX",
    "LOCK_FILE_PREFIX",
    "LOCK_FILE_SUFFIX",
    "SECURE_FILE_MODE",
    # HTTP
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "SIGN_IN_PATH",
    "REFRESH_PATH",
    "ADMIN_USERS_PATH",
    "ADMIN_SECRET_HEADER",
    "ERROR_SNIPPET_CHARS",
    "SIGN_IN_SNIPPET_CHARS",
    # Session lifecycle
    "DEFAULT_REFRESH_SKEW_SECONDS",
    "DEFAULT_EXPIRY_FLOOR_SECONDS",
    "DEFAULT_EXPIRES_IN_SECONDS",
    "DEFAULT_PRESET_TOKEN_TTL_SECONDS",
    "PRESET_SUBJECT_ID",
    "HASURA_CLAIMS_NAMESPACE",
    "HASURA_USER_ID_CLAIM",
    # Sign-in lock
    "DEFAULT_LOCK_TTL_SECONDS",
    "DEFAULT_LOCK_WAIT_SLICE_SECONDS",
    "DEFAULT_PROVISION_SETTLE_SECONDS",
    # Retry ceilings
    "DEFAULT_SIGN_IN_MAX_ATTEMPTS",
    "DEFAULT_QUERY_MAX_ATTEMPTS",
    # Query backend
    "DEFAULT_TRANSIENT_ERROR_PATTERN",
    # Environment variables
    "ENV_AUTH_URL",
    "ENV_GRAPHQL_URLS",
    "ENV_ADMIN_SECRET",
    "ENV_HTTP_TIMEOUT_MS",
    "ENV_CACHE_DIR",
    "ENV_LOCK_DIR",
    "ENV_LOG_LEVEL",
    "ENV_LOG_FILE",
    "ENV_ACCOUNT_EMAIL",
    "ENV_ACCOUNT_PASSWORD",
    "ENV_ACCOUNT_BEARER",
    "ACCOUNT_LABELS",
]

# ============================================================================
# Application Identity
# ============================================================================

# Used for logger names and file name prefixes
APP_NAME: str = "session-broker"

# ============================================================================
# Filesystem Layout
# ============================================================================

# Cache and lock files live in a directory shared by every test process of the
# current user. The OS temp dir is shared and writable without setup.
DEFAULT_STATE_DIR: str = os.path.realpath(tempfile.gettempdir())

SESSION_FILE_PREFIX: str = f"{APP_NAME}-session-"
SESSION_FILE_SUFFIX: str = ".json"
LOCK_FILE_PREFIX: str = f"{APP_NAME}-signin-lock-"
LOCK_FILE_SUFFIX: str = ".lock"

# Owner read/write only (cache files carry refresh tokens)
SECURE_FILE_MODE: int = 0o600

# ============================================================================
# HTTP
# ============================================================================

# Per-request timeout; a timeout counts as a retriable transport failure
DEFAULT_HTTP_TIMEOUT_SECONDS: float = 10.0

SIGN_IN_PATH: str = "/signin/email-password"
REFRESH_PATH: str = "/token"
ADMIN_USERS_PATH: str = "/admin/users"
ADMIN_SECRET_HEADER: str = "x-hasura-admin-secret"

# Response body excerpt length in error messages
ERROR_SNIPPET_CHARS: int = 800
SIGN_IN_SNIPPET_CHARS: int = 180

# ============================================================================
# Session Lifecycle
# ============================================================================

# Tokens closer than this to expiry are treated as already expired
DEFAULT_REFRESH_SKEW_SECONDS: int = 30

# Lower bound for backend-reported expires-in (guards zero/negative values)
DEFAULT_EXPIRY_FLOOR_SECONDS: int = 60

# Used when the identity service omits expires-in
DEFAULT_EXPIRES_IN_SECONDS: int = 900

# Nominal lifetime of a caller-supplied bearer token
DEFAULT_PRESET_TOKEN_TTL_SECONDS: int = 3600

# Subject id reported for preset tokens whose claims cannot be read
PRESET_SUBJECT_ID: str = "override"

HASURA_CLAIMS_NAMESPACE: str = "https://hasura.io/jwt/claims"
HASURA_USER_ID_CLAIM: str = "x-hasura-user-id"

# ============================================================================
# Sign-in Lock
# ============================================================================

# Lock markers older than this are presumed abandoned; also bounds total wait
DEFAULT_LOCK_TTL_SECONDS: float = 30.0

# Sleep between lock attempts
DEFAULT_LOCK_WAIT_SLICE_SECONDS: float = 0.25

# Pause after auto-provisioning before the next sign-in attempt
DEFAULT_PROVISION_SETTLE_SECONDS: float = 0.3

# ============================================================================
# Retry Ceilings
# ============================================================================

DEFAULT_SIGN_IN_MAX_ATTEMPTS: int = 7
DEFAULT_QUERY_MAX_ATTEMPTS: int = 2

# ============================================================================
# Query Backend
# ============================================================================

# Matched case-insensitively against joined GraphQL error messages
DEFAULT_TRANSIENT_ERROR_PATTERN: str = r"timeout|rate limit|temporary failure|ECONNRESET"

# ============================================================================
# Environment Variables
# ============================================================================

ENV_AUTH_URL: str = "NHOST_AUTH_URL"
# First non-empty wins
ENV_GRAPHQL_URLS: tuple[str, ...] = ("NHOST_GRAPHQL_URL", "HASURA_GRAPHQL_ENDPOINT")
ENV_ADMIN_SECRET: str = "HASURA_ADMIN_SECRET"
ENV_HTTP_TIMEOUT_MS: str = "TEST_HTTP_TIMEOUT_MS"
ENV_CACHE_DIR: str = "TEST_AUTH_CACHE_DIR"
ENV_LOCK_DIR: str = "TEST_AUTH_LOCK_DIR"
ENV_LOG_LEVEL: str = "SESSION_BROKER_LOG_LEVEL"
ENV_LOG_FILE: str = "SESSION_BROKER_LOG_FILE"

# Formatted with the upper-case account label (A, B)
ENV_ACCOUNT_EMAIL: str = "NHOST_TEST_EMAIL_{label}"
ENV_ACCOUNT_PASSWORD: str = "NHOST_TEST_PASSWORD_{label}"
ENV_ACCOUNT_BEARER: str = "NHOST_TEST_BEARER_{label}"

# Fixture accounts read from the environment
ACCOUNT_LABELS: tuple[str, ...] = ("a", "b")
