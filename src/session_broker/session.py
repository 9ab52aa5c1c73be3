"""Session lifecycle: sign-in, refresh and expiry handling.

The SessionManager turns an Identity into a usable SessionRecord:

1. Preset bearer token supplied -> synthesize an active session (no network).
2. Fresh cached record (expiry minus skew in the future) -> reuse it.
3. Stale cached record -> refresh it; persist and return on success.
4. Otherwise (or refresh failed) -> sign in under the cross-process lock:
   re-check the cache first (another process may have signed in while this
   one waited), then call the identity service with bounded retry.

States per identity:
    NO_SESSION -> AUTHENTICATING -> ACTIVE -> (REFRESH_PENDING -> ACTIVE | NO_SESSION)

Sign-in retry policy:
    - 429: honor Retry-After, else rate-limit backoff
    - 5xx: server backoff
    - transport failure / malformed 2xx body: transport backoff
    - 401: one auto-provision attempt (admin secret required), then fail
    - other non-2xx: fail immediately
"""

from __future__ import annotations

__all__ = [
    "SessionManager",
    "SessionState",
]

import json
import random
from enum import Enum

import httpx

from session_broker.cache import CredentialCache, SessionRecord
from session_broker.clock import Clock, parse_retry_after
from session_broker.config import BrokerConfig, Identity
from session_broker.constants import (
    PRESET_SUBJECT_ID,
    REFRESH_PATH,
    SIGN_IN_PATH,
    SIGN_IN_SNIPPET_CHARS,
)
from session_broker.exceptions import AuthenticationRejectedError, RefreshError, SignInError
from session_broker.lock import SignInLock
from session_broker.parsing import parse_refresh_response, parse_sign_in_response, subject_from_token
from session_broker.provision import Provisioner
from session_broker.telemetry import get_logger
from session_broker.transport import client_scope, response_snippet

_logger = get_logger("session")


class SessionState(str, Enum):
    """Lifecycle state of an identity's session within this process."""

    NO_SESSION = "no_session"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    REFRESH_PENDING = "refresh_pending"


class SessionManager:
    """Acquire, refresh and cache sessions for identities.

    Usage:
        manager = SessionManager(config)
        record = await manager.acquire(identity)
        record = await manager.acquire(identity, preset_token="eyJ...")
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        cache: CredentialCache | None = None,
        lock: SignInLock | None = None,
        provisioner: Provisioner | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Broker configuration.
            cache: Credential cache (built from config if None).
            lock: Sign-in lock (built from config if None).
            provisioner: Auto-provisioner (built from config if None).
            http_client: Shared HTTP client; a temporary one per operation if None.
            clock: Time source.
            rng: Random source for backoff jitter.
        """
        self._config = config
        self._clock = clock or Clock()
        self._rng = rng or random.Random()
        self._cache = cache or CredentialCache(config.cache_dir, config.environment_key)
        self._lock = lock or SignInLock(
            config.lock_dir,
            config.environment_key,
            ttl_seconds=config.lock_ttl_seconds,
            wait_slice_seconds=config.lock_wait_slice_seconds,
            clock=self._clock,
        )
        self._provisioner = provisioner or Provisioner(config)
        self._http_client = http_client
        self._states: dict[str, SessionState] = {}

    @property
    def cache(self) -> CredentialCache:
        return self._cache

    def state_of(self, email: str) -> SessionState:
        """Last known lifecycle state for ``email`` in this process."""
        return self._states.get(email, SessionState.NO_SESSION)

    def is_fresh(self, record: SessionRecord) -> bool:
        """True if ``record`` is usable beyond the refresh skew."""
        return record.is_fresh(self._clock.now(), self._config.refresh_skew_seconds)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def acquire(self, identity: Identity, preset_token: str | None = None) -> SessionRecord:
        """Return a usable session for ``identity``.

        Args:
            identity: Account to authenticate.
            preset_token: Externally obtained bearer token; when given, no
                cache or network access happens.

        Returns:
            Active SessionRecord.

        Raises:
            SignInError: If a full sign-in was needed and failed.
        """
        if preset_token:
            record = SessionRecord(
                subject_id=subject_from_token(preset_token) or PRESET_SUBJECT_ID,
                access_token=preset_token,
                refresh_token="",
                access_expiry=int(self._clock.now()) + self._config.preset_token_ttl_seconds,
            )
            self._transition(identity, SessionState.ACTIVE, "preset bearer token supplied")
            return record

        cached = self._cache.read(identity)
        if cached is not None:
            if self.is_fresh(cached):
                self._transition(identity, SessionState.ACTIVE, "reusing cached session")
                return cached

            if cached.refresh_token:
                self._transition(identity, SessionState.REFRESH_PENDING, "cached session near expiry")
                try:
                    access_token, access_expiry = await self.refresh(cached.refresh_token)
                except RefreshError as e:
                    self._transition(identity, SessionState.NO_SESSION, f"refresh failed: {e}")
                else:
                    updated = cached.model_copy(update={"access_token": access_token, "access_expiry": access_expiry})
                    self._cache.write(identity, updated)
                    self._transition(identity, SessionState.ACTIVE, "session refreshed")
                    return updated

        return await self.sign_in(identity)

    async def sign_in(self, identity: Identity) -> SessionRecord:
        """Sign in under the cross-process lock and persist the result.

        A fresh record found in the cache once the lock is held is returned
        without a network call.

        Raises:
            SignInError: If sign-in failed terminally.
        """

        def cache_is_fresh() -> bool:
            record = self._cache.read(identity)
            return record is not None and self.is_fresh(record)

        async def locked() -> SessionRecord:
            record = self._cache.read(identity)
            if record is not None and self.is_fresh(record):
                self._transition(identity, SessionState.ACTIVE, "session produced by another process")
                return record

            self._transition(identity, SessionState.AUTHENTICATING, "signing in")
            try:
                record = await self._request_sign_in(identity)
            except SignInError:
                self._transition(identity, SessionState.NO_SESSION, "sign-in failed")
                raise
            self._cache.write(identity, record)
            self._transition(identity, SessionState.ACTIVE, "signed in")
            return record

        return await self._lock.hold(identity, locked, ready=cache_is_fresh)

    async def refresh(self, refresh_token: str) -> tuple[str, int]:
        """Exchange a refresh token for a new access token (single attempt).

        Returns:
            Tuple of (access_token, access_expiry).

        Raises:
            RefreshError: On any failure; the caller falls back to sign-in.
        """
        url = f"{self._config.auth_url}{REFRESH_PATH}"
        try:
            async with client_scope(self._http_client, self._config.http_timeout_seconds) as client:
                response = await client.post(url, json={"refreshToken": refresh_token})
        except httpx.HTTPError as e:
            raise RefreshError(f"Refresh transport error: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise RefreshError(
                f"Refresh HTTP {response.status_code}: {response_snippet(response, SIGN_IN_SNIPPET_CHARS)}",
                status=response.status_code,
            )

        try:
            return parse_refresh_response(
                response.json(),
                self._clock.now(),
                self._config.expiry_floor_seconds,
                self._config.default_expires_in_seconds,
            )
        except ValueError as e:  # includes JSONDecodeError
            raise RefreshError(f"Refresh response unusable: {e}", status=response.status_code) from e

    # ------------------------------------------------------------------
    # Network sign-in
    # ------------------------------------------------------------------

    async def _request_sign_in(self, identity: Identity) -> SessionRecord:
        """Call the sign-in endpoint with bounded retry.

        Raises:
            AuthenticationRejectedError: On 401 once provisioning is used up or unavailable.
            SignInError: On other non-retriable statuses or exhaustion.
        """
        config = self._config
        url = f"{config.auth_url}{SIGN_IN_PATH}"
        payload = {"email": identity.email, "password": identity.password}

        budget = config.sign_in_max_attempts
        attempt = 0
        provisioned = False
        last_cause = "unknown"
        last_status: int | None = None

        async with client_scope(self._http_client, config.http_timeout_seconds) as client:
            while attempt < budget:
                attempt += 1
                retry_index = attempt - 1

                try:
                    response = await client.post(url, json=payload)
                except httpx.TransportError as e:
                    last_cause = f"{type(e).__name__}: {e}"
                    last_status = None
                    await self._pause_before_retry(
                        identity, attempt, budget, config.sign_in_transport_backoff.delay(retry_index, self._rng), last_cause
                    )
                    continue

                status = response.status_code
                last_status = status

                if status == 429:
                    last_cause = "HTTP 429 rate limited"
                    retry_after = parse_retry_after(response.headers.get("retry-after"), self._clock.now())
                    delay = (
                        retry_after
                        if retry_after
                        else config.sign_in_rate_limit_backoff.delay(retry_index, self._rng)
                    )
                    await self._pause_before_retry(identity, attempt, budget, delay, last_cause)
                    continue

                if 500 <= status < 600:
                    last_cause = f"HTTP {status}: {response_snippet(response, SIGN_IN_SNIPPET_CHARS)}"
                    await self._pause_before_retry(
                        identity, attempt, budget, config.sign_in_server_backoff.delay(retry_index, self._rng), last_cause
                    )
                    continue

                if status == 401:
                    if not provisioned and self._provisioner.enabled:
                        provisioned = True
                        outcome = await self._provisioner.ensure_exists(identity, client)
                        _logger.info(
                            {
                                "event": "sign_in_provisioned",
                                "message": f"Sign-in for {identity.email} rejected, provisioning: {outcome.value}",
                                "outcome": outcome.value,
                            }
                        )
                        # the provisioning retry does not consume the attempt budget
                        budget += 1
                        await self._clock.sleep(config.provision_settle_seconds)
                        continue
                    raise AuthenticationRejectedError(
                        f"Sign-in rejected for {identity.email}: HTTP 401: "
                        f"{response_snippet(response, SIGN_IN_SNIPPET_CHARS)}",
                        status=status,
                        attempts=attempt,
                    )

                if not response.is_success:
                    raise SignInError(
                        f"Sign-in HTTP {status}: {response_snippet(response, SIGN_IN_SNIPPET_CHARS)}",
                        status=status,
                        attempts=attempt,
                    )

                try:
                    body = response.json() if response.content else {}
                    record = parse_sign_in_response(
                        body,
                        self._clock.now(),
                        config.expiry_floor_seconds,
                        config.default_expires_in_seconds,
                    )
                except (ValueError, json.JSONDecodeError) as e:
                    last_cause = f"malformed sign-in response: {e}"
                    await self._pause_before_retry(
                        identity, attempt, budget, config.sign_in_transport_backoff.delay(retry_index, self._rng), last_cause
                    )
                    continue

                _logger.info(
                    {
                        "event": "sign_in_succeeded",
                        "message": f"Signed in {identity.email} on attempt {attempt}",
                        "attempt": attempt,
                        "subject_id": record.subject_id,
                        "access_expiry": record.access_expiry,
                    }
                )
                return record

        raise SignInError(
            f"Sign-in failed after {attempt} attempts: {last_cause}",
            status=last_status,
            attempts=attempt,
        )

    async def _pause_before_retry(self, identity: Identity, attempt: int, budget: int, delay: float, cause: str) -> None:
        """Log the failed attempt and wait, unless no attempts remain."""
        if attempt >= budget:
            return
        _logger.warning(
            {
                "event": "sign_in_retry",
                "message": (
                    f"Sign-in for {identity.email} failed (attempt {attempt}/{budget}, "
                    f"retrying in {delay:.2f}s): {cause}"
                ),
                "attempt": attempt,
                "max_attempts": budget,
                "delay_seconds": round(delay, 3),
            }
        )
        await self._clock.sleep(delay)

    def _transition(self, identity: Identity, state: SessionState, reason: str) -> None:
        previous = self._states.get(identity.email, SessionState.NO_SESSION)
        self._states[identity.email] = state
        _logger.debug(
            {
                "event": "session_state",
                "message": f"{identity.email}: {previous.value} -> {state.value} ({reason})",
                "from_state": previous.value,
                "to_state": state.value,
            }
        )
