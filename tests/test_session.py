"""Tests for SessionManager.

Covers cache reuse, refresh before expiry, sign-in retry policy,
auto-provisioning and cross-process contention.
"""

from __future__ import annotations

import asyncio
import json
import random

import httpx
import jwt
import pytest

from session_broker.cache import SessionRecord
from session_broker.clock import Clock
from session_broker.config import BrokerConfig, Identity
from session_broker.exceptions import AuthenticationRejectedError, RefreshError, SignInError
from session_broker.session import SessionManager, SessionState

from tests.fakes import ADMIN_USERS, REFRESH, SIGN_IN, FakeBackend, FakeClock, sign_in_body

JWT_SECRET = "session-broker-test-secret-0123456789abcdef"


@pytest.fixture
def manager(config: BrokerConfig, http_client: httpx.AsyncClient, clock: FakeClock) -> SessionManager:
    """Manager wired to the fake backend and clock."""
    return SessionManager(config, http_client=http_client, clock=clock, rng=random.Random(7))


def _record(clock: FakeClock, *, expires_in: int, token: str = "A0", refresh: str = "R0") -> SessionRecord:
    return SessionRecord(
        subject_id="uid1",
        access_token=token,
        refresh_token=refresh,
        access_expiry=int(clock.now()) + expires_in,
    )


class TestCachedSessions:
    """Tests for reuse and refresh of cached sessions."""

    async def test_fresh_cache_hit_makes_no_requests(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Fresh cached session is returned without any network call."""
        cached = _record(clock, expires_in=600)
        manager.cache.write(identity, cached)

        first = await manager.acquire(identity)
        second = await manager.acquire(identity)

        assert first == cached
        assert second == cached
        assert backend.requests == []
        assert manager.state_of(identity.email) is SessionState.ACTIVE

    async def test_session_within_skew_is_refreshed(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Session expiring inside the skew window is refreshed, keeping subject and refresh token."""
        manager.cache.write(identity, _record(clock, expires_in=10))
        backend.add(REFRESH, httpx.Response(200, json={"accessToken": "A2", "accessTokenExpiresIn": 900}))

        record = await manager.acquire(identity)

        assert record.access_token == "A2"
        assert record.subject_id == "uid1"
        assert record.refresh_token == "R0"
        assert record.access_expiry == int(clock.now()) + 900
        assert backend.calls(SIGN_IN) == []
        assert json.loads(backend.calls(REFRESH)[0].content) == {"refreshToken": "R0"}
        assert manager.cache.read(identity) == record

    async def test_refresh_failure_falls_back_to_sign_in(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Rejected refresh leads to a full sign-in with a new refresh token."""
        manager.cache.write(identity, _record(clock, expires_in=-5))
        backend.add(REFRESH, httpx.Response(401, json={"error": "invalid-refresh-token"}))
        backend.add(SIGN_IN, httpx.Response(200, json=sign_in_body("uid1", "A3", "R3")))

        record = await manager.acquire(identity)

        assert record.access_token == "A3"
        assert record.refresh_token == "R3"
        assert len(backend.calls(REFRESH)) == 1
        assert len(backend.calls(SIGN_IN)) == 1

    async def test_cached_session_without_refresh_token_signs_in(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Stale session with no refresh token skips refresh entirely."""
        manager.cache.write(identity, _record(clock, expires_in=5, refresh=""))
        backend.add(SIGN_IN, httpx.Response(200, json=sign_in_body("uid1", "A4", "R4")))

        record = await manager.acquire(identity)

        assert record.access_token == "A4"
        assert backend.calls(REFRESH) == []

    async def test_corrupt_cache_is_a_miss(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """Unparseable cache file leads to sign-in and is overwritten."""
        path = manager.cache.path_for(identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json")
        backend.add(SIGN_IN, httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")))

        record = await manager.acquire(identity)

        assert record.access_token == "A1"
        assert manager.cache.read(identity) == record


class TestRefresh:
    """Tests for refresh() failure modes."""

    async def test_missing_access_token_raises(self, manager: SessionManager, backend: FakeBackend) -> None:
        """2xx without an access token is a RefreshError."""
        backend.add(REFRESH, httpx.Response(200, json={"refreshToken": "R9"}))

        with pytest.raises(RefreshError):
            await manager.refresh("R0")

    async def test_non_json_raises(self, manager: SessionManager, backend: FakeBackend) -> None:
        """2xx with a non-JSON body is a RefreshError."""
        backend.add(REFRESH, httpx.Response(200, text="<html>"))

        with pytest.raises(RefreshError):
            await manager.refresh("R0")

    async def test_transport_error_raises(self, manager: SessionManager, backend: FakeBackend) -> None:
        """Connection failure is a RefreshError, attempted once."""
        backend.add(REFRESH, httpx.ConnectError("connection refused"))

        with pytest.raises(RefreshError):
            await manager.refresh("R0")
        assert len(backend.calls(REFRESH)) == 1

    async def test_status_is_recorded(self, manager: SessionManager, backend: FakeBackend) -> None:
        """Non-2xx refresh carries the HTTP status."""
        backend.add(REFRESH, httpx.Response(401, text="expired"))

        with pytest.raises(RefreshError) as exc_info:
            await manager.refresh("R0")
        assert exc_info.value.status == 401


class TestSignIn:
    """Tests for network sign-in and its retry policy."""

    async def test_sign_in_scenario_u1(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Sign-in for u1 yields uid1/A1 and caches expiry now+900."""
        backend.add(SIGN_IN, httpx.Response(200, json=sign_in_body("uid1", "A1", "R1", expires_in=900)))

        record = await manager.acquire(identity)

        assert (record.subject_id, record.access_token) == ("uid1", "A1")
        cached = manager.cache.read(identity)
        assert cached is not None
        assert cached.access_expiry == int(clock.now()) + 900
        assert json.loads(backend.calls(SIGN_IN)[0].content) == {"email": "u1@example.com", "password": "p1"}
        assert manager.state_of(identity.email) is SessionState.ACTIVE

    async def test_expiry_floor_applies(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Very short expires-in is raised to the 60 second floor."""
        backend.add(SIGN_IN, httpx.Response(200, json=sign_in_body("uid1", "A1", "R1", expires_in=5)))

        record = await manager.acquire(identity)

        assert record.access_expiry == int(clock.now()) + 60

    async def test_missing_expires_in_uses_default(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Top-level token fields without expires-in assume 900 seconds."""
        body = {"accessToken": "A1", "refreshToken": "R1", "user": {"id": "uid1"}}
        backend.add(SIGN_IN, httpx.Response(200, json=body))

        record = await manager.acquire(identity)

        assert record.access_expiry == int(clock.now()) + 900

    async def test_rate_limit_honors_retry_after(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """429 with Retry-After: 2 waits at least two seconds before retrying."""
        backend.add(
            SIGN_IN,
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )

        record = await manager.acquire(identity)

        assert record.access_token == "A1"
        assert len(backend.calls(SIGN_IN)) == 2
        assert clock.sleeps[0] >= 2

    async def test_rate_limit_without_hint_uses_backoff(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """429 without Retry-After waits the rate-limit backoff (1s base, 0.25s jitter)."""
        backend.add(
            SIGN_IN,
            httpx.Response(429),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )

        await manager.acquire(identity)

        assert 1.0 <= clock.sleeps[0] <= 1.25

    async def test_server_errors_exhaust_attempts(
        self,
        config: BrokerConfig,
        http_client: httpx.AsyncClient,
        identity: Identity,
        backend: FakeBackend,
        clock: FakeClock,
    ) -> None:
        """Persistent 503 fails after the attempt ceiling with the attempt count."""
        manager = SessionManager(
            config.model_copy(update={"sign_in_max_attempts": 3}), http_client=http_client, clock=clock
        )
        backend.add(SIGN_IN, httpx.Response(503, text="unavailable"))

        with pytest.raises(SignInError) as exc_info:
            await manager.acquire(identity)

        assert "Sign-in failed after 3 attempts" in str(exc_info.value)
        assert exc_info.value.attempts == 3
        assert exc_info.value.status == 503
        assert len(backend.calls(SIGN_IN)) == 3
        assert len(clock.sleeps) == 2
        assert manager.state_of(identity.email) is SessionState.NO_SESSION

    async def test_transport_error_is_retried(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """Connection failure is retried and the next attempt succeeds."""
        backend.add(
            SIGN_IN,
            httpx.ConnectError("connection reset"),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )

        record = await manager.acquire(identity)

        assert record.access_token == "A1"
        assert len(backend.calls(SIGN_IN)) == 2

    async def test_malformed_success_body_is_retried(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """2xx body lacking required fields is retried."""
        backend.add(
            SIGN_IN,
            httpx.Response(200, json={"session": None}),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )

        record = await manager.acquire(identity)

        assert record.subject_id == "uid1"
        assert len(backend.calls(SIGN_IN)) == 2

    async def test_client_error_fails_immediately(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """400 is not retried."""
        backend.add(SIGN_IN, httpx.Response(400, json={"error": "invalid-email"}))

        with pytest.raises(SignInError) as exc_info:
            await manager.acquire(identity)

        assert exc_info.value.status == 400
        assert len(backend.calls(SIGN_IN)) == 1

    async def test_unauthorized_without_admin_secret(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """401 without provisioning credentials is rejected at once."""
        backend.add(SIGN_IN, httpx.Response(401, json={"error": "invalid-email-password"}))

        with pytest.raises(AuthenticationRejectedError):
            await manager.acquire(identity)

        assert len(backend.calls(SIGN_IN)) == 1
        assert backend.calls(ADMIN_USERS) == []

    async def test_cache_is_not_written_on_failure(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """Failed sign-in leaves no cache file and releases the lock."""
        backend.add(SIGN_IN, httpx.Response(403, text="forbidden"))

        with pytest.raises(SignInError):
            await manager.acquire(identity)

        assert not manager.cache.path_for(identity).exists()
        assert list((manager.cache.directory.parent / "locks").glob("*.lock")) == []


class TestProvisioning:
    """Tests for the 401 auto-provision path."""

    @pytest.fixture
    def admin_manager(
        self, config: BrokerConfig, http_client: httpx.AsyncClient, clock: FakeClock
    ) -> SessionManager:
        """Manager with an admin secret configured."""
        return SessionManager(
            config.model_copy(update={"admin_secret": "s3cret"}), http_client=http_client, clock=clock
        )

    async def test_unauthorized_provisions_then_signs_in(
        self, admin_manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """401 triggers account creation, a settle pause, and a successful retry."""
        backend.add(
            SIGN_IN,
            httpx.Response(401),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )
        backend.add(ADMIN_USERS, httpx.Response(201, json={"id": "uid1"}))

        record = await admin_manager.acquire(identity)

        assert record.access_token == "A1"
        admin_calls = backend.calls(ADMIN_USERS)
        assert len(admin_calls) == 1
        assert admin_calls[0].headers["x-hasura-admin-secret"] == "s3cret"
        body = json.loads(admin_calls[0].content)
        assert body["email"] == "u1@example.com"
        assert body["emailVerified"] is True
        assert body["roles"] == ["user"]
        assert 0.3 in clock.sleeps

    async def test_provisioning_happens_once(
        self, admin_manager: SessionManager, identity: Identity, backend: FakeBackend
    ) -> None:
        """Second 401 after provisioning is a terminal rejection."""
        backend.add(SIGN_IN, httpx.Response(401))
        backend.add(ADMIN_USERS, httpx.Response(409, json={"error": "email-already-in-use"}))

        with pytest.raises(AuthenticationRejectedError):
            await admin_manager.acquire(identity)

        assert len(backend.calls(SIGN_IN)) == 2
        assert len(backend.calls(ADMIN_USERS)) == 1

    async def test_provisioning_retry_does_not_consume_budget(
        self,
        config: BrokerConfig,
        http_client: httpx.AsyncClient,
        identity: Identity,
        backend: FakeBackend,
        clock: FakeClock,
    ) -> None:
        """With a one-attempt ceiling the post-provisioning retry still happens."""
        manager = SessionManager(
            config.model_copy(update={"admin_secret": "s3cret", "sign_in_max_attempts": 1}),
            http_client=http_client,
            clock=clock,
        )
        backend.add(
            SIGN_IN,
            httpx.Response(401),
            httpx.Response(200, json=sign_in_body("uid1", "A1", "R1")),
        )
        backend.add(ADMIN_USERS, httpx.Response(200, json={}))

        record = await manager.acquire(identity)

        assert record.access_token == "A1"
        assert len(backend.calls(SIGN_IN)) == 2


class TestPresetToken:
    """Tests for caller-supplied bearer tokens."""

    async def test_preset_token_uses_jwt_claims(
        self, manager: SessionManager, identity: Identity, backend: FakeBackend, clock: FakeClock
    ) -> None:
        """Subject comes from the Hasura claims; no network or cache access."""
        token = jwt.encode(
            {"sub": "fallback", "https://hasura.io/jwt/claims": {"x-hasura-user-id": "uid-claims"}},
            JWT_SECRET,
            algorithm="HS256",
        )

        record = await manager.acquire(identity, preset_token=token)

        assert record.subject_id == "uid-claims"
        assert record.access_token == token
        assert record.access_expiry == int(clock.now()) + 3600
        assert backend.requests == []
        assert not manager.cache.path_for(identity).exists()

    async def test_preset_token_falls_back_to_sub(self, manager: SessionManager, identity: Identity) -> None:
        """Without Hasura claims the ``sub`` claim is the subject."""
        token = jwt.encode({"sub": "uid-sub"}, JWT_SECRET, algorithm="HS256")

        record = await manager.acquire(identity, preset_token=token)

        assert record.subject_id == "uid-sub"

    async def test_opaque_preset_token(self, manager: SessionManager, identity: Identity) -> None:
        """Token that is not a JWT gets the placeholder subject."""
        record = await manager.acquire(identity, preset_token="opaque-token")

        assert record.subject_id == "override"
        assert record.refresh_token == ""


class TestContention:
    """Tests for concurrent sign-ins across independent managers."""

    async def test_one_sign_in_under_contention(self, config: BrokerConfig, identity: Identity) -> None:
        """Independent managers sharing a cache perform exactly one sign-in."""
        config = config.model_copy(update={"lock_wait_slice_seconds": 0.01})
        sign_in_calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal sign_in_calls
            sign_in_calls += 1
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=sign_in_body("uid1", "A1", "R1"))

        clients = [httpx.AsyncClient(transport=httpx.MockTransport(handler)) for _ in range(4)]
        try:
            managers = [SessionManager(config, http_client=client, clock=Clock()) for client in clients]
            records = await asyncio.gather(*(m.acquire(identity) for m in managers))
        finally:
            for client in clients:
                await client.aclose()

        assert sign_in_calls == 1
        assert {r.subject_id for r in records} == {"uid1"}
        assert {r.access_token for r in records} == {"A1"}
