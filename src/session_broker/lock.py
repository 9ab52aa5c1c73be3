"""Cross-process sign-in lock over the shared filesystem.

Independent test processes that need a session for the same identity would
otherwise all sign in at once and trip the identity service's per-identity
rate limit. The lock lets one process sign in while the others wait for its
result to appear in the credential cache.

Mechanism:
    - Ownership is the existence of a marker file created with O_CREAT|O_EXCL,
      so at most one process owns a live marker per identity.
    - The marker body ({"pid", "created_at"}) is diagnostic only.
    - A marker older than the TTL is presumed abandoned and removed.
    - Waiters re-check readiness (a fresh cached session) after every slice
      and run without the lock as soon as it is ready.
    - After waiting a full TTL the marker is force-removed and the caller runs
      unprotected. Liveness wins over strict exclusion.

Lock file: <lock_dir>/session-broker-signin-lock-<environment>-<identity key>.lock
"""

from __future__ import annotations

__all__ = ["SignInLock"]

import json
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from session_broker.clock import Clock
from session_broker.config import Identity
from session_broker.constants import LOCK_FILE_PREFIX, LOCK_FILE_SUFFIX
from session_broker.telemetry import get_logger

T = TypeVar("T")

_logger = get_logger("lock")


class SignInLock:
    """Advisory per-identity mutual exclusion for network sign-ins.

    Usage:
        lock = SignInLock(config.lock_dir, config.environment_key)
        record = await lock.hold(identity, do_sign_in, ready=cache_is_fresh)
    """

    def __init__(
        self,
        lock_dir: Path,
        environment_key: str,
        ttl_seconds: float,
        wait_slice_seconds: float,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the lock.

        Args:
            lock_dir: Shared directory for lock markers.
            environment_key: Environment fingerprint.
            ttl_seconds: Marker staleness threshold and maximum total wait.
            wait_slice_seconds: Sleep between acquisition attempts.
            clock: Time source (real clock if None).
        """
        self._dir = Path(lock_dir)
        self._environment_key = environment_key
        self._ttl = ttl_seconds
        self._slice = wait_slice_seconds
        self._clock = clock or Clock()

    def path_for(self, identity: Identity) -> Path:
        """Deterministic lock marker path for ``identity`` in this environment."""
        return self._dir / f"{LOCK_FILE_PREFIX}{self._environment_key}-{identity.key}{LOCK_FILE_SUFFIX}"

    async def hold(
        self,
        identity: Identity,
        fn: Callable[[], Awaitable[T]],
        ready: Callable[[], bool] | None = None,
    ) -> T:
        """Run ``fn`` while holding the identity's lock (or once waiting is pointless).

        Args:
            identity: Identity whose lock slot to take.
            fn: Coroutine function to run.
            ready: Checked after each wait slice; True means another process
                already produced what ``fn`` needs, so run it without the lock.

        Returns:
            Whatever ``fn`` returns.
        """
        path = self.path_for(identity)
        owned = await self._acquire(path, identity, ready)
        try:
            return await fn()
        finally:
            if owned:
                self._remove(path)

    async def _acquire(self, path: Path, identity: Identity, ready: Callable[[], bool] | None) -> bool:
        """Wait for the marker. Returns True if this process created it."""
        start = self._clock.monotonic()

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass  # surfaced by the create attempt below

        while True:
            try:
                self._create(path)
                return True
            except FileExistsError:
                pass
            except OSError as e:
                _logger.warning(
                    {
                        "event": "lock_unavailable",
                        "message": f"Cannot create sign-in lock {path.name}, continuing without it: {e}",
                        "error_type": type(e).__name__,
                    }
                )
                return False

            age = self._marker_age(path)
            if age is not None and age > self._ttl:
                _logger.info(
                    {
                        "event": "lock_stale_removed",
                        "message": f"Removing stale sign-in lock for {identity.email} ({age:.1f}s old)",
                        "age_seconds": round(age, 3),
                    }
                )
                self._remove(path)
                continue

            await self._clock.sleep(self._slice)

            if ready is not None and ready():
                _logger.debug(
                    {
                        "event": "lock_wait_satisfied",
                        "message": f"Session for {identity.email} became available while waiting",
                    }
                )
                return False

            waited = self._clock.monotonic() - start
            if waited > self._ttl:
                _logger.warning(
                    {
                        "event": "lock_wait_timeout",
                        "message": (
                            f"Waited {waited:.1f}s for sign-in lock of {identity.email}, "
                            "clearing it and proceeding unprotected"
                        ),
                        "waited_seconds": round(waited, 3),
                    }
                )
                self._remove(path)
                return False

    def _create(self, path: Path) -> None:
        """Atomically create the marker.

        Raises:
            FileExistsError: If another owner holds the marker.
            OSError: If the marker cannot be created for other reasons.
        """
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        try:
            os.write(fd, json.dumps({"pid": os.getpid(), "created_at": self._clock.now()}).encode())
        except OSError:
            pass  # marker exists; content is diagnostic only
        finally:
            os.close(fd)

    def _marker_age(self, path: Path) -> float | None:
        """Seconds since the marker was last modified (None if it vanished)."""
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return None
        return time.time() - mtime

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            _logger.warning(
                {
                    "event": "lock_release_failed",
                    "message": f"Failed to remove sign-in lock {path.name}: {e}",
                    "error_type": type(e).__name__,
                }
            )
