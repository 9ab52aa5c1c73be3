"""Credential cache shared by every test process of the current user.

One JSON file per (environment, identity) holds the last session obtained for
that identity. The cache is advisory: the backend decides whether a token is
valid, and any problem reading the cache is a cache miss.

File name: <cache_dir>/session-broker-session-<environment>-<identity key>.json

Writes replace the whole file atomically (temp file + os.replace), so a
concurrent reader sees either the old record or the new one, never a mix.
"""

from __future__ import annotations

__all__ = [
    "CacheEntry",
    "CredentialCache",
    "SessionRecord",
    "purge_state_files",
]

import os
import tempfile
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from session_broker.config import Identity
from session_broker.constants import (
    LOCK_FILE_PREFIX,
    LOCK_FILE_SUFFIX,
    SECURE_FILE_MODE,
    SESSION_FILE_PREFIX,
    SESSION_FILE_SUFFIX,
)
from session_broker.telemetry import get_logger

_logger = get_logger("cache")


class SessionRecord(BaseModel):
    """Persisted session for one identity.

    Attributes:
        subject_id: User id reported by the identity service.
        access_token: Bearer token for the query backend.
        refresh_token: Token for obtaining new access tokens (empty for preset tokens).
        access_expiry: Unix seconds when the access token expires.
    """

    model_config = ConfigDict(frozen=True)

    subject_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str = Field(default="", repr=False)
    access_expiry: int

    def seconds_remaining(self, now: float) -> float:
        """Seconds until expiry (negative if expired)."""
        return self.access_expiry - now

    def is_fresh(self, now: float, skew: float) -> bool:
        """True if the token is usable for longer than ``skew`` seconds."""
        return self.seconds_remaining(now) > skew

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SessionRecord":
        return cls.model_validate_json(data)


class CacheEntry(NamedTuple):
    """A cache file found on disk (record is None if unreadable)."""

    path: Path
    record: SessionRecord | None


class CredentialCache:
    """Read/write session records keyed by environment and identity.

    Usage:
        cache = CredentialCache(config.cache_dir, config.environment_key)
        record = cache.read(identity)      # None on miss or corruption
        cache.write(identity, record)      # False if the write failed
    """

    def __init__(self, cache_dir: Path, environment_key: str) -> None:
        """Initialize the cache.

        Args:
            cache_dir: Shared directory for cache files.
            environment_key: Environment fingerprint (see config.environment_fingerprint).
        """
        self._dir = Path(cache_dir)
        self._environment_key = environment_key

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, identity: Identity) -> Path:
        """Deterministic cache file path for ``identity`` in this environment."""
        return self._dir / f"{SESSION_FILE_PREFIX}{self._environment_key}-{identity.key}{SESSION_FILE_SUFFIX}"

    def read(self, identity: Identity) -> SessionRecord | None:
        """Load the cached record.

        Returns:
            SessionRecord, or None when the file is missing, unreadable,
            not JSON, or does not match the record schema.
        """
        path = self.path_for(identity)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            _logger.debug(
                {
                    "event": "cache_read_failed",
                    "message": f"Cannot read session cache {path.name}: {e}",
                    "error_type": type(e).__name__,
                }
            )
            return None

        try:
            return SessionRecord.from_json(data)
        except ValidationError as e:
            _logger.debug(
                {
                    "event": "cache_corrupt",
                    "message": f"Ignoring malformed session cache {path.name}",
                    "error_count": e.error_count(),
                }
            )
            return None

    def write(self, identity: Identity, record: SessionRecord) -> bool:
        """Persist ``record`` (best-effort).

        Returns:
            True if the record was written, False otherwise. Failures are
            logged and never raised; correctness does not depend on the cache.
        """
        path = self.path_for(identity)
        tmp_name: str | None = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self._dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.to_json())
            os.chmod(tmp_name, SECURE_FILE_MODE)
            os.replace(tmp_name, path)
            tmp_name = None
            return True
        except OSError as e:
            _logger.warning(
                {
                    "event": "cache_write_failed",
                    "message": f"Failed to write session cache {path.name}: {e}",
                    "error_type": type(e).__name__,
                }
            )
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def entries(self) -> list[CacheEntry]:
        """List cache files of this environment, sorted by file name."""
        prefix = f"{SESSION_FILE_PREFIX}{self._environment_key}-"
        if not self._dir.is_dir():
            return []

        entries: list[CacheEntry] = []
        for path in sorted(self._dir.iterdir()):
            if not (path.name.startswith(prefix) and path.name.endswith(SESSION_FILE_SUFFIX)):
                continue
            try:
                record: SessionRecord | None = SessionRecord.from_json(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, ValidationError):
                record = None
            entries.append(CacheEntry(path=path, record=record))
        return entries


def purge_state_files(*directories: Path) -> int:
    """Remove every session cache and lock file of this application.

    Covers all environments. Files that vanish or cannot be removed are skipped.

    Args:
        directories: Cache and lock directories (duplicates are visited once).

    Returns:
        Number of files removed.
    """
    removed = 0
    seen: set[Path] = set()
    for directory in directories:
        directory = Path(directory)
        if directory in seen or not directory.is_dir():
            continue
        seen.add(directory)

        for path in directory.iterdir():
            name = path.name
            is_session = name.startswith(SESSION_FILE_PREFIX) and name.endswith(SESSION_FILE_SUFFIX)
            is_lock = name.startswith(LOCK_FILE_PREFIX) and name.endswith(LOCK_FILE_SUFFIX)
            if not (is_session or is_lock):
                continue
            try:
                path.unlink()
                removed += 1
            except OSError:
                continue
    return removed
