"""Tests for the credential cache store."""

from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from session_broker.cache import CredentialCache, SessionRecord, purge_state_files
from session_broker.config import Identity


@pytest.fixture
def cache(tmp_path: Path) -> CredentialCache:
    """Cache for a fixed environment in a temporary directory."""
    return CredentialCache(tmp_path / "cache", "auth.example.com_v1")


@pytest.fixture
def record() -> SessionRecord:
    """Typical signed-in session."""
    return SessionRecord(subject_id="uid1", access_token="A1", refresh_token="R1", access_expiry=1_700_000_900)


class TestSessionRecord:
    """Tests for SessionRecord freshness."""

    def test_fresh_outside_skew(self, record: SessionRecord) -> None:
        """Record is fresh while more than the skew remains."""
        assert record.is_fresh(1_700_000_000, 30) is True

    def test_stale_inside_skew(self, record: SessionRecord) -> None:
        """Record inside the skew window is not fresh."""
        assert record.is_fresh(1_700_000_880, 30) is False

    def test_repr_hides_tokens(self, record: SessionRecord) -> None:
        """Tokens never appear in the repr."""
        assert "A1" not in repr(record)
        assert "R1" not in repr(record)


class TestCredentialCache:
    """Tests for CredentialCache read/write."""

    def test_round_trip(self, cache: CredentialCache, identity: Identity, record: SessionRecord) -> None:
        """A written record reads back equal."""
        assert cache.write(identity, record) is True
        assert cache.read(identity) == record

    def test_miss(self, cache: CredentialCache, identity: Identity) -> None:
        """Missing file is a miss."""
        assert cache.read(identity) is None

    @pytest.mark.parametrize(
        "content",
        [b"{not json", b'{"subject_id": "uid1"}', b"[]", b"\xff\xfe\x00garbage"],
        ids=["invalid-json", "missing-fields", "wrong-type", "undecodable"],
    )
    def test_corrupt_file_is_miss(self, cache: CredentialCache, identity: Identity, content: bytes) -> None:
        """Corrupt content reads as a miss rather than an error."""
        path = cache.path_for(identity)
        path.parent.mkdir(parents=True)
        path.write_bytes(content)

        assert cache.read(identity) is None

    def test_path_is_scoped_by_environment(self, tmp_path: Path, identity: Identity) -> None:
        """Different environments never share a cache file."""
        local = CredentialCache(tmp_path, "localhost_1337_v1")
        staging = CredentialCache(tmp_path, "auth.staging.example.com_v1")

        assert local.path_for(identity) != staging.path_for(identity)
        assert local.path_for(identity).name.startswith("session-broker-session-localhost_1337_v1-")

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_owner_only(self, cache: CredentialCache, identity: Identity, record: SessionRecord) -> None:
        """Cache files are written with 0600 permissions."""
        cache.write(identity, record)

        assert stat.S_IMODE(cache.path_for(identity).stat().st_mode) == 0o600

    def test_write_replaces_whole_file(self, cache: CredentialCache, identity: Identity, record: SessionRecord) -> None:
        """A second write fully replaces the first and leaves no temp files."""
        cache.write(identity, record)
        newer = record.model_copy(update={"access_token": "A2"})

        cache.write(identity, newer)

        assert cache.read(identity) == newer
        assert [p.name for p in cache.directory.iterdir()] == [cache.path_for(identity).name]

    def test_write_failure_returns_false(self, tmp_path: Path, identity: Identity, record: SessionRecord) -> None:
        """An unwritable cache location is reported, not raised."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        cache = CredentialCache(blocker / "cache", "env")

        assert cache.write(identity, record) is False

    def test_entries(self, cache: CredentialCache, record: SessionRecord) -> None:
        """entries() lists this environment's files, unreadable ones with no record."""
        cache.write(Identity(email="a@example.com", password="p"), record)
        broken = cache.path_for(Identity(email="b@example.com", password="p"))
        broken.write_text("garbage")
        other_env = CredentialCache(cache.directory, "other-env")
        other_env.write(Identity(email="c@example.com", password="p"), record)

        entries = cache.entries()

        assert len(entries) == 2
        assert sorted(e.record is None for e in entries) == [False, True]


class TestPurge:
    """Tests for purge_state_files()."""

    def test_removes_only_broker_files(self, tmp_path: Path, record: SessionRecord) -> None:
        """Session and lock files go; unrelated files stay."""
        cache = CredentialCache(tmp_path, "env")
        cache.write(Identity(email="a@example.com", password="p"), record)
        (tmp_path / "session-broker-signin-lock-env-a.lock").write_text("{}")
        (tmp_path / "unrelated.json").write_text("{}")

        removed = purge_state_files(tmp_path, tmp_path, tmp_path / "missing")

        assert removed == 2
        assert [p.name for p in tmp_path.iterdir()] == ["unrelated.json"]
