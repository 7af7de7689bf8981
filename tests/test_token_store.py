"""Tests for gitlab_cli/token_store.py -- credential persistence."""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from gitlab_cli.errors import StorageError
from gitlab_cli.token_store import Credential, TokenStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_credential(token: str = "tok-1", **kwargs) -> Credential:
    defaults = {
        "expires_at": NOW + timedelta(hours=2),
        "refresh_token": "refresh-1",
        "client_id": "client-abc",
    }
    defaults.update(kwargs)
    return Credential(access_token=token, **defaults)


@pytest.fixture
def store(tmp_path) -> TokenStore:
    return TokenStore.in_directory(tmp_path / "gitlab-cli")


class TestCredential:
    def test_not_expired_before_skew_window(self):
        cred = make_credential(expires_at=NOW + timedelta(minutes=5))
        assert cred.is_expired(NOW) is False

    def test_expired_inside_skew_window(self):
        cred = make_credential(expires_at=NOW + timedelta(seconds=10))
        assert cred.is_expired(NOW) is True

    def test_expired_in_the_past(self):
        cred = make_credential(expires_at=NOW - timedelta(hours=1))
        assert cred.is_expired(NOW) is True

    def test_refreshable(self):
        assert make_credential().refreshable is True
        assert make_credential(refresh_token=None).refreshable is False

    def test_from_dict_rejects_missing_token(self):
        with pytest.raises(ValueError):
            Credential.from_dict({"expires_at": NOW.isoformat()})

    def test_from_dict_naive_timestamp_is_utc(self):
        cred = Credential.from_dict({"access_token": "t", "expires_at": "2026-03-01T12:00:00"})
        assert cred.expires_at == NOW

    def test_host_round_trips(self):
        cred = make_credential(host="https://git.example.com")
        assert Credential.from_dict(cred.to_dict()).host == "https://git.example.com"

    def test_file_without_host_loads(self):
        cred = Credential.from_dict({"access_token": "t", "expires_at": NOW.isoformat()})
        assert cred.host is None


class TestLoad:
    def test_absent_file_returns_none(self, store):
        assert store.load() is None

    def test_save_then_load(self, store):
        cred = make_credential()
        store.save(cred)
        assert store.load() == cred

    def test_corrupt_json_raises_storage_error(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            store.load()
        # never discarded behind the user's back
        assert store.path.read_text(encoding="utf-8") == "{not json"

    def test_truncated_file_raises_storage_error(self, store):
        store.save(make_credential())
        text = store.path.read_text(encoding="utf-8")
        store.path.write_text(text[: len(text) // 2], encoding="utf-8")
        with pytest.raises(StorageError):
            store.load()

    def test_wrong_shape_raises_storage_error(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps(["a", "b"]), encoding="utf-8")
        with pytest.raises(StorageError):
            store.load()

    def test_bad_timestamp_raises_storage_error(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(
            json.dumps({"access_token": "t", "expires_at": "yesterday"}), encoding="utf-8"
        )
        with pytest.raises(StorageError):
            store.load()


class TestSave:
    def test_save_overwrites_previous(self, store):
        store.save(make_credential("old"))
        store.save(make_credential("new"))
        assert store.load().access_token == "new"

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_file_is_private(self, store):
        store.save(make_credential())
        assert store.path.stat().st_mode & 0o777 == 0o600

    def test_crash_before_rename_keeps_old_credential(self, store, monkeypatch):
        old = make_credential("old")
        store.save(old)

        def crash(fd):
            raise RuntimeError("simulated crash")

        monkeypatch.setattr(os, "fsync", crash)
        with pytest.raises(RuntimeError):
            store.save(make_credential("new"))

        assert store.load() == old
        assert sorted(p.name for p in store.path.parent.iterdir()) == [store.path.name]

    def test_failed_replace_raises_storage_error(self, store, monkeypatch):
        old = make_credential("old")
        store.save(old)

        def refuse(src, dst):
            raise PermissionError("read-only")

        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(StorageError):
            store.save(make_credential("new"))

        monkeypatch.undo()
        assert store.load() == old
        assert len(list(store.path.parent.iterdir())) == 1

    def test_first_save_creates_directory(self, tmp_path):
        store = TokenStore(tmp_path / "a" / "b" / "credentials.json")
        store.save(make_credential())
        assert store.path.exists()


class TestClear:
    def test_clear_removes_file(self, store):
        store.save(make_credential())
        assert store.clear() is True
        assert store.load() is None

    def test_clear_without_file(self, store):
        assert store.clear() is False
