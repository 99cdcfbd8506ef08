"""Tests for the configuration store."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest
import yaml

from tunnelgate.core.config import UserRecord
from tunnelgate.core.store import ConfigError, ConfigStore, LoginActivity

SAMPLE_CONFIG = """\
admin:
  username: admin
  password: hunter22
users:
  alice:
    token: alice-token-1
  bob:
    token: bob-token-22
    subdomain: bobs-radio
    lastLogin: '2024-01-15T10:30:00Z'
    lastIp: 198.51.100.4
server:
  port: 7100
  path: /frp-hook
debug: true
"""

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def write_config(path: Path, content: str = SAMPLE_CONFIG) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


class TestLoad:
    """Tests for ConfigStore.load."""

    @pytest.fixture
    def config_path(self, tmp_path):
        return write_config(tmp_path / "config.yaml")

    @pytest.mark.asyncio
    async def test_load(self, config_path):
        store = ConfigStore(config_path, clock=lambda: FIXED_NOW)
        config = await store.load()

        assert store.config is config
        assert set(config.users) == {"alice", "bob"}
        assert config.server.port == 7100
        assert config.server.path == "/frp-hook"
        assert config.debug is True
        assert config.admin.username == "admin"
        assert store.last_reload == FIXED_NOW

    @pytest.mark.asyncio
    async def test_load_derives_activity(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        assert store.activity("alice") is None
        assert store.activity("bob") == LoginActivity(
            last_login=datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
            last_ip="198.51.100.4",
        )

    @pytest.mark.asyncio
    async def test_config_before_load(self, tmp_path):
        store = ConfigStore(tmp_path / "config.yaml")
        assert store.loaded is False
        with pytest.raises(ConfigError):
            _ = store.config

    @pytest.mark.asyncio
    async def test_first_load_missing_file(self, tmp_path):
        store = ConfigStore(tmp_path / "missing.yaml")
        with pytest.raises(ConfigError):
            await store.load()
        assert store.loaded is False

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_previous(self, config_path):
        store = ConfigStore(config_path)
        previous = await store.load()

        config_path.write_text("users: {alice: [broken\n")
        with pytest.raises(ConfigError):
            await store.load()

        assert store.config is previous
        assert store.activity("bob") is not None

    @pytest.mark.asyncio
    async def test_invalid_schema_keeps_previous(self, config_path):
        store = ConfigStore(config_path)
        previous = await store.load()

        config_path.write_text("server:\n  port: abc\n")
        with pytest.raises(ConfigError):
            await store.load()
        assert store.config is previous

    @pytest.mark.asyncio
    async def test_reload_drops_activity_of_removed_users(self, config_path):
        store = ConfigStore(config_path)
        await store.load()
        assert store.activity("bob") is not None

        config_path.write_text("users:\n  alice:\n    token: alice-token-1\n")
        await store.load()
        assert store.activity("bob") is None

    @pytest.mark.asyncio
    async def test_reload_keeps_newer_in_memory_activity(self, config_path):
        store = ConfigStore(config_path)
        await store.load()
        newer = LoginActivity(datetime(2025, 1, 1, tzinfo=UTC), "192.0.2.1")
        store._activity["bob"] = newer

        await store.load()
        assert store.activity("bob") == newer


class TestSave:
    """Tests for ConfigStore.save and activity merging."""

    @pytest.fixture
    def config_path(self, tmp_path):
        return write_config(tmp_path / "config.yaml")

    @pytest.mark.asyncio
    async def test_save_is_byte_stable(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        await store.save()
        first = config_path.read_bytes()
        await store.save()
        second = config_path.read_bytes()

        assert first == second

    @pytest.mark.asyncio
    async def test_round_trip(self, config_path):
        store = ConfigStore(config_path)
        original = await store.load()
        await store.save()

        reloaded = await ConfigStore(config_path).load()
        assert reloaded.admin == original.admin
        assert reloaded.server == original.server
        assert reloaded.debug == original.debug
        assert {u: r.token for u, r in reloaded.users.items()} == {
            u: r.token for u, r in original.users.items()
        }
        assert reloaded.subdomains() == original.subdomains()
        assert reloaded.users["bob"].last_login == original.users["bob"].last_login

    @pytest.mark.asyncio
    async def test_record_activity_persists(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        await store.record_activity("alice", "203.0.113.9", FIXED_NOW)

        assert store.activity("alice") == LoginActivity(FIXED_NOW, "203.0.113.9")
        assert store.config.users["alice"].last_ip == "203.0.113.9"
        data = yaml.safe_load(config_path.read_text())
        assert data["users"]["alice"]["lastIp"] == "203.0.113.9"
        assert data["users"]["alice"]["lastLogin"] == "2025-03-01T12:00:00Z"
        assert data["users"]["alice"]["token"] == "alice-token-1"

    @pytest.mark.asyncio
    async def test_record_activity_defaults_to_clock(self, config_path):
        store = ConfigStore(config_path, clock=lambda: FIXED_NOW)
        await store.load()
        await store.record_activity("alice", "203.0.113.9")
        assert store.activity("alice").last_login == FIXED_NOW

    @pytest.mark.asyncio
    async def test_record_activity_last_write_wins(self, config_path):
        store = ConfigStore(config_path)
        await store.load()
        later = datetime(2025, 3, 2, tzinfo=UTC)

        await store.record_activity("alice", "203.0.113.9", FIXED_NOW)
        await store.record_activity("alice", "203.0.113.10", later)

        assert store.activity("alice") == LoginActivity(later, "203.0.113.10")

    @pytest.mark.asyncio
    async def test_save_merges_activity_over_external_edit(self, config_path):
        store = ConfigStore(config_path)
        await store.load()
        await store.record_activity("alice", "203.0.113.9", FIXED_NOW)

        # An administrator adds a user; the watcher reloads the file.
        data = yaml.safe_load(config_path.read_text())
        data["users"]["carol"] = {"token": "carol-token-3"}
        config_path.write_text(yaml.safe_dump(data))
        await store.load()
        await store.record_activity("bob", "198.51.100.5", FIXED_NOW)

        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["carol"] == {"token": "carol-token-3"}
        assert saved["users"]["alice"]["lastIp"] == "203.0.113.9"
        assert saved["users"]["bob"]["lastIp"] == "198.51.100.5"

    @pytest.mark.asyncio
    async def test_concurrent_activity_is_serialized(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        await asyncio.gather(
            *(store.record_activity("alice", f"203.0.113.{i}", FIXED_NOW) for i in range(10)),
            store.record_activity("bob", "198.51.100.5", FIXED_NOW),
        )

        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["bob"]["lastIp"] == "198.51.100.5"
        assert saved["users"]["alice"]["lastIp"] == store.activity("alice").last_ip

    @pytest.mark.asyncio
    async def test_save_failure_is_reported(self, config_path, monkeypatch):
        store = ConfigStore(config_path)
        before = await store.load()

        def fail(*args, **kwargs):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(Path, "write_text", fail)
        with pytest.raises(ConfigError, match="read-only"):
            await store.create_user("carol", UserRecord(token="carol-token-3"))

        assert store.config is before
        assert "carol" not in store.config.users

    @pytest.mark.asyncio
    async def test_failed_activity_save_keeps_entry(self, config_path, monkeypatch):
        store = ConfigStore(config_path)
        await store.load()

        def fail(*args, **kwargs):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(Path, "write_text", fail)
        with pytest.raises(ConfigError):
            await store.record_activity("alice", "203.0.113.9", FIXED_NOW)

        monkeypatch.undo()
        await store.save()
        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["alice"]["lastIp"] == "203.0.113.9"


class TestUserMutations:
    @pytest.fixture
    def config_path(self, tmp_path):
        return write_config(tmp_path / "config.yaml")

    @pytest.mark.asyncio
    async def test_create_user(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        assert await store.create_user("carol", UserRecord(token="carol-token-3", subdomain="carol"))

        assert store.config.users["carol"].token == "carol-token-3"
        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["carol"] == {"token": "carol-token-3", "subdomain": "carol"}

    @pytest.mark.asyncio
    async def test_delete_user_drops_activity(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        assert await store.delete_user("bob") is True
        assert "bob" not in store.config.users
        assert store.activity("bob") is None

        # Re-adding the user must not resurrect the old login record.
        await store.create_user("bob", UserRecord(token="bob-token-new"))
        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["bob"] == {"token": "bob-token-new"}

    @pytest.mark.asyncio
    async def test_delete_unknown_user(self, config_path):
        store = ConfigStore(config_path)
        await store.load()
        assert await store.delete_user("nobody") is False

    @pytest.mark.asyncio
    async def test_create_existing_user(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        assert await store.create_user("alice", UserRecord(token="other-token")) is False
        assert store.config.users["alice"].token == "alice-token-1"

    @pytest.mark.asyncio
    async def test_update_user(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        updated = await store.update_user(
            "bob", lambda record: record.model_copy(update={"token": "bob-token-new"})
        )

        assert updated is True
        assert store.config.users["bob"].token == "bob-token-new"
        assert store.config.users["bob"].subdomain == "bobs-radio"
        assert yaml.safe_load(config_path.read_text())["users"]["bob"]["token"] == "bob-token-new"

    @pytest.mark.asyncio
    async def test_update_unknown_user(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        assert await store.update_user("nobody", lambda record: record) is False
        assert "nobody" not in store.config.users

    @pytest.mark.asyncio
    async def test_activity_for_removed_user_is_dropped(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        await asyncio.gather(
            store.delete_user("alice"),
            store.record_activity("alice", "203.0.113.9", FIXED_NOW),
        )

        assert store.activity("alice") is None
        assert await store.create_user("alice", UserRecord(token="fresh-token-9"))
        assert store.activity("alice") is None
        saved = yaml.safe_load(config_path.read_text())
        assert saved["users"]["alice"] == {"token": "fresh-token-9"}

    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one(self, config_path):
        store = ConfigStore(config_path)
        await store.load()

        results = await asyncio.gather(
            store.create_user("carol", UserRecord(token="first-token-1")),
            store.create_user("carol", UserRecord(token="second-token-2")),
        )

        assert results == [True, False]
        assert store.config.users["carol"].token == "first-token-1"
