"""Configuration store: the single owner of mutable configuration state.

The store holds two pieces of state:

* the current ``Configuration`` snapshot, replaced wholesale (never mutated
  in place) so that readers always see a consistent document, and
* the login activity map (``user -> LoginActivity``), which records the last
  successful login of each user and is merged into the document right before
  every write.

Every operation touching the file runs under one ``asyncio.Lock`` so a save
can never interleave with a reload or with another save.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from tunnelgate.core.config import (
    Configuration,
    UserRecord,
    dump_config,
    load_config_from_file,
    parse_configuration,
)

logger = structlog.get_logger()


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class ConfigError(Exception):
    """Raised when the configuration file cannot be read, parsed or written."""


@dataclass(frozen=True)
class LoginActivity:
    """Last successful login of a user."""

    last_login: datetime
    last_ip: str


class ConfigStore:
    """YAML file-backed configuration with login activity tracking.

    Usage:
        store = ConfigStore("config.yaml")
        await store.load()
        snapshot = store.config
        await store.record_activity("alice", "203.0.113.9")
    """

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the store.

        Args:
            path: Path to the YAML configuration file.
            clock: Source of the current time, replaceable in tests.
        """
        self.path = Path(path)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._config: Configuration | None = None
        self._activity: dict[str, LoginActivity] = {}
        self._last_reload: datetime | None = None

    @property
    def loaded(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> Configuration:
        """Current configuration snapshot.

        Raises:
            ConfigError: If no configuration has been loaded yet.
        """
        if self._config is None:
            raise ConfigError("Configuration has not been loaded")
        return self._config

    @property
    def last_reload(self) -> datetime | None:
        """Time of the last successful load."""
        return self._last_reload

    def activity(self, user: str) -> LoginActivity | None:
        return self._activity.get(user)

    def activity_snapshot(self) -> dict[str, LoginActivity]:
        return dict(self._activity)

    async def load(self) -> Configuration:
        """Read, validate and swap in the configuration file.

        On failure the previous configuration and activity are left
        untouched.

        Returns:
            The newly loaded configuration.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid.
        """
        async with self._lock:
            try:
                raw = await asyncio.to_thread(load_config_from_file, self.path)
                config = parse_configuration(raw)
            except (OSError, ValueError) as e:
                logger.error("Error loading config", path=str(self.path), error=str(e))
                raise ConfigError(str(e)) from e

            self._activity = self._derive_activity(config)
            self._config = config
            self._last_reload = self._clock()

        logger.info("Loaded configuration", path=str(self.path), users=len(config.users))
        return config

    def _derive_activity(self, config: Configuration) -> dict[str, LoginActivity]:
        """Build the activity map for a freshly loaded configuration.

        Entries come from records carrying ``lastLogin``. An in-memory entry
        that is newer than the file (a login whose save failed) wins. Users
        no longer present in the file are dropped.
        """
        activity: dict[str, LoginActivity] = {}
        for user, record in config.users.items():
            current = self._activity.get(user)
            if record.last_login is not None:
                from_file = LoginActivity(record.last_login, record.last_ip or "unknown")
                if current is None or _is_newer(from_file.last_login, current.last_login):
                    current = from_file
            if current is not None:
                activity[user] = current
        return activity

    def _merged(self, config: Configuration) -> Configuration:
        """Copy of ``config`` with login activity written into user records."""
        users: dict[str, UserRecord] = {}
        for user, record in config.users.items():
            entry = self._activity.get(user)
            if entry is not None:
                record = record.model_copy(
                    update={"last_login": entry.last_login, "last_ip": entry.last_ip}
                )
            users[user] = record
        return config.model_copy(update={"users": users})

    async def _write(self, config: Configuration) -> Configuration:
        """Merge activity into ``config``, persist it and make it current.

        Must be called with the lock held.
        """
        merged = self._merged(config)
        content = dump_config(merged.to_dict())
        try:
            await asyncio.to_thread(self.path.write_text, content, encoding="utf-8")
        except OSError as e:
            logger.error("Error saving config", path=str(self.path), error=str(e))
            raise ConfigError(f"Failed to write {self.path}: {e}") from e
        self._config = merged
        logger.info("Saved configuration", path=str(self.path))
        return merged

    async def save(self) -> None:
        """Persist the current configuration with login activity merged in.

        Raises:
            ConfigError: If nothing is loaded or the file cannot be written.
        """
        async with self._lock:
            await self._write(self.config)

    async def record_activity(
        self,
        user: str,
        ip: str,
        at: datetime | None = None,
    ) -> None:
        """Record a successful login and persist it.

        The activity entry is kept in memory even when the write fails, so
        the next successful save still carries it.

        A user removed while the login waited for the lock gets no entry.

        Raises:
            ConfigError: If the file cannot be written.
        """
        async with self._lock:
            if user not in self.config.users:
                logger.info("Skipping login activity for removed user", user=user)
                return
            self._activity[user] = LoginActivity(last_login=at or self._clock(), last_ip=ip)
            await self._write(self.config)

    async def create_user(self, user: str, record: UserRecord) -> bool:
        """Add a user record and persist the result.

        Returns:
            True if created, False if the user already exists.

        Raises:
            ConfigError: If the file cannot be written; the in-memory
                configuration is then unchanged.
        """
        async with self._lock:
            config = self.config
            if user in config.users:
                return False
            users = dict(config.users)
            users[user] = record
            await self._write(config.model_copy(update={"users": users}))
            return True

    async def update_user(
        self,
        user: str,
        change: Callable[[UserRecord], UserRecord],
    ) -> bool:
        """Replace a user record with ``change(record)`` and persist the result.

        The current record is read under the lock, so ``change`` always sees
        the latest reloaded or edited version.

        Returns:
            True if updated, False if the user does not exist.

        Raises:
            ConfigError: If the file cannot be written.
        """
        async with self._lock:
            config = self.config
            record = config.users.get(user)
            if record is None:
                return False
            users = dict(config.users)
            users[user] = change(record)
            await self._write(config.model_copy(update={"users": users}))
            return True

    async def delete_user(self, user: str) -> bool:
        """Remove a user and its activity entry, then persist.

        Returns:
            True if deleted, False if the user does not exist.

        Raises:
            ConfigError: If the file cannot be written; the user and its
                activity entry are then kept.
        """
        async with self._lock:
            config = self.config
            if user not in config.users:
                return False
            users = {name: rec for name, rec in config.users.items() if name != user}
            dropped = self._activity.pop(user, None)
            try:
                await self._write(config.model_copy(update={"users": users}))
            except ConfigError:
                if dropped is not None:
                    self._activity[user] = dropped
                raise
            return True


def _is_newer(candidate: datetime, reference: datetime) -> bool:
    """Compare timestamps that may mix naive and aware values."""
    if (candidate.tzinfo is None) != (reference.tzinfo is None):
        candidate = candidate.replace(tzinfo=candidate.tzinfo or UTC)
        reference = reference.replace(tzinfo=reference.tzinfo or UTC)
    return candidate > reference
