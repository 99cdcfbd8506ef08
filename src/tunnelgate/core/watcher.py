"""Hot reload of the configuration file.

Editors (and the store's own saves) emit several raw change events per
logical edit. ``ReloadDebouncer`` collapses a burst into a single reload:

    idle --notify--> pending(deadline) --due--> reloading --finish--> idle
                        ^    |                      |
                        +----+ notify resets        +--> pending when notified
                               the deadline              during the reload

The debouncer is a plain state machine over explicit timestamps.
``ConfigWatcher`` drives it from watchfiles notifications and the event loop
clock.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from watchfiles import Change, awatch

from tunnelgate.core.store import ConfigError

if TYPE_CHECKING:
    from tunnelgate.core.store import ConfigStore

logger = structlog.get_logger()

DEFAULT_RELOAD_DEBOUNCE = 1.0


class DebounceState(Enum):
    """States of the reload debouncer."""

    IDLE = "idle"
    PENDING = "pending"
    RELOADING = "reloading"


@dataclass
class ReloadDebouncer:
    """Timer-reset state machine deciding when a reload is due."""

    delay: float = DEFAULT_RELOAD_DEBOUNCE
    state: DebounceState = DebounceState.IDLE
    deadline: float | None = None

    def notify(self, now: float) -> None:
        """Register a change notification, (re)starting the quiet period."""
        self.deadline = now + self.delay
        if self.state is DebounceState.IDLE:
            self.state = DebounceState.PENDING

    def due(self, now: float) -> bool:
        return (
            self.state is DebounceState.PENDING
            and self.deadline is not None
            and now >= self.deadline
        )

    def begin_reload(self) -> None:
        if self.state is not DebounceState.PENDING:
            raise RuntimeError(f"Cannot start reload from state {self.state.value}")
        self.state = DebounceState.RELOADING
        self.deadline = None

    def finish_reload(self) -> None:
        # A notification that arrived mid-reload left a deadline behind.
        self.state = DebounceState.PENDING if self.deadline is not None else DebounceState.IDLE


class ConfigWatcher:
    """Watches the configuration file and reloads the store after edits.

    The parent directory is watched rather than the file itself because many
    editors save by writing a temporary file and renaming it over the
    original.
    """

    def __init__(
        self,
        store: ConfigStore,
        delay: float = DEFAULT_RELOAD_DEBOUNCE,
    ) -> None:
        self._store = store
        self._debouncer = ReloadDebouncer(delay=delay)
        self._timer: asyncio.TimerHandle | None = None
        self._watch_task: asyncio.Task | None = None
        self._reload_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._enabled = False
        self.reload_count = 0

    @property
    def debouncer(self) -> ReloadDebouncer:
        return self._debouncer

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        """Begin watching. Failures to watch disable the watcher, never the server."""
        self._stop_event.clear()
        self._enabled = True
        self._watch_task = asyncio.create_task(self._watch_loop())
        logger.info("Watching for config file changes", path=str(self._store.path))

    async def stop(self) -> None:
        self._stop_event.set()
        self._enabled = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in (self._watch_task, self._reload_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._watch_task = None
        self._reload_task = None

    def _is_config_change(self, change: Change, path: str) -> bool:
        return Path(path).name == self._store.path.name

    async def _watch_loop(self) -> None:
        directory = self._store.path.resolve().parent
        try:
            async for _changes in awatch(
                directory,
                watch_filter=self._is_config_change,
                stop_event=self._stop_event,
                debounce=50,
                step=50,
            ):
                self.notify()
        except asyncio.CancelledError:
            raise
        except (OSError, RuntimeError) as e:
            self._enabled = False
            logger.error(
                "Could not watch config file, hot reload disabled",
                path=str(self._store.path),
                error=str(e),
            )

    def notify(self) -> None:
        """Feed one change notification into the debouncer."""
        loop = asyncio.get_running_loop()
        self._debouncer.notify(loop.time())
        logger.debug("Config change detected", deadline=self._debouncer.deadline)
        if self._debouncer.state is DebounceState.PENDING:
            self._arm_timer()

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        delay = max(0.0, (self._debouncer.deadline or loop.time()) - loop.time())
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        loop = asyncio.get_running_loop()
        if not self._debouncer.due(loop.time()):
            if self._debouncer.state is DebounceState.PENDING:
                self._arm_timer()
            return
        self._debouncer.begin_reload()
        self._reload_task = asyncio.create_task(self._reload())

    async def _reload(self) -> None:
        logger.info("Detected change in config file, reloading", path=str(self._store.path))
        try:
            await self._store.load()
        except ConfigError as e:
            logger.error("Failed to reload config, keeping previous configuration", error=str(e))
        else:
            self.reload_count += 1
            logger.info("Configuration reloaded successfully")
        finally:
            self._debouncer.finish_reload()
            if self._debouncer.state is DebounceState.PENDING:
                self._arm_timer()
