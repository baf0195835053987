"""Watchdog-based config hot reload."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import KopplerConfig, load_config

LOG = logging.getLogger(__name__)


def event_targets_config(path: str | bytes | Path | None, watch_name: str) -> bool:
    """Return true when an event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == watch_name


class _ConfigEventHandler(FileSystemEventHandler):
    """Wake the async reload loop when the config file changes."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, watch_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._watch_name = watch_name

    def _touch(self, path: str | bytes | None) -> None:
        if event_targets_config(path, self._watch_name):
            self._loop.call_soon_threadsafe(self._changed.set)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"modified", "created", "moved", "deleted"}:
            return
        self._touch(event.src_path)
        self._touch(getattr(event, "dest_path", None))


class ConfigReloadWatcher:
    """Reload one config file on change and hand the new value to a callback.

    A file that fails to load or validate is logged and skipped; the running
    configuration stays in place.
    """

    def __init__(
        self,
        *,
        config_file: Path,
        on_reload: Callable[[KopplerConfig], Awaitable[None]],
        loader: Callable[[str], KopplerConfig] = load_config,
    ) -> None:
        self._config_file = config_file
        self._on_reload = on_reload
        self._loader = loader
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self._config_file.stat().st_mtime if self._config_file.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload when the mtime moved (or always with `force`)."""
        mtime = self._current_mtime()
        if not force and (mtime is None or mtime == self._mtime):
            return False
        LOG.info("Configuration change detected at %s, reloading...", self._config_file)
        try:
            new_cfg = self._loader(str(self._config_file))
        except Exception as exc:
            LOG.warning("Configuration reload failed, keeping current config: %s", exc)
            return False
        await self._on_reload(new_cfg)
        self._mtime = mtime
        LOG.info("Configuration reloaded successfully")
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        watch_dir = self._config_file.parent.resolve()

        observer = Observer()
        observer.schedule(_ConfigEventHandler(loop, changed, self._config_file.name), str(watch_dir), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                changed.clear()
                await self.reload_if_changed(force=True)
        finally:
            observer.stop()
            # join() blocks; keep it off the event loop.
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Watch continuously, restarting the observer after failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
