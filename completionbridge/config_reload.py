"""Hot reload of the bridge config file, driven by watchdog events."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

# Editors often save in several filesystem steps; wait for them to finish.
DEFAULT_SETTLE_SECONDS = 0.25


def watchdog_path_matches_config(path: str | bytes | Path | None, watch_name: str) -> bool:
    """Return true when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == watch_name


def config_fingerprint(config_file: Path) -> str | None:
    """Digest of the file contents, or None while the file is absent."""
    try:
        return hashlib.sha256(config_file.read_bytes()).hexdigest()
    except FileNotFoundError:
        return None


class _ConfigEventHandler(FileSystemEventHandler):
    """Wake the reload loop (thread-safely) for events touching the config file."""

    def __init__(self, *, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, watch_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._watch_name = watch_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if getattr(event, "is_directory", False):
            return
        for path in (getattr(event, "src_path", None), getattr(event, "dest_path", None)):
            if watchdog_path_matches_config(path, self._watch_name):
                self._loop.call_soon_threadsafe(self._changed.set)
                return


class ConfigReloadWatcher:
    """Re-apply the bridge config whenever the file's contents change.

    A reload that raises leaves the running config in place; the next content
    change is tried again.
    """

    def __init__(
        self,
        *,
        config_file: Path,
        on_reload: Callable[[Path], Awaitable[None]],
        logger: logging.Logger,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        self._config_file = config_file
        self._on_reload = on_reload
        self._log = logger
        self._settle_seconds = settle_seconds
        self._fingerprint = config_fingerprint(config_file)

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload when the contents differ from the last applied version."""
        fingerprint = config_fingerprint(self._config_file)
        if fingerprint is None:
            self._log.warning("config file %s disappeared; keeping current config", self._config_file)
            return False
        if not force and fingerprint == self._fingerprint:
            return False

        self._log.info("config change detected at %s, reloading", self._config_file)
        await self._on_reload(self._config_file)
        self._fingerprint = fingerprint
        self._log.info("config reloaded upstream settings from %s", self._config_file)
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigEventHandler(loop=loop, changed=changed, watch_name=self._config_file.name)

        observer = Observer()
        observer.schedule(handler, str(self._config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                await asyncio.sleep(self._settle_seconds)
                changed.clear()
                try:
                    await self.reload_if_changed()
                except Exception as exc:
                    self._log.warning("config reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            # join() blocks; run it off the event loop.
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Keep a watchdog observer running, restarting it after failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
