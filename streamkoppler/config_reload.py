"""Hot reload of the relay configuration file via watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import RelayConfig

LOG = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.25


def is_config_event(path: str | bytes | Path | None, config_name: str) -> bool:
    """True when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", "replace")
    return Path(path).name == config_name


class _ChangeSignal(FileSystemEventHandler):
    """Forwards matching watchdog events from the observer thread to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, config_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._config_name = config_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = (getattr(event, "src_path", None), getattr(event, "dest_path", None))
        if any(is_config_event(path, self._config_name) for path in paths):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigReloadWatcher:
    """Reload the config file on change and hand the result to `apply`.

    A file that fails to load or validate is logged and ignored; the running
    configuration stays in place.
    """

    def __init__(
        self,
        *,
        config_file: Path,
        loader: Callable[[str], RelayConfig],
        apply: Callable[[RelayConfig], Awaitable[None]],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self._config_file = config_file
        self._loader = loader
        self._apply = apply
        self._debounce_seconds = debounce_seconds
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        try:
            return self._config_file.stat().st_mtime
        except FileNotFoundError:
            return None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Load and apply the config when its mtime moved (or `force`)."""
        mtime = self._current_mtime()
        if mtime is None:
            return False
        if not force and mtime == self._mtime:
            return False

        LOG.info("configuration change detected at %s, reloading", self._config_file)
        new_cfg = self._loader(str(self._config_file))
        await self._apply(new_cfg)
        self._mtime = mtime
        LOG.info("configuration reloaded")
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        observer = Observer()
        observer.schedule(
            _ChangeSignal(loop, changed, self._config_file.name),
            str(self._config_file.parent.resolve()),
            recursive=False,
        )
        observer.start()
        try:
            while True:
                await changed.wait()
                # Editors often write a file in several steps.
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                try:
                    await self.reload_if_changed(force=True)
                except Exception as exc:
                    LOG.warning("configuration reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            with contextlib.suppress(RuntimeError):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Watch until cancelled, restarting the observer if it fails."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
