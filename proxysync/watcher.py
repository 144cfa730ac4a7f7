from __future__ import annotations

import os
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .eventlog import log_event


def _as_str(path: str | bytes) -> str:
    # watchdog can hand back bytes paths
    return path if isinstance(path, str) else path.decode()


class ConfigFileHandler(FileSystemEventHandler):
    """Forward changes of one file to a callback, ignoring its siblings."""

    def __init__(self, path: str, on_change: Callable[[], None]):
        super().__init__()
        self.path = os.path.abspath(path)
        self.on_change = on_change

    def _matches(self, path: str | bytes) -> bool:
        return bool(path) and os.path.abspath(_as_str(path)) == self.path

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self.on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self.on_change()

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic replacement shows up as a move onto the watched path.
        if not event.is_directory and self._matches(getattr(event, "dest_path", "")):
            self.on_change()


class ConfigFileWatcher:
    """Watch the rendered config file for writes by anyone.

    The parent directory is observed (non-recursive) so replacements of the
    file by rename are seen as well as in-place edits.
    """

    def __init__(self, path: str, on_change: Callable[[], None], observer_factory: Callable[[], Observer] = Observer):
        self.path = os.path.abspath(path)
        self.handler = ConfigFileHandler(self.path, on_change)
        self._observer_factory = observer_factory
        self.observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self.observer is not None

    def start(self) -> None:
        if self.observer is not None:
            return
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        observer = self._observer_factory()
        observer.schedule(self.handler, directory, recursive=False)
        observer.daemon = True
        observer.start()
        self.observer = observer
        log_event("INFO", f"Watching {self.path} for external changes")

    def stop(self) -> None:
        if self.observer is None:
            return
        self.observer.stop()
        self.observer.join(timeout=5)
        self.observer = None
