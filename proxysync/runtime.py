from __future__ import annotations

import os
import queue
import time
from dataclasses import asdict, dataclass, field
from threading import Lock, Thread
from typing import Any, Callable, Protocol, Sequence

from .coalescer import Coalescer, DelayedTask, Scheduler, TransitionEvent
from .directory import DirectoryUnavailable, MalformedRecord, Service
from .eventlog import log_event, utc_now
from .render import write_atomic


class Directory(Protocol):
    def list_running_http_services(self, strict: bool = False) -> list[Service]: ...


class Renderer(Protocol):
    def render(self, services: Sequence[Service]) -> str: ...


class Proxy(Protocol):
    def reload(self) -> bool: ...


@dataclass
class RuntimeStatus:
    connected: bool = False
    in_flight: list[str] = field(default_factory=list)
    dirty: bool = False
    regeneration_pending: bool = False
    reload_pending: bool = False
    events_seen: int = 0
    regenerations: int = 0
    skipped_cycles: int = 0
    reloads: int = 0
    failed_reloads: int = 0
    last_regeneration_at: str | None = None
    last_regeneration_ok: bool | None = None
    last_error: str | None = None
    services: list[str] = field(default_factory=list)


def _stat_key(path: str) -> tuple[int, int, int] | None:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


# Inbox message kinds
EVENT = "event"
FILE_CHANGED = "file_changed"
BOOTSTRAP = "bootstrap"
REGENERATE = "regenerate"
CONNECTED = "connected"
WATCH = "watch"
STOP = "stop"


class ControlLoop:
    """Single thread that owns the coalescer and every write to the config file.

    Producers (stream, file watcher, status API) only post messages; the loop
    handles one message at a time and fires due timers in between, so a
    regeneration never overlaps another regeneration or a reload.
    """

    def __init__(
        self,
        directory: Directory,
        renderer: Renderer,
        proxy: Proxy,
        output_path: str,
        settle_delay: float = 5.0,
        reload_delay: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = directory
        self.renderer = renderer
        self.proxy = proxy
        self.output_path = output_path
        self.reload_delay = reload_delay

        self.scheduler = Scheduler(clock)
        self.coalescer = Coalescer(self.scheduler, self.regenerate, settle_delay)

        self._inbox: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._reload_task: DelayedTask | None = None
        self._written: tuple[int, int, int] | None = None
        self._thr: Thread | None = None
        self._stopped = False

        self._lock = Lock()
        self._status = RuntimeStatus()

    # --- producers (any thread) ---

    def post_event(self, event: TransitionEvent) -> None:
        self._inbox.put((EVENT, event))

    def post_file_changed(self) -> None:
        self._inbox.put((FILE_CHANGED, None))

    def post_bootstrap(self) -> None:
        self._inbox.put((BOOTSTRAP, None))

    def post_connected(self, connected: bool) -> None:
        self._inbox.put((CONNECTED, connected))

    def request_regeneration(self) -> None:
        self._inbox.put((REGENERATE, None))

    def post_watch_start(self, start: Callable[[], None]) -> None:
        """Run start on the loop thread once earlier messages (the bootstrap) are handled."""
        self._inbox.put((WATCH, start))

    def status(self) -> dict[str, Any]:
        with self._lock:
            return asdict(self._status)

    # --- thread lifecycle ---

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stopped = False
        self._thr = Thread(target=self.run_forever, name="proxysync-loop", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._inbox.put((STOP, None))
        if self._thr:
            self._thr.join(timeout)

    def run_forever(self) -> None:
        log_event("INFO", "Control loop started")
        while not self._stopped:
            self.step()
        log_event("INFO", "Control loop stopped")

    def step(self, timeout: float | None = None) -> None:
        """Wait for one message (or the next timer), handle it, fire due timers."""
        wait = self.scheduler.time_until_next()
        if timeout is not None:
            wait = timeout if wait is None else min(wait, timeout)
        try:
            kind, payload = self._inbox.get(timeout=wait)
        except queue.Empty:
            pass
        else:
            self._guarded(self.dispatch, kind, payload)
        self._guarded(self.scheduler.run_due)
        self._publish()

    def drain(self) -> None:
        """Handle every queued message without waiting; timers fire if due."""
        while True:
            try:
                kind, payload = self._inbox.get_nowait()
            except queue.Empty:
                break
            self._guarded(self.dispatch, kind, payload)
        self._guarded(self.scheduler.run_due)
        self._publish()

    def _guarded(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            log_event("ERROR", f"Control loop handler failed: {type(e).__name__}: {e}")
            with self._lock:
                self._status.last_error = f"{type(e).__name__}: {e}"

    # --- handlers (loop thread only) ---

    def dispatch(self, kind: str, payload: Any = None) -> None:
        if kind == EVENT:
            with self._lock:
                self._status.events_seen += 1
            self.coalescer.handle(payload)
        elif kind == FILE_CHANGED:
            self.on_file_changed()
        elif kind == BOOTSTRAP:
            log_event("INFO", "Init nginx config")
            self.regenerate()
        elif kind == REGENERATE:
            log_event("INFO", "Regeneration requested")
            self.coalescer.mark_stale()
        elif kind == WATCH:
            payload()
        elif kind == CONNECTED:
            with self._lock:
                self._status.connected = bool(payload)
        elif kind == STOP:
            self._stopped = True
        else:
            log_event("WARN", f"Ignoring unknown control message '{kind}'")

    def regenerate(self) -> bool:
        """One fetch-render-write-reload cycle. Returns False if the cycle was skipped."""
        try:
            services = self.directory.list_running_http_services()
            text = self.renderer.render(services)
        except DirectoryUnavailable as e:
            return self._skip("WARN", f"Service directory unavailable, skipping regeneration: {e}")
        except MalformedRecord as e:
            return self._skip("ERROR", f"Could not render nginx config, skipping regeneration: {e}")

        try:
            write_atomic(self.output_path, text)
        except OSError as e:
            return self._skip("ERROR", f"Could not write {self.output_path}: {e}")

        self._written = _stat_key(self.output_path)
        names = [s.name for s in services]
        log_event("INFO", f"Wrote nginx config for {len(services)} service(s): {', '.join(names) or '-'}")
        with self._lock:
            self._status.regenerations += 1
            self._status.last_regeneration_at = utc_now()
            self._status.last_regeneration_ok = True
            self._status.services = names

        self._reload()
        return True

    def _skip(self, level: str, message: str) -> bool:
        log_event(level, message)
        with self._lock:
            self._status.skipped_cycles += 1
            self._status.last_regeneration_at = utc_now()
            self._status.last_regeneration_ok = False
            self._status.last_error = message
        return False

    def on_file_changed(self) -> None:
        if self._written is not None and _stat_key(self.output_path) == self._written:
            # Our own write.
            return
        log_event("INFO", f"{self.output_path} modified, reloading in {self.reload_delay}s")
        if self._reload_task is not None:
            self._reload_task.cancel()
        self._reload_task = self.scheduler.call_later(self.reload_delay, self._reload)

    def _reload(self) -> None:
        ok = self.proxy.reload()
        with self._lock:
            if ok:
                self._status.reloads += 1
            else:
                self._status.failed_reloads += 1

    def _publish(self) -> None:
        c = self.coalescer
        with self._lock:
            self._status.in_flight = list(c.in_flight)
            self._status.dirty = c.dirty
            self._status.regeneration_pending = c.regeneration_pending
            self._status.reload_pending = self._reload_task is not None and self._reload_task.active
