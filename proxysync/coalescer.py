from __future__ import annotations

import heapq
import itertools
import time
from dataclasses import dataclass
from typing import Callable

from .eventlog import log_event


SERVICE_EVENT = "service"
TRANSITIONING_STATES = frozenset({"Scaling", "Redeploying", "Stopping", "Starting", "Terminating"})
TERMINAL_STATES = frozenset({"Running", "Stopped", "Not running", "Terminated"})


@dataclass(frozen=True)
class TransitionEvent:
    service_id: str
    event_type: str
    state: str
    timestamp: str | None = None


class DelayedTask:
    """Handle for an action scheduled on a Scheduler."""

    def __init__(self, deadline: float, action: Callable[[], None]):
        self.deadline = deadline
        self.action = action
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        # No-op once fired or cancelled.
        if not self.fired:
            self.cancelled = True


class Scheduler:
    """Deadline queue driven by the control loop; never runs anything by itself."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._heap: list[tuple[float, int, DelayedTask]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, action: Callable[[], None]) -> DelayedTask:
        task = DelayedTask(self.clock() + max(0.0, delay), action)
        heapq.heappush(self._heap, (task.deadline, next(self._seq), task))
        return task

    def _drop_inactive(self) -> None:
        while self._heap and not self._heap[0][2].active:
            heapq.heappop(self._heap)

    def time_until_next(self) -> float | None:
        self._drop_inactive()
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self.clock())

    def run_due(self) -> int:
        """Fire every active task whose deadline has passed, earliest first."""
        fired = 0
        while True:
            self._drop_inactive()
            if not self._heap or self._heap[0][0] > self.clock():
                return fired
            _, _, task = heapq.heappop(self._heap)
            task.fired = True
            fired += 1
            task.action()


class Coalescer:
    """Decides when the fleet is quiet enough to regenerate the proxy config.

    Services move into ``in_flight`` on a transitioning state and out of it on
    a terminal state. Once at least one transition has settled and nothing is
    in flight, a regeneration is armed ``settle_delay`` seconds out; any new
    transition cancels it and any later settle pushes it back.

    Only the control loop thread may call into this object.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        regenerate: Callable[[], object],
        settle_delay: float = 5.0,
    ):
        self.scheduler = scheduler
        self.regenerate = regenerate
        self.settle_delay = settle_delay
        self.in_flight: list[str] = []
        self.dirty = False
        self.pending: DelayedTask | None = None

    @property
    def regeneration_pending(self) -> bool:
        return self.pending is not None and self.pending.active

    def handle(self, event: TransitionEvent) -> bool:
        """Apply one event. Returns True if a regeneration was (re)armed."""
        if event.event_type != SERVICE_EVENT:
            return False

        if event.state in TRANSITIONING_STATES:
            log_event("INFO", f"Service is {event.state}...", service_id=event.service_id)
            self._cancel_pending()
            self.in_flight.append(event.service_id)
        elif event.state in TERMINAL_STATES:
            if event.service_id in self.in_flight:
                log_event("INFO", f"Service is {event.state}!", service_id=event.service_id)
                self.in_flight.remove(event.service_id)
                self._cancel_pending()
                self.dirty = True

        return self._arm_if_quiescent()

    def mark_stale(self) -> bool:
        """Request a regeneration as soon as nothing is in flight."""
        self.dirty = True
        return self._arm_if_quiescent()

    def _arm_if_quiescent(self) -> bool:
        if not (self.dirty and not self.in_flight):
            return False
        log_event("INFO", "Services changed - rewriting nginx config")
        self.dirty = False
        self._cancel_pending()
        self.pending = self.scheduler.call_later(self.settle_delay, self._fire)
        return True

    def _fire(self) -> None:
        self.pending = None
        self.regenerate()

    def _cancel_pending(self) -> None:
        if self.pending is not None:
            self.pending.cancel()
            self.pending = None
