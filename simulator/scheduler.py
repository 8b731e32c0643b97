"""
Transit Scheduler - the only source of time in the simulation.

Every delayed transition (a packet crossing the Internet, a receiver answering
a SYN, a lost packet fading out) is a callback on a virtual millisecond clock:

    now = 0
    schedule(1500, carry)    -> handle 1, due at 1500
    schedule(500, answer)    -> handle 2, due at 500
    advance(1000)            -> fires answer, now = 1000
    advance(1000)            -> fires carry,  now = 2000

Callbacks fire in (due time, scheduling order) order, so two callbacks due at
the same instant run first-in first-out. Every callback belongs to a group and
a whole group can be cancelled at once; a phase reset cancels its group before
any state is thrown away, which is what keeps late callbacks from touching a
discarded connection.

After each fired callback the scheduler runs its observers. The simulation
context registers its membership-diff pass there, so anything a callback moved
is noticed before the next callback runs.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledCallback:
    """A callback scheduled for a future virtual instant."""
    due_ms: int
    order: int
    handle: int = field(compare=False)
    callback: Callable[[], None] = field(compare=False)
    group: str = field(compare=False, default="default")
    label: Optional[str] = field(compare=False, default=None)
    cancelled: bool = field(compare=False, default=False)


class TransitScheduler:
    """
    Cooperative, cancelable timers on one logical timeline.

    No threads and no wall clock: time only moves when advance() or
    run_until_idle() is called. Exceptions raised by a callback propagate to
    the caller of advance().
    """

    DEFAULT_RUN_LIMIT = 10000

    def __init__(self):
        self._now_ms = 0
        self._queue: List[ScheduledCallback] = []  # heap
        self._live: Dict[int, ScheduledCallback] = {}
        self._next_handle = 1
        self._counter = 0
        self._observers: List[Callable[[], None]] = []
        self._closed = False

    @property
    def now_ms(self) -> int:
        """Current virtual time."""
        return self._now_ms

    @property
    def closed(self) -> bool:
        return self._closed

    def add_observer(self, observer: Callable[[], None]):
        """Register a function to run after every fired callback."""
        self._observers.append(observer)

    def schedule(self, delay_ms: int, callback: Callable[[], None],
                 group: str = "default", label: Optional[str] = None) -> int:
        """
        Schedule a callback after a delay.

        Args:
            delay_ms: Virtual milliseconds from now (0 fires on the next step)
            callback: Function taking no arguments
            group: Batch the callback can be cancelled with
            label: Name for logging

        Returns:
            Handle usable with cancel()
        """
        if self._closed:
            raise RuntimeError("Scheduler has been shut down")
        if delay_ms < 0:
            raise ValueError(f"Invalid delay: {delay_ms}")

        handle = self._next_handle
        self._next_handle += 1
        self._counter += 1

        entry = ScheduledCallback(
            due_ms=self._now_ms + delay_ms,
            order=self._counter,
            handle=handle,
            callback=callback,
            group=group,
            label=label,
        )
        heapq.heappush(self._queue, entry)
        self._live[handle] = entry

        logger.debug(
            f"t={self._now_ms} schedule #{handle} {label or 'callback'} "
            f"[{group}] at {entry.due_ms}")
        return handle

    def cancel(self, handle: int) -> bool:
        """
        Cancel one callback.

        Returns:
            True if the callback was pending, False if it already fired or
            was cancelled
        """
        entry = self._live.pop(handle, None)
        if entry is None:
            return False
        entry.cancelled = True
        return True

    def cancel_group(self, group: str) -> int:
        """Cancel every pending callback in a group. Returns how many."""
        handles = [h for h, e in self._live.items() if e.group == group]
        for handle in handles:
            self.cancel(handle)
        if handles:
            logger.debug(f"t={self._now_ms} cancelled {len(handles)} [{group}]")
        return len(handles)

    def cancel_all(self) -> int:
        handles = list(self._live)
        for handle in handles:
            self.cancel(handle)
        return len(handles)

    def pending(self, group: Optional[str] = None) -> int:
        """Number of live callbacks, optionally within one group."""
        if group is None:
            return len(self._live)
        return sum(1 for e in self._live.values() if e.group == group)

    def next_due(self) -> Optional[int]:
        """Due time of the earliest live callback."""
        self._discard_cancelled()
        return self._queue[0].due_ms if self._queue else None

    def advance(self, ms: int) -> int:
        """
        Move the clock forward, firing everything that comes due.

        Callbacks scheduled while advancing fire too if they fall inside the
        window.

        Returns:
            Number of callbacks fired
        """
        if ms < 0:
            raise ValueError(f"Cannot move time backwards: {ms}")
        target = self._now_ms + ms
        fired = 0
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self._fire_next()
            fired += 1
        if not self._closed:
            self._now_ms = target
        return fired

    def run_until_idle(self, limit: int = DEFAULT_RUN_LIMIT) -> int:
        """
        Fire callbacks until none are left.

        Raises:
            RuntimeError: More than limit callbacks fired (runaway rescheduling)
        """
        fired = 0
        while self.next_due() is not None:
            if fired >= limit:
                raise RuntimeError(f"Scheduler still busy after {limit} callbacks")
            self._fire_next()
            fired += 1
        return fired

    def shutdown(self):
        """Cancel everything; nothing may be scheduled or fire afterwards."""
        count = self.cancel_all()
        self._queue.clear()
        self._closed = True
        logger.debug(f"t={self._now_ms} scheduler shut down ({count} cancelled)")

    def _discard_cancelled(self):
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)

    def _fire_next(self):
        entry = heapq.heappop(self._queue)
        self._live.pop(entry.handle, None)
        self._now_ms = entry.due_ms

        logger.debug(f"t={self._now_ms} fire #{entry.handle} {entry.label or 'callback'}")
        entry.callback()

        for observer in self._observers:
            if self._closed:
                break
            observer()

    def __str__(self) -> str:
        return f"TransitScheduler(now={self._now_ms}ms, pending={len(self._live)})"
