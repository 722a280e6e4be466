"""
Module for detecting a stalled push stream.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class StallWatchdog:
    """Periodically checks a stream's last activity and reports a stall once."""

    def __init__(self, last_activity: Callable[[], float], is_armed: Callable[[], bool],
                 on_stall: Callable[[], None], stall_after: float = 8.0,
                 check_interval: float = 1.2, clock: Callable[[], float] = time.monotonic):
        """Initialize the watchdog.

        Args:
            last_activity: Returns the clock value of the last received event
            is_armed: Returns whether a stall currently matters
            on_stall: Called once when the stream has been silent too long
            stall_after: Seconds of silence counted as a stall
            check_interval: Seconds between checks
            clock: Clock matching the one behind last_activity
        """
        self._last_activity = last_activity
        self._is_armed = is_armed
        self._on_stall = on_stall
        self._stall_after = stall_after
        self._check_interval = check_interval
        self._clock = clock
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start watching on the running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.ensure_future(self._watch(self._stop_event))

    def stop(self) -> None:
        """Stop watching; the pending check exits without firing."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def _watch(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), self._check_interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break

            if not self._is_armed():
                continue
            idle = self._clock() - self._last_activity()
            if idle < self._stall_after:
                continue

            logger.warning(f"Stream silent for {idle:.1f}s, treating it as stalled")
            stop_event.set()
            self._on_stall()
