"""
Timers running on the asyncio event loop.

ResettableTimer defers one callback and restarts the delay when rescheduled.
AggregatingTimers collapses bursts of keyed events into the last one.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from .logger import log_error


def _run_callback(callback: Callable):
    try:
        callback()
    except Exception as e:
        log_error(f"Error in timer callback: {e}")


class ResettableTimer:
    """Runs callback once, delay seconds after the latest schedule() call."""

    def __init__(self, delay: float, callback: Callable):
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: Optional[float] = None):
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(
            self.delay if delay is None else delay, self._fire
        )

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        _run_callback(self._callback)


@dataclass
class _AggregatingEntry:
    counter: int
    handle: asyncio.TimerHandle


class AggregatingTimers:
    """
    Keyed debouncing: a new add() for a key replaces the pending callback.

    To keep a continuous stream of events from starving the callback, once
    more than max_coalesced events have been collapsed for a key the
    callback runs immediately.
    """

    DEFAULT_PERIOD = 0.1
    MAX_COALESCED = 20

    def __init__(self, period: float = DEFAULT_PERIOD, max_coalesced: int = MAX_COALESCED):
        self.period = period
        self.max_coalesced = max_coalesced
        self._timers: Dict[str, _AggregatingEntry] = {}

    def add(self, key: str, callback: Callable, period: Optional[float] = None):
        counter = 0
        entry = self._timers.pop(key, None)
        if entry is not None:
            entry.handle.cancel()
            counter = entry.counter

        if counter > self.max_coalesced:
            _run_callback(callback)
            return

        loop = asyncio.get_running_loop()
        handle = loop.call_later(
            self.period if period is None else period, self._fire, key, callback
        )
        self._timers[key] = _AggregatingEntry(counter=counter + 1, handle=handle)

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    def cancel_all(self):
        for entry in self._timers.values():
            entry.handle.cancel()
        self._timers.clear()

    def _fire(self, key: str, callback: Callable):
        self._timers.pop(key, None)
        _run_callback(callback)
