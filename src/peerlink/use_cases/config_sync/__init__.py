"""
Config Sync

Ships the client's own configuration to the server as deltas. Updates in the
same tick coalesce into one flush, and a flush sends only what changed since
the last configuration the server saw.
"""

import copy
from typing import Callable, Optional
from ...tools.delta import diff
from ...tools.logger import log_debug
from ...tools.timers import ResettableTimer

FLUSH_DELAY = 0.1


class ConfigSync:

    def __init__(self, collect: Callable[[], dict], send: Callable[[dict], None], delay: float = FLUSH_DELAY):
        self._collect = collect
        self._send = send
        self._timer = ResettableTimer(delay, self.flush)
        self._baseline: Optional[dict] = None
        self.enabled = False

    def set_baseline(self, config: dict):
        """Record the configuration the server already has and start syncing."""
        self._baseline = copy.deepcopy(config)
        self.enabled = True

    def update_configuration(self):
        if not self.enabled:
            return
        self._timer.schedule()

    def flush(self):
        if not self.enabled:
            return
        config = self._collect()
        delta = diff(self._baseline, config)
        self._baseline = copy.deepcopy(config)
        if delta is None or not delta.added:
            return
        log_debug(f"cfg={delta.added}")
        self._send(delta.added)

    def disable(self):
        self.enabled = False
        self._timer.cancel()
        self._baseline = None
