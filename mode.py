"""Run-mode switch shared by the scheduler, the gather task and the dashboard."""

import threading

from config import BotRunMode
from botlog import get_logger

_log = get_logger("mode")


class ModeController:
    """Holds the current BotRunMode and notifies subscribers on change.

    The lock covers only the compare-and-set. Subscribers run afterwards on
    the caller's thread, each receiving ``(new_mode, reason)``. Requesting
    the mode that is already active does nothing.
    """

    def __init__(self, initial=BotRunMode.RUNNING):
        self._mode = initial
        self._lock = threading.Lock()
        self._subscribers = []

    @property
    def current_mode(self):
        with self._lock:
            return self._mode

    def subscribe(self, callback):
        self._subscribers.append(callback)

    def unsubscribe(self, callback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def enter_running(self, reason):
        return self._set_mode(BotRunMode.RUNNING, reason)

    def enter_army_monitor(self, reason):
        return self._set_mode(BotRunMode.ARMY_MONITOR, reason)

    def _set_mode(self, mode, reason):
        with self._lock:
            previous = self._mode
            if previous == mode:
                return False
            self._mode = mode

        _log.info("Bot mode changed: %s -> %s. Reason: %s", previous.value, mode.value, reason)
        for callback in list(self._subscribers):
            try:
                callback(mode, reason)
            except Exception as e:
                _log.error("Mode change subscriber failed: %s", e, exc_info=True)
        return True
