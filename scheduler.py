"""Task scheduler: runs tasks while Running, polls the army monitor otherwise.

Key exports:
    Scheduler — run(cancel), request_immediate_army_check(), next_army_check_at
"""

import threading
import time

import config
from config import BotRunMode
from cancellation import OperationCancelled
from botlog import get_logger

_log = get_logger("scheduler")


class Scheduler:
    """Single-worker loop over the registered tasks.

    In Running mode each task (ascending ``priority``) gets ``can_run`` then
    ``execute``; the pass stops early when a task switches the mode. In
    army-monitor mode the monitor is consulted every ``army_check_interval``
    seconds, or at once when a check was requested, and a readable
    below-limit result switches back to Running.

    Observers registered with ``subscribe`` are called with the scheduler
    after every army check and every change of the next-check time.
    """

    def __init__(self, mode, monitor, tasks, poll_interval=config.SCHEDULER_POLL_S,
                 army_check_interval=config.ARMY_CHECK_INTERVAL_S, clock=None):
        self.mode = mode
        self.monitor = monitor
        self.tasks = sorted(tasks, key=lambda t: t.priority)
        self.poll_interval = poll_interval
        self.army_check_interval = army_check_interval
        self.clock = clock or time.monotonic
        self.last_army_check = None
        self._immediate = threading.Event()
        self._lock = threading.Lock()
        self._observers = []
        self._next_army_check = self.clock() + army_check_interval
        mode.subscribe(self._on_mode_changed)

    # ---- observers -----------------------------------------------------

    def subscribe(self, callback):
        self._observers.append(callback)

    def unsubscribe(self, callback):
        if callback in self._observers:
            self._observers.remove(callback)

    def _notify(self):
        for callback in list(self._observers):
            try:
                callback(self)
            except Exception as e:
                _log.error("Scheduler observer failed: %s", e, exc_info=True)

    # ---- army check timing -----------------------------------------------

    @property
    def next_army_check_at(self):
        with self._lock:
            return self._next_army_check

    def _schedule_army_check(self, when):
        with self._lock:
            self._next_army_check = when
        self._notify()

    def _on_mode_changed(self, mode, reason):
        if mode == BotRunMode.ARMY_MONITOR:
            self._schedule_army_check(self.clock())
        else:
            self._schedule_army_check(self.clock() + self.army_check_interval)

    def request_immediate_army_check(self):
        """Switch to army-monitor mode and check as soon as the worker polls."""
        _log.info("Immediate army check requested")
        self._immediate.set()
        if not self.mode.enter_army_monitor("Manual army check requested"):
            self._schedule_army_check(self.clock())

    # ---- loop ------------------------------------------------------------

    def run(self, cancel):
        _log.info("Task scheduler started")
        while not cancel.cancelled:
            try:
                self.run_once(cancel)
                cancel.sleep(self.poll_interval)
            except OperationCancelled:
                if cancel.cancelled:
                    break
                _log.warning("Scheduler pass timed out")
            except Exception as e:
                _log.error("Scheduler pass failed: %s", e, exc_info=True)
                try:
                    cancel.sleep(self.poll_interval)
                except OperationCancelled:
                    break
        _log.info("Task scheduler stopped")

    def run_once(self, cancel):
        if self.mode.current_mode == BotRunMode.ARMY_MONITOR:
            self._army_monitor_pass(cancel)
            return
        for task in self.tasks:
            if self.mode.current_mode != BotRunMode.RUNNING:
                break
            if not task.can_run(cancel):
                continue
            _log.info("Executing task: %s", task.name)
            task.execute(cancel)

    def _army_monitor_pass(self, cancel):
        due = self._immediate.is_set() or self.clock() >= self.next_army_check_at
        if not due:
            return
        self._immediate.clear()
        self._schedule_army_check(self.clock() + self.army_check_interval)

        result = self.monitor.check_now(None, cancel)
        self.last_army_check = result
        _log.info("Army monitor check: readable=%s marches=%s limit=%d atOrAbove=%s reason=%s",
                  result.is_readable, result.detected_marches, result.configured_limit,
                  result.at_or_above_limit, result.reason)
        if result.is_readable and not result.at_or_above_limit:
            self.mode.enter_running("Army below limit")
        self._notify()
