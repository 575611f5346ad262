"""Bot engine: owns the worker thread that runs the scheduler.

Used by the web dashboard (web/dashboard.py) and run_web.py.

Key exports:
    BotEngine — start / stop / status_text / request_immediate_army_check
"""

import dataclasses
import math
import threading

from config import BotRunMode
from cancellation import CancelToken
from vision import verify_templates
from botlog import get_logger, set_console_verbose

_log = get_logger("runner")

STOP_JOIN_TIMEOUT_S = 30


class BotEngine:
    """Runs ``scheduler.run`` on a single daemon thread.

    ``start`` refuses to launch when the march limit is below 1 or required
    templates are missing; the refusal shows up in ``status_text``.
    """

    def __init__(self, scheduler, mode, settings, gather=None,
                 template_verifier=verify_templates, clock=None, sleep=None):
        self.scheduler = scheduler
        self.mode = mode
        self.settings = settings
        self.gather = gather
        self.template_verifier = template_verifier
        self.clock = clock or scheduler.clock
        self._sleep = sleep
        self._thread = None
        self._cancel = None
        self._blocked_status = None
        self._lock = threading.Lock()

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self, max_active_marches=None):
        """Launch the worker. Returns True when a new worker was started."""
        with self._lock:
            if self.is_running:
                _log.warning("Bot is already running")
                return False

            if max_active_marches is not None:
                if not isinstance(max_active_marches, int) or max_active_marches < 1:
                    self._blocked_status = "Invalid Max Army"
                    _log.warning("Start refused: invalid max army %r", max_active_marches)
                    return False
                self.settings.update(max_active_marches=max_active_marches)
            elif self.settings.current.max_active_marches < 1:
                self._blocked_status = "Invalid Max Army"
                _log.warning("Start refused: invalid max army %r",
                             self.settings.current.max_active_marches)
                return False

            if self.template_verifier(self.settings.current.template_root):
                self._blocked_status = "Missing Templates"
                _log.warning("Start refused: required templates are missing")
                return False

            self._blocked_status = None
            self._cancel = CancelToken(clock=self.clock, sleep=self._sleep)
            self._thread = threading.Thread(target=self._run, args=(self._cancel,),
                                            daemon=True, name="bot-worker")
            self._thread.start()
            _log.info("Bot engine started")
            return True

    def _run(self, cancel):
        try:
            self.scheduler.run(cancel)
        except Exception as e:
            _log.error("Bot worker crashed: %s", e, exc_info=True)

    def stop(self, timeout=STOP_JOIN_TIMEOUT_S):
        """Signal the worker to stop and wait for it. Safe to call when idle."""
        with self._lock:
            thread, cancel = self._thread, self._cancel
            self._blocked_status = None
            if thread is None or cancel is None:
                return
            cancel.cancel()
        thread.join(timeout)
        if thread.is_alive():
            _log.warning("Bot worker did not stop within %ss", timeout)
        else:
            _log.info("Bot engine stopped")
        with self._lock:
            if self._thread is thread:
                self._thread = None
                self._cancel = None

    def request_immediate_army_check(self):
        self.scheduler.request_immediate_army_check()

    def update_settings(self, new_settings):
        """Apply a whole BotSettings value, passing on only the fields that changed."""
        current = self.settings.current
        changes = {f.name: getattr(new_settings, f.name)
                   for f in dataclasses.fields(new_settings)
                   if getattr(new_settings, f.name) != getattr(current, f.name)}
        if changes:
            self.settings.update(**changes)
        if "verbose_logging" in changes:
            set_console_verbose(changes["verbose_logging"])
            _log.info("Console verbose logging %s",
                      "enabled" if changes["verbose_logging"] else "disabled")
        return self.settings.current

    def status_text(self):
        if not self.is_running:
            return self._blocked_status or "Stopped"

        if self.mode.current_mode == BotRunMode.ARMY_MONITOR:
            remaining = self.scheduler.next_army_check_at - self.clock()
            minutes = max(0, math.ceil(remaining / 60.0))
            last = self.scheduler.last_army_check
            if last is not None and not last.is_readable:
                return f"Army Monitor (unreadable, next check in {minutes} min)"
            return f"Army Monitor (next check in {minutes} min)"

        stuck = self.gather.stuck_state if self.gather is not None else None
        if stuck is not None:
            return f"Running (stuck on {stuck})"
        return "Running"

    def snapshot(self):
        """Read-only view for the dashboard."""
        last = self.scheduler.last_army_check
        return {
            "running": self.is_running,
            "mode": self.mode.current_mode.value,
            "status": self.status_text(),
            "next_army_check_in_s": max(0, round(self.scheduler.next_army_check_at - self.clock())),
            "last_army_check": None if last is None else {
                "readable": last.is_readable,
                "marches": last.detected_marches,
                "limit": last.configured_limit,
                "at_or_above_limit": last.at_or_above_limit,
                "reason": last.reason,
            },
        }
