"""
GatherBot Logging, Metrics, and Action Timing

Single module for all observability infrastructure:
- setup_logging()    — configure Python logging (call once at startup)
- get_logger()       — get a logger with optional device context
- LogStream          — in-memory log buffer the dashboard reads from
- StatsTracker       — thread-safe per-device metrics collection
- timed_action()     — decorator for automatic timing + stats
- stats              — global StatsTracker instance
"""

import logging
import logging.handlers
import os
import json
import time
import functools
from collections import deque
from datetime import datetime
from threading import Lock

import psutil

from cancellation import OperationCancelled

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
LOG_DIR = os.path.join(SCRIPT_DIR, "logs")
STATS_DIR = os.path.join(SCRIPT_DIR, "stats")

# Version info — read once at import time
_VERSION_FILE = os.path.join(SCRIPT_DIR, "version.txt")
try:
    with open(_VERSION_FILE, "r") as _f:
        BOT_VERSION = _f.read().strip()
except OSError:
    BOT_VERSION = "unknown"

# Reference to the console handler so set_console_verbose() can adjust it
_console_handler = None

# ============================================================
# MEMORY MONITORING
# ============================================================

_process = psutil.Process(os.getpid())
_peak_memory_mb = 0.0

def get_memory_mb():
    """Return current process RSS in MB."""
    return _process.memory_info().rss / (1024 * 1024)


def get_peak_memory_mb():
    """Return the highest RSS observed by memory checkpoints."""
    return _peak_memory_mb


def _update_peak():
    global _peak_memory_mb
    current = get_memory_mb()
    if current > _peak_memory_mb:
        _peak_memory_mb = current
    return current


# ============================================================
# LOG STREAM (dashboard feed)
# ============================================================

class LogStream(logging.Handler):
    """Keeps the most recent formatted lines and pushes new ones to subscribers.

    Subscribers are plain callables taking the formatted line. A subscriber
    that raises is dropped so a broken observer can't stall logging.
    """

    def __init__(self, capacity=500, level=logging.INFO):
        super().__init__(level)
        self._lines = deque(maxlen=capacity)
        self._subscribers = []
        self._lines_lock = Lock()
        self.setFormatter(logging.Formatter(
            "%(asctime)s [%(device)s] %(message)s",
            datefmt="%H:%M:%S",
            defaults={"device": "system"}
        ))

    def emit(self, record):
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lines_lock:
            self._lines.append(line)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(line)
            except Exception:
                self.unsubscribe(callback)

    def snapshot(self, limit=None):
        with self._lines_lock:
            lines = list(self._lines)
        if limit is not None:
            return lines[-limit:]
        return lines

    def subscribe(self, callback):
        with self._lines_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback):
        with self._lines_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def clear(self):
        with self._lines_lock:
            self._lines.clear()


# Global instance, attached to the root logger by setup_logging()
log_stream = LogStream()


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(verbose=False):
    """Configure Python logging. Call once at startup.

    Sets up:
    - Console handler: INFO normally, DEBUG when verbose
    - Rotating file handler: DEBUG always (full flight recorder)
    - log_stream: INFO lines kept in memory for the dashboard
    """
    global _console_handler

    os.makedirs(LOG_DIR, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Prevent duplicate handlers if called multiple times
    if root.handlers:
        return

    _console_handler = logging.StreamHandler()
    _console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_fmt = logging.Formatter(
        "[%(device)s] %(message)s",
        defaults={"device": "system"}
    )
    _console_handler.setFormatter(console_fmt)
    root.addHandler(_console_handler)

    log_file = os.path.join(LOG_DIR, "gatherbot.log")
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_fmt = logging.Formatter(
        "%(asctime)s.%(msecs)03d [%(device)s] %(levelname)-5s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        defaults={"device": "system"}
    )
    file_handler.setFormatter(file_fmt)
    root.addHandler(file_handler)

    root.addHandler(log_stream)

    # Suppress noisy third-party loggers
    logging.getLogger("easyocr").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("torch").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    import platform as _plat
    _banner = logging.getLogger("botlog")
    _banner.info("=" * 60)
    _banner.info("NEW SESSION — %s — v%s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"), BOT_VERSION)
    _banner.info("System: %s %s | %s | %d cores | Python %s",
                 _plat.system(), _plat.release(), _plat.machine(),
                 os.cpu_count() or 0, _plat.python_version())
    _banner.info("Memory: %.0f MB (startup)", _update_peak())
    _banner.info("=" * 60)


def set_console_verbose(verbose):
    """Toggle console verbosity at runtime (called from settings updates)."""
    if _console_handler is not None:
        _console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)


# ============================================================
# LOGGER HELPER
# ============================================================

def get_logger(module_name, device=None):
    """Get a logger, optionally bound to a device ID.

    Usage in device-aware code:
        log = get_logger("gather", device)
        log.info("Deploy tapped")
        # Console: [emulator-5554] Deploy tapped
        # File:    2024-01-15 14:32:05.123 [emulator-5554] INFO  gather: Deploy tapped

    Usage in non-device modules:
        log = get_logger("config")
        log.info("Settings updated")
        # Console: [system] Settings updated
    """
    logger = logging.getLogger(module_name)
    if device:
        return logging.LoggerAdapter(logger, {"device": device})
    return logging.LoggerAdapter(logger, {"device": "system"})


# ============================================================
# STATS TRACKER
# ============================================================

class StatsTracker:
    """Thread-safe per-device metrics for post-session analysis.

    Tracks action success/failure/timing, template match failures and
    hits, ADB command latency, and recent errors. Saves to JSON on shutdown.
    """

    AUTO_SAVE_INTERVAL = 300  # seconds (5 minutes)

    def __init__(self, auto_save=True):
        self._lock = Lock()
        self._session_start = datetime.now()
        self._data = {}
        self._auto_save_timer = None
        if auto_save:
            self._start_auto_save()

    def _start_auto_save(self):
        """Periodically save stats to disk so data isn't lost on crash/kill."""
        from threading import Timer

        def _tick():
            try:
                self.save()
                mem = _update_peak()
                logging.getLogger("botlog").info(
                    "Memory checkpoint: %.0f MB (peak: %.0f MB)", mem, _peak_memory_mb)
            except Exception as e:
                logging.getLogger("botlog").debug("Auto-save failed: %s", e)
            self._start_auto_save()

        self._auto_save_timer = Timer(self.AUTO_SAVE_INTERVAL, _tick)
        self._auto_save_timer.daemon = True
        self._auto_save_timer.start()

    def _ensure_device(self, device):
        if device not in self._data:
            self._data[device] = {
                "actions": {},
                "template_misses": {},
                "template_hits": {},
                "errors": [],
                "adb_timing": {},
            }

    def record_action(self, device, action_name, success, duration_s, error_msg=None):
        """Record an action attempt with outcome and timing."""
        with self._lock:
            self._ensure_device(device)
            actions = self._data[device]["actions"]
            if action_name not in actions:
                actions[action_name] = {
                    "attempts": 0, "successes": 0, "failures": 0,
                    "total_time_s": 0.0, "last_failure": None
                }
            entry = actions[action_name]
            entry["attempts"] += 1
            entry["total_time_s"] = round(entry["total_time_s"] + duration_s, 1)
            if success:
                entry["successes"] += 1
            else:
                entry["failures"] += 1
                entry["last_failure"] = error_msg or "unknown"
                errors = self._data[device]["errors"]
                errors.append({
                    "time": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                    "action": action_name,
                    "error": error_msg or "unknown",
                    "duration_s": round(duration_s, 1)
                })
                if len(errors) > 50:
                    errors[:] = errors[-50:]

    def record_template_miss(self, device, template_name, best_score=0.0):
        """Record a template match failure with the best score achieved."""
        with self._lock:
            self._ensure_device(device)
            misses = self._data[device]["template_misses"]
            if template_name not in misses:
                misses[template_name] = {"count": 0, "best_scores": []}
            entry = misses[template_name]
            entry["count"] += 1
            entry["best_scores"].append(round(best_score, 3))
            if len(entry["best_scores"]) > 10:
                entry["best_scores"] = entry["best_scores"][-10:]

    def record_template_hit(self, device, template_name, x, y, confidence):
        """Record a successful template match with its position."""
        with self._lock:
            self._ensure_device(device)
            hits = self._data[device]["template_hits"]
            if template_name not in hits:
                hits[template_name] = {
                    "count": 0,
                    "min_x": x, "max_x": x,
                    "min_y": y, "max_y": y,
                    "recent": [],
                }
            entry = hits[template_name]
            entry["count"] += 1
            entry["min_x"] = min(entry["min_x"], x)
            entry["max_x"] = max(entry["max_x"], x)
            entry["min_y"] = min(entry["min_y"], y)
            entry["max_y"] = max(entry["max_y"], y)
            entry["recent"].append([x, y, round(confidence, 3)])
            if len(entry["recent"]) > 20:
                entry["recent"] = entry["recent"][-20:]

    def record_adb_timing(self, device, command, elapsed_s, success=True):
        """Record ADB command timing for latency tracking."""
        with self._lock:
            self._ensure_device(device)
            timings = self._data[device]["adb_timing"]
            if command not in timings:
                timings[command] = {
                    "count": 0, "total_s": 0.0, "max_s": 0.0,
                    "slow_count": 0, "failures": 0,
                }
            entry = timings[command]
            entry["count"] += 1
            entry["total_s"] = round(entry["total_s"] + elapsed_s, 2)
            entry["max_s"] = round(max(entry["max_s"], elapsed_s), 2)
            if elapsed_s > 3.0:
                entry["slow_count"] += 1
            if not success:
                entry["failures"] += 1

    def save(self):
        """Save stats to a timestamped JSON file. Auto-cleans old sessions."""
        os.makedirs(STATS_DIR, exist_ok=True)
        with self._lock:
            now = datetime.now()
            duration = (now - self._session_start).total_seconds() / 60.0

            output_devices = {}
            for device, data in self._data.items():
                device_copy = {
                    "actions": {},
                    "template_misses": data["template_misses"],
                    "template_hits": data["template_hits"],
                    "errors": data["errors"],
                    "adb_timing": {},
                }
                for cmd, info in data["adb_timing"].items():
                    entry = dict(info)
                    entry["avg_s"] = round(entry["total_s"] / max(1, entry["count"]), 3)
                    device_copy["adb_timing"][cmd] = entry
                for action_name, info in data["actions"].items():
                    entry = dict(info)
                    entry["avg_time_s"] = round(
                        entry["total_time_s"] / max(1, entry["attempts"]), 1
                    )
                    device_copy["actions"][action_name] = entry
                output_devices[device] = device_copy

            output = {
                "version": BOT_VERSION,
                "session_start": self._session_start.strftime("%Y-%m-%d %H:%M:%S"),
                "session_end": now.strftime("%Y-%m-%d %H:%M:%S"),
                "duration_minutes": round(duration, 1),
                "memory_mb": round(get_memory_mb(), 1),
                "peak_memory_mb": round(_peak_memory_mb, 1),
                "devices": output_devices,
            }

            filename = f"session_{self._session_start.strftime('%Y%m%d_%H%M%S')}.json"
            filepath = os.path.join(STATS_DIR, filename)
            try:
                with open(filepath, "w") as f:
                    json.dump(output, f, indent=2)
            except OSError as e:
                logging.getLogger("botlog").warning("Failed to save session stats: %s", e)

        # Clean old session files (keep last 30)
        try:
            files = sorted(
                [os.path.join(STATS_DIR, f) for f in os.listdir(STATS_DIR)
                 if f.startswith("session_") and f.endswith(".json")],
                key=os.path.getmtime
            )
            while len(files) > 30:
                os.remove(files.pop(0))
        except OSError as e:
            logging.getLogger("botlog").warning("Failed to clean old session files: %s", e)

    def summary(self):
        """Return a human-readable summary of the session."""
        with self._lock:
            if not self._data:
                return "No activity recorded this session."

            lines = []
            duration = (datetime.now() - self._session_start).total_seconds() / 60.0
            lines.append(f"Session duration: {duration:.0f} minutes")
            lines.append(f"Memory: {get_memory_mb():.0f} MB (peak: {_peak_memory_mb:.0f} MB)")

            for device, data in self._data.items():
                lines.append(f"\n=== {device} ===")

                for action, info in sorted(data["actions"].items()):
                    avg = info["total_time_s"] / max(1, info["attempts"])
                    rate = info["successes"] / max(1, info["attempts"]) * 100
                    lines.append(
                        f"  {action}: {info['successes']}/{info['attempts']} "
                        f"({rate:.0f}% success, avg {avg:.1f}s"
                        f"{', ' + str(info['failures']) + ' failed' if info['failures'] else ''})"
                    )

                if data["template_misses"]:
                    top = sorted(data["template_misses"].items(),
                                 key=lambda x: x[1]["count"], reverse=True)[:5]
                    miss_parts = []
                    for name, info in top:
                        avg_score = sum(info["best_scores"]) / max(1, len(info["best_scores"]))
                        miss_parts.append(f"{name}({info['count']}x, avg best {avg_score:.0%})")
                    lines.append(f"  Top template misses: {', '.join(miss_parts)}")

                if data["adb_timing"]:
                    adb_parts = []
                    for cmd, info in sorted(data["adb_timing"].items()):
                        avg = info["total_s"] / max(1, info["count"])
                        part = f"{cmd}: {info['count']}x, avg {avg:.2f}s, max {info['max_s']:.2f}s"
                        if info["failures"]:
                            part += f", {info['failures']} failed"
                        adb_parts.append(part)
                    lines.append(f"  ADB timing: {'; '.join(adb_parts)}")

            return "\n".join(lines)


# Global instance
stats = StatsTracker()


# ============================================================
# TIMED ACTION DECORATOR
# ============================================================

def _device_of(args):
    """Pick the device id out of (self, ctx, ...) or (device, ...) call args."""
    for arg in args[:2]:
        if isinstance(arg, str):
            return arg
        device_id = getattr(arg, "device_id", None)
        if isinstance(device_id, str):
            return device_id
    return "system"


def timed_action(action_name):
    """Decorator that logs entry/exit/timing and records stats.

    The device is taken from the first string argument, or from the
    ``device_id`` of an ExecutionContext passed as the first or second
    positional argument, so it works on both functions and methods.

    Usage:
        @timed_action("army_check")
        def check_now(self, ctx, cancel):
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            device = _device_of(args)
            log = get_logger(func.__module__ or "unknown", device)
            log.info(">>> %s starting", action_name)
            mem_before = get_memory_mb()
            start = time.time()
            try:
                result = func(*args, **kwargs)
            except OperationCancelled:
                log.info("<<< %s cancelled after %.1fs", action_name, time.time() - start)
                raise
            except Exception as e:
                elapsed = time.time() - start
                log.error("<<< %s failed after %.1fs: %s", action_name, elapsed, e)
                stats.record_action(device, action_name, False, elapsed, str(e) or type(e).__name__)
                raise
            elapsed = time.time() - start
            success = result is not False and result is not None
            mem_after = _update_peak()
            mem_delta = mem_after - mem_before
            mem_note = f" ({mem_delta:+.1f} MB, RSS: {mem_after:.0f} MB)" if abs(mem_delta) > 5 else ""
            if success:
                log.info("<<< %s completed in %.1fs%s", action_name, elapsed, mem_note)
            else:
                log.warning("<<< %s returned failure in %.1fs%s", action_name, elapsed, mem_note)
            stats.record_action(device, action_name, success, elapsed)
            return result
        return wrapper
    return decorator
