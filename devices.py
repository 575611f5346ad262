import re
import subprocess
import threading
import time

from config import adb_path, EMULATOR_PORTS, ADB_COMMAND_TIMEOUT
from botlog import get_logger, stats

_log = get_logger("devices")


class TransportError(Exception):
    """An adb command failed, timed out, or produced unusable output."""


class DeviceNotFoundError(TransportError):
    """No online device is attached to the adb server."""


# ============================================================
# DEVICE DETECTION
# ============================================================

def auto_connect_emulators():
    """Try to adb-connect well-known emulator ports so they show up in 'adb devices'."""
    all_ports = set()
    for ports in EMULATOR_PORTS.values():
        all_ports.update(ports)
    return _connect_ports(all_ports)


def _connect_ports(ports):
    """Try ``adb connect`` on each port, return list of successfully connected addresses."""
    connected = []
    for port in sorted(ports):
        addr = f"127.0.0.1:{port}"
        try:
            result = subprocess.run(
                [adb_path, "connect", addr],
                capture_output=True, text=True, timeout=3
            )
        except (subprocess.TimeoutExpired, OSError):
            continue
        if "connected" in result.stdout.strip().lower():
            connected.append(addr)
            _log.debug("Connected: %s", addr)

    if connected:
        _log.info("Auto-connect found %d emulator(s)", len(connected))
    else:
        _log.info("Auto-connect: no emulators found on probed ports")
    return connected


def get_devices(timeout=ADB_COMMAND_TIMEOUT):
    """Get list of online ADB devices, with duplicates removed.

    ADB can show the same emulator twice — e.g. ``emulator-5554`` (auto-registered)
    and ``127.0.0.1:5555`` (from ``adb connect``).  The convention is that
    ``emulator-N`` uses ADB port ``N+1``, so we drop any ``127.0.0.1:<port>``
    entry whose port matches an existing ``emulator-<port-1>`` entry.
    Offline and unauthorized entries are skipped.
    """
    try:
        result = subprocess.run([adb_path, "devices"], capture_output=True, text=True,
                                timeout=timeout)
    except (subprocess.TimeoutExpired, OSError) as e:
        _log.error("Failed to get devices: %s", e)
        return []

    lines = result.stdout.strip().split('\n')[1:]  # Skip "List of devices attached"
    raw = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            raw.append(parts[0])

    emulator_ports = set()
    for d in raw:
        if d.startswith("emulator-"):
            try:
                emulator_ports.add(int(d.split("-")[1]) + 1)
            except (IndexError, ValueError):
                pass

    devices = []
    for d in raw:
        if d.startswith("127.0.0.1:"):
            try:
                port = int(d.split(":")[1])
                if port in emulator_ports:
                    _log.debug("Dropping duplicate %s (same as emulator-%d)", d, port - 1)
                    continue
            except (IndexError, ValueError):
                pass
        devices.append(d)

    _log.debug("Found %d device(s): %s", len(devices), ", ".join(devices) if devices else "(none)")
    return devices


def parse_wm_size(output):
    """Parse ``adb shell wm size`` output into (width, height).

    Prefers the override size when the device reports one, since taps and
    screenshots use it.
    """
    override = re.search(r"Override size:\s*(\d+)\s*x\s*(\d+)", output, re.IGNORECASE)
    physical = re.search(r"Physical size:\s*(\d+)\s*x\s*(\d+)", output, re.IGNORECASE)
    match = override or physical
    if match is None:
        raise TransportError(f"Unable to parse wm size output: {output.strip()!r}")
    return int(match.group(1)), int(match.group(2))


# ============================================================
# ADB TRANSPORT
# ============================================================

class AdbTransport:
    """Device transport over the adb command line.

    Targets ``preferred_device`` when it is online, otherwise the first
    online device. Resolution is cached per device id.
    """

    def __init__(self, preferred_device=None, adb=None, timeout=ADB_COMMAND_TIMEOUT):
        self.adb = adb or adb_path
        self.preferred_device = preferred_device
        self.timeout = timeout
        self._resolutions = {}
        self._server_started = False
        self._lock = threading.Lock()

    def start_server(self):
        """Run ``adb start-server`` once. Failure is logged, not raised."""
        with self._lock:
            if self._server_started:
                return
            self._server_started = True
        try:
            subprocess.run([self.adb, "start-server"], capture_output=True,
                           text=True, timeout=5)
            _log.info("ADB server started")
        except (subprocess.TimeoutExpired, OSError) as e:
            _log.warning("ADB start-server failed (%s). Continuing with existing daemon if available.", e)

    def _timeout(self, timeout):
        return self.timeout if timeout is None else timeout

    def get_connected_device(self, timeout=None):
        """Return the active device id, or None when nothing is online."""
        devices = get_devices(timeout=self._timeout(timeout))
        if not devices:
            return None
        if self.preferred_device in devices:
            return self.preferred_device
        return devices[0]

    def _require_device(self, timeout=None):
        device = self.get_connected_device(timeout)
        if device is None:
            raise DeviceNotFoundError("No connected emulator device available.")
        return device

    def _run(self, device, args, label, binary=False, timeout=None):
        timeout = self._timeout(timeout)
        t0 = time.time()
        try:
            result = subprocess.run([self.adb, "-s", device] + args,
                                    capture_output=True, text=not binary,
                                    timeout=timeout)
        except subprocess.TimeoutExpired:
            stats.record_adb_timing(device, label, float(timeout), success=False)
            raise TransportError(f"adb {label} timed out after {timeout:.1f}s")
        except OSError as e:
            stats.record_adb_timing(device, label, time.time() - t0, success=False)
            raise TransportError(f"adb {label} could not run: {e}")
        elapsed = time.time() - t0
        if result.returncode != 0:
            stats.record_adb_timing(device, label, elapsed, success=False)
            stderr = result.stderr if not binary else result.stderr.decode("utf-8", "replace")
            raise TransportError(f"adb {label} failed ({result.returncode}): {stderr.strip()}")
        stats.record_adb_timing(device, label, elapsed)
        if elapsed > 3.0:
            get_logger("devices", device).warning("adb %s slow: %.2fs", label, elapsed)
        return result.stdout

    def tap(self, x, y):
        device = self._require_device()
        self._run(device, ["shell", "input", "tap", str(int(x)), str(int(y))], "tap")

    def swipe(self, x1, y1, x2, y2, duration_ms=300):
        device = self._require_device()
        self._run(device, ["shell", "input", "swipe", str(int(x1)), str(int(y1)),
                           str(int(x2)), str(int(y2)), str(int(duration_ms))], "swipe")

    def take_screenshot(self, out_path, timeout=None):
        """Capture the screen as PNG into ``out_path`` and return the path.

        ``timeout`` covers the device lookup and the screencap together.
        """
        deadline = time.monotonic() + self._timeout(timeout)
        device = self._require_device(timeout)
        png = self._run(device, ["exec-out", "screencap", "-p"], "screenshot", binary=True,
                        timeout=max(0.0, deadline - time.monotonic()))
        if not png:
            raise TransportError("adb screenshot returned no data")
        with open(out_path, "wb") as f:
            f.write(png)
        return out_path

    def get_resolution(self):
        device = self._require_device()
        if device not in self._resolutions:
            output = self._run(device, ["shell", "wm", "size"], "wm_size")
            self._resolutions[device] = parse_wm_size(output)
            get_logger("devices", device).info("Resolution: %dx%d", *self._resolutions[device])
        return self._resolutions[device]
