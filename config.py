import platform
import shutil
import os
import glob
import threading
from dataclasses import dataclass, field, replace
from enum import Enum

# ============================================================
# ENUMS — game states, run modes
# ============================================================

class _StrEnum(str, Enum):
    """str-compatible enum — works in ==, dict keys, and f-strings."""
    def __format__(self, format_spec):
        return str.__format__(self.value, format_spec)


class GameState(_StrEnum):
    UNKNOWN = "unknown"
    CITY = "city"
    WORLD_MAP = "world_map"
    TILE_POPUP = "tile_popup"
    RESOURCE_POPUP = "resource_popup"
    MARCH_SCREEN = "march_screen"
    BATTLE = "battle"
    LOADING = "loading"
    DIALOG = "dialog"


class BotRunMode(_StrEnum):
    RUNNING = "running"
    ARMY_MONITOR = "army_monitor"


# States that count as a popup for stuck detection
POPUP_STATES = frozenset({
    GameState.TILE_POPUP, GameState.RESOURCE_POPUP, GameState.MARCH_SCREEN,
})

# ============================================================
# ADB PATH - auto-detect per platform
# ============================================================

def _find_adb():
    """Find the ADB executable for the current platform."""
    system = platform.system()

    # Check for platform-tools bundled in the project directory first
    script_dir = os.path.dirname(os.path.abspath(__file__))
    local_adb = os.path.join(script_dir, "platform-tools", "adb" + (".exe" if system == "Windows" else ""))
    if os.path.isfile(local_adb):
        return local_adb

    found = shutil.which("adb")
    if found:
        return found

    if system == "Windows":
        bluestacks_adb = r"C:\Program Files\BlueStacks_nxt\HD-Adb.exe"
        if os.path.isfile(bluestacks_adb):
            return bluestacks_adb
        for drive in ["C", "D"]:
            for path in glob.glob(f"{drive}:\\MuMu*\\shell\\adb.exe"):
                if os.path.isfile(path):
                    return path
        local = os.environ.get("LOCALAPPDATA", "")
        if local:
            sdk_adb = os.path.join(local, "Android", "Sdk", "platform-tools", "adb.exe")
            if os.path.isfile(sdk_adb):
                return sdk_adb
    else:
        home = os.path.expanduser("~")
        for candidate in [
            os.path.join(home, "Library", "Android", "sdk", "platform-tools", "adb"),
            os.path.join(home, "Android", "Sdk", "platform-tools", "adb"),
            "/usr/local/bin/adb",
            "/opt/homebrew/bin/adb",
        ]:
            if os.path.isfile(candidate):
                return candidate

    import logging
    logging.getLogger("config").warning("Could not find ADB. Install Android SDK platform-tools and make sure 'adb' is on your PATH.")
    return "adb"

adb_path = _find_adb()

def log_adb_path():
    """Log the ADB path after logging is initialized."""
    from botlog import get_logger
    get_logger("config").info("ADB path: %s", adb_path)

# ============================================================
# KNOWN EMULATOR ADB PORTS (for auto-connect)
# ============================================================

# MuMu Player 12: base port 16384, +32 per instance
# BlueStacks 5 / LDPlayer: base port 5555, +2 or +10 per instance
EMULATOR_PORTS = {
    "MuMu12":     [16384 + (i * 32) for i in range(8)],
    "LDPlayer":   [5555 + (i * 2)   for i in range(8)],
    "BlueStacks": [5555 + (i * 10)  for i in range(10)],
}

# ============================================================
# DIRECTORIES
# ============================================================

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATE_DIR = os.path.join(SCRIPT_DIR, "elements")
SCREENSHOT_DIR = os.path.join(SCRIPT_DIR, "runtime", "screenshots")
DEFAULT_ACCOUNT_ID = "default-account"

# ============================================================
# ADB & CAPTURE CONSTANTS
# ============================================================

ADB_COMMAND_TIMEOUT = 10         # seconds — timeout for adb tap/swipe/screenshot
SCREENSHOT_KEEP = 120            # rolling cleanup of ephemeral captures
DEBUG_SCREENSHOT_MAX = 50        # max debug artifacts before cleanup

# ============================================================
# STATE RESOLUTION
# ============================================================

MARCH_SCREEN_TEMPLATES = ("clear_section_button.png", "deploy_button.png")
MARCH_SCREEN_THRESHOLD = 0.45
RESOURCE_POPUP_TEMPLATES = ("gather_button.png",)
RESOURCE_POPUP_THRESHOLD = 0.45
TILE_POPUP_TEMPLATES = ("transfer_button.png", "occupy_button.png")
TILE_POPUP_THRESHOLD = 0.40
CITY_TEMPLATES = ("map_button.png",)
CITY_THRESHOLD = 0.85
WORLD_MAP_CASTLE_TEMPLATE = "castle.png"
WORLD_MAP_CASTLE_THRESHOLD = 0.60
WORLD_MAP_RESOURCE_THRESHOLD = 0.55
WORLD_MAP_RESOURCE_TEMPLATES = (
    "resource_stone.png", "resource_stone_1.png",
    "resource_wood.png", "resource_wood_1.png",
    "resource_ore.png", "resource_ore_1.png",
    "resource_food.png", "resource_food_1.png",
    "resource_rune.png", "resource_rune_1.png",
)
# Castle search ROI: bottom-left corner, as fractions of the screen
CASTLE_ROI_TOP_FRACTION = 0.60
CASTLE_ROI_WIDTH_FRACTION = 0.24
CASTLE_ROI_MIN_SIZE = 64
CASTLE_ROI_FALLBACK = (0, 480, 420, 420)   # (x, y, w, h) when resolution unknown

# ============================================================
# ARMY LIMIT MONITOR
# ============================================================

ARMY_INDICATOR_TEMPLATE = "army_indicator_icon.png"
POPUP_CLOSE_TEMPLATE = "popup_close.png"
MAP_BUTTON_TEMPLATE = "map_button.png"
MAP_ICON_TEMPLATES = ("map_button.png", "map_button_alt.png", "map_icon.png")
POPUP_CLOSE_THRESHOLDS = (0.90, 0.85, 0.80, 0.75)
POPUP_CLOSE_MIN_CONFIDENCE = 0.75
ARMY_INDICATOR_THRESHOLDS = (0.90, 0.85, 0.80, 0.75, 0.70)
MAP_BUTTON_THRESHOLDS = (0.80, 0.72, 0.64, 0.56, 0.48)
MAX_CLOSE_ATTEMPTS = 3
POPUP_CLOSE_SETTLE_S = 0.25
MAP_BUTTON_SETTLE_S = 0.30
# Popup close must sit in the top-right corner
POPUP_CLOSE_MIN_X_FRACTION = 0.80
POPUP_CLOSE_MAX_Y_FRACTION = 0.25
# Indicator must sit on the left edge, mid-height
INDICATOR_MAX_X_FRACTION = 0.22
INDICATOR_MIN_Y_FRACTION = 0.20
INDICATOR_MAX_Y_FRACTION = 0.92
# Digit ROIs relative to the indicator center: (dx, dy, w, h)
INDICATOR_DIGIT_ROIS = ((12, -56, 34, 22), (16, -52, 38, 24), (8, -50, 30, 20))
MIN_OCR_REGION_SIZE = 8
MAX_MARCH_DIGIT = 9

# ============================================================
# GATHER TASK
# ============================================================

GATHER_TASK_NAME = "Resource Gather"
GATHER_TASK_PRIORITY = 100
ACTION_THRESHOLDS = (0.80, 0.72, 0.64, 0.56, 0.48, 0.40)
MARCH_ANCHOR_THRESHOLDS = (0.82, 0.74, 0.66, 0.58, 0.50)
MARCH_ACTION_THRESHOLDS = (0.72, 0.64, 0.56, 0.48, 0.40, 0.36, 0.32)
CLEAR_SELECTION_THRESHOLDS = (0.78, 0.70, 0.62, 0.55)
CLEAR_SELECTION_MIN_CONFIDENCE = 0.55
RESOURCE_THRESHOLDS = (0.76, 0.68, 0.60, 0.52, 0.45)
RESOURCE_TILE_TEMPLATE = "resource_tile.png"
RESOURCE_TEMPLATES = {
    "stone": "resource_stone.png",
    "wood": "resource_wood.png",
    "ore": "resource_ore.png",
    "food": "resource_food.png",
    "rune": "resource_rune.png",
}
GATHER_BUTTON_TEMPLATE = "gather_button.png"
DEPLOY_BUTTON_TEMPLATE = "deploy_button.png"
LOWEST_TIER_TEMPLATE = "lowest_tier_button.png"
CLEAR_SELECTION_TEMPLATE = "clear_section_button.png"
TILE_BUTTON_TEMPLATES = ("transfer_button.png", "occupy_button.png")

STUCK_POPUP_S = 60
CONTEXT_TIMEOUT_S = 6
RESOLVE_TIMEOUT_S = 15
STEP_TIMEOUT_S = 45
STEP_ATTEMPTS = 3
STEP_RETRY_DELAY_MS = (450, 950)
TICK_DELAY_MS = (300, 1200)
TAP_JITTER_PX = 5
MARCH_SCREEN_WAIT_S = 12
POPUP_WAIT_S = 2.8
MAX_TILE_SCANS = 4
ZOOM_OUT_CHANCE = 0.20
RANDOM_PAN_CHANCE = 0.30
MARCH_SLOT_WAIT_S = 240
MARCH_SLOT_POLL_S = (8, 14)
# Offsets around a tile center tried until a popup opens
TILE_PROBE_OFFSETS = (
    (0, 0), (18, 0), (-18, 0), (0, 18), (0, -18),
    (28, 12), (-28, 12), (28, -12), (-28, -12), (0, 30), (0, -30),
)
# Frame diff: a tap "did something" when either metric clears its bar
FRAME_DIFF_MIN_MEAN = 0.65
FRAME_DIFF_MIN_RATIO = 0.0025
FRAME_DIFF_PIXEL_DELTA = 12
# March screen controls relative to resolution, used without manual points
DEPLOY_RELATIVE = (0.776, 0.806)
LOWEST_TIER_RELATIVE = (0.786, 0.656)
MANUAL_POINT_MARGIN = 10

# ============================================================
# SCHEDULER
# ============================================================

SCHEDULER_POLL_S = 0.5
ARMY_CHECK_INTERVAL_S = 600

# ============================================================
# SETTINGS VALUES
# ============================================================

@dataclass(frozen=True)
class ManualRegion:
    """Four corner points drawn by the user, reduced to a rectangle on use."""
    enabled: bool = False
    points: tuple = ()
    min_confidence: float = 0.50


@dataclass(frozen=True)
class ManualClickPoints:
    enabled: bool = True
    lowest_tier: tuple = (1353, 526)
    deploy: tuple = (1232, 674)


@dataclass(frozen=True)
class BotSettings:
    max_active_marches: int = 2
    gather_stone: bool = True
    gather_wood: bool = True
    gather_ore: bool = True
    gather_food: bool = True
    gather_rune: bool = True
    manual_ocr: ManualRegion = field(default_factory=lambda: ManualRegion(
        enabled=True, points=((72, 342), (100, 341), (99, 368), (70, 368))))
    indicator_gate: ManualRegion = field(default_factory=lambda: ManualRegion(
        enabled=True, points=((1, 333), (128, 322), (122, 446), (1, 452)),
        min_confidence=0.50))
    manual_clicks: ManualClickPoints = field(default_factory=ManualClickPoints)
    template_root: str = TEMPLATE_DIR
    screenshot_dir: str = SCREENSHOT_DIR
    account_id: str = DEFAULT_ACCOUNT_ID
    verbose_logging: bool = False
    save_click_debug: bool = False
    save_army_debug: bool = False
    web_port: int = 8080

    def enabled_resources(self):
        """Resource kinds whose search toggle is on, in a stable order."""
        return [kind for kind in RESOURCE_TEMPLATES
                if getattr(self, f"gather_{kind}")]


class RuntimeSettings:
    """Holds the current BotSettings; replaced only through update()."""

    def __init__(self, settings=None):
        self._lock = threading.Lock()
        self._current = settings or BotSettings()

    @property
    def current(self):
        with self._lock:
            return self._current

    def update(self, **changes):
        with self._lock:
            self._current = replace(self._current, **changes)
            current = self._current
        _log.info("Settings updated: %s", ", ".join(sorted(changes)))
        return current

# ============================================================
# SETTINGS VALIDATION
# ============================================================

# key -> (type, min, max); None bounds are open
SETTINGS_RULES = {
    "max_active_marches": (int, 1, 9),
    "gather_stone": (bool, None, None),
    "gather_wood": (bool, None, None),
    "gather_ore": (bool, None, None),
    "gather_food": (bool, None, None),
    "gather_rune": (bool, None, None),
    "verbose_logging": (bool, None, None),
    "save_click_debug": (bool, None, None),
    "save_army_debug": (bool, None, None),
    "web_port": (int, 1, 65535),
    "gate_min_confidence": (float, 0.0, 1.0),
    "manual_ocr_enabled": (bool, None, None),
    "indicator_gate_enabled": (bool, None, None),
    "manual_clicks_enabled": (bool, None, None),
}

_POINT_LIST_KEYS = ("manual_ocr_points", "indicator_gate_points")
_POINT_KEYS = ("lowest_tier_point", "deploy_point")


def _is_point(value):
    return (isinstance(value, (list, tuple)) and len(value) == 2
            and all(isinstance(v, int) and not isinstance(v, bool) for v in value))


def validate_settings(settings, defaults):
    """Check types and ranges, replacing bad values with defaults.

    Returns (validated_settings, warnings). Unknown keys pass through.
    """
    out = dict(settings)
    warnings = []
    for key, (kind, lo, hi) in SETTINGS_RULES.items():
        if key not in out:
            continue
        value = out[key]
        if kind is bool:
            ok = isinstance(value, bool)
        elif kind is int:
            ok = isinstance(value, int) and not isinstance(value, bool)
        else:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if not ok:
            warnings.append(f"{key}: expected {kind.__name__}, got {type(value).__name__} — using default")
            out[key] = defaults.get(key)
            continue
        if lo is not None and value < lo:
            warnings.append(f"{key}: {value} below minimum {lo} — clamped")
            out[key] = lo
        elif hi is not None and value > hi:
            warnings.append(f"{key}: {value} above maximum {hi} — clamped")
            out[key] = hi
    for key in _POINT_LIST_KEYS:
        if key not in out:
            continue
        value = out[key]
        if not (isinstance(value, (list, tuple)) and len(value) == 4
                and all(_is_point(p) for p in value)):
            warnings.append(f"{key}: expected 4 [x, y] points — using default")
            out[key] = defaults.get(key)
    for key in _POINT_KEYS:
        if key in out and not _is_point(out[key]):
            warnings.append(f"{key}: expected [x, y] — using default")
            out[key] = defaults.get(key)
    for key in ("template_root", "screenshot_dir", "account_id"):
        if key in out and not (isinstance(out[key], str) and out[key].strip()):
            warnings.append(f"{key}: expected non-empty string — using default")
            out[key] = defaults.get(key)
    return out, warnings

# ============================================================
# LOGGER
# ============================================================

from botlog import get_logger as _get_logger
_log = _get_logger("config")
