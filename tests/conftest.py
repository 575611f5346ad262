import pytest
import sys
import os
import random

# Add project root to path so tests can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import BotSettings, ManualRegion, ManualClickPoints, RuntimeSettings
from cancellation import CancelToken
from vision import ExecutionContext, DetectionResult


ALL_TEMPLATES = (
    "clear_section_button.png", "deploy_button.png", "gather_button.png",
    "transfer_button.png", "occupy_button.png", "map_button.png", "map_button_alt.png",
    "map_icon.png", "castle.png", "army_indicator_icon.png", "popup_close.png",
    "lowest_tier_button.png", "resource_tile.png",
    "resource_stone.png", "resource_stone_1.png", "resource_wood.png", "resource_wood_1.png",
    "resource_ore.png", "resource_ore_1.png", "resource_food.png", "resource_food_1.png",
    "resource_rune.png", "resource_rune_1.png",
)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


class FakeTransport:
    """Records taps, swipes and adb timeouts; screenshots are numbered paths, never written."""

    def __init__(self, device="127.0.0.1:9999", resolution=(1600, 900)):
        self.device = device
        self.resolution = resolution
        self.taps = []
        self.swipes = []
        self.screenshots = 0
        self.device_timeouts = []
        self.screenshot_timeouts = []
        self.on_tap = None

    def start_server(self):
        pass

    def get_connected_device(self, timeout=None):
        self.device_timeouts.append(timeout)
        return self.device

    def get_resolution(self):
        return self.resolution

    def take_screenshot(self, out_path, timeout=None):
        self.screenshots += 1
        self.screenshot_timeouts.append(timeout)
        return out_path

    def tap(self, x, y):
        self.taps.append((x, y))
        if self.on_tap is not None:
            self.on_tap(x, y)

    def swipe(self, x1, y1, x2, y2, duration_ms=300):
        self.swipes.append((x1, y1, x2, y2, duration_ms))


class FakeDetector:
    """Scores templates by file name from the ``scores`` dict.

    Values are (confidence, x, y); a template not listed scores 0. Region
    searches use the same table. Every call is recorded.
    """

    def __init__(self, scores=None):
        self.scores = dict(scores or {})
        self.calls = []

    def _result(self, template_path, threshold):
        name = os.path.basename(template_path)
        confidence, x, y = self.scores.get(name, (0.0, 0, 0))
        return DetectionResult(confidence >= threshold, confidence, x, y)

    def find_template(self, screenshot_path, template_path, threshold=0.9):
        self.calls.append((os.path.basename(template_path), threshold, None))
        return self._result(template_path, threshold)

    def find_template_in_region(self, screenshot_path, template_path, x, y, w, h, threshold=0.9):
        self.calls.append((os.path.basename(template_path), threshold, (x, y, w, h)))
        return self._result(template_path, threshold)


class FakeOcr:
    def __init__(self, integers=None, text=""):
        self.integers = list(integers or [])
        self.text = text
        self.regions = []

    def read_integer(self, screenshot_path, x, y, w, h):
        self.regions.append((x, y, w, h))
        return self.integers.pop(0) if self.integers else None

    def read_text(self, screenshot_path, x, y, w, h):
        return self.text


@pytest.fixture
def mock_device():
    """A fake ADB device ID for tests."""
    return "127.0.0.1:9999"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token(clock):
    """Root cancel token driven by the fake clock."""
    return CancelToken(clock=clock, sleep=clock.sleep)


@pytest.fixture
def transport(mock_device):
    return FakeTransport(device=mock_device)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def ocr():
    return FakeOcr()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def template_root(tmp_path):
    """Directory holding an (empty) file for every template name the bot uses."""
    root = tmp_path / "elements"
    root.mkdir()
    for name in ALL_TEMPLATES:
        (root / name).write_bytes(b"")
    return root


@pytest.fixture
def bot_settings(template_root, tmp_path):
    """BotSettings with manual OCR, indicator gate and manual clicks turned off."""
    return BotSettings(
        max_active_marches=2,
        manual_ocr=ManualRegion(enabled=False,
                                points=((72, 342), (100, 341), (99, 368), (70, 368))),
        indicator_gate=ManualRegion(enabled=False,
                                    points=((1, 333), (128, 322), (122, 446), (1, 452))),
        manual_clicks=ManualClickPoints(enabled=False),
        template_root=str(template_root),
        screenshot_dir=str(tmp_path / "shots"),
    )


@pytest.fixture
def runtime(bot_settings):
    return RuntimeSettings(bot_settings)


@pytest.fixture
def ctx(template_root, tmp_path, mock_device):
    return ExecutionContext(
        account_id="acct-1",
        device_id=mock_device,
        screenshot_path=str(tmp_path / "shots" / "pending.png"),
        template_root=str(template_root),
    )
