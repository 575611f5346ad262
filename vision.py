import cv2
import os
import uuid
import threading
import numpy as np
from dataclasses import dataclass, replace
from datetime import datetime

import config
from config import SCREENSHOT_KEEP, DEBUG_SCREENSHOT_MAX
from botlog import get_logger
from devices import DeviceNotFoundError

# ============================================================
# EXECUTION CONTEXT (per-capture snapshot)
# ============================================================

@dataclass(frozen=True)
class ExecutionContext:
    """Which account/device a step runs against and the frame it looks at.

    Immutable; a new capture yields a new context via ``with_screenshot``.
    """
    account_id: str
    device_id: str
    screenshot_path: str
    template_root: str

    def template(self, name):
        return os.path.join(self.template_root, name)

    def with_screenshot(self, path):
        return replace(self, screenshot_path=path)


def _cleanup_screenshots(directory, keep=SCREENSHOT_KEEP):
    try:
        files = sorted(
            [os.path.join(directory, f) for f in os.listdir(directory) if f.endswith(".png")],
            key=os.path.getmtime
        )
        while len(files) > keep:
            os.remove(files.pop(0))
    except OSError as e:
        get_logger("vision").warning("Screenshot cleanup failed: %s", e)


def _new_screenshot_path(directory):
    os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, f"screen-{uuid.uuid4().hex}.png")


def _adb_budget(cancel):
    """Seconds an adb call may take under ``cancel``; None when unbounded."""
    if cancel is None:
        return None
    cancel.raise_if_cancelled()
    return cancel.remaining()


def capture(transport, ctx, cancel=None):
    """Take a fresh screenshot and return a context pointing at it.

    With ``cancel`` the capture must finish before its deadline.
    """
    timeout = _adb_budget(cancel)
    directory = os.path.dirname(ctx.screenshot_path) or config.SCREENSHOT_DIR
    path = transport.take_screenshot(_new_screenshot_path(directory), timeout=timeout)
    _cleanup_screenshots(directory)
    return ctx.with_screenshot(path)


def new_context(transport, settings, cancel=None):
    """Resolve the active device; the context has no frame captured yet.

    Raises DeviceNotFoundError when no device is online in time.
    """
    device = transport.get_connected_device(timeout=_adb_budget(cancel))
    if not device:
        raise DeviceNotFoundError("No active device found for the bot.")
    return ExecutionContext(
        account_id=settings.account_id,
        device_id=device,
        screenshot_path=os.path.join(settings.screenshot_dir, "pending.png"),
        template_root=settings.template_root,
    )


def build_context(transport, settings, cancel=None):
    """Resolve the active device and capture a first frame."""
    return capture(transport, new_context(transport, settings, cancel), cancel)

# ============================================================
# TEMPLATE CACHE
# ============================================================

_template_cache = {}
_template_lock = threading.Lock()

def get_template(image_path):
    """Load a template image, caching it for reuse. Missing files are not cached."""
    with _template_lock:
        img = _template_cache.get(image_path)
        if img is None:
            img = cv2.imread(image_path, cv2.IMREAD_COLOR)
            if img is None:
                get_logger("vision").warning("Template not found: %s", image_path)
                return None
            _template_cache[image_path] = img
            if len(_template_cache) % 25 == 0:
                get_logger("vision").debug("Template cache size: %d entries", len(_template_cache))
        return img


def load_image(path):
    """Read a screenshot from disk, raising FileNotFoundError when it is absent."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Screenshot file not found: {path}")
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Screenshot could not be decoded: {path}")
    return img


def image_size(path):
    """(width, height) of an image on disk, or None if it can't be read."""
    img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if img is None:
        return None
    h, w = img.shape[:2]
    return w, h

# ============================================================
# TEMPLATE MATCHING
# ============================================================

@dataclass(frozen=True)
class DetectionResult:
    is_match: bool
    confidence: float
    center_x: int
    center_y: int


NOT_FOUND = DetectionResult(False, 0.0, 0, 0)


def _match(screen, template, threshold, origin=(0, 0)):
    if screen.shape[0] < template.shape[0] or screen.shape[1] < template.shape[1]:
        return NOT_FOUND
    result = cv2.matchTemplate(screen, template, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(result)
    h, w = template.shape[:2]
    max_val = float(max_val)
    if not np.isfinite(max_val):
        max_val = 0.0
    return DetectionResult(
        is_match=max_val >= threshold,
        confidence=max_val,
        center_x=origin[0] + max_loc[0] + w // 2,
        center_y=origin[1] + max_loc[1] + h // 2,
    )


def _require_template(template_path):
    if not os.path.isfile(template_path):
        raise FileNotFoundError(f"Template file not found: {template_path}")
    template = get_template(template_path)
    if template is None:
        raise FileNotFoundError(f"Template could not be decoded: {template_path}")
    return template


def find_template(screenshot_path, template_path, threshold=0.9):
    """Best TM_CCOEFF_NORMED match of a template over the whole screenshot.

    The confidence and center are reported even when below ``threshold``.
    """
    screen = load_image(screenshot_path)
    template = _require_template(template_path)
    return _match(screen, template, threshold)


def find_template_in_region(screenshot_path, template_path, x, y, w, h, threshold=0.9):
    """Like find_template but restricted to the (x, y, w, h) rectangle.

    The rectangle is clamped to the screen; the center is reported in
    full-screen coordinates.
    """
    screen = load_image(screenshot_path)
    template = _require_template(template_path)
    sh, sw = screen.shape[:2]
    x1 = max(0, min(int(x), sw))
    y1 = max(0, min(int(y), sh))
    x2 = max(x1, min(int(x) + int(w), sw))
    y2 = max(y1, min(int(y) + int(h), sh))
    cropped = screen[y1:y2, x1:x2]
    if cropped.size == 0:
        return NOT_FOUND
    return _match(cropped, template, threshold, origin=(x1, y1))


class TemplateDetector:
    """Detection gateway handed to components; wraps the module functions."""

    def find_template(self, screenshot_path, template_path, threshold=0.9):
        return find_template(screenshot_path, template_path, threshold)

    def find_template_in_region(self, screenshot_path, template_path, x, y, w, h, threshold=0.9):
        return find_template_in_region(screenshot_path, template_path, x, y, w, h, threshold)

# ============================================================
# OCR BACKEND — EasyOCR
# ============================================================
#
# EasyOCR reader is initialized lazily and cached globally.
# Thread-safe via double-checked locking.
# _ocr_infer_lock serializes readtext() calls so the PyTorch scratch
# buffers are not duplicated per calling thread.

_ocr_reader = None
_ocr_lock = threading.Lock()
_ocr_infer_lock = threading.Lock()

def _get_ocr_reader():
    """Get the EasyOCR reader instance.

    Lazy-initialized on first call. Downloads OCR models on first run.
    """
    global _ocr_reader
    if _ocr_reader is None:
        with _ocr_lock:
            if _ocr_reader is None:
                # Cap oneDNN primitive cache before torch loads; variable-size
                # crops otherwise fill it with stale kernels.
                os.environ.setdefault("ONEDNN_PRIMITIVE_CACHE_CAPACITY", "8")

                import warnings
                warnings.filterwarnings("ignore", message=".*pin_memory.*")
                warnings.filterwarnings("ignore", message=".*GPU.*")
                import torch
                import easyocr

                torch.set_num_threads(2)

                _log = get_logger("vision")
                _log.info("Initializing EasyOCR (first run may download models)...")
                _ocr_reader = easyocr.Reader(['en'], gpu=False, verbose=False)
                _log.info("EasyOCR ready (threads=2).")
    return _ocr_reader


def warmup_ocr():
    """Pre-initialize the OCR engine so the first army check isn't slow."""
    _log = get_logger("vision")
    _log.info("Warming up EasyOCR engine in background...")
    _get_ocr_reader()


def ocr_read(image, allowlist=None, detail=0):
    """Run EasyOCR on a preprocessed image.

    detail=0: list of recognized text strings.
    detail=1: list of (bbox, text, confidence) tuples.
    """
    reader = _get_ocr_reader()
    with _ocr_infer_lock:
        return reader.readtext(image, allowlist=allowlist, detail=detail)


def _crop(screen, x, y, w, h):
    """Clamp (x, y, w, h) into the screen; None when nothing usable remains."""
    sh, sw = screen.shape[:2]
    rx = max(0, min(int(x), max(0, sw - 1)))
    ry = max(0, min(int(y), max(0, sh - 1)))
    rw = max(1, min(int(w), sw - rx))
    rh = max(1, min(int(h), sh - ry))
    if rw <= 1 or rh <= 1:
        return None
    return screen[ry:ry + rh, rx:rx + rw]


def read_integer(screenshot_path, x, y, w, h):
    """Read a whole number from a screen region, or None if no digits parse.

    Crop, grayscale, 3x cubic upscale, then Otsu binarization before OCR
    with a digits-only allowlist.
    """
    screen = load_image(screenshot_path)
    roi = _crop(screen, x, y, w, h)
    if roi is None:
        return None
    gray = cv2.cvtColor(roi, cv2.COLOR_BGR2GRAY)
    gray = cv2.resize(gray, None, fx=3, fy=3, interpolation=cv2.INTER_CUBIC)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
    raw = "".join(ocr_read(binary, allowlist="0123456789", detail=0))
    digits = "".join(c for c in raw if c.isdigit())
    if not digits:
        return None
    return int(digits)


def read_text(screenshot_path, x, y, w, h):
    """Read free text from a screen region. Returns "" when nothing is found."""
    screen = load_image(screenshot_path)
    roi = _crop(screen, x, y, w, h)
    if roi is None:
        return ""
    gray = cv2.cvtColor(roi, cv2.COLOR_BGR2GRAY)
    gray = cv2.resize(gray, None, fx=2, fy=2, interpolation=cv2.INTER_CUBIC)
    results = ocr_read(gray, detail=1)
    texts = [entry[1] for entry in results]
    if results:
        confidences = [entry[2] for entry in results]
        avg_conf = sum(confidences) / len(confidences)
        if avg_conf < 0.5:
            get_logger("vision").debug("OCR low confidence: avg=%.0f%%, text='%s'",
                                       avg_conf * 100, " ".join(texts).strip())
    return " ".join(texts).strip()


class OcrReader:
    """OCR gateway handed to components; wraps the module functions."""

    def read_integer(self, screenshot_path, x, y, w, h):
        return read_integer(screenshot_path, x, y, w, h)

    def read_text(self, screenshot_path, x, y, w, h):
        return read_text(screenshot_path, x, y, w, h)

# ============================================================
# FRAME DIFFERENCE
# ============================================================

def frame_difference(before_path, after_path, pixel_delta=config.FRAME_DIFF_PIXEL_DELTA):
    """Return (mean_abs_diff, changed_ratio) between two screenshots.

    changed_ratio is the share of pixels whose gray value moved by more
    than ``pixel_delta``. Frames of different size are compared over
    their overlapping top-left area.
    """
    before = cv2.imread(before_path, cv2.IMREAD_GRAYSCALE)
    after = cv2.imread(after_path, cv2.IMREAD_GRAYSCALE)
    if before is None or after is None:
        raise FileNotFoundError(f"Frame missing: {before_path if before is None else after_path}")
    h = min(before.shape[0], after.shape[0])
    w = min(before.shape[1], after.shape[1])
    if h <= 2 or w <= 2:
        raise ValueError(f"Frames too small to compare ({w}x{h})")
    diff = cv2.absdiff(before[:h, :w], after[:h, :w])
    mean = float(np.mean(diff))
    ratio = float(np.count_nonzero(diff > pixel_delta)) / diff.size
    return mean, ratio


def frame_changed(before_path, after_path):
    """True when the tap between two frames visibly did something.

    Read errors count as changed so a broken capture never blocks progress.
    """
    try:
        mean, ratio = frame_difference(before_path, after_path)
    except (FileNotFoundError, ValueError, cv2.error) as e:
        get_logger("vision").debug("Frame diff failed (%s), assuming changed", e)
        return True
    return mean >= config.FRAME_DIFF_MIN_MEAN or ratio >= config.FRAME_DIFF_MIN_RATIO

# ============================================================
# DEBUG ARTIFACTS (best-effort, never affect control flow)
# ============================================================

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DEBUG_DIR = os.path.join(SCRIPT_DIR, "debug")


class NullDebugSink:
    """Debug sink that drops everything."""

    def save_click(self, ctx, x, y, label):
        pass

    def save_frame(self, ctx, label, region=None):
        pass


class FileDebugSink(NullDebugSink):
    """Writes annotated copies of screenshots into debug/<kind>/.

    Any failure is logged and swallowed.
    """

    def __init__(self, root=DEBUG_DIR, clicks=True, frames=True, max_files=DEBUG_SCREENSHOT_MAX):
        self.root = root
        self.clicks = clicks
        self.frames = frames
        self.max_files = max_files
        self._seq = 0
        self._seq_lock = threading.Lock()

    def _next_name(self, ctx, label):
        with self._seq_lock:
            self._seq += 1
            seq = self._seq
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_device = ctx.device_id.replace(":", "_")
        safe_label = label.replace(" ", "_").replace("/", "_")
        return f"{seq:03d}_{timestamp}_{safe_device}_{safe_label}.png"

    def _write(self, kind, filename, image):
        directory = os.path.join(self.root, kind)
        os.makedirs(directory, exist_ok=True)
        cv2.imwrite(os.path.join(directory, filename), image)
        _cleanup_screenshots(directory, keep=self.max_files)

    def save_click(self, ctx, x, y, label):
        if not self.clicks:
            return
        try:
            annotated = load_image(ctx.screenshot_path).copy()
            cv2.circle(annotated, (int(x), int(y)), 30, (0, 0, 255), 3)
            cv2.circle(annotated, (int(x), int(y)), 5, (0, 0, 255), -1)
            cv2.putText(annotated, label, (int(x) + 35, int(y) - 10),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 0, 255), 2)
            self._write("clicks", self._next_name(ctx, label), annotated)
        except Exception as e:
            get_logger("vision", ctx.device_id).warning("Click debug save failed: %s", e)

    def save_frame(self, ctx, label, region=None):
        if not self.frames:
            return
        try:
            annotated = load_image(ctx.screenshot_path).copy()
            if region is not None:
                x, y, w, h = region
                cv2.rectangle(annotated, (int(x), int(y)), (int(x + w), int(y + h)),
                              (0, 255, 255), 2)
            self._write("frames", self._next_name(ctx, label), annotated)
        except Exception as e:
            get_logger("vision", ctx.device_id).warning("Debug frame save failed: %s", e)

# ============================================================
# TEMPLATE ASSET VERIFICATION
# ============================================================

REQUIRED_TEMPLATE_GROUPS = (
    ("map_button.png",),
    (config.RESOURCE_TILE_TEMPLATE,) + config.WORLD_MAP_RESOURCE_TEMPLATES,
    ("gather_button.png",),
    ("clear_section_button.png",),
    ("deploy_button.png",),
)


def verify_templates(template_root):
    """Return the required template groups with no file present (empty when ok)."""
    _log = get_logger("vision")
    missing = []
    for group in REQUIRED_TEMPLATE_GROUPS:
        if not any(os.path.isfile(os.path.join(template_root, name)) for name in group):
            missing.append(" | ".join(group))
    if missing:
        _log.error("Template verification failed. Root: %s. Missing: %s",
                   template_root, ", ".join(missing))
    else:
        _log.info("Template verification passed. Root: %s", template_root)
    return missing
