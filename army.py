"""Army limit monitor: how many marches are out, read from the world map.

Every call starts from a fresh capture; nothing is remembered between
checks.

Key exports:
    ArmyLimitMonitor       — ensure_world_map_ready() / check_now()
    ArmyLimitCheckResult   — readable flag, march count, limit, verdict, reason
    MonitorPrecheckResult  — ready flag, close taps performed, map flag, reason
    quad_bounds            — four corner points reduced to a clamped rectangle
"""

from dataclasses import dataclass, replace
from typing import Optional

import config
from config import GameState
from cancellation import CancelToken
from vision import NOT_FOUND, build_context, capture, NullDebugSink
from detection import (template_exists, detect_in_region, find_best_template,
                       find_popup_close)
from botlog import get_logger, timed_action

# ============================================================
# RESULTS
# ============================================================

@dataclass(frozen=True)
class ArmyLimitCheckResult:
    """Outcome of one army check.

    ``at_or_above_limit`` is derived, never trusted from the caller: it is
    True only for a readable result whose count reaches max(1, limit).
    An unreadable result must be treated as unknown, not as "below limit".
    """
    is_readable: bool
    detected_marches: Optional[int]
    configured_limit: int
    at_or_above_limit: bool
    reason: str

    def __post_init__(self):
        verdict = (self.is_readable and self.detected_marches is not None
                   and self.detected_marches >= max(1, self.configured_limit))
        object.__setattr__(self, "at_or_above_limit", verdict)

    @classmethod
    def readable(cls, marches, limit, reason):
        return cls(True, marches, limit, False, reason)

    @classmethod
    def unreadable(cls, limit, reason):
        return cls(False, None, limit, False, reason)


@dataclass(frozen=True)
class MonitorPrecheckResult:
    is_ready: bool
    close_attempts: int
    map_confirmed: bool
    reason: str


def quad_bounds(points, width, height, reject_non_positive=False):
    """Reduce four (x, y) corners to an axis-aligned (x, y, w, h) box.

    Corners are clamped into the screen first. Returns None when the box is
    narrower or shorter than MIN_OCR_REGION_SIZE, or, with
    ``reject_non_positive``, when any raw coordinate is zero or negative.
    """
    if len(points) != 4:
        return None
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    if reject_non_positive and any(v <= 0 for v in xs + ys):
        return None
    min_x = max(0, min(min(xs), width - 1))
    max_x = max(0, min(max(xs), width - 1))
    min_y = max(0, min(min(ys), height - 1))
    max_y = max(0, min(max(ys), height - 1))
    w = max_x - min_x
    h = max_y - min_y
    if w < config.MIN_OCR_REGION_SIZE or h < config.MIN_OCR_REGION_SIZE:
        return None
    return min_x, min_y, w, h

# ============================================================
# MONITOR
# ============================================================

class ArmyLimitMonitor:
    """Reads the active-march digit next to the army indicator on the world map.

    Collaborators are injected: ``transport`` (device I/O), ``resolver``
    (StateResolver), ``detector`` and ``ocr`` gateways, ``settings``
    (RuntimeSettings) and an optional debug sink.
    """

    def __init__(self, transport, resolver, detector, ocr, settings, debug=None):
        self.transport = transport
        self.resolver = resolver
        self.detector = detector
        self.ocr = ocr
        self.settings = settings
        self.debug = debug or NullDebugSink()

    def _fresh(self, ctx):
        """A new capture; builds a context from the live device when none is given."""
        if ctx is None:
            return build_context(self.transport, self.settings.current)
        return capture(self.transport, ctx)

    # ---- precheck ----------------------------------------------------

    def ensure_world_map_ready(self, ctx=None, cancel=None):
        """Make sure the world map is in front before reading the indicator.

        Up to MAX_CLOSE_ATTEMPTS rounds of: look, close a top-right popup if
        one is there, look again, tap the map button if still off the map.
        """
        cancel = cancel or CancelToken()
        close_attempts = 0

        for attempt in range(1, config.MAX_CLOSE_ATTEMPTS + 1):
            cancel.raise_if_cancelled()
            ctx = self._fresh(ctx)
            log = get_logger("army", ctx.device_id)
            if attempt == 1:
                log.info("Army monitor precheck started")

            if self.resolver.resolve(ctx) == GameState.WORLD_MAP:
                log.info("Army monitor precheck ready: already on world map")
                return MonitorPrecheckResult(True, close_attempts, True, "World map confirmed")

            close, ctx = find_popup_close(self.transport, self.detector, ctx, cancel=cancel)
            if close.is_match:
                self.transport.tap(close.center_x, close.center_y)
                close_attempts += 1
                log.info("Army monitor precheck: closed popup via close button")
                cancel.sleep(config.POPUP_CLOSE_SETTLE_S)

            ctx = capture(self.transport, ctx)
            on_map = self.resolver.is_world_map(ctx)
            if not on_map:
                button, ctx = find_best_template(self.transport, self.detector, ctx,
                                                 [config.MAP_BUTTON_TEMPLATE],
                                                 config.MAP_BUTTON_THRESHOLDS, cancel)
                if button.is_match:
                    self.transport.tap(button.center_x, button.center_y)
                    log.info("Army monitor precheck: clicked map button")
                    cancel.sleep(config.MAP_BUTTON_SETTLE_S)
                    ctx = capture(self.transport, ctx)
                    on_map = self.resolver.is_world_map(ctx)

            if on_map:
                log.info("Army monitor precheck ready after attempt %d/%d",
                         attempt, config.MAX_CLOSE_ATTEMPTS)
                return MonitorPrecheckResult(True, close_attempts, True, "World map ready")

        get_logger("army", ctx.device_id).warning(
            "Army monitor precheck failed: map not ready after retries")
        return MonitorPrecheckResult(False, close_attempts, False, "Map not ready")

    # ---- check -------------------------------------------------------

    @timed_action("army_check")
    def check_now(self, ctx=None, cancel=None):
        """Count active marches and compare them with the configured limit."""
        cancel = cancel or CancelToken()
        current = self.settings.current
        limit = max(1, current.max_active_marches)

        precheck = self.ensure_world_map_ready(ctx, cancel)
        if not precheck.is_ready:
            return ArmyLimitCheckResult.unreadable(limit, "Precheck failed")

        ctx = self._fresh(ctx)
        log = get_logger("army", ctx.device_id)
        if not template_exists(ctx, config.ARMY_INDICATOR_TEMPLATE):
            log.warning("Army monitor check failed: indicator template missing")
            return ArmyLimitCheckResult.unreadable(limit, "Indicator template missing")

        width, height = self.transport.get_resolution()
        gate = self._gate_bounds(current, width, height)
        indicator, ctx = self._find_indicator(ctx, gate, current, cancel)

        if not indicator.is_match:
            if current.save_army_debug:
                self.debug.save_frame(ctx, "army-indicator-not-found", gate)
            log.info("Army monitor check: indicator not detected, treating active marches "
                     "as 0 (limit=%d)", limit)
            return ArmyLimitCheckResult.readable(0, limit, "Indicator not found (assumed zero)")

        if not self._in_indicator_zone(indicator, width, height):
            log.info("Army monitor check unreadable: indicator outside expected zone "
                     "center=(%d,%d)", indicator.center_x, indicator.center_y)
            return ArmyLimitCheckResult.unreadable(limit, "Indicator outside zone")

        manual_failed = False
        manual = self._manual_ocr_bounds(current, width, height)
        if manual is not None:
            value = self.ocr.read_integer(ctx.screenshot_path, *manual)
            if self._valid_digit(value):
                return self._readable(ctx, value, limit, "Manual OCR", manual, current)
            manual_failed = True
            log.warning("Manual OCR parse failed roi=%s (read %r), trying indicator windows",
                        manual, value)
            self.debug.save_frame(ctx, "army-manual-ocr-failed", manual)

        for dx, dy, w, h in config.INDICATOR_DIGIT_ROIS:
            roi = (indicator.center_x + dx, indicator.center_y + dy, w, h)
            value = self.ocr.read_integer(ctx.screenshot_path, *roi)
            if self._valid_digit(value):
                return self._readable(ctx, value, limit, "Dynamic ROI", roi, current)

        log.info("Army monitor check unreadable: OCR parse failed")
        self.debug.save_frame(ctx, "army-ocr-failed", gate)
        reason = "Manual OCR parse failed" if manual_failed else "OCR parse failed"
        return ArmyLimitCheckResult.unreadable(limit, reason)

    def _readable(self, ctx, value, limit, reason, roi, current):
        result = ArmyLimitCheckResult.readable(value, limit, reason)
        if current.save_army_debug:
            self.debug.save_frame(ctx, f"army-{reason.lower().replace(' ', '-')}", roi)
        get_logger("army", ctx.device_id).info(
            "Army monitor check readable (%s): marches=%d limit=%d atOrAbove=%s roi=%s",
            reason, value, limit, result.at_or_above_limit, roi)
        return result

    @staticmethod
    def _valid_digit(value):
        return value is not None and 0 <= value <= config.MAX_MARCH_DIGIT

    @staticmethod
    def _in_indicator_zone(indicator, width, height):
        return (indicator.center_x <= int(width * config.INDICATOR_MAX_X_FRACTION)
                and int(height * config.INDICATOR_MIN_Y_FRACTION)
                <= indicator.center_y
                <= int(height * config.INDICATOR_MAX_Y_FRACTION))

    @staticmethod
    def _gate_bounds(current, width, height):
        gate = current.indicator_gate
        if not gate.enabled:
            return None
        return quad_bounds(gate.points, width, height)

    @staticmethod
    def _manual_ocr_bounds(current, width, height):
        region = current.manual_ocr
        if not region.enabled:
            return None
        return quad_bounds(region.points, width, height, reject_non_positive=True)

    def _find_indicator(self, ctx, gate, current, cancel):
        """Locate the army indicator icon. Returns (result, ctx).

        With a gate box the icon is scored inside it with no threshold and
        accepted when its confidence reaches the gate minimum. Without one
        the whole screen is searched down the indicator threshold ladder.
        """
        if gate is not None:
            log = get_logger("army", ctx.device_id)
            result = detect_in_region(self.detector, ctx, config.ARMY_INDICATOR_TEMPLATE,
                                      gate, 0.0, log)
            required = current.indicator_gate.min_confidence
            log.info("Army indicator gate confidence=%.3f center=(%d,%d) roi=%s required>=%.3f",
                     result.confidence, result.center_x, result.center_y, gate, required)
            if result.confidence >= required:
                return replace(result, is_match=True), ctx
            return NOT_FOUND, ctx

        return find_best_template(self.transport, self.detector, ctx,
                                  [config.ARMY_INDICATOR_TEMPLATE],
                                  config.ARMY_INDICATOR_THRESHOLDS, cancel)
