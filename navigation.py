import config
from config import GameState
from vision import NOT_FOUND, capture, image_size
from detection import detect, detect_any, detect_in_region, tap_jittered, random_delay
from botlog import get_logger

# ============================================================
# STATE RESOLUTION
# ============================================================

def castle_roi(screenshot_path):
    """Bottom-left search box for the world-map castle icon, as (x, y, w, h).

    Sized from the actual screenshot; falls back to a fixed box when the
    frame can't be read.
    """
    size = image_size(screenshot_path)
    if size is None:
        return config.CASTLE_ROI_FALLBACK
    width, height = size
    y = int(height * config.CASTLE_ROI_TOP_FRACTION)
    w = max(config.CASTLE_ROI_MIN_SIZE, int(width * config.CASTLE_ROI_WIDTH_FRACTION))
    h = max(config.CASTLE_ROI_MIN_SIZE, height - y)
    return 0, y, min(w, width), min(h, height - y)


class StateResolver:
    """Classifies a screenshot into a GameState.

    Probes run in a fixed order and the first positive wins: popups are
    checked before the screens they cover. Every probe works on the frame
    already held by the context; none of them captures.
    """

    def __init__(self, detector):
        self.detector = detector

    def resolve(self, ctx):
        if self.is_march_screen(ctx):
            return GameState.MARCH_SCREEN
        if self.is_resource_popup(ctx):
            return GameState.RESOURCE_POPUP
        if self.is_tile_popup(ctx):
            return GameState.TILE_POPUP
        if self.is_city(ctx):
            return GameState.CITY
        if self.is_world_map(ctx):
            return GameState.WORLD_MAP
        return GameState.UNKNOWN

    def _probe(self, ctx, names, threshold):
        log = get_logger("navigation", ctx.device_id)
        result = detect_any(self.detector, ctx, names, threshold, log)
        log.debug("State probe %s: match=%s confidence=%.3f",
                  "/".join(names), result.is_match, result.confidence)
        return result.is_match

    def is_march_screen(self, ctx):
        return self._probe(ctx, config.MARCH_SCREEN_TEMPLATES, config.MARCH_SCREEN_THRESHOLD)

    def is_resource_popup(self, ctx):
        return self._probe(ctx, config.RESOURCE_POPUP_TEMPLATES, config.RESOURCE_POPUP_THRESHOLD)

    def is_tile_popup(self, ctx):
        return self._probe(ctx, config.TILE_POPUP_TEMPLATES, config.TILE_POPUP_THRESHOLD)

    def is_city(self, ctx):
        return self._probe(ctx, config.CITY_TEMPLATES, config.CITY_THRESHOLD)

    def is_world_map(self, ctx):
        """Castle icon in the bottom-left corner, else any resource tile."""
        log = get_logger("navigation", ctx.device_id)
        roi = castle_roi(ctx.screenshot_path)
        castle = detect_in_region(self.detector, ctx, config.WORLD_MAP_CASTLE_TEMPLATE,
                                  roi, config.WORLD_MAP_CASTLE_THRESHOLD, log)
        log.debug("World-map castle: match=%s confidence=%.3f roi=%s",
                  castle.is_match, castle.confidence, roi)
        if castle.is_match:
            return True
        return self._probe(ctx, config.WORLD_MAP_RESOURCE_TEMPLATES,
                           config.WORLD_MAP_RESOURCE_THRESHOLD)

# ============================================================
# MAP NAVIGATION
# ============================================================

class MapNavigator:
    """World-map moves: reach the map, pan, zoom out, and find resource tiles."""

    def __init__(self, transport, detector, resolver, settings, rng):
        self.transport = transport
        self.detector = detector
        self.resolver = resolver
        self.settings = settings
        self.rng = rng

    def ensure_on_world_map(self, ctx, cancel):
        """Get to the world map from wherever we are. Returns True when there.

        Taps a map icon when one is visible, otherwise pans the camera as a
        recovery nudge. Either way the check afterwards uses a new capture.
        """
        log = get_logger("navigation", ctx.device_id)
        if self.resolver.is_world_map(ctx):
            return True

        if self._tap_map_icon(ctx):
            random_delay(self.rng, cancel, 400, 1000)
            return self.resolver.is_world_map(capture(self.transport, ctx))

        log.warning("Map button not detected. Attempting random pan recovery.")
        self.random_map_pan(ctx)
        return self.resolver.is_world_map(capture(self.transport, ctx))

    def _tap_map_icon(self, ctx):
        log = get_logger("navigation", ctx.device_id)
        for name in config.MAP_ICON_TEMPLATES:
            for threshold in config.MAP_BUTTON_THRESHOLDS:
                result = detect(self.detector, ctx, name, threshold, log)
                if not result.is_match:
                    continue
                tap_jittered(self.transport, self.rng, result.center_x, result.center_y)
                log.info("Clicked map icon (%s, confidence %.3f)", name, result.confidence)
                return True
        return False

    def zoom_out(self, ctx, cancel):
        """Two downward drags from the center; the game maps them to camera zoom."""
        width, height = self.transport.get_resolution()
        cx, cy = width // 2, height // 2
        end_y = int(height * 0.82)
        self.transport.swipe(cx, cy, cx, end_y, 320)
        random_delay(self.rng, cancel, 350, 950)
        self.transport.swipe(cx, cy, cx, end_y, 320)
        get_logger("navigation", ctx.device_id).info("Executed map zoom-out gestures")

    def random_map_pan(self, ctx):
        width, height = self.transport.get_resolution()
        start_x = int(width * self.rng.uniform(0.35, 0.65))
        start_y = int(height * self.rng.uniform(0.35, 0.65))
        end_x = int(width * self.rng.uniform(0.2, 0.8))
        end_y = int(height * self.rng.uniform(0.2, 0.8))
        self.transport.swipe(start_x, start_y, end_x, end_y, self.rng.randint(240, 420))
        get_logger("navigation", ctx.device_id).info(
            "Map pan executed: (%d,%d) -> (%d,%d)", start_x, start_y, end_x, end_y)

    def resource_templates(self):
        """The generic tile template plus one per enabled resource kind."""
        current = self.settings.current
        return [config.RESOURCE_TILE_TEMPLATE] + [
            config.RESOURCE_TEMPLATES[kind] for kind in current.enabled_resources()]

    def find_resource_tile(self, ctx):
        """Best resource-tile match on the current frame, or NOT_FOUND.

        The score of a template on one frame does not depend on the
        threshold, so each template is matched once at the loosest rung.
        """
        log = get_logger("navigation", ctx.device_id)
        floor = min(config.RESOURCE_THRESHOLDS)
        best, picked = NOT_FOUND, None
        for name in self.resource_templates():
            result = detect(self.detector, ctx, name, floor, log)
            log.debug("Resource detection %s: match=%s confidence=%.3f center=(%d,%d)",
                      name, result.is_match, result.confidence,
                      result.center_x, result.center_y)
            if not result.is_match:
                continue
            if not best.is_match or result.confidence > best.confidence:
                best, picked = result, name
        log.info("Resource tile selected: %s (match=%s, confidence=%.3f, center=(%d,%d))",
                 picked or "none", best.is_match, best.confidence, best.center_x, best.center_y)
        return best
