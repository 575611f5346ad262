"""Template-detection helpers shared by the resolver, the army monitor and tasks.

Leaf module above vision — imports no task or monitor code.

Key exports:
    detect / detect_in_region / detect_any — single-frame probes, missing assets tolerated
    find_best_template — descending threshold ladder, fresh capture per rung
    find_popup_close   — ladder plus the top-right zone gate for close buttons
    tap_jittered / random_delay — humanized input timing
"""

import os

import config
from vision import NOT_FOUND, capture
from botlog import get_logger, stats


def template_exists(ctx, name):
    return os.path.isfile(ctx.template(name))

# ============================================================
# SINGLE-FRAME PROBES
# ============================================================

def detect(detector, ctx, name, threshold, log=None):
    """Match one template on the context's current frame.

    A missing template file is not an error: it is logged at debug level
    and reported as NOT_FOUND.
    """
    path = ctx.template(name)
    if not os.path.isfile(path):
        (log or get_logger("detection", ctx.device_id)).debug("Template missing: %s", name)
        return NOT_FOUND
    return detector.find_template(ctx.screenshot_path, path, threshold)


def detect_in_region(detector, ctx, name, region, threshold, log=None):
    path = ctx.template(name)
    if not os.path.isfile(path):
        (log or get_logger("detection", ctx.device_id)).debug("Template missing: %s", name)
        return NOT_FOUND
    x, y, w, h = region
    return detector.find_template_in_region(ctx.screenshot_path, path, x, y, w, h, threshold)


def detect_any(detector, ctx, names, threshold, log=None):
    """Best result over alternative templates on one frame.

    A later template replaces the current best when the best is not a
    match yet, or when it scores higher.
    """
    best = NOT_FOUND
    for name in names:
        result = detect(detector, ctx, name, threshold, log)
        if not best.is_match or result.confidence > best.confidence:
            best = result
    return best

# ============================================================
# THRESHOLD LADDER
# ============================================================

def find_best_template(transport, detector, ctx, names, thresholds, cancel=None):
    """Search templates down a descending threshold ladder.

    Each rung looks at a fresh capture. A template stops descending at its
    first matching rung; across templates the highest-confidence match
    wins. Missing templates are skipped.

    Returns (best, ctx) where ctx carries the last captured frame.
    """
    best = NOT_FOUND
    for name in names:
        path = ctx.template(name)
        if not os.path.isfile(path):
            continue
        top_score = 0.0
        for threshold in thresholds:
            if cancel is not None:
                cancel.raise_if_cancelled()
            ctx = capture(transport, ctx)
            result = detector.find_template(ctx.screenshot_path, path, threshold)
            top_score = max(top_score, result.confidence)
            if not result.is_match:
                continue
            stats.record_template_hit(ctx.device_id, name, result.center_x,
                                      result.center_y, result.confidence)
            if not best.is_match or result.confidence > best.confidence:
                best = result
            break
        else:
            stats.record_template_miss(ctx.device_id, name, top_score)
    return best, ctx


def in_popup_close_zone(result, resolution):
    width, height = resolution
    return (result.center_x >= int(width * config.POPUP_CLOSE_MIN_X_FRACTION)
            and result.center_y <= int(height * config.POPUP_CLOSE_MAX_Y_FRACTION))


def find_popup_close(transport, detector, ctx, thresholds=config.POPUP_CLOSE_THRESHOLDS,
                     cancel=None):
    """Locate a popup close button that is safe to tap.

    Accepted only with confidence of at least POPUP_CLOSE_MIN_CONFIDENCE and
    a center in the top-right zone, so unrelated X-like glyphs elsewhere on
    screen are ignored. Returns (result, ctx); result is NOT_FOUND when
    rejected.
    """
    close, ctx = find_best_template(transport, detector, ctx,
                                    [config.POPUP_CLOSE_TEMPLATE], thresholds, cancel)
    if not close.is_match or close.confidence < config.POPUP_CLOSE_MIN_CONFIDENCE:
        return NOT_FOUND, ctx
    if not in_popup_close_zone(close, transport.get_resolution()):
        get_logger("detection", ctx.device_id).debug(
            "Popup close at (%d, %d) outside top-right zone, ignored",
            close.center_x, close.center_y)
        return NOT_FOUND, ctx
    return close, ctx

# ============================================================
# HUMANIZED INPUT
# ============================================================

def jitter(rng, amount=config.TAP_JITTER_PX):
    return rng.randint(-amount, amount)


def tap_jittered(transport, rng, x, y):
    """Tap near (x, y), offset by up to TAP_JITTER_PX on each axis."""
    tx = x + jitter(rng)
    ty = y + jitter(rng)
    transport.tap(tx, ty)
    return tx, ty


def random_delay(rng, cancel, min_ms, max_ms):
    """Cooperative sleep for a uniformly drawn number of milliseconds."""
    delay_ms = rng.randint(min_ms, max_ms)
    cancel.sleep(delay_ms / 1000.0)
    return delay_ms
