"""Resource gathering loop.

Each tick: build a fresh context, classify the screen, guard against stuck
popups and a full army, then act on the current state. Every action step
is retried under its own deadline; a failed step only costs the tick.

Key exports:
    GatherTask               — the scheduled task
    march_control_points     — where the lowest-tier and deploy taps land
    clear_selection_region   — OCR/template box anchored on the deploy control
"""

import random

import config
from config import GameState, BotRunMode
from cancellation import OperationCancelled, StepTimeout
from devices import TransportError
from vision import NOT_FOUND, new_context, capture, frame_changed, NullDebugSink
from detection import (template_exists, find_best_template, find_popup_close,
                       tap_jittered, random_delay)
from tasks._helpers import run_step
from botlog import get_logger, timed_action


def _clamp(value, lo, hi):
    return min(max(value, lo), hi)


def march_control_points(settings, width, height):
    """(lowest_tier, deploy) tap points from manual settings or the relative layout.

    Points are kept MANUAL_POINT_MARGIN pixels inside the screen.
    """
    margin = config.MANUAL_POINT_MARGIN

    def inside(point):
        return (_clamp(int(point[0]), margin, width - margin),
                _clamp(int(point[1]), margin, height - margin))

    manual = settings.manual_clicks
    if manual.enabled:
        return inside(manual.lowest_tier), inside(manual.deploy)
    lowest_tier = (width * config.LOWEST_TIER_RELATIVE[0], height * config.LOWEST_TIER_RELATIVE[1])
    deploy = (width * config.DEPLOY_RELATIVE[0], height * config.DEPLOY_RELATIVE[1])
    return inside(lowest_tier), inside(deploy)


def clear_selection_region(deploy, width, height):
    """Box above and left of the deploy control where "Clear selection" shows."""
    dx, dy = deploy
    x = _clamp(dx - int(width * 0.12), 0, width - 1)
    y = _clamp(dy - int(height * 0.28), 0, height - 1)
    w = _clamp(int(width * 0.26), 60, width - x)
    h = _clamp(int(height * 0.26), 60, height - y)
    return x, y, w, h


def _clear_selection_in_zone(found, deploy, width, height):
    dx = found.center_x - deploy[0]
    dy = found.center_y - deploy[1]
    return (int(-width * 0.12) <= dx <= int(width * 0.16)
            and int(-height * 0.42) <= dy <= int(-height * 0.10))


class GatherTask:
    """Sends marches to resource tiles until the army limit is reached."""

    name = config.GATHER_TASK_NAME
    priority = config.GATHER_TASK_PRIORITY

    def __init__(self, transport, resolver, navigator, monitor, mode,
                 detector, ocr, settings, rng=None, debug=None):
        self.transport = transport
        self.resolver = resolver
        self.navigator = navigator
        self.monitor = monitor
        self.mode = mode
        self.detector = detector
        self.ocr = ocr
        self.settings = settings
        self.rng = rng or random.Random()
        self.debug = debug or NullDebugSink()
        self._adb_warmed_up = False
        self._last_state = None
        self._state_since = None
        self._clock = None
        self._stuck_fired_at = None

    # ---- scheduler contract ------------------------------------------

    def can_run(self, cancel=None):
        try:
            return self.transport.get_connected_device() is not None
        except TransportError as e:
            get_logger("gather").warning("Device check failed: %s", e)
            return False

    def execute(self, cancel):
        """Run ticks until cancelled or the mode leaves Running."""
        log = get_logger("gather")
        if self.mode.current_mode != BotRunMode.RUNNING:
            return
        self._clock = cancel.clock
        log.info("Resource gather task loop started")
        if not self._adb_warmed_up:
            self._warmup_adb()
            self._adb_warmed_up = True

        while not cancel.cancelled:
            if self.mode.current_mode != BotRunMode.RUNNING:
                break
            try:
                self.tick(cancel)
            except StepTimeout as e:
                if cancel.cancelled:
                    break
                log.warning("Loop timeout detected: %s", e)
            except OperationCancelled:
                break
            except TimeoutError as e:
                log.warning("Loop timeout detected: %s", e)
            except TransportError as e:
                log.warning("Tick abandoned: %s", e)
            except Exception as e:
                log.error("Unhandled error in resource gather loop: %s", e, exc_info=True)
            if self.mode.current_mode != BotRunMode.RUNNING:
                break
            try:
                random_delay(self.rng, cancel, *config.TICK_DELAY_MS)
            except OperationCancelled:
                break
        log.info("Resource gather task loop stopped")

    def _warmup_adb(self):
        log = get_logger("gather")
        log.info("Starting ADB warmup phase")
        try:
            self.transport.start_server()
        except Exception as e:
            log.warning("ADB warmup skipped: %s", e)
            return
        log.info("ADB warmup phase completed")

    # ---- tick ----------------------------------------------------------

    def tick(self, cancel):
        """One pass of the loop.

        Device discovery runs under CONTEXT_TIMEOUT_S and the first capture
        under RESOLVE_TIMEOUT_S; both deadlines are handed to adb as its
        command timeout. A frame that was captured in time is classified.
        """
        self._clock = cancel.clock
        ctx = new_context(self.transport, self.settings.current,
                          cancel.child(config.CONTEXT_TIMEOUT_S))
        ctx = capture(self.transport, ctx, cancel.child(config.RESOLVE_TIMEOUT_S))
        state = self.resolver.resolve(ctx)

        log = get_logger("gather", ctx.device_id)
        log.info("Current state: %s", state.value)
        self._track_state(state, cancel.clock())

        if self._force_close_if_stuck(ctx, state, cancel):
            return

        if self._at_army_limit(ctx, cancel):
            self.mode.enter_army_monitor("Army limit reached")
            log.info("Army limit reached. Switching to army monitor mode")
            return

        self._dispatch(ctx, state, cancel, log)

    def _dispatch(self, ctx, state, cancel, log):
        def step(name, action):
            return run_step(name, lambda token: action(ctx, token), cancel, self.rng, log)

        if state == GameState.CITY:
            step("Ensure world map from city", self.ensure_world_map)
        elif state == GameState.WORLD_MAP:
            if step("Gather sequence", self.gather_sequence):
                self.wait_for_march_slot(ctx, cancel)
        elif state == GameState.RESOURCE_POPUP:
            step("Recover from resource popup", self.click_gather_and_march)
        elif state == GameState.TILE_POPUP:
            step("Recover from tile popup", self.dismiss_tile_popup)
        elif state == GameState.MARCH_SCREEN:
            step("Recover from march screen", self.select_lowest_tier_and_deploy)
        else:
            log.warning("Unknown state encountered. Attempting to close active overlay")
            step("Recover from unknown state", self._recover_from_unknown)

    def _recover_from_unknown(self, ctx, cancel):
        if not self.close_active_overlay(ctx, cancel):
            get_logger("gather", ctx.device_id).warning(
                "No close overlay action succeeded. Running map recovery")
        return self.recover_to_world_map(ctx, cancel)

    # ---- stuck popups --------------------------------------------------

    def _track_state(self, state, now):
        if state == self._last_state:
            return
        self._last_state = state
        self._state_since = now
        self._stuck_fired_at = None

    @property
    def stuck_state(self):
        """The popup state that tripped the stuck handler, or None.

        Reported from the moment the state has held for STUCK_POPUP_S, and
        for one more STUCK_POPUP_S after a forced close, until it changes.
        """
        if self._last_state not in config.POPUP_STATES or self._clock is None:
            return None
        now = self._clock()
        if self._stuck_fired_at is not None and now - self._stuck_fired_at < config.STUCK_POPUP_S:
            return self._last_state
        if now - self._state_since < config.STUCK_POPUP_S:
            return None
        return self._last_state

    def _force_close_if_stuck(self, ctx, state, cancel):
        """Tap a close button once a popup state has lasted STUCK_POPUP_S.

        The stuck timer restarts after the attempt, found or not, so the next
        forced close needs a state change or another full interval.
        """
        if state not in config.POPUP_STATES:
            return False
        stuck_for = cancel.clock() - self._state_since
        if stuck_for < config.STUCK_POPUP_S:
            return False

        log = get_logger("gather", ctx.device_id)
        log.warning("Detected stuck popup state %s for %.0fs. Forcing popup-close click",
                    state.value, stuck_for)
        self._stuck_fired_at = cancel.clock()
        close, ctx = find_best_template(self.transport, self.detector, ctx,
                                        [config.POPUP_CLOSE_TEMPLATE],
                                        config.ACTION_THRESHOLDS, cancel)
        self._state_since = cancel.clock()
        if not close.is_match:
            log.warning("Stuck-popup recovery: popup close button not found")
            return False
        self._tap(ctx, close.center_x, close.center_y, "stuck-popup-close")
        random_delay(self.rng, cancel, 280, 620)
        self._state_since = cancel.clock()
        return True

    # ---- army limit ----------------------------------------------------

    def _at_army_limit(self, ctx, cancel):
        log = get_logger("gather", ctx.device_id)
        result = self.monitor.check_now(ctx, cancel)
        if not result.is_readable:
            log.info("Army check unreadable in task tick: %s", result.reason)
            return False
        log.info("Army check in task tick: marches=%s limit=%d atOrAbove=%s",
                 result.detected_marches, result.configured_limit, result.at_or_above_limit)
        return result.at_or_above_limit

    def wait_for_march_slot(self, ctx, cancel):
        """Poll the army monitor until a march slot frees up or MARCH_SLOT_WAIT_S passes."""
        log = get_logger("gather", ctx.device_id)
        started = cancel.clock()
        log.info("Waiting for a march slot to become free")

        while not cancel.cancelled and cancel.clock() - started < config.MARCH_SLOT_WAIT_S:
            check = self.monitor.check_now(ctx, cancel)
            log.info("March wait check: readable=%s marches=%s limit=%d atOrAbove=%s reason=%s",
                     check.is_readable, check.detected_marches, check.configured_limit,
                     check.at_or_above_limit, check.reason)
            if not check.is_readable:
                log.warning("March wait: army count unreadable, retrying")
            elif not check.at_or_above_limit:
                log.info("March wait: exiting wait (below limit)")
                self.recover_to_world_map(ctx, cancel)
                return True
            else:
                log.info("March wait: continuing wait (full)")
            self.recover_to_world_map(ctx, cancel)
            low, high = config.MARCH_SLOT_POLL_S
            random_delay(self.rng, cancel, low * 1000, high * 1000)

        log.warning("Timed out waiting for march slot availability")
        return False

    # ---- navigation ----------------------------------------------------

    def ensure_world_map(self, ctx, cancel):
        return self.navigator.ensure_on_world_map(capture(self.transport, ctx), cancel)

    def recover_to_world_map(self, ctx, cancel):
        if self.ensure_world_map(ctx, cancel):
            return True
        self.navigator.random_map_pan(ctx)
        random_delay(self.rng, cancel, 350, 900)
        return self.ensure_world_map(ctx, cancel)

    def _tap(self, ctx, x, y, label):
        tx, ty = tap_jittered(self.transport, self.rng, x, y)
        if self.settings.current.save_click_debug:
            self.debug.save_click(ctx, tx, ty, label)
        return tx, ty

    def _wait_for_state(self, ctx, expected, timeout_s, delay_ms, cancel):
        """Re-capture and classify until one of ``expected`` shows. Returns it or None."""
        started = cancel.clock()
        while cancel.clock() - started < timeout_s:
            ctx = capture(self.transport, ctx)
            state = self.resolver.resolve(ctx)
            if state in expected:
                return state
            random_delay(self.rng, cancel, *delay_ms)
        return None

    # ---- gather sequence -----------------------------------------------

    @timed_action("gather_sequence")
    def gather_sequence(self, ctx, cancel):
        """World map -> resource tile -> popup -> gather -> deploy."""
        log = get_logger("gather", ctx.device_id)
        if not self.ensure_world_map(ctx, cancel):
            return False

        if self.rng.random() < config.ZOOM_OUT_CHANCE:
            self.navigator.zoom_out(ctx, cancel)
            random_delay(self.rng, cancel, 350, 900)
        if self.rng.random() < config.RANDOM_PAN_CHANCE:
            self.navigator.random_map_pan(ctx)
            random_delay(self.rng, cancel, 300, 900)

        tile = NOT_FOUND
        for attempt in range(1, config.MAX_TILE_SCANS + 1):
            ctx = capture(self.transport, ctx)
            tile = self.navigator.find_resource_tile(ctx)
            if tile.is_match:
                if attempt > 1:
                    log.info("Resource found after map sweep attempt %d/%d",
                             attempt, config.MAX_TILE_SCANS)
                break
            log.warning("No resource tile on attempt %d/%d (confidence=%.3f). Panning map",
                        attempt, config.MAX_TILE_SCANS, tile.confidence)
            self.navigator.random_map_pan(ctx)
            random_delay(self.rng, cancel, 260, 700)

        if not tile.is_match:
            log.warning("No resource found after map sweep attempts")
            return False
        if not self.open_resource_popup(ctx, tile, cancel):
            log.warning("Resource popup did not appear after tile click")
            return False
        return self.click_gather_and_march(ctx, cancel)

    def open_resource_popup(self, ctx, tile, cancel):
        """Probe taps around the tile center until a resource popup opens.

        A probe that leaves the frame unchanged hit dead space and is skipped
        without polling for a popup.
        """
        log = get_logger("gather", ctx.device_id)
        for dx, dy in config.TILE_PROBE_OFFSETS:
            x, y = tile.center_x + dx, tile.center_y + dy
            before = capture(self.transport, ctx)
            self._tap(before, x, y, "resource-probe")
            log.info("Resource probe tap at (%d,%d) base=(%d,%d) confidence=%.3f",
                     x, y, tile.center_x, tile.center_y, tile.confidence)
            random_delay(self.rng, cancel, 320, 680)
            after = capture(self.transport, before)
            if not frame_changed(before.screenshot_path, after.screenshot_path):
                log.info("Resource probe produced no screen change, next probe")
                continue

            state = self._wait_for_state(after, (GameState.RESOURCE_POPUP, GameState.TILE_POPUP),
                                         config.POPUP_WAIT_S, (180, 420), cancel)
            if state == GameState.RESOURCE_POPUP:
                log.info("Resource popup opened after probe tap")
                return True
            if state == GameState.TILE_POPUP:
                log.info("Tile popup opened after probe tap; dismissing and trying next probe")
                self.dismiss_tile_popup(after, cancel)
                random_delay(self.rng, cancel, 280, 520)
        return False

    def click_gather_and_march(self, ctx, cancel):
        log = get_logger("gather", ctx.device_id)
        gather, ctx = find_best_template(self.transport, self.detector, ctx,
                                         [config.GATHER_BUTTON_TEMPLATE],
                                         config.ACTION_THRESHOLDS, cancel)
        if not gather.is_match:
            log.warning("Gather button not found")
            return False
        self._tap(ctx, gather.center_x, gather.center_y, "gather-button")
        log.info("Clicked gather button")
        random_delay(self.rng, cancel, 500, 1100)

        if self._wait_for_state(ctx, (GameState.MARCH_SCREEN,), config.MARCH_SCREEN_WAIT_S,
                                (250, 600), cancel) is None:
            log.warning("March controls did not appear after gather")
            return False
        return self.select_lowest_tier_and_deploy(ctx, cancel)

    # ---- march screen --------------------------------------------------

    def _march_targets(self, ctx, width, height, cancel):
        """Tap points for lowest tier and deploy.

        Manual points win. Otherwise the buttons are looked up by template
        and any that can't be found fall back to the relative layout.
        """
        current = self.settings.current
        tier, deploy = march_control_points(current, width, height)
        if current.manual_clicks.enabled:
            return tier, deploy

        anchor, ctx = find_best_template(self.transport, self.detector, ctx,
                                         [config.DEPLOY_BUTTON_TEMPLATE],
                                         config.MARCH_ANCHOR_THRESHOLDS, cancel)
        if anchor.is_match:
            deploy = (anchor.center_x, anchor.center_y)
        button, ctx = find_best_template(self.transport, self.detector, ctx,
                                         [config.LOWEST_TIER_TEMPLATE],
                                         config.MARCH_ACTION_THRESHOLDS, cancel)
        if button.is_match:
            tier = (button.center_x, button.center_y)
        return tier, deploy

    @timed_action("deploy_march")
    def select_lowest_tier_and_deploy(self, ctx, cancel):
        """Pick the lowest troop tier, confirm "Clear selection", then deploy.

        Never deploys without the confirmation: after one retry of the tier
        tap the march screen is closed instead.
        """
        log = get_logger("gather", ctx.device_id)
        width, height = self.transport.get_resolution()
        tier, deploy = self._march_targets(ctx, width, height, cancel)

        self._tap(ctx, tier[0], tier[1], "lowest-tier")
        log.info("Clicked lowest-tier point at (%d,%d)", *tier)
        random_delay(self.rng, cancel, 420, 900)

        if not self.is_clear_selection_active(ctx, deploy, width, height, cancel):
            log.warning("Clear selection not detected after lowest-tier click. Retrying once")
            self._tap(ctx, tier[0], tier[1], "lowest-tier-retry")
            random_delay(self.rng, cancel, 420, 900)
            if not self.is_clear_selection_active(ctx, deploy, width, height, cancel):
                log.warning("Clear selection still missing. Skipping deploy")
                self.debug.save_frame(capture(self.transport, ctx), "clear-selection-missing",
                                      clear_selection_region(deploy, width, height))
                self.close_active_overlay(ctx, cancel)
                return False

        self._tap(ctx, deploy[0], deploy[1], "deploy")
        log.info("Clicked deploy button. Gather dispatched")
        random_delay(self.rng, cancel, 450, 1100)
        return True

    def is_clear_selection_active(self, ctx, deploy, width, height, cancel):
        """Template match inside the deploy-anchored box, position gate, then OCR "clear"."""
        log = get_logger("gather", ctx.device_id)
        roi = clear_selection_region(deploy, width, height)
        best = NOT_FOUND
        if template_exists(ctx, config.CLEAR_SELECTION_TEMPLATE):
            path = ctx.template(config.CLEAR_SELECTION_TEMPLATE)
            for threshold in config.CLEAR_SELECTION_THRESHOLDS:
                ctx = capture(self.transport, ctx)
                found = self.detector.find_template_in_region(ctx.screenshot_path, path,
                                                              *roi, threshold)
                log.debug("Clear-selection threshold=%.2f match=%s confidence=%.3f roi=%s",
                          threshold, found.is_match, found.confidence, roi)
                if found.is_match and found.confidence >= config.CLEAR_SELECTION_MIN_CONFIDENCE:
                    best = found
                    break

        if not best.is_match:
            return False
        if not _clear_selection_in_zone(best, deploy, width, height):
            log.warning("Clear-selection candidate rejected by position gate "
                        "(dx=%d, dy=%d)", best.center_x - deploy[0], best.center_y - deploy[1])
            return False

        ctx = capture(self.transport, ctx)
        text = self.ocr.read_text(ctx.screenshot_path, *roi).lower()
        log.info("Clear-selection OCR text='%s'", text)
        return "clear" in text

    # ---- popups --------------------------------------------------------

    def dismiss_tile_popup(self, ctx, cancel):
        """Swipe outside the tile popup; fall back to its close button."""
        log = get_logger("gather", ctx.device_id)
        button, ctx = find_best_template(self.transport, self.detector, ctx,
                                         config.TILE_BUTTON_TEMPLATES,
                                         config.ACTION_THRESHOLDS, cancel)
        if not button.is_match:
            log.warning("Tile popup recovery requested but occupy/transfer buttons not detected")
            return False

        width, height = self.transport.get_resolution()
        start = (_clamp(int(width * 0.86), 10, width - 10), _clamp(int(height * 0.74), 10, height - 10))
        end = (_clamp(int(width * 0.60), 10, width - 10), _clamp(int(height * 0.70), 10, height - 10))
        self.transport.swipe(start[0], start[1], end[0], end[1], 220)
        log.info("Attempted tile popup dismissal via outside swipe: %s -> %s", start, end)
        random_delay(self.rng, cancel, 280, 620)

        ctx = capture(self.transport, ctx)
        if self.resolver.resolve(ctx) != GameState.TILE_POPUP:
            log.info("Tile popup dismissed by outside swipe")
            return True

        close, ctx = find_popup_close(self.transport, self.detector, ctx, cancel=cancel)
        if close.is_match:
            self._tap(ctx, close.center_x, close.center_y, "popup-close")
            log.info("Dismissed popup using close button")
            random_delay(self.rng, cancel, 250, 550)
            return True
        log.warning("Tile popup detected but close button not confidently found. Skipping tap")
        return False

    def close_active_overlay(self, ctx, cancel):
        close, ctx = find_popup_close(self.transport, self.detector, ctx, cancel=cancel)
        if not close.is_match:
            return False
        self._tap(ctx, close.center_x, close.center_y, "overlay-close")
        get_logger("gather", ctx.device_id).info("Closed active overlay")
        random_delay(self.rng, cancel, 280, 620)
        return True
