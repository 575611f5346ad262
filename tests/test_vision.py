"""Tests for vision utilities (vision.py)."""

import os
from unittest.mock import patch

import cv2
import numpy as np
import pytest

from config import BotSettings
from cancellation import StepTimeout
from devices import DeviceNotFoundError
from vision import (
    ExecutionContext, capture, build_context, new_context, find_template, find_template_in_region,
    read_integer, read_text, frame_difference, frame_changed, verify_templates,
    get_template, image_size, NOT_FOUND, FileDebugSink, NullDebugSink,
    REQUIRED_TEMPLATE_GROUPS, _template_cache, _cleanup_screenshots,
)


@pytest.fixture
def scene(tmp_path):
    """A noise screenshot plus a template cut from it at (100, 50) sized 30x20."""
    rng = np.random.RandomState(42)
    screen = rng.randint(0, 256, (200, 300, 3), dtype=np.uint8)
    template = screen[50:70, 100:130].copy()
    screen_path = str(tmp_path / "screen.png")
    template_path = str(tmp_path / "button.png")
    cv2.imwrite(screen_path, screen)
    cv2.imwrite(template_path, template)
    return screen_path, template_path


# ============================================================
# Execution context & capture
# ============================================================

class TestExecutionContext:
    def test_template_path(self, ctx, template_root):
        assert ctx.template("castle.png") == os.path.join(str(template_root), "castle.png")

    def test_with_screenshot_keeps_identity(self, ctx):
        moved = ctx.with_screenshot("/tmp/other.png")
        assert moved.screenshot_path == "/tmp/other.png"
        assert moved.device_id == ctx.device_id
        assert ctx.screenshot_path != "/tmp/other.png"


class TestCapture:
    def test_new_path_each_time(self, transport, ctx):
        first = capture(transport, ctx)
        second = capture(transport, first)
        assert first.screenshot_path != second.screenshot_path
        assert os.path.dirname(first.screenshot_path) == os.path.dirname(ctx.screenshot_path)
        assert transport.screenshots == 2

    def test_build_context_uses_settings(self, transport, tmp_path):
        settings = BotSettings(account_id="acct-9", template_root="/elements",
                               screenshot_dir=str(tmp_path / "shots"))
        ctx = build_context(transport, settings)
        assert ctx.account_id == "acct-9"
        assert ctx.device_id == transport.device
        assert ctx.template_root == "/elements"
        assert ctx.screenshot_path.startswith(str(tmp_path / "shots"))

    def test_build_context_without_device(self, transport, tmp_path):
        transport.device = None
        with pytest.raises(DeviceNotFoundError):
            build_context(transport, BotSettings(screenshot_dir=str(tmp_path)))

    def test_new_context_has_no_frame(self, transport, tmp_path):
        settings = BotSettings(screenshot_dir=str(tmp_path / "shots"))
        ctx = new_context(transport, settings)
        assert ctx.device_id == transport.device
        assert transport.screenshots == 0

    def test_deadline_passed_to_transport(self, transport, ctx, token):
        capture(transport, ctx, token.child(15))
        new_context(transport, BotSettings(screenshot_dir="/tmp"), token.child(6))
        assert transport.screenshot_timeouts == [15]
        assert transport.device_timeouts == [6]

    def test_unbounded_without_token(self, transport, ctx):
        capture(transport, ctx)
        assert transport.screenshot_timeouts == [None]

    def test_expired_deadline_skips_capture(self, transport, ctx, token, clock):
        bound = token.child(15)
        clock.advance(16)
        with pytest.raises(StepTimeout):
            capture(transport, ctx, bound)
        assert transport.screenshots == 0

    def test_old_captures_cleaned(self, tmp_path):
        shots = tmp_path / "shots"
        shots.mkdir()
        for i in range(5):
            (shots / f"old-{i}.png").write_bytes(b"x")
        _cleanup_screenshots(str(shots), keep=2)
        assert len(list(shots.glob("*.png"))) == 2


# ============================================================
# Template matching
# ============================================================

class TestFindTemplate:
    def test_exact_match_center(self, scene):
        screen, template = scene
        result = find_template(screen, template, threshold=0.9)
        assert result.is_match
        assert result.confidence > 0.99
        assert (result.center_x, result.center_y) == (115, 60)

    def test_below_threshold_still_reports_score(self, scene, tmp_path):
        screen, _ = scene
        other = np.random.RandomState(7).randint(0, 256, (20, 30, 3), dtype=np.uint8)
        other_path = str(tmp_path / "other.png")
        cv2.imwrite(other_path, other)
        result = find_template(screen, other_path, threshold=0.9)
        assert not result.is_match
        assert 0.0 <= result.confidence < 0.9

    def test_missing_template_raises(self, scene, tmp_path):
        screen, _ = scene
        with pytest.raises(FileNotFoundError):
            find_template(screen, str(tmp_path / "nope.png"))

    def test_missing_screenshot_raises(self, scene, tmp_path):
        _, template = scene
        with pytest.raises(FileNotFoundError):
            find_template(str(tmp_path / "nope.png"), template)


class TestFindTemplateInRegion:
    def test_center_in_screen_coordinates(self, scene):
        screen, template = scene
        result = find_template_in_region(screen, template, 80, 30, 80, 60, threshold=0.9)
        assert result.is_match
        assert (result.center_x, result.center_y) == (115, 60)

    def test_region_without_template(self, scene):
        screen, template = scene
        result = find_template_in_region(screen, template, 200, 120, 90, 70, threshold=0.9)
        assert not result.is_match

    def test_region_smaller_than_template(self, scene):
        screen, template = scene
        assert find_template_in_region(screen, template, 0, 0, 10, 10) == NOT_FOUND

    def test_region_outside_screen(self, scene):
        screen, template = scene
        assert find_template_in_region(screen, template, 500, 500, 50, 50) == NOT_FOUND


class TestTemplateCache:
    def test_loaded_once(self, scene):
        _, template = scene
        _template_cache.pop(template, None)
        with patch("vision.cv2.imread", wraps=cv2.imread) as mock_imread:
            get_template(template)
            get_template(template)
        assert mock_imread.call_count == 1

    def test_missing_not_cached(self, tmp_path):
        path = str(tmp_path / "missing.png")
        assert get_template(path) is None
        assert path not in _template_cache


class TestImageSize:
    def test_size(self, scene):
        screen, _ = scene
        assert image_size(screen) == (300, 200)

    def test_unreadable(self, tmp_path):
        assert image_size(str(tmp_path / "none.png")) is None


# ============================================================
# OCR helpers
# ============================================================

class TestReadInteger:
    @patch("vision.ocr_read", return_value=["1", "2"])
    def test_digits_joined(self, _mock_ocr, scene):
        screen, _ = scene
        assert read_integer(screen, 10, 10, 40, 30) == 12

    @patch("vision.ocr_read", return_value=["a3"])
    def test_non_digits_dropped(self, _mock_ocr, scene):
        screen, _ = scene
        assert read_integer(screen, 10, 10, 40, 30) == 3

    @patch("vision.ocr_read", return_value=[])
    def test_nothing_read(self, _mock_ocr, scene):
        screen, _ = scene
        assert read_integer(screen, 10, 10, 40, 30) is None

    @patch("vision.ocr_read")
    def test_upscaled_crop(self, mock_ocr, scene):
        mock_ocr.return_value = ["2"]
        screen, _ = scene
        read_integer(screen, 10, 10, 40, 30)
        image = mock_ocr.call_args[0][0]
        assert image.shape == (90, 120)
        assert mock_ocr.call_args[1]["allowlist"] == "0123456789"


class TestReadText:
    @patch("vision.ocr_read", return_value=[(None, "Clear", 0.9), (None, "Selection", 0.8)])
    def test_joined(self, _mock_ocr, scene):
        screen, _ = scene
        assert read_text(screen, 0, 0, 100, 50) == "Clear Selection"

    @patch("vision.ocr_read", return_value=[])
    def test_empty(self, _mock_ocr, scene):
        screen, _ = scene
        assert read_text(screen, 0, 0, 100, 50) == ""


# ============================================================
# Frame difference
# ============================================================

class TestFrameDifference:
    def _write(self, path, image):
        cv2.imwrite(str(path), image)
        return str(path)

    def test_identical_frames(self, scene):
        screen, _ = scene
        assert frame_difference(screen, screen) == (0.0, 0.0)
        assert not frame_changed(screen, screen)

    def test_changed_block(self, tmp_path):
        before = np.zeros((100, 100), dtype=np.uint8)
        after = before.copy()
        after[0:20, 0:20] = 255
        mean, ratio = frame_difference(self._write(tmp_path / "a.png", before),
                                       self._write(tmp_path / "b.png", after))
        assert ratio == pytest.approx(0.04)
        assert mean == pytest.approx(255 * 0.04)
        assert frame_changed(str(tmp_path / "a.png"), str(tmp_path / "b.png"))

    def test_small_noise_ignored(self, tmp_path):
        before = np.full((100, 100), 100, dtype=np.uint8)
        after = before.copy()
        after[0, 0] = 105
        a = self._write(tmp_path / "a.png", before)
        b = self._write(tmp_path / "b.png", after)
        assert not frame_changed(a, b)

    def test_different_sizes_use_overlap(self, tmp_path):
        before = np.zeros((100, 120), dtype=np.uint8)
        after = np.zeros((90, 100), dtype=np.uint8)
        mean, ratio = frame_difference(self._write(tmp_path / "a.png", before),
                                       self._write(tmp_path / "b.png", after))
        assert (mean, ratio) == (0.0, 0.0)

    def test_missing_frame_counts_as_changed(self, scene, tmp_path):
        screen, _ = scene
        assert frame_changed(screen, str(tmp_path / "missing.png"))


# ============================================================
# Debug sinks
# ============================================================

class TestDebugSinks:
    def test_null_sink_accepts_calls(self, ctx):
        sink = NullDebugSink()
        sink.save_click(ctx, 1, 2, "tap")
        sink.save_frame(ctx, "frame", (0, 0, 5, 5))

    def test_click_written(self, scene, ctx, tmp_path):
        screen, _ = scene
        sink = FileDebugSink(root=str(tmp_path / "debug"))
        sink.save_click(ctx.with_screenshot(screen), 50, 60, "deploy")
        files = list((tmp_path / "debug" / "clicks").glob("*.png"))
        assert len(files) == 1
        assert "deploy" in files[0].name

    def test_frame_with_region_written(self, scene, ctx, tmp_path):
        screen, _ = scene
        sink = FileDebugSink(root=str(tmp_path / "debug"))
        sink.save_frame(ctx.with_screenshot(screen), "army ocr", (10, 10, 40, 20))
        files = list((tmp_path / "debug" / "frames").glob("*.png"))
        assert len(files) == 1
        assert "army_ocr" in files[0].name

    def test_failure_swallowed(self, ctx, tmp_path):
        sink = FileDebugSink(root=str(tmp_path / "debug"))
        sink.save_click(ctx.with_screenshot(str(tmp_path / "missing.png")), 1, 1, "x")
        assert not (tmp_path / "debug" / "clicks").exists()

    def test_disabled_clicks(self, scene, ctx, tmp_path):
        screen, _ = scene
        sink = FileDebugSink(root=str(tmp_path / "debug"), clicks=False)
        sink.save_click(ctx.with_screenshot(screen), 1, 1, "x")
        assert not (tmp_path / "debug").exists()


# ============================================================
# Template verification
# ============================================================

class TestVerifyTemplates:
    def test_all_present(self, template_root):
        assert verify_templates(str(template_root)) == []

    def test_missing_groups_reported(self, tmp_path):
        root = tmp_path / "partial"
        root.mkdir()
        (root / "map_button.png").write_bytes(b"")
        (root / "resource_wood.png").write_bytes(b"")
        missing = verify_templates(str(root))
        assert len(missing) == len(REQUIRED_TEMPLATE_GROUPS) - 2
        assert "gather_button.png" in missing
        assert "deploy_button.png" in missing

    def test_one_of_group_is_enough(self, tmp_path):
        root = tmp_path / "resources"
        root.mkdir()
        (root / "resource_rune.png").write_bytes(b"")
        missing = verify_templates(str(root))
        assert not any("resource_rune.png" in group for group in missing)
