"""Tests for StatsTracker, LogStream, timed_action, and get_logger (botlog.py)."""

import json
import logging
import pytest
from unittest.mock import patch

from botlog import StatsTracker, LogStream, timed_action, get_logger
from cancellation import OperationCancelled


# ============================================================
# StatsTracker
# ============================================================

class TestStatsTrackerRecordAction:
    def setup_method(self):
        self.tracker = StatsTracker(auto_save=False)

    def test_single_success(self):
        self.tracker.record_action("dev1", "gather_sequence", True, 5.0)
        entry = self.tracker._data["dev1"]["actions"]["gather_sequence"]
        assert entry["attempts"] == 1
        assert entry["successes"] == 1
        assert entry["failures"] == 0
        assert entry["total_time_s"] == 5.0

    def test_single_failure(self):
        self.tracker.record_action("dev1", "deploy_march", False, 3.0, "timeout")
        entry = self.tracker._data["dev1"]["actions"]["deploy_march"]
        assert entry["attempts"] == 1
        assert entry["successes"] == 0
        assert entry["failures"] == 1
        assert entry["last_failure"] == "timeout"

    def test_error_list_capped_at_50(self):
        for i in range(55):
            self.tracker.record_action("dev1", "army_check", False, 1.0, f"err_{i}")
        errors = self.tracker._data["dev1"]["errors"]
        assert len(errors) == 50
        assert errors[-1]["error"] == "err_54"
        assert errors[0]["error"] == "err_5"

    def test_multiple_devices_isolated(self):
        self.tracker.record_action("dev1", "army_check", True, 5.0)
        self.tracker.record_action("dev2", "army_check", False, 3.0)
        assert self.tracker._data["dev1"]["actions"]["army_check"]["successes"] == 1
        assert self.tracker._data["dev2"]["actions"]["army_check"]["failures"] == 1


class TestStatsTrackerTemplates:
    def setup_method(self):
        self.tracker = StatsTracker(auto_save=False)

    def test_records_miss_and_caps_scores(self):
        self.tracker.record_template_miss("dev1", "gather_button.png", 0.3)
        entry = self.tracker._data["dev1"]["template_misses"]["gather_button.png"]
        assert entry["count"] == 1
        assert entry["best_scores"] == [0.3]

        for i in range(14):
            self.tracker.record_template_miss("dev1", "gather_button.png", i * 0.05)
        assert entry["count"] == 15
        assert len(entry["best_scores"]) == 10

    def test_hit_tracks_bounds(self):
        self.tracker.record_template_hit("dev1", "popup_close.png", 1500, 60, 0.91)
        self.tracker.record_template_hit("dev1", "popup_close.png", 1480, 80, 0.88)
        entry = self.tracker._data["dev1"]["template_hits"]["popup_close.png"]
        assert entry["count"] == 2
        assert (entry["min_x"], entry["max_x"]) == (1480, 1500)
        assert (entry["min_y"], entry["max_y"]) == (60, 80)
        assert entry["recent"][-1] == [1480, 80, 0.88]


class TestStatsTrackerAdbTiming:
    def test_slow_and_failed_counted(self):
        tracker = StatsTracker(auto_save=False)
        tracker.record_adb_timing("dev1", "screenshot", 0.5)
        tracker.record_adb_timing("dev1", "screenshot", 4.0, success=False)
        entry = tracker._data["dev1"]["adb_timing"]["screenshot"]
        assert entry["count"] == 2
        assert entry["slow_count"] == 1
        assert entry["failures"] == 1
        assert entry["max_s"] == 4.0


class TestStatsTrackerSummary:
    def test_empty(self):
        tracker = StatsTracker(auto_save=False)
        assert "No activity" in tracker.summary()

    def test_with_data(self):
        tracker = StatsTracker(auto_save=False)
        tracker.record_action("dev1", "gather_sequence", True, 5.0)
        tracker.record_action("dev1", "gather_sequence", False, 2.0, "fail")
        summary = tracker.summary()
        assert "dev1" in summary
        assert "gather_sequence" in summary
        assert "50%" in summary


class TestStatsTrackerSave:
    def test_save_creates_json(self, tmp_path):
        tracker = StatsTracker(auto_save=False)
        tracker.record_action("dev1", "army_check", True, 5.0)

        with patch("botlog.STATS_DIR", str(tmp_path)):
            tracker.save()

        files = list(tmp_path.glob("session_*.json"))
        assert len(files) == 1

        data = json.loads(files[0].read_text())
        assert "version" in data
        assert "session_start" in data
        assert "dev1" in data["devices"]
        assert data["devices"]["dev1"]["actions"]["army_check"]["avg_time_s"] == 5.0


# ============================================================
# LogStream
# ============================================================

def _record(msg, device="dev1"):
    record = logging.LogRecord("gather", logging.INFO, __file__, 1, msg, None, None)
    record.device = device
    return record


class TestLogStream:
    def test_keeps_most_recent_lines(self):
        stream = LogStream(capacity=3)
        for i in range(5):
            stream.emit(_record(f"line {i}"))
        lines = stream.snapshot()
        assert len(lines) == 3
        assert lines[-1].endswith("[dev1] line 4")
        assert lines[0].endswith("line 2")

    def test_snapshot_limit(self):
        stream = LogStream()
        for i in range(4):
            stream.emit(_record(f"line {i}"))
        assert [l.split("] ")[1] for l in stream.snapshot(2)] == ["line 2", "line 3"]

    def test_subscriber_receives_lines(self):
        stream = LogStream()
        seen = []
        stream.subscribe(seen.append)
        stream.emit(_record("hello"))
        assert len(seen) == 1 and seen[0].endswith("hello")

    def test_failing_subscriber_dropped(self):
        stream = LogStream()
        calls = []

        def broken(line):
            calls.append(line)
            raise RuntimeError("observer gone")

        stream.subscribe(broken)
        stream.emit(_record("one"))
        stream.emit(_record("two"))
        assert len(calls) == 1
        assert len(stream.snapshot()) == 2


# ============================================================
# timed_action decorator
# ============================================================

class TestTimedAction:
    def test_success_records_stats(self):
        tracker = StatsTracker(auto_save=False)

        with patch("botlog.stats", tracker):
            @timed_action("test_action")
            def my_func(device):
                return True

            result = my_func("dev1")

        assert result is True
        assert tracker._data["dev1"]["actions"]["test_action"]["successes"] == 1

    def test_false_return_records_failure(self):
        tracker = StatsTracker(auto_save=False)

        with patch("botlog.stats", tracker):
            @timed_action("test_action")
            def my_func(device):
                return False

            assert my_func("dev1") is False

        assert tracker._data["dev1"]["actions"]["test_action"]["failures"] == 1

    def test_exception_records_and_reraises(self):
        tracker = StatsTracker(auto_save=False)

        with patch("botlog.stats", tracker):
            @timed_action("test_action")
            def my_func(device):
                raise ValueError("boom")

            with pytest.raises(ValueError, match="boom"):
                my_func("dev1")

        entry = tracker._data["dev1"]["actions"]["test_action"]
        assert entry["failures"] == 1
        assert entry["last_failure"] == "boom"

    def test_cancellation_not_recorded(self):
        tracker = StatsTracker(auto_save=False)

        with patch("botlog.stats", tracker):
            @timed_action("test_action")
            def my_func(device):
                raise OperationCancelled("stop")

            with pytest.raises(OperationCancelled):
                my_func("dev1")

        assert "dev1" not in tracker._data

    def test_device_taken_from_context(self, ctx):
        tracker = StatsTracker(auto_save=False)

        class Task:
            @timed_action("test_action")
            def run(self, ctx):
                return True

        with patch("botlog.stats", tracker):
            Task().run(ctx)

        assert ctx.device_id in tracker._data

    def test_no_device_falls_back_to_system(self):
        tracker = StatsTracker(auto_save=False)

        with patch("botlog.stats", tracker):
            @timed_action("test_action")
            def my_func(value):
                return value

            my_func(5)

        assert "system" in tracker._data


# ============================================================
# get_logger
# ============================================================

class TestGetLogger:
    def test_with_device(self):
        adapter = get_logger("test_module", "emulator-5584")
        assert adapter.extra["device"] == "emulator-5584"

    def test_without_device(self):
        adapter = get_logger("test_module")
        assert adapter.extra["device"] == "system"

    def test_returns_logger_adapter(self):
        adapter = get_logger("test_module", "dev1")
        assert isinstance(adapter, logging.LoggerAdapter)
