"""Tests for the task scheduler and army-monitor polling (scheduler.py)."""

from unittest.mock import MagicMock

import pytest

from config import BotRunMode
from mode import ModeController
from army import ArmyLimitCheckResult
from scheduler import Scheduler


BELOW_LIMIT = ArmyLimitCheckResult.readable(1, 2, "Manual OCR")
AT_LIMIT = ArmyLimitCheckResult.readable(2, 2, "Manual OCR")
UNREADABLE = ArmyLimitCheckResult.unreadable(2, "OCR parse failed")


def _task(name, priority, can_run=True):
    task = MagicMock()
    task.name = name
    task.priority = priority
    task.can_run.return_value = can_run
    return task


@pytest.fixture
def mode():
    return ModeController()


@pytest.fixture
def monitor():
    mon = MagicMock()
    mon.check_now.return_value = AT_LIMIT
    return mon


@pytest.fixture
def make_scheduler(mode, monitor, clock):
    def _make(tasks=(), interval=600):
        return Scheduler(mode, monitor, list(tasks), poll_interval=0.5,
                         army_check_interval=interval, clock=clock)
    return _make


# ============================================================
# Running mode
# ============================================================

class TestRunningPass:
    def test_tasks_sorted_by_priority(self, make_scheduler):
        late, early = _task("late", 200), _task("early", 100)
        assert [t.name for t in make_scheduler([late, early]).tasks] == ["early", "late"]

    def test_runnable_tasks_executed(self, make_scheduler, token, monitor):
        first, second = _task("a", 1), _task("b", 2)
        make_scheduler([first, second]).run_once(token)
        first.execute.assert_called_once_with(token)
        second.execute.assert_called_once_with(token)
        monitor.check_now.assert_not_called()

    def test_task_that_cannot_run_skipped(self, make_scheduler, token):
        idle = _task("idle", 1, can_run=False)
        make_scheduler([idle]).run_once(token)
        idle.execute.assert_not_called()

    def test_mode_switch_stops_pass(self, make_scheduler, mode, token):
        first, second = _task("a", 1), _task("b", 2)
        first.execute.side_effect = lambda cancel: mode.enter_army_monitor("Army limit reached")
        make_scheduler([first, second]).run_once(token)
        second.execute.assert_not_called()


# ============================================================
# Army monitor mode
# ============================================================

class TestArmyMonitorPass:
    def test_entering_monitor_checks_immediately(self, make_scheduler, mode, monitor,
                                                 token, clock):
        scheduler = make_scheduler()
        mode.enter_army_monitor("Army limit reached")
        assert scheduler.next_army_check_at <= clock()
        scheduler.run_once(token)
        monitor.check_now.assert_called_once_with(None, token)
        assert scheduler.next_army_check_at == clock() + 600

    def test_not_due_no_check(self, make_scheduler, mode, monitor, token, clock):
        scheduler = make_scheduler()
        mode.enter_army_monitor("full")
        scheduler.run_once(token)
        clock.advance(599)
        scheduler.run_once(token)
        assert monitor.check_now.call_count == 1
        clock.advance(1)
        scheduler.run_once(token)
        assert monitor.check_now.call_count == 2

    def test_below_limit_resumes_running(self, make_scheduler, mode, monitor, token):
        scheduler = make_scheduler()
        mode.enter_army_monitor("full")
        monitor.check_now.return_value = BELOW_LIMIT
        scheduler.run_once(token)
        assert mode.current_mode == BotRunMode.RUNNING
        assert scheduler.last_army_check is BELOW_LIMIT

    @pytest.mark.parametrize("result", [AT_LIMIT, UNREADABLE])
    def test_full_or_unreadable_stays_in_monitor(self, make_scheduler, mode, monitor,
                                                 token, result):
        scheduler = make_scheduler()
        mode.enter_army_monitor("full")
        monitor.check_now.return_value = result
        scheduler.run_once(token)
        assert mode.current_mode == BotRunMode.ARMY_MONITOR

    def test_resume_pushes_next_check_out(self, make_scheduler, mode, clock):
        scheduler = make_scheduler()
        mode.enter_army_monitor("full")
        mode.enter_running("Army below limit")
        assert scheduler.next_army_check_at == clock() + 600

    def test_tasks_not_run_in_monitor(self, make_scheduler, mode, token):
        task = _task("gather", 100)
        scheduler = make_scheduler([task])
        mode.enter_army_monitor("full")
        scheduler.run_once(token)
        task.execute.assert_not_called()


class TestImmediateCheck:
    def test_from_running_single_transition(self, make_scheduler, mode, monitor, token, clock):
        scheduler = make_scheduler()
        changes = []
        mode.subscribe(lambda m, reason: changes.append((m, reason)))
        scheduler.request_immediate_army_check()
        assert changes == [(BotRunMode.ARMY_MONITOR, "Manual army check requested")]
        assert scheduler.next_army_check_at <= clock()
        scheduler.run_once(token)
        monitor.check_now.assert_called_once()

    def test_while_monitoring_reschedules_now(self, make_scheduler, mode, monitor, token, clock):
        scheduler = make_scheduler()
        mode.enter_army_monitor("full")
        scheduler.run_once(token)
        changes = []
        mode.subscribe(lambda m, reason: changes.append(m))
        scheduler.request_immediate_army_check()
        assert changes == []
        assert scheduler.next_army_check_at <= clock()
        scheduler.run_once(token)
        assert monitor.check_now.call_count == 2


class TestObservers:
    def test_notified_on_check_and_reschedule(self, make_scheduler, mode, token):
        scheduler = make_scheduler()
        seen = []
        scheduler.subscribe(seen.append)
        mode.enter_army_monitor("full")
        assert seen == [scheduler]
        scheduler.run_once(token)
        assert len(seen) == 3

    def test_unsubscribe(self, make_scheduler, mode):
        scheduler = make_scheduler()
        observer = MagicMock()
        scheduler.subscribe(observer)
        scheduler.unsubscribe(observer)
        mode.enter_army_monitor("full")
        observer.assert_not_called()

    def test_failing_observer_ignored(self, make_scheduler, mode, monitor, token):
        scheduler = make_scheduler()
        scheduler.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        mode.enter_army_monitor("full")
        scheduler.run_once(token)
        monitor.check_now.assert_called_once()


# ============================================================
# run loop
# ============================================================

class TestRun:
    def test_stops_on_cancel(self, make_scheduler, mode, monitor, token, clock):
        scheduler = make_scheduler(interval=1)
        mode.enter_army_monitor("full")

        def check(ctx, cancel):
            if monitor.check_now.call_count >= 3:
                token.cancel()
            return AT_LIMIT

        monitor.check_now.side_effect = check
        scheduler.run(token)
        assert monitor.check_now.call_count == 3

    def test_pass_error_does_not_stop_loop(self, make_scheduler, token):
        task = _task("gather", 100)
        calls = []

        def execute(cancel):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            token.cancel()

        task.execute.side_effect = execute
        make_scheduler([task]).run(token)
        assert len(calls) == 2
