"""Tests for CancelToken deadlines, children and cooperative sleep (cancellation.py)."""

import pytest

from cancellation import CancelToken, OperationCancelled, StepTimeout


class TestCancel:
    def test_fresh_token_not_set(self, token):
        assert not token.is_set()
        token.raise_if_cancelled()

    def test_cancel_raises(self, token):
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()

    def test_cancel_is_not_a_timeout(self, token):
        token.cancel()
        with pytest.raises(OperationCancelled) as exc:
            token.raise_if_cancelled()
        assert not isinstance(exc.value, StepTimeout)


class TestChild:
    def test_child_expires_after_deadline(self, token, clock):
        step = token.child(45)
        clock.advance(44.9)
        assert not step.is_set()
        clock.advance(0.2)
        assert step.expired
        with pytest.raises(StepTimeout):
            step.raise_if_cancelled()

    def test_parent_unaffected_by_child_deadline(self, token, clock):
        step = token.child(5)
        clock.advance(10)
        assert step.is_set()
        assert not token.is_set()

    def test_parent_cancel_reaches_child(self, token):
        step = token.child(45)
        token.cancel()
        assert step.cancelled
        with pytest.raises(OperationCancelled):
            step.raise_if_cancelled()

    def test_child_inherits_clock(self, token, clock):
        assert token.child(1).clock is clock

    def test_remaining_uses_nearest_deadline(self, token, clock):
        outer = token.child(30)
        inner = outer.child(10)
        clock.advance(4)
        assert inner.remaining() == pytest.approx(6)
        assert outer.remaining() == pytest.approx(26)
        assert token.remaining() is None


class TestSleep:
    def test_injected_sleep_advances_fake_clock(self, token, clock):
        start = clock()
        token.sleep(2.5)
        assert clock() - start == pytest.approx(2.5)

    def test_sleep_past_deadline_raises_timeout(self, token):
        step = token.child(1)
        with pytest.raises(StepTimeout):
            step.sleep(2)

    def test_sleep_on_cancelled_token_raises(self, token, clock):
        token.cancel()
        with pytest.raises(OperationCancelled):
            token.sleep(1)
        assert clock.sleeps == []

    def test_zero_sleep_returns(self, token, clock):
        token.sleep(0)
        assert clock.sleeps == []

    def test_real_sleep_wakes_on_cancel(self):
        import threading
        real = CancelToken()
        threading.Timer(0.05, real.cancel).start()
        with pytest.raises(OperationCancelled):
            real.sleep(5)
