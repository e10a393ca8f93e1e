"""Tests for the in-flight continuation guard."""

import pytest

from chorus.orchestrator import ConcurrencyConflict, InFlightGuard
from chorus.orchestrator.inflight import inflight_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_key_defaults_provider() -> None:
    assert inflight_key("s", "ai-1", None) == "s:ai-1:default"
    assert inflight_key("s", "ai-1", "claude") == "s:ai-1:claude"


def test_second_acquire_is_refused() -> None:
    guard = InFlightGuard(stale_after_seconds=60)
    assert guard.try_acquire("k")
    assert not guard.try_acquire("k")
    assert guard.try_acquire("other")
    assert len(guard) == 2


def test_release_allows_reacquire() -> None:
    guard = InFlightGuard(stale_after_seconds=60)
    guard.try_acquire("k")
    guard.release("k")
    guard.release("k")
    assert not guard.is_held("k")
    assert guard.try_acquire("k")


def test_stale_entry_can_be_reacquired() -> None:
    clock = FakeClock()
    guard = InFlightGuard(stale_after_seconds=10, clock=clock)
    guard.try_acquire("k")
    clock.now += 11
    assert guard.try_acquire("k")


def test_hold_releases_on_error() -> None:
    guard = InFlightGuard(stale_after_seconds=60)
    with pytest.raises(ValueError):
        with guard.hold("k"):
            assert guard.is_held("k")
            raise ValueError("stage failed")
    assert not guard.is_held("k")


def test_hold_conflict() -> None:
    guard = InFlightGuard(stale_after_seconds=60)
    with guard.hold("k"):
        with pytest.raises(ConcurrencyConflict):
            with guard.hold("k"):
                pass
        assert guard.is_held("k")
    assert len(guard) == 0


def test_abandoned_holder_cannot_release_successor() -> None:
    clock = FakeClock()
    guard = InFlightGuard(stale_after_seconds=10, clock=clock)
    with guard.hold("k"):
        clock.now += 11
        successor = guard.try_acquire("k")
        assert successor is not None
    assert guard.is_held("k")
    assert not guard.try_acquire("k")

    guard.release("k", successor)
    assert not guard.is_held("k")
