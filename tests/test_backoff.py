"""
Tests for the idle-claim backoff: bounds, growth, reset and injected sleep.
"""

from __future__ import annotations

import random

import pytest

from onchain_indexer.agent_worker.backoff import Backoff


def test_delays_never_exceed_max(sleeps):
    backoff = Backoff(100, 1000, 2.0, sleep=sleeps.append, rng=random.Random(7))
    for _ in range(50):
        backoff.next_delay()
    assert len(sleeps) == 50
    assert all(0 < s <= 1.0 for s in sleeps)
    assert backoff.current_ms == 1000


def test_step_is_equal_jitter():
    """Each step lies in [half, current) of the delay before growth."""
    backoff = Backoff(400, 10_000, 2.0, rng=random.Random(1))
    expected_current = 400
    for _ in range(10):
        delay = backoff.step()
        half = expected_current // 2
        assert half <= delay < max(expected_current, half + 1)
        expected_current = min(10_000, expected_current * 2)
        assert backoff.current_ms == expected_current


def test_reset_returns_to_min(sleeps):
    backoff = Backoff(100, 5000, 3.0, sleep=sleeps.append)
    for _ in range(5):
        backoff.next_delay()
    assert backoff.current_ms == 5000
    backoff.reset()
    assert backoff.current_ms == 100
    first = backoff.step()
    assert 50 <= first < 100


def test_minimum_one_unit():
    backoff = Backoff(1, 1, 1.0, rng=random.Random(3))
    assert backoff.step() == 1
    assert backoff.step() == 1


def test_next_delay_sleeps_seconds(sleeps):
    backoff = Backoff(2000, 2000, 2.0, sleep=sleeps.append, rng=random.Random(0))
    slept = backoff.next_delay()
    assert sleeps == [slept]
    assert 1.0 <= slept < 2.0


@pytest.mark.parametrize("min_ms,max_ms,multiplier", [(0, 10, 2.0), (10, 5, 2.0), (10, 100, 0.5)])
def test_invalid_bounds_rejected(min_ms, max_ms, multiplier):
    with pytest.raises(ValueError):
        Backoff(min_ms, max_ms, multiplier)
