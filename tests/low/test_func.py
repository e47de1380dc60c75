"""
Tests the functional helpers: Either and the bounded linear retry
"""

import random
from datetime import timedelta

import pytest

from stepengine.low.core import ConfigurationError
from stepengine.low.func import Either, maybe_head, pick_uniform, retry_linear


def test_either():
    assert Either.ok(3).get_or_raise() == 3
    assert Either.ok(3).chain(lambda v: Either.ok(v + 1)).get_or_raise() == 4

    failed = Either.error("no sku")
    assert not failed.is_ok()
    assert not failed.chain(lambda v: Either.ok(v + 1)).is_ok()
    with pytest.raises(ValueError, match="no sku"):
        failed.get_or_raise()
    with pytest.raises(ConfigurationError, match="no sku"):
        failed.get_or_raise(ConfigurationError)


def test_maybe_head():
    assert maybe_head([]) is None
    assert maybe_head(x for x in [4, 5]) == 4


def test_pick_uniform():
    rng = random.Random(42)
    assert pick_uniform(["only"], rng) == "only"
    picked = {pick_uniform(["a", "b", "c"], rng) for _ in range(100)}
    assert picked == {"a", "b", "c"}
    with pytest.raises(ValueError):
        pick_uniform([], rng)


def test_retry_linear():
    sleeps = []
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise PermissionError("denied")
        return "done"

    assert retry_linear(flaky, retries=2, delay=timedelta(seconds=1), retry_on=(OSError,), sleep=sleeps.append) == "done"
    assert sleeps == [1.0, 2.0]

    calls.clear()
    sleeps.clear()
    with pytest.raises(PermissionError):
        retry_linear(flaky, retries=1, delay=timedelta(milliseconds=100), retry_on=(OSError,), sleep=sleeps.append)
    assert len(calls) == 2
    assert sleeps == [0.1]

    def broken():
        raise KeyError("not retried")

    with pytest.raises(KeyError):
        retry_linear(broken, retries=5, delay=timedelta(seconds=1), retry_on=(OSError,), sleep=sleeps.append)
    assert sleeps == [0.1]
