"""
测试有界重试与轮询
"""

import pytest
import requests

from qcs_sensor_installer.utils.retry import (
    bounded_retry,
    poll_until,
)


class Flaky:
    """前 failures 次抛出异常, 之后返回 value"""

    def __init__(self, failures, exc=requests.ConnectionError, value="ok"):
        self.failures = failures
        self.exc = exc
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient")
        return self.value


def test_linear_backoff_waits_grow():
    sleeps = []
    retrying = bounded_retry(3, 2, backoff="linear",
                             exceptions=(requests.ConnectionError,), sleep=sleeps.append)

    assert retrying(Flaky(2)) == "ok"
    assert sleeps == [2, 4]


def test_fixed_interval():
    sleeps = []
    retrying = bounded_retry(4, 5, until=bool, sleep=sleeps.append, reraise=False)
    results = iter([False, False, True])

    assert retrying(lambda: next(results)) is True
    assert sleeps == [5, 5]


def test_last_exception_is_reraised():
    flaky = Flaky(10)
    retrying = bounded_retry(3, 1, exceptions=(requests.ConnectionError,), sleep=lambda s: None)

    with pytest.raises(requests.ConnectionError):
        retrying(flaky)
    assert flaky.calls == 3


def test_non_matching_errors_are_not_retried():
    flaky = Flaky(1, exc=ValueError)
    retrying = bounded_retry(3, 1, exceptions=(requests.ConnectionError,), sleep=lambda s: None)

    with pytest.raises(ValueError):
        retrying(flaky)
    assert flaky.calls == 1


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0, "interval": 1},
    {"max_attempts": 3, "interval": 1, "backoff": "exponential"},
])
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        bounded_retry(**kwargs)


# === 轮询 ===

def test_poll_until_success():
    states = iter([False, False, True])
    assert poll_until(lambda: next(states), timeout=10, interval=1, sleep=lambda s: None)


def test_poll_until_timeout_is_bounded():
    calls = []

    def never():
        calls.append(1)
        return False

    assert poll_until(never, timeout=5, interval=1, sleep=lambda s: None) is False
    assert len(calls) == 6


def test_poll_with_zero_timeout_checks_once():
    calls = []
    assert poll_until(lambda: calls.append(1) or True, timeout=0, sleep=lambda s: None)
    assert len(calls) == 1


def test_poll_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        poll_until(lambda: True, timeout=5, interval=0)
