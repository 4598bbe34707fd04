"""Tests for retry with backoff."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import pytest

from execflow.models.graph import RetryPolicy
from execflow.models.recovery import RetryConfig
from execflow.workflows.retry import (
    calculate_delay,
    default_retry_config,
    execute_with_retry,
    is_retryable,
)


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class CodedError(Exception):
    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures, value="ok", error=None):
        self.failures = failures
        self.value = value
        self.error = error or CodedError("upstream timeout", code="TIMEOUT")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


# === Delays ===

def test_exponential_delays():
    config = RetryConfig(backoff_strategy="exponential", initial_delay=1000, max_delay=10000)
    assert calculate_delay(1, config) == 1000   # before attempt 2
    assert calculate_delay(2, config) == 2000   # before attempt 3
    assert calculate_delay(4, config) == 8000   # before attempt 5
    assert calculate_delay(5, config) == 10000  # before attempt 6: 16000 clamped
    print("  PASS: exponential backoff 1000, 2000, 8000, clamp 10000")


def test_linear_and_fixed_delays():
    linear = RetryConfig(backoff_strategy="linear", initial_delay=500, max_delay=1200)
    assert [calculate_delay(n, linear) for n in (1, 2, 3)] == [500, 1000, 1200]
    fixed = RetryConfig(backoff_strategy="fixed", initial_delay=700, max_delay=10000)
    assert [calculate_delay(n, fixed) for n in (1, 2, 3)] == [700, 700, 700]


# === Retryable filter ===

def test_empty_filter_retries_everything():
    assert is_retryable(ValueError("anything"), RetryConfig())


def test_filter_matches_code_status_or_message():
    config = RetryConfig(retryable_errors=["TIMEOUT", "503"])
    assert is_retryable(CodedError("x", code="TIMEOUT"), config)
    assert is_retryable(CodedError("x", status_code=503), config)
    assert is_retryable(RuntimeError("gateway returned 503"), config)
    assert not is_retryable(CodedError("bad input", code="VALIDATION"), config)


# === execute_with_retry ===

@pytest.mark.asyncio
async def test_succeeds_after_retries():
    sleep = FakeSleep()
    op = Flaky(failures=2)
    config = RetryConfig(max_attempts=3, initial_delay=1000, max_delay=10000)

    result = await execute_with_retry(op, config, sleep=sleep)
    assert result.success
    assert result.final_status == "COMPLETED"
    assert result.attempts == 3
    assert result.result == "ok"
    assert result.errors == ["Attempt 1: upstream timeout", "Attempt 2: upstream timeout"]
    assert sleep.calls == [1.0, 2.0]
    print("  PASS: success on third attempt")


@pytest.mark.asyncio
async def test_exhausts_attempts():
    sleep = FakeSleep()
    op = Flaky(failures=10)
    config = RetryConfig(max_attempts=3, backoff_strategy="fixed", initial_delay=250)

    result = await execute_with_retry(op, config, sleep=sleep)
    assert not result.success
    assert result.final_status == "FAILED"
    assert result.attempts == 3
    assert len(result.errors) == 3
    assert result.retryable
    # No wait after the last attempt
    assert sleep.calls == [0.25, 0.25]


@pytest.mark.asyncio
async def test_non_retryable_stops_immediately():
    sleep = FakeSleep()
    op = Flaky(failures=5, error=CodedError("bad request", code="VALIDATION"))
    config = RetryConfig(max_attempts=5, retryable_errors=["TIMEOUT"])

    result = await execute_with_retry(op, config, sleep=sleep)
    assert not result.success
    assert result.attempts == 1
    assert not result.retryable
    assert op.calls == 1
    assert sleep.calls == []
    print("  PASS: non-retryable error stops retries")


@pytest.mark.asyncio
async def test_async_operation():
    calls = []

    async def op():
        calls.append(1)
        if len(calls) < 2:
            raise RuntimeError("flaky")
        return {"rows": 4}

    result = await execute_with_retry(op, RetryConfig(max_attempts=2), sleep=FakeSleep())
    assert result.success
    assert result.result == {"rows": 4}
    assert result.attempts == 2


# === Config presets ===

def test_presets_by_node_type():
    api = default_retry_config("external-api")
    assert api.max_attempts == 3
    assert "429" in api.retryable_errors
    db = default_retry_config("database")
    assert db.initial_delay == 500
    fallback = default_retry_config("transform")
    assert fallback.backoff_strategy == "fixed"
    assert fallback.max_attempts == 2


def test_presets_are_copies():
    config = default_retry_config("external-api")
    config.retryable_errors.append("EVERYTHING")
    assert "EVERYTHING" not in default_retry_config("external-api").retryable_errors


def test_config_from_graph_policy():
    config = RetryConfig.from_policy(RetryPolicy(max_retries=4, backoff="linear", initial_delay=200))
    assert config.max_attempts == 5
    assert config.backoff_strategy == "linear"
    assert config.initial_delay == 200
