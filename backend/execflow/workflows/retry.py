"""Retry with backoff for flaky node operations.

Delays are in milliseconds, matching graph retry policies. The wait before
attempt ``n + 1`` after attempt ``n`` failed is:

    linear       initial_delay * n
    exponential  initial_delay * 2 ** (n - 1)
    fixed        initial_delay

each clamped to ``max_delay``. Sleeping is scoped to the retrying coroutine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from execflow.models.recovery import RetryConfig, RetryResult

logger = logging.getLogger(__name__)

# Presets by node type
DEFAULT_RETRY_CONFIGS: dict[str, RetryConfig] = {
    "external-api": RetryConfig(
        max_attempts=3,
        backoff_strategy="exponential",
        initial_delay=1000,
        max_delay=10000,
        retryable_errors=["TIMEOUT", "NETWORK_ERROR", "503", "429"],
    ),
    "database": RetryConfig(
        max_attempts=3,
        backoff_strategy="exponential",
        initial_delay=500,
        max_delay=5000,
        retryable_errors=["DEADLOCK", "TIMEOUT", "CONNECTION_ERROR"],
    ),
    "default": RetryConfig(
        max_attempts=2,
        backoff_strategy="fixed",
        initial_delay=1000,
        max_delay=3000,
    ),
}


def default_retry_config(node_type: str | None = None) -> RetryConfig:
    preset = DEFAULT_RETRY_CONFIGS.get(node_type or "", DEFAULT_RETRY_CONFIGS["default"])
    return preset.model_copy(deep=True)


def calculate_delay(attempt: int, config: RetryConfig) -> int:
    """Delay in ms before the attempt that follows failed attempt ``attempt`` (1-based)."""
    if config.backoff_strategy == "linear":
        delay = config.initial_delay * attempt
    elif config.backoff_strategy == "exponential":
        delay = config.initial_delay * (2 ** (attempt - 1))
    else:
        delay = config.initial_delay
    return min(delay, config.max_delay)


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    """An error is retryable if no filter is set, or it matches an entry.

    Matching is by the error's ``code`` / ``status_code`` attribute, or by
    substring of its message.
    """
    if not config.retryable_errors:
        return True
    codes = {
        str(value)
        for value in (getattr(error, "code", None), getattr(error, "status_code", None))
        if value is not None
    }
    message = str(error)
    return any(entry in codes or entry in message for entry in config.retryable_errors)


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any] | Any],
    config: RetryConfig,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> RetryResult:
    """Run ``operation`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Args:
        operation: Zero-argument callable; may return a value or an awaitable.
        config: Attempts, backoff strategy and retryable-error filter.
        sleep: Coroutine used to wait (seconds); injectable for tests.
        label: Name used in log lines.

    Returns:
        RetryResult with per-attempt error messages and, on success, the result.
    """
    started = time.monotonic()
    errors: list[str] = []
    attempt = 0

    while attempt < config.max_attempts:
        attempt += 1
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return RetryResult(
                success=True,
                attempts=attempt,
                errors=errors,
                final_status="COMPLETED",
                duration=int((time.monotonic() - started) * 1000),
                result=result,
            )
        except Exception as e:
            errors.append(f"Attempt {attempt}: {e}")
            if not is_retryable(e, config):
                logger.warning(
                    "%s attempt %d/%d failed with non-retryable error (%s)",
                    label, attempt, config.max_attempts, type(e).__name__,
                )
                return RetryResult(
                    success=False,
                    attempts=attempt,
                    errors=errors,
                    final_status="FAILED",
                    duration=int((time.monotonic() - started) * 1000),
                    retryable=False,
                )
            if attempt < config.max_attempts:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %dms",
                    label, attempt, config.max_attempts, type(e).__name__, delay,
                )
                await sleep(delay / 1000)

    logger.error("%s failed after %d attempts", label, attempt)
    return RetryResult(
        success=False,
        attempts=attempt,
        errors=errors,
        final_status="FAILED",
        duration=int((time.monotonic() - started) * 1000),
    )
