"""
Retry and backoff engine for delivery jobs.

Classifies a failure as transient or permanent and decides what happens to
the job next. The algorithm is channel-agnostic; each queue supplies its own
{max_attempts, initial_delay, max_delay}.

Backoff: delay = min(max_delay, initial_delay * 2^(attempts-1)), optionally
jittered but never above max_delay.
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from leadrelay.config import RetrySettings
from leadrelay.services.errors import (
    PermanentDeliveryError,
    RateLimitExceeded,
    TransientDeliveryError,
)

TRANSIENT = "transient"
PERMANENT = "permanent"

RETRYABLE_STATUS_CODES = {408, 429}
PERMANENT_STATUS_CODES = {400, 401, 403, 404, 410, 422}


def _status_code_of(error: Exception) -> Optional[int]:
    """Pull an HTTP status code out of provider exceptions, if there is one."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: Exception) -> str:
    """
    Classify a delivery failure.

    Returns: "transient" or "permanent".
    Unknown exceptions are treated as transient so a flaky provider never
    dead-letters a job on its first hiccup.
    """
    if isinstance(error, PermanentDeliveryError):
        return PERMANENT
    if isinstance(error, (TransientDeliveryError, RateLimitExceeded)):
        return TRANSIENT
    if isinstance(error, ValidationError):
        return PERMANENT
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return TRANSIENT
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return TRANSIENT

    status = _status_code_of(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES or 500 <= status < 600:
            return TRANSIENT
        if status in PERMANENT_STATUS_CODES or 400 <= status < 500:
            return PERMANENT

    return TRANSIENT


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float
    classification: str
    reason: str


class RetryPolicy:
    """Backoff math and retry eligibility for one queue."""

    def __init__(
        self,
        max_attempts: int,
        initial_delay: float,
        max_delay: float,
        jitter: float = 0.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("delays must be non-negative")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.random

    @classmethod
    def from_settings(cls, retry: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=retry.max_attempts,
            initial_delay=retry.initial_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
        )

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the next attempt, after `attempts` executions have failed."""
        exponent = min(max(attempts, 1) - 1, 62)
        delay = min(self.max_delay, self.initial_delay * (2 ** exponent))
        if self.jitter:
            spread = delay * self.jitter * (self._rng() * 2 - 1)
            delay = min(self.max_delay, max(0.0, delay + spread))
        return delay

    def decide(self, attempts: int, error: Exception) -> RetryDecision:
        """
        Decide the fate of a job whose latest attempt raised `error`.

        `attempts` is the number of executions already started, including the
        one that just failed.
        """
        classification = classify_error(error)

        if classification == PERMANENT:
            return RetryDecision(
                retry=False,
                delay_seconds=0.0,
                classification=classification,
                reason="permanent error",
            )

        if attempts >= self.max_attempts:
            return RetryDecision(
                retry=False,
                delay_seconds=0.0,
                classification=classification,
                reason=f"attempts exhausted ({attempts}/{self.max_attempts})",
            )

        return RetryDecision(
            retry=True,
            delay_seconds=self.backoff_delay(attempts),
            classification=classification,
            reason=f"retry {attempts}/{self.max_attempts}",
        )
