"""Retry handling for experiment uploads."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Optional, Union

from pydantic import BaseModel, Field

from ..config import settings
from ..instrument.base import UploadResult

logger = logging.getLogger(__name__)


class UploadError(RuntimeError):
    """Raised when an upload fails after exhausting retries."""

    def __init__(
        self,
        message: str,
        attempts: int,
        result: Optional[UploadResult] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.result = result
        self.original = original


class RetryPolicy(BaseModel):
    """How often and how patiently a failed upload is retried."""

    max_attempts: int = Field(3, ge=1)
    backoff_s: float = Field(1.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1)
    max_backoff_s: float = Field(30.0, ge=0)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry.max_attempts,
            backoff_s=settings.retry.backoff_s,
            backoff_factor=settings.retry.backoff_factor,
        )

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry; one fewer than `max_attempts`."""
        delay = self.backoff_s
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_backoff_s)
            delay *= self.backoff_factor


def call_with_retry(
    func: Callable[[], UploadResult],
    policy: RetryPolicy,
    description: str = "upload",
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> int:
    """Call `func` until it reports success.

    A failed result and a raised exception both use up an attempt.

    Returns:
        The number of attempts it took

    Raises:
        UploadError: once `policy.max_attempts` attempts have failed
    """
    delays = policy.delays()
    attempt = 0
    last: Union[UploadResult, BaseException, None] = None
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            result = func()
        except Exception as exc:
            last = exc
            logger.warning("%s attempt %d raised: %s", description, attempt, exc)
        else:
            if result.success:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", description, attempt)
                return attempt
            last = result
            logger.warning(
                "%s attempt %d failed (code %d): %s", description, attempt, result.code, result.message
            )

        delay = next(delays, None)
        if delay is None:
            break
        sleep(delay)

    if isinstance(last, UploadResult):
        raise UploadError(
            f"{description} failed after {attempt} attempts: {last.message}",
            attempts=attempt,
            result=last,
        )
    raise UploadError(
        f"{description} failed after {attempt} attempts: {last}",
        attempts=attempt,
        original=last,
    ) from last
