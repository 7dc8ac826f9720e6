"""
Retry classification for remote calls.

A ``RetryClassifier`` answers two questions for a failed call: should it be
tried again, and how long to wait first. Client faults are never retried.
Everything else is retried up to ``max_retries`` times with exponential
backoff plus jitter, capped at ``max_delay_seconds``.

Classifiers are chosen per operation. Idempotent status flips tolerate more
retries than deletes, which are retried at most once so a slow-but-successful
delete is not issued repeatedly.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from ..datastructures.type_aliases import AttemptNumber, DurationSeconds
from .errors import RemoteFault, classify_error

type Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryConfiguration:
    """Configuration for retry policies."""

    max_retries: int = 1
    initial_delay_seconds: DurationSeconds = 1.0
    max_delay_seconds: DurationSeconds = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError("jitter_factor must be in [0, 1)")


class RetryClassifier:
    """Decides whether a failed attempt is retried and with what delay."""

    def __init__(
        self,
        config: RetryConfiguration | None = None,
        *,
        name: str = "default",
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfiguration()
        self.name = name
        self._rng = rng or random.Random()

    def should_retry(
        self, error: BaseException, attempt_number: AttemptNumber
    ) -> bool:
        """``attempt_number`` is the number of attempts that have failed so far."""
        fault = classify_error(error)
        if not fault.retryable:
            return False
        return attempt_number <= self.config.max_retries

    def backoff_delay(self, attempt_number: AttemptNumber) -> DurationSeconds:
        config = self.config
        exponent = max(attempt_number - 1, 0)
        delay = min(
            config.initial_delay_seconds * (config.backoff_multiplier**exponent),
            config.max_delay_seconds,
        )
        if config.jitter_factor:
            delay *= 1 + self._rng.uniform(-config.jitter_factor, config.jitter_factor)
        return min(max(delay, 0.0), config.max_delay_seconds)

    def __repr__(self) -> str:
        return (
            f"RetryClassifier(name={self.name!r}, "
            f"max_retries={self.config.max_retries})"
        )


@dataclass(slots=True)
class RetryTrace:
    """Record of the attempts made by one ``call_with_retry`` invocation."""

    attempts: int = 0
    faults: list[RemoteFault] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


async def call_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    classifier: RetryClassifier,
    *,
    description: str = "remote call",
    sleep: Sleep = asyncio.sleep,
    trace: RetryTrace | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``classifier`` says stop.

    Raises the classified ``RemoteFault`` of the last failed attempt.
    """
    trace = trace if trace is not None else RetryTrace()
    while True:
        trace.attempts += 1
        try:
            return await operation()
        except Exception as e:
            fault = classify_error(e)
            trace.faults.append(fault)
            if not classifier.should_retry(fault, trace.attempts):
                logger.debug(
                    f"{description} failed after {trace.attempts} attempt(s): {fault}"
                )
                if fault is e:
                    raise
                raise fault from e
            delay = classifier.backoff_delay(trace.attempts)
            logger.warning(
                f"{description} attempt {trace.attempts} failed ({fault}), "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)


def create_retry_classifier(
    name: str,
    max_retries: int,
    *,
    initial_delay_seconds: DurationSeconds = 1.0,
    max_delay_seconds: DurationSeconds = 30.0,
    backoff_multiplier: float = 2.0,
    jitter_factor: float = 0.1,
) -> RetryClassifier:
    config = RetryConfiguration(
        max_retries=max_retries,
        initial_delay_seconds=initial_delay_seconds,
        max_delay_seconds=max_delay_seconds,
        backoff_multiplier=backoff_multiplier,
        jitter_factor=jitter_factor,
    )
    return RetryClassifier(config, name=name)


# Factory functions for the per-operation policies
def create_query_retry_classifier() -> RetryClassifier:
    """Reads: two retries, 1s doubling up to 30s."""
    return create_retry_classifier("query", 2)


def create_mutation_retry_classifier() -> RetryClassifier:
    """General entity updates: a single retry."""
    return create_retry_classifier("mutation", 1)


def create_status_retry_classifier() -> RetryClassifier:
    """Idempotent status flips: up to three retries."""
    return create_retry_classifier("status", 3)


def create_delete_retry_classifier() -> RetryClassifier:
    """Irreversible deletes: retried at most once."""
    return create_retry_classifier("delete", 1)
