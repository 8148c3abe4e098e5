"""Exponential backoff with full jitter for token endpoint calls.

The algorithm is a pure function of the previous attempt: it never sleeps,
never performs I/O and keeps no per-call state, so one instance can serve
any number of concurrent retry loops.
"""

from __future__ import annotations

import random
from datetime import timedelta

from cloud_auth.models.retry import RetrySettings, TimedAttempt
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock


class ExponentialRetryAlgorithm:
    """Computes attempt timings and decides whether another attempt is allowed."""

    def __init__(
        self,
        settings: RetrySettings,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def settings(self) -> RetrySettings:
        return self._settings

    def create_first_attempt(self) -> TimedAttempt:
        """The first attempt runs immediately with the initial RPC timeout."""
        return TimedAttempt(
            global_settings=self._settings,
            retry_delay=timedelta(0),
            rpc_timeout=self._settings.initial_rpc_timeout,
            randomized_retry_delay=timedelta(0),
            attempt_count=0,
            first_attempt_started_at=self._clock.monotonic(),
        )

    def create_next_attempt(self, previous: TimedAttempt) -> TimedAttempt:
        """Derive the attempt that follows ``previous``.

        The first retry uses the initial delay and timeout as-is; later ones
        grow the un-jittered values by their multipliers up to the caps.
        """
        settings = previous.global_settings

        retry_delay = settings.initial_retry_delay
        rpc_timeout = settings.initial_rpc_timeout
        if previous.attempt_count > 0:
            retry_delay = min(
                previous.retry_delay * settings.retry_delay_multiplier,
                settings.max_retry_delay,
            )
            rpc_timeout = min(
                previous.rpc_timeout * settings.rpc_timeout_multiplier,
                settings.max_rpc_timeout,
            )

        jitter = self._rng.uniform(0, retry_delay.total_seconds())
        return TimedAttempt(
            global_settings=settings,
            retry_delay=retry_delay,
            rpc_timeout=rpc_timeout,
            randomized_retry_delay=timedelta(seconds=jitter),
            attempt_count=previous.attempt_count + 1,
            first_attempt_started_at=previous.first_attempt_started_at,
        )

    def accept(self, next_attempt: TimedAttempt) -> bool:
        """Return True if ``next_attempt`` fits both the time budget and the attempt cap."""
        settings = next_attempt.global_settings
        elapsed = timedelta(seconds=self._clock.monotonic() - next_attempt.first_attempt_started_at)
        if elapsed + next_attempt.randomized_retry_delay > settings.total_timeout:
            return False
        return settings.max_attempts <= 0 or next_attempt.attempt_count < settings.max_attempts
