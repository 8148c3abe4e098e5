"""Retry configuration and per-attempt state."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, model_validator


class RetrySettings(BaseModel):
    """Immutable exponential-backoff configuration.

    ``max_attempts`` of 0 means the number of attempts is bounded only by
    ``total_timeout``.
    """
    model_config = ConfigDict(frozen=True)

    total_timeout: timedelta
    initial_retry_delay: timedelta
    retry_delay_multiplier: float = 1.0
    max_retry_delay: timedelta
    max_attempts: int = 0
    initial_rpc_timeout: timedelta
    rpc_timeout_multiplier: float = 1.0
    max_rpc_timeout: timedelta

    @model_validator(mode="after")
    def _check_bounds(self) -> RetrySettings:
        zero = timedelta(0)
        if self.total_timeout < zero:
            raise ValueError("total timeout must not be negative")
        if self.initial_retry_delay < zero:
            raise ValueError("initial retry delay must not be negative")
        if self.retry_delay_multiplier < 1.0:
            raise ValueError("retry delay multiplier must be at least 1")
        if self.max_retry_delay < self.initial_retry_delay:
            raise ValueError("max retry delay must not be shorter than initial delay")
        if self.max_attempts < 0:
            raise ValueError("max attempts must be non-negative")
        if self.initial_rpc_timeout < zero:
            raise ValueError("initial rpc timeout must not be negative")
        if self.rpc_timeout_multiplier < 1.0:
            raise ValueError("rpc timeout multiplier must be at least 1")
        if self.max_rpc_timeout < self.initial_rpc_timeout:
            raise ValueError("max rpc timeout must not be shorter than initial timeout")
        return self

    @classmethod
    def default(cls) -> RetrySettings:
        """Library defaults: up to 4 attempts with 1s, 2s, 4s backoff inside one minute."""
        return cls(
            total_timeout=timedelta(seconds=60),
            initial_retry_delay=timedelta(seconds=1),
            retry_delay_multiplier=2.0,
            max_retry_delay=timedelta(seconds=16),
            max_attempts=4,
            initial_rpc_timeout=timedelta(seconds=20),
            rpc_timeout_multiplier=1.0,
            max_rpc_timeout=timedelta(seconds=20),
        )


class TimedAttempt(BaseModel):
    """State of one attempt in a retry chain.

    ``retry_delay`` is the un-jittered delay the multiplier grows from;
    ``randomized_retry_delay`` is what the caller actually waits.
    """
    model_config = ConfigDict(frozen=True)

    global_settings: RetrySettings
    retry_delay: timedelta
    rpc_timeout: timedelta
    randomized_retry_delay: timedelta
    attempt_count: int
    first_attempt_started_at: float
