"""Shared fixtures for the cloud-auth test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from cloud_auth.client import TokenExchangeClient
from cloud_auth.models.retry import RetrySettings
from cloud_auth.utils.clock import Clock

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Manually advanced wall and monotonic time."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self._now = now
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_retry() -> RetrySettings:
    """Retry settings with tiny delays so tests never wait."""
    return RetrySettings(
        total_timeout=timedelta(seconds=60),
        initial_retry_delay=timedelta(milliseconds=10),
        retry_delay_multiplier=2.0,
        max_retry_delay=timedelta(milliseconds=100),
        max_attempts=4,
        initial_rpc_timeout=timedelta(seconds=5),
        rpc_timeout_multiplier=1.0,
        max_rpc_timeout=timedelta(seconds=5),
    )


@pytest.fixture
def client(fast_retry, clock) -> TokenExchangeClient:
    """TokenExchangeClient with a MagicMock transport and a no-op sleep."""
    c = TokenExchangeClient(fast_retry, http=MagicMock(), clock=clock, sleep=MagicMock())
    return c


@pytest.fixture(scope="session")
def rsa_private_key_pem() -> str:
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


ENV_KEYS = [
    "CLOUD_AUTH_CREDENTIALS",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "CLOUD_AUTH_QUOTA_PROJECT",
    "GOOGLE_CLOUD_QUOTA_PROJECT",
    "GCE_METADATA_HOST",
    "CLOUDSDK_CONFIG",
    "CLOUD_AUTH_HTTP_TIMEOUT",
    "CLOUD_AUTH_MAX_ATTEMPTS",
    "CLOUD_AUTH_TOTAL_TIMEOUT",
    "CLOUD_AUTH_LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Environment without cloud-auth variables, run from an empty directory."""
    for key in ENV_KEYS:
        # setenv first so values later loaded from .env files are undone
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
