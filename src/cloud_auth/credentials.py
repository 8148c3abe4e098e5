"""Access token cache and refresh state machine.

A Credentials object owns one cached AccessToken and the Authorization
header derived from it. When the token is missing or close to expiry, the
first caller starts a refresh through the configured TokenSource; every
concurrent caller waits for that same refresh and sees its result or its
failure.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from concurrent.futures import Executor, Future
from datetime import timedelta
from types import MappingProxyType
from typing import NamedTuple, Protocol

from cloud_auth.models.tokens import AccessToken, TokenStatus
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError, RefreshError

logger = logging.getLogger(__name__)

# Tokens closer than this to expiry are refreshed before use
MINIMUM_FRESHNESS_MARGIN = timedelta(minutes=5)

AUTHORIZATION = "Authorization"
BEARER_PREFIX = "Bearer "
QUOTA_PROJECT_HEADER = "x-goog-user-project"

# Read-only; shared by every caller until the next refresh
RequestMetadata = Mapping[str, tuple[str, ...]]


class TokenSource(ABC):
    """Strategy that obtains a brand-new access token."""

    @abstractmethod
    def fetch_access_token(self) -> AccessToken:
        """
        Obtain a new access token, performing whatever network calls are needed.

        Returns:
            AccessToken: The freshly issued token

        Raises:
            AuthError: If the token could not be obtained
        """
        pass


class CredentialsChangedListener(Protocol):
    def on_changed(self, credentials: Credentials) -> None: ...


class RequestMetadataCallback(Protocol):
    def on_success(self, metadata: RequestMetadata) -> None: ...

    def on_failure(self, error: BaseException) -> None: ...


class _CachedState(NamedTuple):
    access_token: AccessToken | None
    request_metadata: RequestMetadata | None


_EMPTY = _CachedState(None, None)


class Credentials:
    """OAuth2 credentials producing ``Authorization: Bearer`` request metadata.

    Args:
        source: Strategy used to obtain new tokens. None means the credentials
            wrap a fixed token and cannot refresh.
        access_token: Optional token to seed the cache with.
        clock: Time source for staleness checks.
        freshness_margin: Remaining lifetime below which a token is stale.
    """

    def __init__(
        self,
        source: TokenSource | None = None,
        *,
        access_token: AccessToken | None = None,
        clock: Clock = SYSTEM_CLOCK,
        freshness_margin: timedelta = MINIMUM_FRESHNESS_MARGIN,
        quota_project_id: str | None = None,
    ) -> None:
        self._source = source
        self._clock = clock
        self._freshness_margin = freshness_margin
        self._quota_project_id = quota_project_id
        self._lock = threading.Lock()
        self._state = self._state_for(access_token) if access_token else _EMPTY
        self._refresh_task: Future[_CachedState] | None = None
        self._listeners: list[CredentialsChangedListener] = []

    @classmethod
    def from_access_token(cls, access_token: AccessToken, **kwargs) -> Credentials:
        """Credentials that always present ``access_token`` and never refresh."""
        return cls(None, access_token=access_token, **kwargs)

    @property
    def source(self) -> TokenSource | None:
        return self._source

    @property
    def authentication_type(self) -> str:
        return "OAuth2"

    @property
    def access_token(self) -> AccessToken | None:
        """The cached token, possibly stale. Does not trigger a refresh."""
        return self._state.access_token

    @property
    def quota_project_id(self) -> str | None:
        return self._quota_project_id

    # ── request metadata ──────────────────────────────────────────────

    def get_request_metadata(self, uri: str | None = None) -> RequestMetadata:
        """Return the headers to attach to a request, refreshing first if needed.

        Args:
            uri: Target URI of the request. Bearer tokens are not audience-bound,
                so the value is accepted for interface compatibility only.

        Raises:
            RefreshError: If a needed refresh failed.
        """
        return self._current_state().request_metadata

    def get_access_token(self) -> AccessToken:
        """Return a token that is not stale, refreshing first if needed.

        Raises:
            RefreshError: If a needed refresh failed.
        """
        return self._current_state().access_token

    def get_request_metadata_async(
        self,
        uri: str | None,
        executor: Executor,
        callback: RequestMetadataCallback,
    ) -> None:
        """Deliver request metadata to ``callback`` without blocking on a refresh.

        A valid cached token is delivered synchronously on the calling thread.
        Otherwise the blocking refresh path runs on ``executor``.
        """
        with self._lock:
            state = self._state
        if not self._is_stale(state):
            callback.on_success(state.request_metadata)
            return
        executor.submit(self._deliver_metadata, uri, callback)

    def _deliver_metadata(self, uri: str | None, callback: RequestMetadataCallback) -> None:
        try:
            metadata = self.get_request_metadata(uri)
        except Exception as e:
            callback.on_failure(e)
            return
        callback.on_success(metadata)

    # ── refresh ───────────────────────────────────────────────────────

    def refresh(self) -> None:
        """Discard the cached token and obtain a new one, even if still valid.

        A refresh already in flight is allowed to finish first.
        """
        while True:
            with self._lock:
                pending = self._refresh_task
                if pending is None:
                    self._state = _EMPTY
                    task: Future[_CachedState] = Future()
                    self._refresh_task = task
                    break
            # Only the ordering matters here; the pending outcome belongs to its waiters.
            pending.exception()

        self._run_refresh(task)
        task.result()

    def refresh_if_expired(self) -> None:
        """Refresh only when the cached token is missing or stale."""
        self._current_state()

    def add_change_listener(self, listener: CredentialsChangedListener) -> None:
        """Register a listener invoked after every successful refresh."""
        with self._lock:
            self._listeners.append(listener)

    def get_status(self) -> TokenStatus:
        """Get the current token status."""
        state = self._state
        token = state.access_token
        if token is None:
            return TokenStatus(has_token=False, is_expired=True)

        now = self._clock.now()
        remaining = token.expires_in(now)
        is_expired = remaining is not None and remaining <= timedelta(0)
        seconds_remaining = None
        if remaining is not None and not is_expired:
            seconds_remaining = int(remaining.total_seconds())

        return TokenStatus(
            has_token=True,
            is_expired=is_expired,
            is_stale=self._is_stale(state),
            expires_at=token.expiration,
            seconds_remaining=seconds_remaining,
        )

    # ── internals ─────────────────────────────────────────────────────

    def _state_for(self, token: AccessToken) -> _CachedState:
        metadata = {AUTHORIZATION: (BEARER_PREFIX + token.value,)}
        if self._quota_project_id:
            metadata[QUOTA_PROJECT_HEADER] = (self._quota_project_id,)
        return _CachedState(token, MappingProxyType(metadata))

    def _is_stale(self, state: _CachedState) -> bool:
        if state.access_token is None:
            return True
        remaining = state.access_token.expires_in(self._clock.now())
        return remaining is not None and remaining <= self._freshness_margin

    def _current_state(self) -> _CachedState:
        """Return a fresh state, joining or starting the single in-flight refresh."""
        with self._lock:
            if not self._is_stale(self._state):
                return self._state
            task = self._refresh_task
            owner = task is None
            if owner:
                task = self._refresh_task = Future()

        if owner:
            self._run_refresh(task)
        return task.result()

    def _run_refresh(self, task: Future[_CachedState]) -> None:
        """Acquire a token, publish it and resolve ``task``.

        Failures are delivered through ``task``; only interpreter-level
        interrupts propagate, after releasing the waiters.
        """
        logger.info(f"Refreshing access token via {type(self._source).__name__}")
        try:
            if self._source is None:
                raise ConfigurationError(
                    "These credentials wrap a fixed access token and cannot refresh it. "
                    "Create credentials with a token source to enable refreshing."
                )
            token = self._source.fetch_access_token()
        except Exception as e:
            error = RefreshError(e)
            error.__cause__ = e
            logger.warning(f"Access token refresh failed: {e}")
            self._fail_refresh(task, error)
            return
        except BaseException as e:
            self._fail_refresh(task, e)
            raise

        state = self._state_for(token)
        with self._lock:
            self._state = state
            self._refresh_task = None
            listeners = list(self._listeners)

        logger.info(f"Access token refreshed, expires at {token.expiration or 'never'}")
        task.set_result(state)
        self._notify(listeners)

    def _fail_refresh(self, task: Future[_CachedState], error: BaseException) -> None:
        # The stale token is not restored; callers must retry.
        with self._lock:
            self._state = _EMPTY
            self._refresh_task = None
        task.set_exception(error)

    def _notify(self, listeners: list[CredentialsChangedListener]) -> None:
        for listener in listeners:
            try:
                listener.on_changed(self)
            except Exception:
                logger.exception(f"Credentials change listener {listener!r} failed")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source={type(self._source).__name__}, token={self.access_token!r})"
