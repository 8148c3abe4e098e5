"""HTTP client for OAuth2 and STS token endpoints.

Handles form/JSON bodies, error classification and retries with
exponential backoff.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import ValidationError

from cloud_auth.models.retry import RetrySettings, TimedAttempt
from cloud_auth.models.tokens import TokenExchangeRequest, TokenExchangeResponse
from cloud_auth.retry import ExponentialRetryAlgorithm
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import (
    AuthError,
    ConfigurationError,
    InvalidResponseError,
    OAuthError,
    RetryExhaustedError,
    TransportError,
)

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Raised by httpx for a request that can never succeed as configured
_CONFIGURATION_FAILURES = (httpx.UnsupportedProtocol, httpx.InvalidURL, httpx.LocalProtocolError)


def validate_url(url: str, name: str = "URL") -> str:
    """Check that ``url`` is an absolute http(s) URL with a host.

    Raises:
        ConfigurationError: The URL cannot be used as a token endpoint.
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigurationError(f"Invalid {name}: {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ConfigurationError(f"Invalid {name}: {url!r}. Expected an http or https URL with a host.")
    return url


def _error_from_response(response: httpx.Response, retry_count: int) -> OAuthError:
    """Parse an error response into an OAuthError.

    Understands the RFC 6749 ``{"error": ..., "error_description": ...}``
    shape and the ``{"error": {"status": ..., "message": ...}}`` shape used
    by IAM; anything else falls back to the HTTP status and body text.
    """
    error_code = f"http_{response.status_code}"
    description: str | None = response.text or None
    error_uri = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str):
            error_code = error
            description = body.get("error_description")
            error_uri = body.get("error_uri")
        elif isinstance(error, dict):
            error_code = str(error.get("status") or error.get("code") or error_code)
            description = error.get("message")

    return OAuthError(
        error_code,
        description,
        error_uri,
        status_code=response.status_code,
        retry_count=retry_count,
    )


def parse_token_response(
    data: dict[str, Any], expires_in_required: bool = True
) -> TokenExchangeResponse:
    """Validate a decoded token endpoint body.

    Raises:
        InvalidResponseError: A required field is missing or malformed.
    """
    try:
        response = TokenExchangeResponse(**data)
    except ValidationError as e:
        raise InvalidResponseError(f"Error parsing token response: {e}") from e
    if expires_in_required and response.expires_in is None:
        raise InvalidResponseError("Error parsing token response: expires_in is missing")
    return response


class TokenExchangeClient:
    """Performs token endpoint round trips with retry and error classification."""

    def __init__(
        self,
        retry_settings: RetrySettings | None = None,
        *,
        http: httpx.Client | None = None,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry = ExponentialRetryAlgorithm(retry_settings or RetrySettings.default(), clock)
        self._http = http or httpx.Client()
        self._sleep = sleep

    @property
    def retry_algorithm(self) -> ExponentialRetryAlgorithm:
        return self._retry

    def exchange_token(
        self,
        url: str,
        request: TokenExchangeRequest,
        *,
        options: str | None = None,
        headers: dict[str, str] | None = None,
        expires_in_required: bool = True,
    ) -> TokenExchangeResponse:
        """Exchange a subject token for an access token (RFC 8693).

        Args:
            url: The STS token endpoint.
            request: Subject token and exchange parameters.
            options: Provider-specific JSON string, e.g. an access boundary.
            headers: Extra request headers.
            expires_in_required: Reject responses without ``expires_in``.

        Returns:
            The parsed token response.

        Raises:
            OAuthError: The endpoint rejected the exchange.
            RetryExhaustedError: Transient failures outlasted the retry policy.
        """
        data = self._execute(
            "POST",
            url,
            operation="Token exchange",
            data=request.to_form(options),
            headers={"Content-Type": FORM_CONTENT_TYPE, **(headers or {})},
        )
        return parse_token_response(data, expires_in_required)

    def request_token(self, url: str, data: dict[str, str]) -> TokenExchangeResponse:
        """POST an OAuth2 grant (JWT bearer, refresh token) and parse the response."""
        body = self._execute(
            "POST",
            url,
            operation="Access token request",
            data=data,
            headers={"Content-Type": FORM_CONTENT_TYPE},
        )
        return parse_token_response(body)

    def request_json(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        operation: str = "Token request",
    ) -> dict[str, Any]:
        """Make a JSON request to a token-issuing endpoint and return the decoded body."""
        return self._execute(
            method, url, operation=operation, json=json, headers=headers, params=params
        )

    def _execute(self, method: str, url: str, *, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Run one logical request, retrying transient failures per the retry policy."""
        attempt = self._retry.create_first_attempt()
        while True:
            try:
                return self._attempt(method, url, attempt, **kwargs)
            except AuthError as e:
                if not e.retryable:
                    raise
                last_error: AuthError = e

            next_attempt = self._retry.create_next_attempt(attempt)
            if not self._retry.accept(next_attempt):
                raise RetryExhaustedError(
                    f"{operation} to {url}", attempt.attempt_count + 1, last_error
                ) from last_error

            wait = next_attempt.randomized_retry_delay.total_seconds()
            logger.warning(
                f"{operation} attempt {attempt.attempt_count + 1} failed: {last_error}. "
                f"Retrying in {wait:.2f}s..."
            )
            self._sleep(wait)
            attempt = next_attempt

    def _attempt(
        self, method: str, url: str, attempt: TimedAttempt, **kwargs: Any
    ) -> dict[str, Any]:
        timeout = attempt.rpc_timeout.total_seconds()
        logger.debug(f"[Attempt {attempt.attempt_count + 1}] {method} {url} (timeout {timeout:.1f}s)")
        try:
            response = self._http.request(method, url, timeout=timeout, **kwargs)
        except _CONFIGURATION_FAILURES as e:
            raise ConfigurationError(f"Cannot send request to {url}: {type(e).__name__}: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__} calling {url}: {e}") from e

        if response.status_code >= 400:
            raise _error_from_response(response, attempt.attempt_count)

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Error parsing token response from {url}: {e}") from e
        if not isinstance(body, dict):
            raise InvalidResponseError(f"Error parsing token response from {url}: expected an object")
        return body

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()
