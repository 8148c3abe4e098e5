"""Error taxonomy for credential refresh, plus agent-friendly CLI error output."""

from __future__ import annotations

import json
import sys
from enum import Enum

from rich.console import Console

console = Console(stderr=True)


class RetryClassification(str, Enum):
    """Advisory retry metadata attached to token endpoint errors."""
    RETRYABLE = "RETRYABLE"
    RETRIED = "RETRIED"
    NON_RETRYABLE = "NON_RETRYABLE"


class AuthError(Exception):
    """Base class for every failure raised by this library."""

    retryable: bool = False

    def __init__(self, message: str = "", *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(AuthError, ValueError):
    """Malformed or missing configuration. Fix the configuration, do not retry."""


class SigningError(AuthError):
    """Cryptographic failure while signing a request or assertion."""


class TransportError(AuthError):
    """Connection, DNS or timeout failure talking to a token endpoint."""

    retryable = True


class InvalidResponseError(AuthError):
    """A token endpoint answered 2xx with a body we cannot use."""


class SubjectTokenError(AuthError):
    """A subject-token supplier could not produce a token."""


class OAuthError(AuthError):
    """Structured error response returned by a token endpoint.

    Carries the ``error``/``error_description``/``error_uri`` fields of the
    response, the HTTP status and a retry classification computed from the
    status and how many retries the operation had already made.
    """

    RETRYABLE_STATUS_CODES = frozenset({500, 503})

    def __init__(
        self,
        error_code: str,
        error_description: str | None = None,
        error_uri: str | None = None,
        *,
        status_code: int | None = None,
        retry_count: int = 0,
    ) -> None:
        self.error_code = error_code
        self.error_description = error_description
        self.error_uri = error_uri
        self.status_code = status_code
        self.retry_count = retry_count
        self.classification = self.classify(status_code, retry_count)
        super().__init__(
            self._format_message(),
            retryable=self.classification != RetryClassification.NON_RETRYABLE,
        )

    @classmethod
    def classify(cls, status_code: int | None, retry_count: int) -> RetryClassification:
        """Map an HTTP status and prior retry count to a classification."""
        if status_code not in cls.RETRYABLE_STATUS_CODES:
            return RetryClassification.NON_RETRYABLE
        if retry_count == 0:
            return RetryClassification.RETRYABLE
        return RetryClassification.RETRIED

    def _format_message(self) -> str:
        message = f"Error code {self.error_code}"
        if self.error_description:
            message += f": {self.error_description}"
        if self.error_uri:
            message += f" - {self.error_uri}"
        return message


class RetryExhaustedError(AuthError):
    """Retries stopped by the retry policy; the last failure is the cause."""

    retryable = True

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")


class RefreshError(AuthError):
    """Raised by Credentials when acquiring a new access token fails."""

    def __init__(self, cause: Exception) -> None:
        self.cause = cause
        super().__init__(
            f"Credential refresh failed: {cause}",
            retryable=getattr(cause, "retryable", False),
        )


def root_cause(error: BaseException) -> BaseException:
    """Follow RefreshError/RetryExhaustedError wrappers down to the original failure."""
    while True:
        if isinstance(error, RefreshError):
            error = error.cause
        elif isinstance(error, RetryExhaustedError):
            error = error.last_error
        else:
            return error


# ── CLI output ───────────────────────────────────────────────────────

# Actionable hints keyed by error substring
_ERROR_HINTS: list[tuple[str, str]] = [
    ("invalid_grant", "The refresh token or assertion was rejected: re-create the credential"),
    ("invalid_client", "Client id/secret rejected: check the credential file"),
    ("unauthorized_client", "Client is not allowed this grant: check the credential type"),
    ("invalid_target", "Audience or resource rejected: check the workload identity pool"),
    ("credential file", "Set CLOUD_AUTH_CREDENTIALS to a readable credential file"),
    ("private key", "The service account private key could not be used: check the key file"),
    ("metadata server", "Not running on a compute instance: use a credential file instead"),
    ("timeout", "Request timed out: try again or check network connectivity"),
    ("connection", "Connection error: check network connectivity"),
    ("aws", "Check AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and AWS_REGION"),
]


def _get_hint(error_message: str) -> str | None:
    """Match an error message to an actionable hint."""
    lower = error_message.lower()
    for pattern, hint in _ERROR_HINTS:
        if pattern.lower() in lower:
            return hint
    return None


def _error_code(error: BaseException) -> str:
    """Pick a stable code from the exception type, looking through wrappers."""
    cause = root_cause(error)
    if isinstance(cause, ConfigurationError):
        return "CONFIG_ERROR"
    if isinstance(cause, SigningError):
        return "SIGNING_ERROR"
    if isinstance(cause, OAuthError):
        return "OAUTH_ERROR"
    if getattr(error, "retryable", False) or getattr(cause, "retryable", False):
        return "TRANSIENT_ERROR"
    return "RUNTIME_ERROR"


def handle_error(error: Exception) -> None:
    """Handle an error with structured output to stdout and human-readable output to stderr.

    Outputs a JSON error object to stdout for agent consumption:
    {"error": true, "code": "CONFIG_ERROR", "message": "...", "retryable": false, "hint": "..."}

    Also prints a human-readable error to stderr.
    """
    message = str(error)
    hint = _get_hint(message)

    error_obj: dict[str, object] = {
        "error": True,
        "code": _error_code(error),
        "message": message,
        "retryable": bool(getattr(error, "retryable", False)),
    }
    if hint:
        error_obj["hint"] = hint

    json.dump(error_obj, sys.stdout)
    sys.stdout.write("\n")

    console.print(f"[red]Error:[/red] {message}")
    if hint:
        console.print(f"[dim]Hint: {hint}[/dim]")
