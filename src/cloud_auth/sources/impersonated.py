"""Service account impersonation through the IAM Credentials API."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from cloud_auth.client import TokenExchangeClient, validate_url
from cloud_auth.credentials import BEARER_PREFIX, Credentials, TokenSource
from cloud_auth.models.tokens import AccessToken
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError, InvalidResponseError

logger = logging.getLogger(__name__)

IAM_ACCESS_TOKEN_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
    "{principal}:generateAccessToken"
)
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_LIFETIME_SECONDS = 3600
MAX_LIFETIME_SECONDS = 43200


def _parse_expire_time(value: str) -> datetime:
    """Parse the RFC 3339 ``expireTime`` returned by IAM."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat handles at most microseconds
    if "." in text:
        head, _, rest = text.partition(".")
        digits = len(rest) - len(rest.lstrip("0123456789"))
        text = f"{head}.{rest[:min(digits, 6)].ljust(6, '0')}{rest[digits:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidResponseError(f"Error parsing expireTime: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_access_token(
    client: TokenExchangeClient,
    url: str,
    bearer_token: str,
    scopes: Sequence[str],
    delegates: Sequence[str] = (),
    lifetime_seconds: int = DEFAULT_LIFETIME_SECONDS,
) -> AccessToken:
    """Call ``generateAccessToken`` and convert the response.

    Args:
        client: Client used for the request.
        url: Full generateAccessToken URL of the target service account.
        bearer_token: Access token of the calling identity.
        scopes: Scopes requested for the impersonated token.
        delegates: Delegation chain, in order.
        lifetime_seconds: Requested token lifetime.

    Raises:
        InvalidResponseError: The response is missing ``accessToken`` or ``expireTime``.
    """
    body = {
        "delegates": list(delegates),
        "scope": list(scopes),
        "lifetime": f"{lifetime_seconds}s",
    }
    data = client.request_json(
        "POST",
        url,
        json=body,
        headers={"Authorization": BEARER_PREFIX + bearer_token},
        operation="Service account impersonation",
    )

    access_token = data.get("accessToken")
    expire_time = data.get("expireTime")
    if not isinstance(access_token, str) or not access_token:
        raise InvalidResponseError("Error parsing impersonation response: accessToken is missing")
    if not isinstance(expire_time, str):
        raise InvalidResponseError("Error parsing impersonation response: expireTime is missing")

    return AccessToken(
        value=access_token,
        expiration=_parse_expire_time(expire_time),
        scopes=tuple(scopes) or None,
    )


class ImpersonatedSource(TokenSource):
    """Obtains tokens for ``target_principal`` using another credential's token.

    Args:
        source_credentials: Credentials of the calling identity.
        target_principal: Email of the service account to impersonate.
        scopes: Scopes for the impersonated token.
        delegates: Optional delegation chain.
        lifetime_seconds: Token lifetime, at most 12 hours.
        iam_endpoint_override: Full generateAccessToken URL to use instead of
            the public endpoint.
    """

    def __init__(
        self,
        source_credentials: Credentials,
        target_principal: str,
        scopes: Sequence[str],
        delegates: Sequence[str] = (),
        lifetime_seconds: int = DEFAULT_LIFETIME_SECONDS,
        *,
        iam_endpoint_override: str | None = None,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if not target_principal:
            raise ConfigurationError("A target principal is required for impersonation.")
        if not scopes:
            raise ConfigurationError("At least one scope is required for impersonation.")
        if not 0 < lifetime_seconds <= MAX_LIFETIME_SECONDS:
            raise ConfigurationError(
                f"lifetime must be between 1 and {MAX_LIFETIME_SECONDS} seconds, got {lifetime_seconds}"
            )
        self.source_credentials = source_credentials
        self.target_principal = target_principal
        self.scopes = tuple(scopes)
        self.delegates = tuple(delegates)
        self.lifetime_seconds = lifetime_seconds
        self._url = validate_url(
            iam_endpoint_override or IAM_ACCESS_TOKEN_URL.format(principal=target_principal),
            "IAM endpoint",
        )
        self._client = client or TokenExchangeClient(clock=clock)

    def fetch_access_token(self) -> AccessToken:
        self.source_credentials.refresh_if_expired()
        source_token = self.source_credentials.get_access_token()
        logger.debug(f"Impersonating {self.target_principal}")
        return generate_access_token(
            self._client,
            self._url,
            source_token.value,
            self.scopes,
            self.delegates,
            self.lifetime_seconds,
        )
