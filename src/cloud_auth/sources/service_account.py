"""Service account credentials using a self-signed JWT bearer assertion."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import jwt

from cloud_auth.client import TokenExchangeClient, validate_url
from cloud_auth.credentials import TokenSource
from cloud_auth.models.tokens import AccessToken
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError, SigningError

logger = logging.getLogger(__name__)

TOKEN_SERVER_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600


class ServiceAccountSource(TokenSource):
    """Exchanges an RS256-signed assertion for an access token.

    Args:
        client_email: Service account email, used as the assertion issuer.
        private_key: PEM-encoded RSA private key.
        scopes: Scopes to request.
        private_key_id: Key id placed in the JWT ``kid`` header.
        subject: User to impersonate with domain-wide delegation.
        token_uri: Token endpoint, also the assertion audience.
    """

    def __init__(
        self,
        client_email: str,
        private_key: str,
        scopes: Sequence[str],
        private_key_id: str | None = None,
        subject: str | None = None,
        token_uri: str = TOKEN_SERVER_URI,
        *,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if not client_email or not private_key:
            raise ConfigurationError("Service account credentials need client_email and private_key.")
        if not scopes:
            raise ConfigurationError("At least one scope is required for service account credentials.")
        self.client_email = client_email
        self.private_key_id = private_key_id
        self.scopes = tuple(scopes)
        self.subject = subject
        self.token_uri = validate_url(token_uri, "token_uri")
        self._private_key = private_key
        self._client = client or TokenExchangeClient(clock=clock)
        self._clock = clock

    def create_assertion(self) -> str:
        """Build and sign the JWT assertion for the current time."""
        issued_at = int(self._clock.now().timestamp())
        payload = {
            "iss": self.client_email,
            "scope": " ".join(self.scopes),
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        if self.subject:
            payload["sub"] = self.subject
        headers = {"kid": self.private_key_id} if self.private_key_id else None

        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256", headers=headers)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise SigningError(f"Unable to sign the assertion with the private key: {e}") from e

    def fetch_access_token(self) -> AccessToken:
        logger.debug(f"Requesting access token for service account {self.client_email}")
        response = self._client.request_token(
            self.token_uri,
            {"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": self.create_assertion()},
        )
        return response.to_access_token(self._clock.now())
