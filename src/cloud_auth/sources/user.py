"""End-user credentials using an OAuth2 refresh token."""

from __future__ import annotations

import logging

from cloud_auth.client import TokenExchangeClient, validate_url
from cloud_auth.credentials import TokenSource
from cloud_auth.models.tokens import AccessToken
from cloud_auth.sources.service_account import TOKEN_SERVER_URI
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


class UserRefreshSource(TokenSource):
    """Refreshes access tokens with the ``refresh_token`` grant."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str | None,
        token_uri: str = TOKEN_SERVER_URI,
        *,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if not client_id or not client_secret:
            raise ConfigurationError("User credentials need client_id and client_secret.")
        self.client_id = client_id
        self.token_uri = validate_url(token_uri, "token_uri")
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._client = client or TokenExchangeClient(clock=clock)
        self._clock = clock

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    def fetch_access_token(self) -> AccessToken:
        if not self._refresh_token:
            raise ConfigurationError(
                "User credentials have no refresh token and cannot refresh the access token."
            )

        response = self._client.request_token(
            self.token_uri,
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "refresh_token": self._refresh_token,
            },
        )
        # The server may rotate the refresh token
        if response.refresh_token and response.refresh_token != self._refresh_token:
            logger.info("Refresh token was rotated by the token endpoint")
            self._refresh_token = response.refresh_token
        return response.to_access_token(self._clock.now())
