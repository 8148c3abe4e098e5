"""Downscoped credentials restricted by a credential access boundary."""

from __future__ import annotations

import logging

from cloud_auth.client import TokenExchangeClient, validate_url
from cloud_auth.credentials import Credentials, TokenSource
from cloud_auth.models.access_boundary import CredentialAccessBoundary
from cloud_auth.models.tokens import TOKEN_TYPE_ACCESS_TOKEN, AccessToken, TokenExchangeRequest
from cloud_auth.sources.external_account import STS_TOKEN_URL
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)


class DownscopedSource(TokenSource):
    """Exchanges a source credential's token for one limited by ``access_boundary``."""

    def __init__(
        self,
        source_credentials: Credentials,
        access_boundary: CredentialAccessBoundary,
        token_url: str = STS_TOKEN_URL,
        *,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.source_credentials = source_credentials
        self.access_boundary = access_boundary
        self.token_url = validate_url(token_url, "token_url")
        self._client = client or TokenExchangeClient(clock=clock)
        self._clock = clock

    def fetch_access_token(self) -> AccessToken:
        self.source_credentials.refresh_if_expired()
        source_token = self.source_credentials.get_access_token()

        request = TokenExchangeRequest(
            subject_token=source_token.value,
            subject_token_type=TOKEN_TYPE_ACCESS_TOKEN,
            requested_token_type=TOKEN_TYPE_ACCESS_TOKEN,
        )
        response = self._client.exchange_token(
            self.token_url,
            request,
            options=self.access_boundary.to_json(),
            expires_in_required=False,
        )

        token = response.to_access_token(self._clock.now())
        if response.expires_in is None:
            # STS omits expires_in when the downscoped token lives as long as its source
            token = token.model_copy(update={"expiration": source_token.expiration})
        logger.debug(f"Downscoped token expires at {token.expiration or 'never'}")
        return token
