"""Credentials served by the compute metadata server."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from cloud_auth.client import TokenExchangeClient, parse_token_response, validate_url
from cloud_auth.credentials import TokenSource
from cloud_auth.models.tokens import AccessToken
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError, OAuthError

logger = logging.getLogger(__name__)

DEFAULT_METADATA_HOST = "metadata.google.internal"
METADATA_FLAVOR_HEADER = "Metadata-Flavor"
METADATA_FLAVOR = "Google"
TOKEN_PATH = "/computeMetadata/v1/instance/service-accounts/default/token"

PING_ATTEMPTS = 3
PING_TIMEOUT_SECONDS = 0.5


def metadata_token_url(host: str = DEFAULT_METADATA_HOST) -> str:
    return f"http://{host}{TOKEN_PATH}"


def ping_metadata_server(
    host: str = DEFAULT_METADATA_HOST,
    *,
    http: httpx.Client | None = None,
    attempts: int = PING_ATTEMPTS,
    timeout: float = PING_TIMEOUT_SECONDS,
) -> bool:
    """Return True if a metadata server answers at ``host``.

    The server is recognised by the ``Metadata-Flavor: Google`` response
    header. Connection failures count as "not on a compute instance".
    """
    owned = http is None
    http = http or httpx.Client()
    try:
        for attempt in range(1, attempts + 1):
            try:
                response = http.get(
                    f"http://{host}",
                    headers={METADATA_FLAVOR_HEADER: METADATA_FLAVOR},
                    timeout=timeout,
                )
            except httpx.HTTPError as e:
                logger.debug(f"Metadata server ping {attempt}/{attempts} failed: {e}")
                continue
            return response.headers.get(METADATA_FLAVOR_HEADER) == METADATA_FLAVOR
        return False
    finally:
        if owned:
            http.close()


class ComputeEngineSource(TokenSource):
    """Fetches the default service account's token from the metadata server."""

    def __init__(
        self,
        scopes: Sequence[str] = (),
        metadata_host: str = DEFAULT_METADATA_HOST,
        *,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.scopes = tuple(scopes)
        self.token_url = validate_url(metadata_token_url(metadata_host), "metadata server URL")
        self._client = client or TokenExchangeClient(clock=clock)
        self._clock = clock

    def fetch_access_token(self) -> AccessToken:
        params = {"scopes": ",".join(self.scopes)} if self.scopes else None
        try:
            data = self._client.request_json(
                "GET",
                self.token_url,
                headers={METADATA_FLAVOR_HEADER: METADATA_FLAVOR},
                params=params,
                operation="Metadata server token request",
            )
        except OAuthError as e:
            if e.status_code == 404:
                raise ConfigurationError(
                    "The metadata server has no service account for this instance. "
                    "Attach a service account or use a credential file."
                ) from e
            raise
        return parse_token_response(data).to_access_token(self._clock.now())
