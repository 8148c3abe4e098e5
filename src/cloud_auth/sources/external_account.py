"""External account (workload and workforce identity federation) credentials.

A subject token from a third-party identity provider is exchanged at STS
for a federated access token, optionally followed by service account
impersonation.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from collections.abc import Sequence

from cloud_auth.client import TokenExchangeClient, validate_url
from cloud_auth.credentials import TokenSource
from cloud_auth.models.tokens import AccessToken, TokenExchangeRequest
from cloud_auth.sources.impersonated import (
    CLOUD_PLATFORM_SCOPE,
    DEFAULT_LIFETIME_SECONDS,
    MAX_LIFETIME_SECONDS,
    generate_access_token,
)
from cloud_auth.sources.suppliers import SubjectTokenSupplier, SupplierContext
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

STS_TOKEN_URL = "https://sts.googleapis.com/v1/token"
WORKFORCE_AUDIENCE_PATTERN = re.compile(r"//iam\.googleapis\.com/locations/[^/]+/workforcePools/")


def is_workforce_pool_audience(audience: str) -> bool:
    return WORKFORCE_AUDIENCE_PATTERN.match(audience) is not None


class ExternalAccountSource(TokenSource):
    """Exchanges a supplied subject token for an access token.

    Args:
        audience: Resource name of the workload or workforce identity provider.
        subject_token_type: STS token type of the supplied token.
        supplier: Produces the subject token on each refresh.
        scopes: Scopes of the final access token.
        token_url: STS token endpoint.
        service_account_impersonation_url: generateAccessToken URL to call
            with the federated token, if impersonation is configured.
        client_id: OAuth client id, sent with the secret as Basic auth.
        client_secret: OAuth client secret.
        workforce_pool_user_project: Project billed for workforce pool
            exchanges without client authentication.
        impersonation_lifetime_seconds: Lifetime of the impersonated token.
    """

    def __init__(
        self,
        audience: str,
        subject_token_type: str,
        supplier: SubjectTokenSupplier,
        scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,),
        token_url: str = STS_TOKEN_URL,
        service_account_impersonation_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        workforce_pool_user_project: str | None = None,
        impersonation_lifetime_seconds: int = DEFAULT_LIFETIME_SECONDS,
        *,
        client: TokenExchangeClient | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if not audience or not subject_token_type:
            raise ConfigurationError("External account credentials need an audience and subject_token_type.")
        if workforce_pool_user_project and not is_workforce_pool_audience(audience):
            raise ConfigurationError(
                "The workforce_pool_user_project parameter should only be provided "
                "for a Workforce Pool configuration."
            )
        if not 0 < impersonation_lifetime_seconds <= MAX_LIFETIME_SECONDS:
            raise ConfigurationError(
                f"token_lifetime_seconds must be between 1 and {MAX_LIFETIME_SECONDS}, "
                f"got {impersonation_lifetime_seconds}"
            )
        self.audience = audience
        self.subject_token_type = subject_token_type
        self.supplier = supplier
        self.scopes = tuple(scopes)
        self.token_url = validate_url(token_url, "token_url")
        if service_account_impersonation_url:
            validate_url(service_account_impersonation_url, "service_account_impersonation_url")
        self.service_account_impersonation_url = service_account_impersonation_url
        self.client_id = client_id
        self.workforce_pool_user_project = workforce_pool_user_project
        self.impersonation_lifetime_seconds = impersonation_lifetime_seconds
        self._client_secret = client_secret
        self._client = client or TokenExchangeClient(clock=clock)
        self._clock = clock

    @property
    def service_account_email(self) -> str | None:
        """Email parsed from the impersonation URL, if any."""
        url = self.service_account_impersonation_url
        if not url:
            return None
        match = re.search(r"/serviceAccounts/([^/:]+):generateAccessToken", url)
        return match.group(1) if match else None

    def _client_auth_headers(self) -> dict[str, str]:
        if not self.client_id:
            return {}
        raw = f"{self.client_id}:{self._client_secret or ''}".encode("utf-8")
        return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}

    def _exchange_options(self) -> str | None:
        if self.workforce_pool_user_project and not self.client_id:
            return json.dumps({"userProject": self.workforce_pool_user_project})
        return None

    def fetch_access_token(self) -> AccessToken:
        context = SupplierContext(audience=self.audience, subject_token_type=self.subject_token_type)
        subject_token = self.supplier.get_subject_token(context)

        # The federated token only needs to call IAM when impersonating
        sts_scopes = [CLOUD_PLATFORM_SCOPE] if self.service_account_impersonation_url else list(self.scopes)
        request = TokenExchangeRequest(
            subject_token=subject_token,
            subject_token_type=self.subject_token_type,
            audience=self.audience,
            scopes=sts_scopes,
        )
        response = self._client.exchange_token(
            self.token_url,
            request,
            options=self._exchange_options(),
            headers=self._client_auth_headers(),
        )
        federated = response.to_access_token(self._clock.now())

        if not self.service_account_impersonation_url:
            return federated

        logger.debug(f"Impersonating {self.service_account_email} with the federated token")
        return generate_access_token(
            self._client,
            self.service_account_impersonation_url,
            federated.value,
            self.scopes,
            lifetime_seconds=self.impersonation_lifetime_seconds,
        )
