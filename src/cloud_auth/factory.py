"""Build Credentials from configuration.

``build_credentials`` turns a parsed credential configuration into a ready
Credentials object. ``DefaultCredentialsProvider`` resolves the credentials
an application should use from its environment.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path

import httpx

from cloud_auth.client import TokenExchangeClient
from cloud_auth.config import (
    AuthorizedUserConfig,
    ComputeEngineConfig,
    CredentialConfig,
    CredentialSourceConfig,
    ExternalAccountConfig,
    ImpersonatedServiceAccountConfig,
    ServiceAccountConfig,
    Settings,
    load_credential_config,
)
from cloud_auth.credentials import Credentials, TokenSource
from cloud_auth.models.access_boundary import CredentialAccessBoundary
from cloud_auth.sources.compute_engine import (
    DEFAULT_METADATA_HOST,
    ComputeEngineSource,
    ping_metadata_server,
)
from cloud_auth.sources.downscoped import DownscopedSource
from cloud_auth.sources.external_account import ExternalAccountSource
from cloud_auth.sources.impersonated import ImpersonatedSource
from cloud_auth.sources.service_account import ServiceAccountSource
from cloud_auth.sources.suppliers import (
    DEFAULT_REGIONAL_CRED_VERIFICATION_URL,
    AwsSubjectTokenSupplier,
    FileSubjectTokenSupplier,
    StaticSubjectTokenSupplier,
    SubjectTokenSupplier,
)
from cloud_auth.sources.user import UserRefreshSource
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

_IMPERSONATION_URL_PATTERN = re.compile(r"/serviceAccounts/([^/:]+):generateAccessToken$")

WELL_KNOWN_CREDENTIALS_FILE = "application_default_credentials.json"
CLOUDSDK_CONFIG_DIRECTORY = "gcloud"


def well_known_credentials_path(config_dir: str | None = None) -> Path:
    """Location of the credentials written by ``gcloud auth application-default login``.

    ``config_dir`` (normally ``CLOUDSDK_CONFIG``) wins; otherwise the gcloud
    configuration directory of the current platform is used.
    """
    if config_dir:
        return Path(config_dir) / WELL_KNOWN_CREDENTIALS_FILE
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
    else:
        base = Path.home() / ".config"
    return base / CLOUDSDK_CONFIG_DIRECTORY / WELL_KNOWN_CREDENTIALS_FILE


def _supplier_for(source: CredentialSourceConfig, clock: Clock) -> SubjectTokenSupplier:
    if source.subject_token:
        return StaticSubjectTokenSupplier(source.subject_token)
    if source.file:
        return FileSubjectTokenSupplier(
            source.file,
            source.format.type,
            source.format.subject_token_field_name,
        )
    if source.environment_id:
        match = re.fullmatch(r"aws(\d+)", source.environment_id)
        if not match:
            raise ConfigurationError(f"Invalid AWS environment ID: {source.environment_id}")
        if match.group(1) != "1":
            raise ConfigurationError(
                f"AWS version {match.group(1)} is not supported in the current build."
            )
        return AwsSubjectTokenSupplier(
            region=source.region,
            regional_cred_verification_url=(
                source.regional_cred_verification_url or DEFAULT_REGIONAL_CRED_VERIFICATION_URL
            ),
            clock=clock,
        )
    raise ConfigurationError(
        "The credential_source needs one of 'file', 'environment_id' or 'subject_token'."
    )


def _target_principal(url: str) -> str:
    match = _IMPERSONATION_URL_PATTERN.search(url)
    if not match:
        raise ConfigurationError(f"Unable to determine target principal from service account impersonation URL: {url}")
    return match.group(1)


def _source_for(
    config: CredentialConfig,
    client: TokenExchangeClient,
    clock: Clock,
    metadata_host: str,
) -> TokenSource:
    if isinstance(config, ServiceAccountConfig):
        return ServiceAccountSource(
            config.client_email,
            config.private_key,
            config.scopes,
            private_key_id=config.private_key_id,
            subject=config.subject,
            token_uri=config.token_uri,
            client=client,
            clock=clock,
        )
    if isinstance(config, AuthorizedUserConfig):
        return UserRefreshSource(
            config.client_id,
            config.client_secret,
            config.refresh_token,
            config.token_uri,
            client=client,
            clock=clock,
        )
    if isinstance(config, ExternalAccountConfig):
        return ExternalAccountSource(
            config.audience,
            config.subject_token_type,
            _supplier_for(config.credential_source, clock),
            scopes=config.scopes,
            token_url=config.token_url,
            service_account_impersonation_url=config.service_account_impersonation_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            workforce_pool_user_project=config.workforce_pool_user_project,
            impersonation_lifetime_seconds=config.service_account_impersonation.token_lifetime_seconds,
            client=client,
            clock=clock,
        )
    if isinstance(config, ImpersonatedServiceAccountConfig):
        source_credentials = build_credentials(
            config.source_credentials, client=client, clock=clock, metadata_host=metadata_host
        )
        return ImpersonatedSource(
            source_credentials,
            _target_principal(config.service_account_impersonation_url),
            config.scopes,
            config.delegates,
            config.lifetime,
            iam_endpoint_override=config.service_account_impersonation_url,
            client=client,
            clock=clock,
        )
    if isinstance(config, ComputeEngineConfig):
        return ComputeEngineSource(config.scopes, metadata_host, client=client, clock=clock)
    raise ConfigurationError(f"Unsupported credential configuration: {type(config).__name__}")


def build_credentials(
    config: CredentialConfig,
    *,
    client: TokenExchangeClient | None = None,
    clock: Clock | None = None,
    quota_project_id: str | None = None,
    metadata_host: str = DEFAULT_METADATA_HOST,
) -> Credentials:
    """Reconstruct Credentials from a credential configuration.

    Args:
        config: A parsed credential configuration.
        client: Token endpoint client shared by every source built.
        clock: Time source; defaults to the system clock.
        quota_project_id: Overrides the configuration's quota project.
        metadata_host: Metadata server host for compute credentials.
    """
    clock = clock or SYSTEM_CLOCK
    client = client or TokenExchangeClient(clock=clock)
    source = _source_for(config, client, clock, metadata_host)
    return Credentials(
        source,
        clock=clock,
        quota_project_id=quota_project_id or config.quota_project_id,
    )


def downscope(
    credentials: Credentials,
    access_boundary: CredentialAccessBoundary,
    *,
    client: TokenExchangeClient | None = None,
    clock: Clock | None = None,
) -> Credentials:
    """Credentials whose tokens are limited to ``access_boundary``."""
    clock = clock or SYSTEM_CLOCK
    source = DownscopedSource(credentials, access_boundary, client=client, clock=clock)
    return Credentials(source, clock=clock, quota_project_id=credentials.quota_project_id)


class DefaultCredentialsProvider:
    """Resolves application default credentials from ``settings``.

    Lookup order: the credential file named by the settings, the gcloud
    well-known file, then the metadata server. The result and the server check are
    cached on the instance until ``reset()``. Every credential built by the
    provider shares one token client, released by ``close()``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http: httpx.Client | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._http = http
        self._clock = clock or SYSTEM_CLOCK
        self._lock = threading.Lock()
        self._credentials: Credentials | None = None
        self._on_compute: bool | None = None
        self._token_client: TokenExchangeClient | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    def get_credentials(self) -> Credentials:
        """Return the cached default credentials, resolving them on first use.

        Raises:
            ConfigurationError: If no credentials can be found.
        """
        with self._lock:
            if self._credentials is None:
                self._credentials = self._resolve()
            return self._credentials

    def is_on_compute(self) -> bool:
        if self._on_compute is None:
            self._on_compute = ping_metadata_server(self._settings.metadata_host, http=self._http)
            logger.debug(f"Metadata server available: {self._on_compute}")
        return self._on_compute

    def reset(self) -> None:
        """Forget cached credentials and the metadata server check."""
        with self._lock:
            self._credentials = None
            self._on_compute = None

    def close(self) -> None:
        """Close the shared token client. Credentials already handed out stop working."""
        with self._lock:
            client, self._token_client = self._token_client, None
            self._credentials = None
        if client is not None:
            client.close()

    def __enter__(self) -> DefaultCredentialsProvider:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _client(self) -> TokenExchangeClient:
        if self._token_client is None:
            self._token_client = TokenExchangeClient(
                self._settings.retry_settings(), http=self._http, clock=self._clock
            )
        return self._token_client

    def _from_file(self, path: str | Path) -> Credentials:
        config = load_credential_config(path)
        return build_credentials(
            config,
            client=self._client(),
            clock=self._clock,
            quota_project_id=self._settings.quota_project,
            metadata_host=self._settings.metadata_host,
        )

    def _resolve(self) -> Credentials:
        settings = self._settings
        if settings.credentials_path:
            logger.info(f"Loading credentials from {settings.credentials_path}")
            return self._from_file(settings.credentials_path)

        well_known = well_known_credentials_path(settings.gcloud_config_dir)
        if well_known.is_file():
            logger.info(f"Loading gcloud application default credentials from {well_known}")
            return self._from_file(well_known)

        if self.is_on_compute():
            logger.info("Using the metadata server's default service account")
            return Credentials(
                ComputeEngineSource(
                    metadata_host=settings.metadata_host, client=self._client(), clock=self._clock
                ),
                clock=self._clock,
                quota_project_id=settings.quota_project,
            )

        raise ConfigurationError(
            "Could not find default credentials. Set CLOUD_AUTH_CREDENTIALS to a credential file, "
            "run 'gcloud auth application-default login' "
            "or run on an instance with a metadata server."
        )
