"""Configuration management for cloud-auth.

Loads runtime settings from environment variables (and an optional .env
file) and credential configurations from JSON or YAML files.
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from cloud_auth.models.retry import RetrySettings
from cloud_auth.sources.compute_engine import DEFAULT_METADATA_HOST
from cloud_auth.sources.external_account import STS_TOKEN_URL
from cloud_auth.sources.impersonated import CLOUD_PLATFORM_SCOPE, DEFAULT_LIFETIME_SECONDS
from cloud_auth.sources.service_account import TOKEN_SERVER_URI
from cloud_auth.utils.errors import ConfigurationError


# ── credential configurations ────────────────────────────────────────


def _default_scopes() -> list[str]:
    return [CLOUD_PLATFORM_SCOPE]


class ServiceAccountConfig(BaseModel):
    """A service account key file."""
    type: Literal["service_account"]
    client_email: str
    private_key: str
    private_key_id: str | None = None
    client_id: str | None = None
    project_id: str | None = None
    token_uri: str = TOKEN_SERVER_URI
    subject: str | None = None
    scopes: list[str] = Field(default_factory=_default_scopes)
    quota_project_id: str | None = None


class AuthorizedUserConfig(BaseModel):
    """End-user credentials with a refresh token."""
    type: Literal["authorized_user"]
    client_id: str
    client_secret: str
    refresh_token: str | None = None
    token_uri: str = TOKEN_SERVER_URI
    quota_project_id: str | None = None


class CredentialSourceFormat(BaseModel):
    type: Literal["text", "json"] = "text"
    subject_token_field_name: str | None = None


class CredentialSourceConfig(BaseModel):
    """Where an external account gets its subject token.

    Either ``file`` (a token file, optionally JSON), ``environment_id``
    starting with ``aws`` (a signed AWS request), or ``subject_token`` (a
    fixed token).
    """
    file: str | None = None
    format: CredentialSourceFormat = Field(default_factory=CredentialSourceFormat)
    environment_id: str | None = None
    region: str | None = None
    regional_cred_verification_url: str | None = None
    subject_token: str | None = None


class ImpersonationOptions(BaseModel):
    token_lifetime_seconds: int = DEFAULT_LIFETIME_SECONDS


class ExternalAccountConfig(BaseModel):
    """Workload or workforce identity federation configuration."""
    type: Literal["external_account"]
    audience: str
    subject_token_type: str
    token_url: str = STS_TOKEN_URL
    credential_source: CredentialSourceConfig
    service_account_impersonation_url: str | None = None
    service_account_impersonation: ImpersonationOptions = Field(default_factory=ImpersonationOptions)
    client_id: str | None = None
    client_secret: str | None = None
    workforce_pool_user_project: str | None = None
    scopes: list[str] = Field(default_factory=_default_scopes)
    quota_project_id: str | None = None


class ImpersonatedServiceAccountConfig(BaseModel):
    """Impersonation of a service account by another credential."""
    type: Literal["impersonated_service_account"]
    service_account_impersonation_url: str
    source_credentials: CredentialConfig
    delegates: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=_default_scopes)
    lifetime: int = DEFAULT_LIFETIME_SECONDS
    quota_project_id: str | None = None


class ComputeEngineConfig(BaseModel):
    """The metadata server's default service account."""
    type: Literal["compute_engine"]
    scopes: list[str] = Field(default_factory=list)
    quota_project_id: str | None = None


CredentialConfig = Annotated[
    Union[
        ServiceAccountConfig,
        AuthorizedUserConfig,
        ExternalAccountConfig,
        ImpersonatedServiceAccountConfig,
        ComputeEngineConfig,
    ],
    Field(discriminator="type"),
]

ImpersonatedServiceAccountConfig.model_rebuild()

_credential_config_adapter: TypeAdapter[CredentialConfig] = TypeAdapter(CredentialConfig)


def parse_credential_config(data: Any) -> CredentialConfig:
    """Validate a decoded credential configuration."""
    if not isinstance(data, dict) or "type" not in data:
        raise ConfigurationError("Credential configuration must be an object with a 'type' field.")
    try:
        return _credential_config_adapter.validate_python(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid credential configuration of type '{data['type']}': {e}") from e


def load_credential_config(path: str | Path) -> CredentialConfig:
    """Load a credential configuration from a JSON or YAML credential file."""
    path = Path(path)
    try:
        with open(path) as f:
            # YAML is a superset of JSON
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read credential file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse credential file {path}: {e}") from e
    return parse_credential_config(data)


# ── runtime settings ─────────────────────────────────────────────────


class Settings(BaseModel):
    """Runtime settings loaded from environment variables."""
    credentials_path: str | None = Field(default=None, description="Credential file used by default")
    quota_project: str | None = Field(default=None, description="Project billed for API quota")
    metadata_host: str = Field(default=DEFAULT_METADATA_HOST, description="Metadata server host")
    gcloud_config_dir: str | None = Field(default=None, description="gcloud configuration directory")
    http_timeout: float = Field(default=20.0, gt=0, description="Per-request timeout in seconds")
    max_attempts: int = Field(default=4, ge=0, description="Attempts per token request, 0 for unlimited")
    total_timeout: float = Field(default=60.0, ge=0, description="Retry budget per token request in seconds")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING", description="Logging level for the CLI"
    )

    def retry_settings(self) -> RetrySettings:
        """Build the retry policy for token requests from these settings."""
        defaults = RetrySettings.default()
        timeout = timedelta(seconds=self.http_timeout)
        try:
            return RetrySettings(
                total_timeout=timedelta(seconds=self.total_timeout),
                initial_retry_delay=defaults.initial_retry_delay,
                retry_delay_multiplier=defaults.retry_delay_multiplier,
                max_retry_delay=defaults.max_retry_delay,
                max_attempts=self.max_attempts,
                initial_rpc_timeout=timeout,
                rpc_timeout_multiplier=defaults.rpc_timeout_multiplier,
                max_rpc_timeout=timeout,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid retry settings: {e}") from e


def _env(*keys: str, default: str = "") -> str:
    """Try multiple env var names, return the first one found."""
    for key in keys:
        val = os.environ.get(key, "")
        if val:
            return val.strip().strip('"')
    return default


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Load settings from environment variables.

    A ``.env`` file in the working directory (or ``env_file``) is loaded
    first; variables already set in the environment take precedence.
    """
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    try:
        return Settings(
            credentials_path=_env("CLOUD_AUTH_CREDENTIALS", "GOOGLE_APPLICATION_CREDENTIALS") or None,
            quota_project=_env("CLOUD_AUTH_QUOTA_PROJECT", "GOOGLE_CLOUD_QUOTA_PROJECT") or None,
            metadata_host=_env("GCE_METADATA_HOST", default=DEFAULT_METADATA_HOST),
            gcloud_config_dir=_env("CLOUDSDK_CONFIG") or None,
            http_timeout=float(_env("CLOUD_AUTH_HTTP_TIMEOUT", default="20")),
            max_attempts=int(_env("CLOUD_AUTH_MAX_ATTEMPTS", default="4")),
            total_timeout=float(_env("CLOUD_AUTH_TOTAL_TIMEOUT", default="60")),
            log_level=_env("CLOUD_AUTH_LOG_LEVEL", default="WARNING").upper(),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid cloud-auth environment settings: {e}") from e
