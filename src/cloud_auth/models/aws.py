"""AWS request-signing data models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AwsSecurityCredentials(BaseModel):
    """AWS access key pair with an optional session token."""
    model_config = ConfigDict(frozen=True)

    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)
    session_token: str | None = None

    def __repr__(self) -> str:
        return f"AwsSecurityCredentials(access_key_id={self.access_key_id!r})"


class AwsRequestSignature(BaseModel):
    """Result of signing a request with AWS Signature Version 4."""
    model_config = ConfigDict(frozen=True)

    signature: str
    authorization_header: str
    canonical_headers: dict[str, str]
    signed_headers: list[str]
    credential_scope: str
    date: str
    x_amz_date: str
    http_method: str
    url: str
    region: str
    security_credentials: AwsSecurityCredentials
