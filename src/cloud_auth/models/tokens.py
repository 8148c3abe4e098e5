"""Token-related data models."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

TOKEN_TYPE_ACCESS_TOKEN = "urn:ietf:params:oauth:token-type:access_token"
TOKEN_TYPE_JWT = "urn:ietf:params:oauth:token-type:jwt"
TOKEN_TYPE_AWS4_REQUEST = "urn:ietf:params:aws:token-type:aws4_request"


class AccessToken(BaseModel):
    """A bearer token plus optional expiration and granted scopes."""
    model_config = ConfigDict(frozen=True)

    value: str
    expiration: datetime | None = None
    scopes: tuple[str, ...] | None = None

    def expires_in(self, now: datetime) -> timedelta | None:
        """Remaining lifetime relative to ``now``; None if the token never expires."""
        if self.expiration is None:
            return None
        return self.expiration - now

    def __repr__(self) -> str:
        # Keep token values out of logs and tracebacks.
        return f"AccessToken(expiration={self.expiration!r}, scopes={self.scopes!r})"

    __str__ = __repr__


class TokenExchangeRequest(BaseModel):
    """Parameters of an RFC 8693 token exchange."""
    subject_token: str
    subject_token_type: str
    audience: str | None = None
    scopes: list[str] = Field(default_factory=list)
    requested_token_type: str | None = None
    resource: str | None = None
    actor_token: str | None = None
    actor_token_type: str | None = None

    def to_form(self, options: str | None = None) -> dict[str, str]:
        """Build the URL-encoded body of the exchange request."""
        form = {
            "grant_type": "urn:ietf:params:oauth:grant-type:token-exchange",
            "subject_token_type": self.subject_token_type,
            "subject_token": self.subject_token,
            "requested_token_type": self.requested_token_type or TOKEN_TYPE_ACCESS_TOKEN,
        }
        if self.scopes:
            form["scope"] = " ".join(self.scopes)
        if self.resource:
            form["resource"] = self.resource
        if self.audience:
            form["audience"] = self.audience
        if self.actor_token:
            form["actor_token"] = self.actor_token
            form["actor_token_type"] = self.actor_token_type or TOKEN_TYPE_ACCESS_TOKEN
        if options:
            form["options"] = options
        return form


class TokenExchangeResponse(BaseModel):
    """Successful response from an OAuth2 or STS token endpoint."""
    access_token: str = Field(min_length=1)
    issued_token_type: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    @field_validator("expires_in")
    @classmethod
    def _non_negative(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("expires_in must not be negative")
        return value

    @property
    def scopes(self) -> tuple[str, ...] | None:
        if not self.scope:
            return None
        return tuple(self.scope.split())

    def to_access_token(self, now: datetime) -> AccessToken:
        """Convert to an AccessToken whose expiration is anchored at ``now``."""
        expiration = None
        if self.expires_in is not None:
            expiration = now + timedelta(seconds=self.expires_in)
        return AccessToken(value=self.access_token, expiration=expiration, scopes=self.scopes)


class TokenStatus(BaseModel):
    """Current state of the cached access token."""
    has_token: bool
    is_expired: bool
    is_stale: bool = True
    expires_at: datetime | None = None
    seconds_remaining: int | None = None
