"""Subject-token suppliers for external account (workload identity) credentials.

A supplier produces the third-party token that is exchanged at STS for an
access token. Suppliers are called on every refresh and should not cache.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict

from cloud_auth.aws_signer import AwsRequestSigner
from cloud_auth.client import validate_url
from cloud_auth.models.aws import AwsSecurityCredentials
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import AuthError, SubjectTokenError

logger = logging.getLogger(__name__)

DEFAULT_REGIONAL_CRED_VERIFICATION_URL = (
    "https://sts.{region}.amazonaws.com?Action=GetCallerIdentity&Version=2011-06-15"
)
TARGET_RESOURCE_HEADER = "x-goog-cloud-target-resource"


class SupplierContext(BaseModel):
    """What the caller is exchanging the subject token for."""
    model_config = ConfigDict(frozen=True)

    audience: str
    subject_token_type: str


class SubjectTokenSupplier(ABC):
    """Produces a subject token for one STS exchange."""

    @abstractmethod
    def get_subject_token(self, context: SupplierContext) -> str:
        """
        Return the subject token to exchange.

        Raises:
            SubjectTokenError: If no token could be produced
        """
        pass


class StaticSubjectTokenSupplier(SubjectTokenSupplier):
    """Always returns the same token. Useful for tests and short-lived jobs."""

    def __init__(self, subject_token: str) -> None:
        if not subject_token:
            raise SubjectTokenError("A static subject token must not be empty.")
        self._subject_token = subject_token

    def get_subject_token(self, context: SupplierContext) -> str:
        return self._subject_token


class FileSubjectTokenSupplier(SubjectTokenSupplier):
    """Reads the subject token from a file on every call.

    Args:
        path: File holding the token.
        format_type: ``text`` for the raw file contents, ``json`` to read
            one field of a JSON object.
        subject_token_field_name: Field holding the token when ``format_type``
            is ``json``.
    """

    def __init__(
        self,
        path: str | Path,
        format_type: str = "text",
        subject_token_field_name: str | None = None,
    ) -> None:
        if format_type not in ("text", "json"):
            raise SubjectTokenError(f"Invalid credential source format type: {format_type}")
        if format_type == "json" and not subject_token_field_name:
            raise SubjectTokenError(
                "When the credential source format is json, subject_token_field_name is required."
            )
        self._path = Path(path)
        self._format_type = format_type
        self._field_name = subject_token_field_name

    def get_subject_token(self, context: SupplierContext) -> str:
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise SubjectTokenError(
                f"Error when attempting to read the subject token from the credential file {self._path}: {e}"
            ) from e

        if self._format_type == "text":
            token = content.strip()
        else:
            try:
                data = json.loads(content)
            except ValueError as e:
                raise SubjectTokenError(f"Unable to parse the subject token file {self._path}: {e}") from e
            token = data.get(self._field_name) if isinstance(data, dict) else None
            if not isinstance(token, str):
                raise SubjectTokenError(
                    f"Field '{self._field_name}' not found in subject token file {self._path}"
                )

        if not token:
            raise SubjectTokenError(f"The subject token file {self._path} is empty.")
        return token


class AwsSubjectTokenSupplier(SubjectTokenSupplier):
    """Builds a signed AWS GetCallerIdentity request to use as the subject token.

    The region and security credentials are taken from the arguments when
    given, otherwise from the standard ``AWS_*`` environment variables.
    """

    def __init__(
        self,
        region: str | None = None,
        credentials: AwsSecurityCredentials | None = None,
        regional_cred_verification_url: str = DEFAULT_REGIONAL_CRED_VERIFICATION_URL,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._region = region
        self._credentials = credentials
        validate_url(
            regional_cred_verification_url.replace("{region}", "region"),
            "regional_cred_verification_url",
        )
        self._verification_url = regional_cred_verification_url
        self._clock = clock

    def get_aws_region(self) -> str:
        region = self._region or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
        if not region:
            raise SubjectTokenError(
                "Unable to determine the AWS region. Set AWS_REGION or configure a region."
            )
        return region

    def get_aws_security_credentials(self) -> AwsSecurityCredentials:
        if self._credentials is not None:
            return self._credentials
        access_key_id = os.environ.get("AWS_ACCESS_KEY_ID")
        secret_access_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
        if not access_key_id or not secret_access_key:
            raise SubjectTokenError(
                "Unable to determine AWS security credentials. "
                "Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY."
            )
        return AwsSecurityCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=os.environ.get("AWS_SESSION_TOKEN") or None,
        )

    def get_subject_token(self, context: SupplierContext) -> str:
        region = self.get_aws_region()
        url = self._verification_url.replace("{region}", region)
        try:
            signature = AwsRequestSigner(
                self.get_aws_security_credentials(),
                "POST",
                url,
                region,
                additional_headers={TARGET_RESOURCE_HEADER: context.audience},
                clock=self._clock,
            ).sign()
        except SubjectTokenError:
            raise
        except AuthError as e:
            raise SubjectTokenError(f"Failed to sign the AWS GetCallerIdentity request: {e}") from e

        headers = [
            {"key": name, "value": value}
            for name, value in signature.canonical_headers.items()
        ]
        headers.append({"key": "Authorization", "value": signature.authorization_header})

        logger.debug(f"Built AWS subject token for region {region}")
        token = {"url": url, "method": signature.http_method, "headers": headers}
        return quote_plus(json.dumps(token))
