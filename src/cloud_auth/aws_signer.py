"""AWS Signature Version 4 request signing.

Used by the AWS subject-token supplier to produce a signed
GetCallerIdentity request that the token exchange service can verify.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit, urlunsplit

from cloud_auth.models.aws import AwsRequestSignature, AwsSecurityCredentials
from cloud_auth.utils.clock import SYSTEM_CLOCK, Clock
from cloud_auth.utils.errors import ConfigurationError, SigningError

HASHING_ALGORITHM = "AWS4-HMAC-SHA256"
AWS_REQUEST_TYPE = "aws4_request"
X_AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


class AwsDates:
    """The x-amz-date used for signing and the date header value it came from."""

    def __init__(self, x_amz_date: str, original_date: str | None = None) -> None:
        self.x_amz_date = x_amz_date
        self.original_date = original_date or x_amz_date

    @property
    def formatted_date(self) -> str:
        """The ``yyyymmdd`` prefix used in the credential scope."""
        return self.x_amz_date[:8]

    @classmethod
    def from_x_amz_date(cls, value: str) -> AwsDates:
        try:
            datetime.strptime(value, X_AMZ_DATE_FORMAT)
        except ValueError as e:
            raise ConfigurationError(f"The provided x-amz-date header value is invalid: {value}") from e
        return cls(value)

    @classmethod
    def from_date_header(cls, value: str) -> AwsDates:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"The provided date header value is invalid: {value}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        x_amz_date = parsed.astimezone(timezone.utc).strftime(X_AMZ_DATE_FORMAT)
        return cls(x_amz_date, value)

    @classmethod
    def now(cls, clock: Clock = SYSTEM_CLOCK) -> AwsDates:
        return cls(clock.now().astimezone(timezone.utc).strftime(X_AMZ_DATE_FORMAT))


def _normalize_path(path: str) -> str:
    """Remove ``.`` and ``..`` segments, keeping a trailing slash."""
    if not path:
        return "/"
    segments = path.split("/")
    output: list[str] = []
    for segment in segments[1:]:
        if segment == ".":
            continue
        if segment == "..":
            if output:
                output.pop()
            continue
        output.append(segment)
    normalized = "/" + "/".join(output)
    if segments[-1] in (".", "..") and not normalized.endswith("/"):
        normalized += "/"
    return normalized


def _hmac(key: bytes, message: str) -> bytes:
    try:
        return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    except (TypeError, ValueError) as e:
        raise SigningError("Invalid key used when calculating the AWS V4 signature") from e


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class AwsRequestSigner:
    """Signs one request description with AWS Signature Version 4.

    Args:
        credentials: AWS access key, secret and optional session token.
        http_method: Request method, e.g. ``POST``.
        url: Full request URL; its first host label is the AWS service name.
        region: AWS region, e.g. ``us-east-1``.
        payload: Request body; None signs an empty body.
        additional_headers: Extra headers to sign. A ``date`` or
            ``x-amz-date`` header (not both) fixes the signing time.
        clock: Time source used when no date header is given.
    """

    def __init__(
        self,
        credentials: AwsSecurityCredentials,
        http_method: str,
        url: str,
        region: str,
        payload: str | None = None,
        additional_headers: dict[str, str] | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if not http_method or not region:
            raise ConfigurationError("An HTTP method and region are required to sign a request.")
        parts = urlsplit(url)
        if not parts.hostname:
            raise ConfigurationError(f"Cannot sign a request for a URL without a host: {url}")

        headers = {key.lower(): value for key, value in (additional_headers or {}).items()}
        if "date" in headers and "x-amz-date" in headers:
            raise ConfigurationError("One of {date, x-amz-date} can be specified, not both.")

        self._credentials = credentials
        self._http_method = http_method
        self._parts = parts._replace(path=_normalize_path(parts.path))
        self._region = region
        self._payload = payload or ""
        self._additional_headers = headers

        if "date" in headers:
            self._dates = AwsDates.from_date_header(headers["date"])
        elif "x-amz-date" in headers:
            self._dates = AwsDates.from_x_amz_date(headers["x-amz-date"])
        else:
            self._dates = AwsDates.now(clock)

    def sign(self) -> AwsRequestSignature:
        """Compute the signature and the exact header set it covers."""
        host = self._parts.hostname
        service_name = host.split(".")[0]

        canonical_headers = self._canonical_headers(host)
        sorted_header_names = sorted(canonical_headers)

        canonical_request_hash = self._canonical_request_hash(canonical_headers, sorted_header_names)
        credential_scope = "/".join(
            [self._dates.formatted_date, self._region, service_name, AWS_REQUEST_TYPE]
        )
        string_to_sign = "\n".join(
            [HASHING_ALGORITHM, self._dates.x_amz_date, credential_scope, canonical_request_hash]
        )
        signature = self._calculate_signature(service_name, string_to_sign)

        signed_headers = ";".join(sorted_header_names)
        authorization_header = (
            f"{HASHING_ALGORITHM} Credential={self._credentials.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        return AwsRequestSignature(
            signature=signature,
            authorization_header=authorization_header,
            canonical_headers=canonical_headers,
            signed_headers=sorted_header_names,
            credential_scope=credential_scope,
            date=self._dates.original_date,
            x_amz_date=self._dates.x_amz_date,
            http_method=self._http_method,
            url=urlunsplit(self._parts),
            region=self._region,
            security_credentials=self._credentials,
        )

    def _canonical_headers(self, host: str) -> dict[str, str]:
        headers = {"host": host}
        if "date" not in self._additional_headers:
            headers["x-amz-date"] = self._dates.original_date
        if self._credentials.session_token:
            headers["x-amz-security-token"] = self._credentials.session_token
        for name, value in self._additional_headers.items():
            if name != "host":
                headers[name] = value
        return headers

    def _canonical_request_hash(
        self, headers: dict[str, str], sorted_header_names: list[str]
    ) -> str:
        canonical_headers = "".join(f"{name}:{headers[name]}\n" for name in sorted_header_names)
        canonical_request = "\n".join(
            [
                self._http_method,
                self._parts.path or "/",
                self._parts.query,
                canonical_headers,
                ";".join(sorted_header_names),
                _sha256_hex(self._payload),
            ]
        )
        return _sha256_hex(canonical_request)

    def _calculate_signature(self, service_name: str, string_to_sign: str) -> str:
        secret = self._credentials.secret_access_key
        k_date = _hmac(f"AWS4{secret}".encode("utf-8"), self._dates.formatted_date)
        k_region = _hmac(k_date, self._region)
        k_service = _hmac(k_region, service_name)
        k_signing = _hmac(k_service, AWS_REQUEST_TYPE)
        return _hmac(k_signing, string_to_sign).hex()
