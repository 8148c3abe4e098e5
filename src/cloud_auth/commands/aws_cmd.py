"""CLI commands for AWS Signature Version 4 request signing."""

from __future__ import annotations

from typing import Annotated, Optional

import typer

from cloud_auth.aws_signer import AwsRequestSigner
from cloud_auth.sources.suppliers import AwsSubjectTokenSupplier
from cloud_auth.utils.errors import AuthError, ConfigurationError, handle_error
from cloud_auth.utils.output import OutputFormat, print_output

app = typer.Typer(name="aws", help="Sign requests with AWS Signature Version 4.")


@app.callback()
def aws() -> None:
    """Sign requests with AWS Signature Version 4."""


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, header_value = value.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(f"Invalid header '{value}', expected NAME=VALUE")
        headers[name.strip()] = header_value
    return headers


@app.command()
def sign(
    url: Annotated[str, typer.Option("--url", "-u", help="Full request URL")],
    method: Annotated[str, typer.Option("--method", "-m", help="HTTP method")] = "POST",
    region: Annotated[Optional[str], typer.Option("--region", "-r", help="AWS region (defaults to AWS_REGION)")] = None,
    header: Annotated[Optional[list[str]], typer.Option("--header", "-H", help="Extra signed header as NAME=VALUE")] = None,
    payload: Annotated[Optional[str], typer.Option("--payload", help="Request body to sign")] = None,
    output: Annotated[OutputFormat, typer.Option("--output", "-o", help="Output format")] = OutputFormat.TABLE,
) -> None:
    """Sign a request with credentials from the AWS_* environment variables."""
    supplier = AwsSubjectTokenSupplier(region=region)
    try:
        signature = AwsRequestSigner(
            supplier.get_aws_security_credentials(),
            method.upper(),
            url,
            supplier.get_aws_region(),
            payload=payload,
            additional_headers=_parse_headers(header or []),
        ).sign()
    except AuthError as e:
        handle_error(e)
        raise typer.Exit(1)

    result = {
        "authorization": signature.authorization_header,
        "signed_headers": ";".join(signature.signed_headers),
        "x_amz_date": signature.x_amz_date,
        "credential_scope": signature.credential_scope,
        "signature": signature.signature,
    }
    print_output(result, output, title="AWS Signature")
