"""CLI commands for obtaining and inspecting access tokens."""

from __future__ import annotations

from typing import Annotated, Any, Optional

import typer
from rich.console import Console

from cloud_auth.config import load_settings
from cloud_auth.credentials import Credentials
from cloud_auth.factory import DefaultCredentialsProvider
from cloud_auth.utils.errors import AuthError, handle_error
from cloud_auth.utils.output import OutputFormat, print_output

console = Console(stderr=True)
app = typer.Typer(name="token", help="Obtain and inspect access tokens.")

CredentialsOption = Annotated[
    Optional[str],
    typer.Option("--credentials", "-c", help="Credential file (defaults to CLOUD_AUTH_CREDENTIALS)"),
]
OutputOption = Annotated[OutputFormat, typer.Option("--output", "-o", help="Output format")]


def _provider(credentials_path: str | None) -> DefaultCredentialsProvider:
    """Build a provider for an explicit file or the environment."""
    settings = load_settings()
    if credentials_path:
        settings = settings.model_copy(update={"credentials_path": credentials_path})
    return DefaultCredentialsProvider(settings)


def _status_row(credentials: Credentials) -> dict[str, Any]:
    status = credentials.get_status()
    return {
        "source": type(credentials.source).__name__,
        "has_token": status.has_token,
        "is_expired": status.is_expired,
        "is_stale": status.is_stale,
        "expires_at": str(status.expires_at) if status.expires_at else "never",
        "seconds_remaining": status.seconds_remaining,
        "quota_project": credentials.quota_project_id or "",
    }


@app.command("print")
def print_token(
    credentials: CredentialsOption = None,
    output: OutputOption = OutputFormat.TABLE,
) -> None:
    """Print a valid access token, refreshing it if needed."""
    try:
        with _provider(credentials) as provider:
            token = provider.get_credentials().get_access_token()
    except AuthError as e:
        handle_error(e)
        raise typer.Exit(1)

    if output == OutputFormat.JSON:
        print_output(
            {
                "access_token": token.value,
                "expires_at": str(token.expiration) if token.expiration else None,
                "scopes": list(token.scopes or ()),
            },
            output,
        )
    else:
        typer.echo(token.value)


@app.command()
def status(
    credentials: CredentialsOption = None,
    output: OutputOption = OutputFormat.TABLE,
) -> None:
    """Obtain a token if needed and show its status."""
    try:
        with _provider(credentials) as provider:
            creds = provider.get_credentials()
            creds.refresh_if_expired()
            row = _status_row(creds)
    except AuthError as e:
        handle_error(e)
        raise typer.Exit(1)

    print_output(row, output, title="Token Status")


@app.command()
def refresh(
    credentials: CredentialsOption = None,
    output: OutputOption = OutputFormat.TABLE,
) -> None:
    """Force refresh the access token."""
    try:
        with _provider(credentials) as provider:
            creds = provider.get_credentials()
            console.print(f"Refreshing token via [bold]{type(creds.source).__name__}[/bold]...", style="yellow")
            creds.refresh()
            row = _status_row(creds)
    except AuthError as e:
        handle_error(e)
        raise typer.Exit(1)

    print_output(row, output, title="Token Refreshed")
