"""cloud-auth CLI entry point.

Obtain, inspect and refresh OAuth2 access tokens from service account,
user, metadata server and federated credentials.
"""

from __future__ import annotations

import logging

import typer

from cloud_auth.commands.aws_cmd import app as aws_app
from cloud_auth.commands.token_cmd import app as token_app
from cloud_auth.config import load_settings
from cloud_auth.utils.errors import AuthError, handle_error

app = typer.Typer(
    name="cloud-auth",
    help="Obtain and refresh OAuth2 access tokens for cloud APIs.",
    no_args_is_help=True,
)

# Register command groups
app.add_typer(token_app, name="token")
app.add_typer(aws_app, name="aws")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """cloud-auth: credentials, token refresh and request signing."""
    try:
        level = load_settings().log_level
    except AuthError as e:
        handle_error(e)
        raise typer.Exit(1)
    # --verbose never lowers a more detailed CLOUD_AUTH_LOG_LEVEL
    if verbose and logging.getLevelName(level) > logging.INFO:
        level = "INFO"
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


if __name__ == "__main__":
    app()
