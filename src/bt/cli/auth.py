"""
Authentication commands for bt.

This module provides commands for managing the authentication session:
login with any supported credential scheme, logout, status and refresh.
"""

import sys
import webbrowser

import click
from rich.console import Console
from rich.panel import Panel

from bt.core.auth_manager import AuthManager
from bt.core.config import get_config
from bt.core.credentials import (
    AccessTokenCredential,
    APITokenCredential,
    AppPasswordCredential,
    AuthMethod,
    Credential,
)
from bt.core.exceptions import BTError, ConfigurationError
from bt.core.oauth import run_authorization_flow
from bt.utils.output import OutputFormatter
from bt.utils.validation import validate_non_empty_string

METHOD_CHOICES = {
    "api-token": AuthMethod.API_TOKEN,
    "app-password": AuthMethod.APP_PASSWORD,
    "access-token": AuthMethod.ACCESS_TOKEN,
    "oauth": AuthMethod.OAUTH,
}

OAUTH_SETUP_INSTRUCTIONS = """
To use OAuth authentication, create an OAuth consumer in Bitbucket:

1. Open your workspace settings and select "OAuth consumers"
2. Click "Add consumer"
3. Set the callback URL to http://localhost:{port}/callback
4. Grant Account (Read), Repositories, Pull requests and Pipelines permissions
5. Run: bt auth login --method oauth --client-id YOUR_ID --client-secret YOUR_SECRET
"""


def _fail(formatter: OutputFormatter, error: BTError) -> None:
    formatter.error(str(error), details={"suggestion": error.suggestion} if error.suggestion else None)
    sys.exit(error.exit_code)


def _prompt_credential(method: AuthMethod, email: str | None, username: str | None, token: str | None) -> Credential:
    """Collect the fields of a static credential, prompting for what is missing."""
    if method is AuthMethod.API_TOKEN:
        email = email or click.prompt("Atlassian account email", type=str)
        token = token or click.prompt("API token", hide_input=True)
        return APITokenCredential(
            email=validate_non_empty_string(email, "Email"),
            token=validate_non_empty_string(token, "API token"),
        )
    if method is AuthMethod.APP_PASSWORD:
        username = username or click.prompt("Bitbucket username", type=str)
        token = token or click.prompt("App password", hide_input=True)
        return AppPasswordCredential(
            username=validate_non_empty_string(username, "Username"),
            password=validate_non_empty_string(token, "App password"),
        )
    token = token or click.prompt("Access token", hide_input=True)
    return AccessTokenCredential(token=validate_non_empty_string(token, "Access token"))


@click.group()
def auth() -> None:
    """Manage authentication with Bitbucket."""


@auth.command()
@click.option(
    "--method",
    "method_name",
    type=click.Choice(list(METHOD_CHOICES), case_sensitive=False),
    default="api-token",
    show_default=True,
    help="Authentication method.",
)
@click.option("--email", help="Atlassian account email (api-token).")
@click.option("--username", help="Bitbucket username (app-password).")
@click.option("--token", help="Secret for the chosen method. Prompted for when omitted.")
@click.option("--client-id", help="OAuth consumer key, saved to configuration (oauth).")
@click.option("--client-secret", help="OAuth consumer secret, saved to configuration (oauth).")
@click.option("--port", type=int, help="Local port for the OAuth callback.")
@click.option("--no-browser", is_flag=True, help="Print the OAuth URL instead of opening a browser.")
@click.pass_context
def login(
    ctx: click.Context,
    method_name: str,
    email: str | None,
    username: str | None,
    token: str | None,
    client_id: str | None,
    client_secret: str | None,
    port: int | None,
    no_browser: bool,
) -> None:
    """
    Authenticate with Bitbucket and store the session.

    API tokens are the recommended method. App passwords are supported for
    existing setups, access tokens for repository, project or workspace
    scoped automation, and OAuth 2.0 for interactive logins through the
    browser.
    """
    console: Console = ctx.obj["console"]
    formatter: OutputFormatter = ctx.obj["formatter"]
    method = METHOD_CHOICES[method_name.lower()]

    try:
        config = get_config()
        if method is AuthMethod.OAUTH:
            if client_id:
                config.set("auth.oauth.client_id", client_id)
            if client_secret:
                config.set("auth.oauth.client_secret", client_secret)
            port = port or config.get("auth.oauth.callback_port", 8080)
            auth_manager = AuthManager.from_config(config)
            if auth_manager.oauth_client is None:
                console.print(
                    Panel(
                        OAUTH_SETUP_INSTRUCTIONS.format(port=port).strip(),
                        title="OAuth Setup Required",
                        border_style="yellow",
                    )
                )
                raise ConfigurationError(
                    "OAuth consumer is not configured",
                    suggestion="Pass --client-id and --client-secret or set BT_OAUTH_CLIENT_ID",
                )

            def open_url(url: str) -> None:
                console.print(f"Authorization URL: {url}")
                if no_browser:
                    console.print("Open the above URL in your browser to continue.")
                else:
                    webbrowser.open(url)
                console.print(f"Waiting for callback on http://localhost:{port}/callback ...")

            credential: Credential = run_authorization_flow(auth_manager.oauth_client, port, open_url)
        else:
            credential = _prompt_credential(method, email, username, token)
            auth_manager = AuthManager.from_config(config)

        user = auth_manager.login(credential)
        formatter.success(
            "Authentication successful",
            details={
                "username": user.username or "Unknown",
                "display_name": user.display_name or "Unknown",
                "method": method.value,
                "storage": auth_manager.store.description if auth_manager.store else None,
            },
        )
    except BTError as e:
        _fail(formatter, e)


@auth.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def logout(ctx: click.Context, yes: bool) -> None:
    """Remove the stored session."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        auth_manager = AuthManager.from_config(get_config(), environ={})
        if not auth_manager.has_credentials():
            formatter.info("No stored credentials found")
            return

        if yes or click.confirm("Are you sure you want to remove stored credentials?"):
            auth_manager.logout()
            formatter.success("Credentials removed successfully")
        else:
            formatter.info("Logout cancelled")
    except BTError as e:
        _fail(formatter, e)


@auth.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show which credential is active and whether Bitbucket accepts it."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        auth_manager = AuthManager.from_config(get_config())
        if not auth_manager.has_credentials():
            formatter.info("Not authenticated")
            formatter.info("Run 'bt auth login' or set BITBUCKET_EMAIL and BITBUCKET_API_TOKEN")
            return

        status_info = auth_manager.get_status()
        user = auth_manager.authenticate()
        status_info.update(
            {
                "status": "Authenticated",
                "username": user.username or "Unknown",
                "display_name": user.display_name or "Unknown",
                "account_id": user.account_id or "Unknown",
            }
        )
        formatter.format_output(status_info, "Authentication Status")
    except BTError as e:
        _fail(formatter, e)


@auth.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Refresh the OAuth 2.0 access token now."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        auth_manager = AuthManager.from_config(get_config(), environ={})
        if not auth_manager.has_credentials():
            formatter.info("Not authenticated")
            return
        if auth_manager.method is not AuthMethod.OAUTH:
            formatter.info("The active credential does not expire, nothing to refresh")
            return
        auth_manager.refresh()
        formatter.success("Access token refreshed", details=auth_manager.get_status())
    except BTError as e:
        _fail(formatter, e)
