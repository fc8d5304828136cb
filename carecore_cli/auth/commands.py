import base64
import webbrowser
from pathlib import Path

import typer

from carecore_cli.core.api import (
    ApiError,
    GatewayClient,
    SessionExpired,
    api_login_url,
    api_logout,
    api_mfa_disable,
    api_mfa_setup,
    api_mfa_status,
    api_mfa_verify,
    api_whoami,
)
from carecore_cli.core.session import clear_session, is_logged_in, load_refresh_token, save_tokens


app = typer.Typer(help="Authentication commands (login, tokens, logout)")


@app.command("login")
def login(
    open_browser: bool = typer.Option(False, "--open", help="Open the authorization URL in the default browser"),
):
    """
    Start a login with the identity provider. Only allowed if no session is active.
    """
    if is_logged_in():
        typer.echo("Session already active. Logout first to remove current session tokens.")
        raise typer.Exit(code=1)

    try:
        result = api_login_url(GatewayClient())
    except ApiError as e:
        typer.echo(f"Could not start login: {e.detail}")
        raise typer.Exit(code=1)

    url = result["authorizationUrl"]
    typer.echo("Open this URL in your browser to log in:")
    typer.echo(url)
    if open_browser:
        webbrowser.open(url)
    typer.echo("After logging in, store your tokens with `carecore auth tokens`.")


@app.command("tokens")
def tokens(
    access_token: str = typer.Option(None, "--access-token", help="Access token"),
    refresh_token: str = typer.Option(None, "--refresh-token", help="Refresh token"),
):
    """
    Store an access/refresh token pair as the current session.
    """
    if access_token is None:
        access_token = typer.prompt("Access token", hide_input=True)
    if refresh_token is None:
        refresh_token = typer.prompt("Refresh token", hide_input=True, default="", show_default=False)

    if not access_token.strip():
        typer.echo("Access token cannot be empty.")
        raise typer.Exit(code=1)

    save_tokens(access_token.strip(), refresh_token.strip() or None)
    typer.echo("Session stored.")


@app.command("whoami")
def whoami():
    """
    Show the identity behind the current session.
    """
    try:
        user = api_whoami(GatewayClient())
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to get user: {e.detail}")
        raise typer.Exit(code=1)

    typer.echo(f"Username: {user.get('username')}")
    typer.echo(f"ID:       {user.get('id')}")
    if user.get("email"):
        typer.echo(f"Email:    {user['email']}")
    typer.echo(f"Roles:    {', '.join(user.get('roles') or []) or '-'}")
    typer.echo(f"Scopes:   {', '.join(user.get('scopes') or []) or '-'}")


@app.command("refresh")
def refresh():
    """
    Exchange the stored refresh token for a new access token.
    """
    try:
        GatewayClient().refresh()
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Refresh failed: {e.detail}")
        raise typer.Exit(code=1)
    typer.echo("Access token refreshed.")


@app.command("logout")
def logout():
    """
    End the provider session and delete local tokens.
    """
    refresh_token = load_refresh_token()
    if refresh_token:
        try:
            api_logout(GatewayClient(), refresh_token)
            typer.echo("Logged out from the identity provider.")
        except ApiError:
            typer.echo("Warning: Failed to logout from backend. The session may have already expired.")

    clear_session()
    typer.echo("Session ended.")


@app.command("mfa-status")
def mfa_status():
    """
    Show whether MFA is configured and whether your roles require it.
    """
    try:
        status = api_mfa_status(GatewayClient())
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to get MFA status: {e.detail}")
        raise typer.Exit(code=1)

    typer.echo(f"MFA enabled:  {'yes' if status.get('mfa_enabled') else 'no'}")
    typer.echo(f"MFA required: {'yes' if status.get('mfa_required') else 'no'}")
    typer.echo(status.get("message", ""))


@app.command("mfa-setup")
def mfa_setup(
    qr_file: Path = typer.Option(None, "--qr-file", help="Write the QR code PNG to this path"),
):
    """
    Start TOTP enrollment. Confirm it afterwards with `carecore auth mfa-verify`.
    """
    try:
        setup = api_mfa_setup(GatewayClient())
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"MFA setup failed: {e.detail}")
        raise typer.Exit(code=1)

    typer.echo(setup.get("message", ""))
    typer.echo(f"Manual entry key: {setup['manualEntryKey']}")
    typer.echo(f"otpauth URL:      {setup['otpauthUrl']}")

    if qr_file is not None:
        _, _, encoded = setup["qrCode"].partition("base64,")
        qr_file.write_bytes(base64.b64decode(encoded))
        typer.echo(f"QR code written to {qr_file}")

    typer.echo("Then run `carecore auth mfa-verify --code <6 digits>` to finish.")


def _submit_code(action, code: str, failure: str) -> None:
    try:
        result = action(GatewayClient(), code.strip())
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"{failure}: {e.detail}")
        raise typer.Exit(code=1)
    typer.echo(result.get("message", ""))


@app.command("mfa-verify")
def mfa_verify(
    code: str = typer.Option(..., "--code", prompt="Authenticator code", help="Current 6-digit code"),
):
    """
    Confirm MFA enrollment with a code from your authenticator app.
    """
    _submit_code(api_mfa_verify, code, "MFA verification failed")


@app.command("mfa-disable")
def mfa_disable(
    code: str = typer.Option(..., "--code", prompt="Authenticator code", help="Current 6-digit code"),
):
    """
    Turn MFA off. Needs a current code from the enrolled authenticator.
    """
    _submit_code(api_mfa_disable, code, "Failed to disable MFA")
