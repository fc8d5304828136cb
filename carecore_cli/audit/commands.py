import typer

from carecore_cli.core.api import ApiError, GatewayClient, SessionExpired, api_get_audit_logs, api_verify_audit_log

app = typer.Typer(help="Audit ledger commands (audit or admin role).")

ACTIONS = ("read", "search", "create", "update", "delete")


@app.command("log")
def get_log(
    resource_type: str = typer.Option(None, "--resource-type", "-t", help="e.g. Patient"),
    user_id: str = typer.Option(None, "--user", "-u", help="Identity provider user id"),
    action: str = typer.Option(None, "--action", "-a", help="read, search, create, update or delete"),
    limit: int = typer.Option(50, "--limit", min=1, max=500),
):
    """
    Retrieve the audit log, newest first.
    """
    if action and action not in ACTIONS:
        typer.echo(f"Invalid action. Use one of: {', '.join(ACTIONS)}")
        raise typer.Exit(code=1)

    try:
        logs = api_get_audit_logs(
            GatewayClient(), resource_type=resource_type, user_id=user_id, action=action, limit=limit
        )
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to retrieve audit logs: {e.detail}")
        raise typer.Exit(code=1)

    if not logs:
        typer.echo("Audit log is empty.")
        return

    typer.echo(f"{'ID':<6} {'Timestamp':<20} {'Action':<8} {'Resource':<30} {'User':<38} {'Status':<6}")
    typer.echo("-" * 112)
    for log in logs:
        resource = log.get("resource_type", "")
        if log.get("resource_id"):
            resource = f"{resource}/{log['resource_id']}"
        typer.echo(
            f"{str(log.get('id', '')):<6} {str(log.get('created_at', ''))[:19]:<20} {log.get('action', ''):<8} "
            f"{resource:<30} {str(log.get('user_id') or '-'):<38} {str(log.get('status_code') or '-'):<6}"
        )


@app.command("verify")
def verify_log():
    """
    Ask the gateway to recompute the audit hash chain.
    """
    try:
        report = api_verify_audit_log(GatewayClient())
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to verify audit log: {e.detail}")
        raise typer.Exit(code=1)

    if report.get("valid"):
        typer.echo(f"Hash chain verified successfully ({report.get('checked')} entries).")
        return

    typer.echo(f"Chain is broken at Log ID {report.get('broken_at')} after {report.get('checked')} valid entries.")
    raise typer.Exit(code=1)
