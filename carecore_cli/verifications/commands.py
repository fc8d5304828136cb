import typer

from carecore_cli.core.api import (
    ApiError,
    GatewayClient,
    SessionExpired,
    api_get_verification,
    api_list_verifications,
    api_review_verification,
)


app = typer.Typer(help="Practitioner verification review (Admin only).")

STATUSES = ("pending", "approved", "rejected", "expired")


@app.command("list")
def list_verifications(
    status: str = typer.Option(None, "--status", "-s", help="pending, approved, rejected or expired"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(10, "--limit", min=1, max=100),
):
    """
    List verification requests, newest first.
    """
    if status and status not in STATUSES:
        typer.echo(f"Invalid status. Use one of: {', '.join(STATUSES)}")
        raise typer.Exit(code=1)

    try:
        result = api_list_verifications(GatewayClient(), status=status, page=page, limit=limit)
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to list verifications: {e.detail}")
        raise typer.Exit(code=1)

    rows = result.get("data", [])
    if not rows:
        typer.echo("No verification requests found.")
        return

    typer.echo(f"{'ID':<38} {'Practitioner':<20} {'Document':<10} {'Status':<10} {'Submitted':<20}")
    typer.echo("-" * 100)
    for row in rows:
        typer.echo(
            f"{row.get('id', ''):<38} {row.get('practitioner_id', ''):<20} "
            f"{row.get('document_type', ''):<10} {row.get('status', ''):<10} {str(row.get('created_at', ''))[:19]:<20}"
        )
    typer.echo(f"Page {result.get('page')} of {result.get('total_pages')} ({result.get('total')} total)")


@app.command("show")
def show(verification_id: str = typer.Argument(..., help="Verification ID")):
    """
    Show one verification request.
    """
    try:
        record = api_get_verification(GatewayClient(), verification_id)
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Failed to get verification: {e.detail}")
        raise typer.Exit(code=1)

    for key in ("id", "practitioner_id", "document_type", "document_path", "status",
                "reviewed_by", "reviewed_at", "rejection_reason", "additional_info", "created_at"):
        value = record.get(key)
        if value is not None:
            typer.echo(f"{key}: {value}")


@app.command("review")
def review(
    verification_id: str = typer.Argument(..., help="Verification ID"),
    approve: bool = typer.Option(False, "--approve", help="Approve the request"),
    reject: bool = typer.Option(False, "--reject", help="Reject the request"),
    reason: str = typer.Option(None, "--reason", "-r", help="Rejection reason (required with --reject)"),
):
    """
    Approve or reject a pending verification. Requires MFA on your account.
    """
    if approve == reject:
        typer.echo("Choose exactly one of --approve or --reject.")
        raise typer.Exit(code=1)

    if reject and not reason:
        reason = typer.prompt("Rejection reason")
        if not reason.strip():
            typer.echo("Rejection reason cannot be empty.")
            raise typer.Exit(code=1)

    decision = "approved" if approve else "rejected"
    try:
        result = api_review_verification(GatewayClient(), verification_id, decision, reason)
    except SessionExpired as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"Review failed ({e.status_code}): {e.detail}")
        raise typer.Exit(code=1)

    typer.echo(result.get("message", "Review recorded."))
