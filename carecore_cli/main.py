# carecore_cli/main.py


import typer
from carecore_cli.auth.commands import app as auth_app
from carecore_cli.verifications.commands import app as verifications_app
from carecore_cli.audit.commands import app as audit_app

app = typer.Typer(help="CareCore gateway command-line client")
app.add_typer(auth_app, name="auth")
app.add_typer(verifications_app, name="verifications")
app.add_typer(audit_app, name="audit")

if __name__ == "__main__":
    app()
