import typer
import rich_click  # noqa: F401
from .graph import graph
from .phases import build, deploy, init, redeploy
from stackctl import __version__

app = typer.Typer(
    name="stackctl",
    help="Dependency-ordered init, build and deploy for multi-service stacks",
    no_args_is_help=True,
)

@app.command("version")
def version() -> None:
    """Show the stackctl version."""
    typer.echo(f"stackctl v{__version__}")

app.command()(graph)
app.command()(init)
app.command()(build)
app.command()(deploy)
app.command()(redeploy)
