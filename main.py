# Copyright (c) 2025 Trae AI. All rights reserved.

from importlib.metadata import PackageNotFoundError, version as package_version
from typing import Optional
import typer
from reelkeeper.cli.main import app as cli_app, console
from reelkeeper.core.errors import ReelkeeperError
from reelkeeper.server.app import Server

app = typer.Typer(
    help="reelkeeper - Keep a local movie and TV library in sync with your disks.",
    no_args_is_help=True,
)

# Library commands and the collection group come from the CLI package
app.registered_commands.extend(cli_app.registered_commands)
app.registered_groups.extend(cli_app.registered_groups)


def installed_version() -> str:
    try:
        return package_version("reelkeeper")
    except PackageNotFoundError:
        return "unknown (not installed)"


def _show_version(value: bool):
    if value:
        console.print(f"reelkeeper {installed_version()}")
        raise typer.Exit()


@app.callback()
def main(version: bool = typer.Option(False, "--version", callback=_show_version, is_eager=True,
                                      help="Show the installed version and exit.")):
    pass


@app.command("server")
def run_server(config_path: str = "config.yaml",
               host: Optional[str] = typer.Option(None, help="Overrides server_host from the config."),
               port: Optional[int] = typer.Option(None, help="Overrides server_port from the config.")):
    """
    Run the HTTP API with scheduled and file-triggered reconciliation.
    """
    try:
        server = Server(config_path)
    except ReelkeeperError as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1)
    server.run(host=host, port=port)


if __name__ == "__main__":
    app()
