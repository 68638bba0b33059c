"""
Module that contains the command line app.

Every command reads the same configuration file (``keeper.toml``,
``.keeper.toml`` or ``[tool.keeper]`` in ``pyproject.toml``) so that ``start``
and the control commands agree on where the PID file lives.
"""

import logging
from typing import Optional

import typer
from rich import print
from typing_extensions import Annotated

from keeper.config import Config
from keeper.exceptions import KeeperException
from keeper.supervisor import Supervisor
from keeper.utils.logging import configure_logging

logger = logging.getLogger(__name__)

# Create the Typer app
#   `no_args_is_help=True` will show the help message when no arguments are passed
app = typer.Typer(no_args_is_help=True)

ConfigOption = Annotated[
    str, typer.Option("--config", "-c", help="Config file, or a directory to search")
]


def version_callback(value: bool):
    if value:
        from keeper import __version__

        typer.echo(f"Keeper {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool, typer.Option(help="Show version information", callback=version_callback)
    ] = False,
):
    """
    Keeper CLI
    """


def _fail(action: str, exc: KeeperException):
    msg = f"Error {action}: {exc}"
    print(msg)  # Required for tests to capture output
    logger.error(msg)

    raise typer.Exit(code=exc.exit_code)


def _load_supervisor(config_path: str) -> Supervisor:
    """Supervisor that only knows where the PID file is, for control commands.

    Workers, user and group are not resolved: signalling the running master
    must work from a shell that cannot import the worker modules.
    """
    config = Config.load_from_path(config_path)
    supervisor = Supervisor(container=config)
    if config["pid_file"]:
        supervisor.set_pid_file(config["pid_file"])

    return supervisor


@app.command()
def start(
    config: ConfigOption = ".",
    force: Annotated[
        bool, typer.Option(help="Terminate an already running instance")
    ] = False,
    block: Annotated[
        bool,
        typer.Option(help="With --force, wait on the PID file lock without a timeout"),
    ] = False,
    daemon: Annotated[
        Optional[bool], typer.Option(help="Override the `daemon` setting")
    ] = None,
    debug: Annotated[bool, typer.Option(help="Enable debug logging")] = False,
):
    """Start the master process and its workers"""
    try:
        settings = Config.load_from_path(config)
        if daemon is not None:
            settings["daemon"] = daemon

        configure_logging(
            level="DEBUG" if debug else settings["log_level"],
            log_file=settings["log_file"],
        )

        supervisor = Supervisor(container=settings).set_config(settings)
        supervisor.start(force=force, block=block)
    except KeeperException as exc:
        _fail("starting Keeper", exc)

    exit_code = supervisor.serve()
    if exit_code != 0:
        raise typer.Exit(code=exit_code)


@app.command()
def stop(config: ConfigOption = "."):
    """Ask the running master to shut down"""
    try:
        pid = _load_supervisor(config).stop()
    except KeeperException as exc:
        _fail("stopping Keeper", exc)

    if pid is None:
        print("No running instance")
    else:
        print(f"Sent SIGTERM to PID {pid}")


@app.command()
def reopen(config: ConfigOption = "."):
    """Restart every worker of the running master"""
    try:
        pid = _load_supervisor(config).reopen()
    except KeeperException as exc:
        _fail("reopening workers", exc)

    if pid is None:
        print("No running instance")
    else:
        print(f"Sent SIGUSR1 to PID {pid}")


@app.command()
def reload(config: ConfigOption = "."):
    """Tell every worker of the running master to reload in place"""
    try:
        pid = _load_supervisor(config).reload()
    except KeeperException as exc:
        _fail("reloading workers", exc)

    if pid is None:
        print("No running instance")
    else:
        print(f"Sent SIGUSR2 to PID {pid}")


@app.command()
def pid(config: ConfigOption = "."):
    """Print the pid recorded in the PID file"""
    try:
        recorded = _load_supervisor(config).get_pid()
    except KeeperException as exc:
        _fail("reading PID file", exc)

    if recorded is None:
        print("No running instance")
        raise typer.Exit(code=1)

    print(recorded)
