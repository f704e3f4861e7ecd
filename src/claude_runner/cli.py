"""Root CLI group, version flag and log level."""

from __future__ import annotations

import logging
import signal

import click

from claude_runner import __version__
from claude_runner.commands.decode import decode
from claude_runner.commands.init import init
from claude_runner.commands.run import run

# Ensure SIGPIPE doesn't kill the process when stdout is piped into `head`.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

_LOG_LEVELS = ("debug", "info", "warning", "error")


@click.group()
@click.version_option(version=__version__, prog_name="claude-runner")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity (logs go to stderr).",
)
def cli(log_level: str) -> None:
    """claude-runner — run the Claude agent CLI and decode its stream."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


cli.add_command(init)
cli.add_command(run)
cli.add_command(decode)
