"""claude-runner init — scaffold a runner configuration."""

from __future__ import annotations

from pathlib import Path

import click

from claude_runner.config.parser import DEFAULT_CONFIG_NAME

CONFIG_FILENAME = DEFAULT_CONFIG_NAME
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# claude-runner configuration
# Relative paths are resolved against this file's directory.

# Directory the agent works in (created if missing)
working_directory: ./workspace

# Tools the agent may use; anything under disallowed_tools always wins
allowed_tools:
  - Read
  - Grep
  - Glob
  - LS
  - Edit
  - Write
disallowed_tools:
  - Bash

# Extra directories the agent may read or write
# allowed_directories:
#   - ../shared

# Either replace the system prompt or append to it (inline or ./file.md)
# system_prompt: ./prompts/system.md
append_system_prompt: |
  Keep changes small and explain what you did at the end.

# max_turns: 20
# model: sonnet
# fallback_model: haiku
# continue_session: false

# External tool servers
# mcp_servers:
#   tracker:
#     type: stdio
#     command: npx
#     args: ["-y", "@example/tracker-mcp"]
#     env:
#       TRACKER_TOKEN: ${TRACKER_TOKEN}

# Extra environment for the agent process (${VAR} is expanded from .env)
env: {}

# JSONL transcripts are written to <log_dir>/<workspace_name>/
log_dir: ./logs
workspace_name: default
"""

TEMPLATE_ENV_EXAMPLE = """\
# Environment for the agent process.
# Copy this file to .env and fill in your values; runner.yaml can
# reference them as ${NAME} inside its `env` section.

ANTHROPIC_API_KEY=
TRACKER_TOKEN=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {CONFIG_FILENAME} if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a runner configuration in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / CONFIG_FILENAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {CONFIG_FILENAME}: {exc}") from exc
    click.echo(f"  Created {CONFIG_FILENAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to choose tools and prompts")
    click.echo(f"  2. Copy {ENV_EXAMPLE_FILENAME} to .env and fill in your values")
    click.echo('  3. Run `claude-runner run "your prompt"`')
