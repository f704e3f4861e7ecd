"""claude-runner run — run one agent session and print what it does."""

from __future__ import annotations

import asyncio
import functools
import json
import select
import sys
import threading
from pathlib import Path
from typing import Any

import click

from claude_runner.agent.runner import AgentRunner
from claude_runner.config.models import RunnerConfig
from claude_runner.config.parser import DEFAULT_CONFIG_NAME, ConfigError, load_config
from claude_runner.errors import RunnerError
from claude_runner.protocol.models import ResultMessage, parse_message
from claude_runner.session.models import SessionInfo

#: Longest tool input echoed on one line.
_TOOL_PREVIEW_CHARS = 120


@click.command()
@click.argument("prompt")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help=f"Path to config file (default: ./{DEFAULT_CONFIG_NAME} if present).",
)
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(file_okay=False),
    default=None,
    help="Working directory for the agent (overrides the config).",
)
@click.option(
    "--stream",
    is_flag=True,
    help="Keep the session open and send each stdin line as a further turn.",
)
def run(
    prompt: str,
    config_file: str | None,
    working_directory: str | None,
    stream: bool,
) -> None:
    """Run the agent on PROMPT and print its text, tool uses and result."""
    overrides: dict[str, Any] = {}
    if working_directory is not None:
        overrides["working_directory"] = Path(working_directory).resolve()

    try:
        config = _load(config_file, overrides)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        info = asyncio.run(_run_session(config, prompt, stream))
    except RunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        click.echo("Interrupted.", err=True)
        raise SystemExit(130) from None

    if info is not None and info.exit_code not in (0, None):
        raise SystemExit(info.exit_code)


def _load(config_file: str | None, overrides: dict[str, Any]) -> RunnerConfig:
    if config_file is not None:
        return load_config(Path(config_file), **overrides)
    if (Path.cwd() / DEFAULT_CONFIG_NAME).is_file():
        return load_config(None, **overrides)
    return RunnerConfig.model_validate(overrides)


# ------------------------------------------------------------------ #
# Session
# ------------------------------------------------------------------ #


async def _run_session(
    config: RunnerConfig, prompt: str, stream: bool
) -> SessionInfo | None:
    runner = AgentRunner(config)
    attach_printers(runner)

    if not stream:
        return await runner.start(prompt)

    await runner.start_streaming(prompt)
    cancel = threading.Event()
    loop = asyncio.get_running_loop()
    try:
        while runner.is_streaming():
            try:
                line = await loop.run_in_executor(
                    None, functools.partial(_read_line, cancel)
                )
            except EOFError:
                break
            line = line.strip()
            if line and runner.is_streaming():
                runner.add_stream_message(line)
        if runner.is_streaming():
            runner.complete_stream()
        return await runner.wait()
    finally:
        cancel.set()
        runner.stop()


def attach_printers(runner: AgentRunner) -> None:
    """Echo the session's progress to stdout (text) and stderr (the rest)."""

    def on_text(text: str) -> None:
        click.echo(text)

    def on_tool_use(name: str, tool_input: dict[str, Any]) -> None:
        preview = json.dumps(tool_input, ensure_ascii=False)
        if len(preview) > _TOOL_PREVIEW_CHARS:
            preview = preview[:_TOOL_PREVIEW_CHARS] + "..."
        click.echo(f"  [tool] {name} {preview}", err=True)

    def on_result(message: dict[str, Any]) -> None:
        parsed = parse_message(message)
        if not isinstance(parsed, ResultMessage):
            click.echo("  [result]", err=True)
            return
        parts = [f"subtype={parsed.subtype}"]
        if parsed.num_turns is not None:
            parts.append(f"turns={parsed.num_turns}")
        if parsed.cost is not None:
            parts.append(f"cost=${parsed.cost:.4f}")
        click.echo(f"  [result] {' '.join(parts)}", err=True)

    def on_error(error: Exception) -> None:
        click.echo(f"  [error] {error}", err=True)

    def on_token_limit() -> None:
        click.echo("  [token-limit] context window exhausted", err=True)

    runner.on("text", on_text)
    runner.on("tool-use", on_tool_use)
    runner.on("result", on_result)
    runner.on("error", on_error)
    runner.on("token-limit", on_token_limit)


def _read_line(cancel: threading.Event) -> str:
    """Blocking stdin reader for use with ``run_in_executor``.

    Polls with ``select`` so the thread notices *cancel* and raises
    ``EOFError`` instead of blocking forever once the session is over.
    """
    while not cancel.is_set():
        try:
            ready, _, _ = select.select([sys.stdin], [], [], 0.5)
        except (OSError, ValueError):
            # Not a selectable stream (e.g. a test harness); read directly.
            break
        if ready:
            break
    if cancel.is_set():
        raise EOFError
    line = sys.stdin.readline()
    if not line:
        raise EOFError
    return line
