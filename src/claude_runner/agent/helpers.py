"""Shared helper functions for the agent runner."""

from __future__ import annotations

from pathlib import Path


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def describe_spawn_failure(
    exc: OSError, executable: str, working_directory: Path | None
) -> str:
    """Turn a spawn-time OSError into a user-facing message."""
    if working_directory is not None and not working_directory.is_dir():
        return f"Working directory does not exist: {working_directory}"
    if isinstance(exc, FileNotFoundError):
        return (
            f"Agent executable not found: {executable}\n"
            f"Make sure '{executable}' is installed and on your PATH."
        )
    if isinstance(exc, PermissionError):
        return f"Permission denied running {executable}: {exc}"
    return f"Failed to spawn {executable}: {exc}"
