"""Named tool presets for common agent roles."""

from __future__ import annotations

#: Every tool the agent CLI exposes.
AVAILABLE_TOOLS: tuple[str, ...] = (
    # File system
    "Read(**)",
    "Edit(**)",
    # Execution
    "Bash",
    "Task",
    # Web
    "WebFetch",
    "WebSearch",
    # Task management
    "TodoRead",
    "TodoWrite",
    # Notebooks
    "NotebookRead",
    "NotebookEdit",
    # Utility
    "Batch",
)

#: Tools that cannot change files.  TodoWrite only touches task tracking.
READ_ONLY_TOOLS: tuple[str, ...] = (
    "Read(**)",
    "WebFetch",
    "WebSearch",
    "TodoRead",
    "TodoWrite",
    "NotebookRead",
    "Task",
    "Batch",
)

#: Tools that can modify the file system or task state.
WRITE_TOOLS: tuple[str, ...] = (
    "Edit(**)",
    "Bash",
    "TodoWrite",
    "NotebookEdit",
)


def get_read_only_tools() -> list[str]:
    return list(READ_ONLY_TOOLS)


def get_all_tools() -> list[str]:
    return list(AVAILABLE_TOOLS)


def get_safe_tools() -> list[str]:
    """Everything except Bash."""
    return [t for t in AVAILABLE_TOOLS if t != "Bash"]


def get_coordinator_tools() -> list[str]:
    """Everything except tools that edit content.

    Bash stays available for running tests, builds and git commands.
    """
    return [t for t in AVAILABLE_TOOLS if t not in ("Edit(**)", "NotebookEdit")]
