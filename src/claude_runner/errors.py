"""Error taxonomy for the runner and the stream decoder.

Only precondition violations and spawn failures are raised to the caller.
Everything else travels through the ``error`` event channel.
"""

from __future__ import annotations

from typing import Any


class RunnerError(Exception):
    """Base class for every error the runner raises or emits."""


class SessionAlreadyRunningError(RunnerError):
    """``start`` was called while a session is still active."""


class NotStreamingError(RunnerError):
    """A streaming operation was used outside a streaming session."""


class SpawnError(RunnerError):
    """The agent subprocess could not be started."""


class LineDecodeError(RunnerError):
    """A single output line could not be decoded into a JSON object."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Failed to parse JSON: {reason}\nLine: {line}")
        self.line = line
        self.reason = reason


class AgentError(RunnerError):
    """The agent reported an ``error`` or ``tool_error`` message."""

    def __init__(self, data: dict[str, Any]) -> None:
        super().__init__(_describe_agent_error(data))
        self.data = data


class AgentStderrError(RunnerError):
    """A non-empty line on the agent's stderr."""

    def __init__(self, line: str) -> None:
        super().__init__(f"Agent stderr: {line}")
        self.line = line


class AgentExitError(RunnerError):
    """The agent process exited with a non-zero code."""

    def __init__(self, code: int, stderr: str = "") -> None:
        msg = f"Agent exited with code {code}"
        if stderr:
            msg += f". Stderr:\n  {stderr}"
        super().__init__(msg)
        self.code = code
        self.stderr = stderr


def _describe_agent_error(data: dict[str, Any]) -> str:
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    error = data.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return str(error["message"])
    return "Unknown error"
