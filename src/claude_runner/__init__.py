"""claude-runner — supervise an AI coding-agent process and decode its output."""

from claude_runner.agent.runner import AgentRunner
from claude_runner.config.models import McpServerConfig, RunnerConfig
from claude_runner.errors import (
    AgentError,
    AgentExitError,
    AgentStderrError,
    LineDecodeError,
    NotStreamingError,
    RunnerError,
    SessionAlreadyRunningError,
    SpawnError,
)
from claude_runner.protocol.decoder import StreamDecoder
from claude_runner.session.models import SessionInfo
from claude_runner.streaming import StreamingPrompt

__version__ = "0.3.0"

__all__ = [
    "AgentError",
    "AgentExitError",
    "AgentRunner",
    "AgentStderrError",
    "LineDecodeError",
    "McpServerConfig",
    "NotStreamingError",
    "RunnerConfig",
    "RunnerError",
    "SessionAlreadyRunningError",
    "SessionInfo",
    "SpawnError",
    "StreamDecoder",
    "StreamingPrompt",
    "__version__",
]
