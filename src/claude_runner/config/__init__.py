"""Configuration models, parser and tool presets."""

from claude_runner.config.models import McpServerConfig, RunnerConfig
from claude_runner.config.parser import ConfigError, load_config
from claude_runner.config.tools import (
    AVAILABLE_TOOLS,
    READ_ONLY_TOOLS,
    WRITE_TOOLS,
    get_all_tools,
    get_coordinator_tools,
    get_read_only_tools,
    get_safe_tools,
)

__all__ = [
    "AVAILABLE_TOOLS",
    "ConfigError",
    "McpServerConfig",
    "READ_ONLY_TOOLS",
    "RunnerConfig",
    "WRITE_TOOLS",
    "get_all_tools",
    "get_coordinator_tools",
    "get_read_only_tools",
    "get_safe_tools",
    "load_config",
]
