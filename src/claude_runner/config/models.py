"""Pydantic v2 models for runner configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class McpServerConfig(BaseModel):
    """One external tool server made available to the agent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["stdio", "sse", "http"] = Field(
        default="stdio",
        description="Transport used to reach the server",
    )
    command: str | None = Field(
        default=None,
        description="Executable for stdio servers",
    )
    args: list[str] = Field(
        default_factory=list,
        description="Arguments for stdio servers",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment for stdio servers",
    )
    url: str | None = Field(
        default=None,
        description="Endpoint for sse/http servers",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="HTTP headers for sse/http servers",
    )

    @model_validator(mode="after")
    def _validate_transport(self) -> McpServerConfig:
        match self.type:
            case "stdio":
                if not self.command:
                    msg = "MCP server type 'stdio' requires 'command'"
                    raise ValueError(msg)
            case "sse" | "http":
                if not self.url:
                    msg = f"MCP server type '{self.type}' requires 'url'"
                    raise ValueError(msg)
        return self

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON shape the agent's ``--mcp-config`` expects."""
        data = self.model_dump(exclude_defaults=True)
        data["type"] = self.type
        return data


class RunnerConfig(BaseModel):
    """Immutable per-session configuration of an :class:`AgentRunner`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    working_directory: Path | None = Field(
        default=None,
        description="Working directory of the agent process",
    )
    allowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools the agent may use",
    )
    disallowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools the agent must not use (wins over allowed_tools)",
    )
    allowed_directories: list[Path] = Field(
        default_factory=list,
        description="Extra directories the agent may access",
    )
    system_prompt: str | None = Field(
        default=None,
        description="Replacement system prompt",
    )
    append_system_prompt: str | None = Field(
        default=None,
        description="Text appended to the default system prompt",
    )
    max_turns: int | None = Field(
        default=None,
        ge=1,
        description="Maximum agentic turns per call",
    )
    continue_session: bool = Field(
        default=False,
        description="Resume the most recent session's context",
    )
    mcp_config_paths: list[Path] = Field(
        default_factory=list,
        description="MCP configuration files to load",
    )
    mcp_servers: dict[str, McpServerConfig] = Field(
        default_factory=dict,
        description="Inline MCP server definitions",
    )
    model: str | None = Field(default=None, description="Model name")
    fallback_model: str | None = Field(
        default=None,
        description="Model used when the primary one is overloaded",
    )
    claude_path: str = Field(
        default="claude",
        description="Agent executable name or path",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables (e.g. tracker credentials)",
    )
    workspace_name: str | None = Field(
        default=None,
        description="Name of the transcript log directory",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Root directory for JSONL transcripts (None disables them)",
    )

    on_message: Callable[..., Any] | None = Field(default=None, exclude=True)
    on_error: Callable[..., Any] | None = Field(default=None, exclude=True)
    on_complete: Callable[..., Any] | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _warn_tool_conflicts(self) -> RunnerConfig:
        conflicts = self.conflicting_tools
        if conflicts:
            logger.warning(
                "Tools both allowed and disallowed (disallowed wins): %s",
                ", ".join(conflicts),
            )
        return self

    @property
    def conflicting_tools(self) -> list[str]:
        denied = set(self.disallowed_tools)
        return sorted({t for t in self.allowed_tools if t in denied})

    @property
    def effective_allowed_tools(self) -> list[str]:
        """Allowed tools minus anything on the deny-list, order preserved."""
        denied = set(self.disallowed_tools)
        seen: set[str] = set()
        result: list[str] = []
        for tool in self.allowed_tools:
            if tool in denied or tool in seen:
                continue
            seen.add(tool)
            result.append(tool)
        return result

    @property
    def resolved_workspace_name(self) -> str:
        if self.workspace_name:
            return self.workspace_name
        if self.working_directory is not None and self.working_directory.name:
            return self.working_directory.name
        return "default"
