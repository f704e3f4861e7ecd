"""Session state, snapshots, and transcript log entry models."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

if TYPE_CHECKING:
    from claude_runner.protocol.decoder import StreamDecoder
    from claude_runner.session.recorder import TranscriptRecorder
    from claude_runner.streaming import StreamingPrompt


class SessionInfo(BaseModel):
    """Read-only snapshot of a runner session."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(description="Local identifier, known from the start")
    session_id: str | None = Field(
        default=None,
        description="Agent-reported session id, once known",
    )
    started_at: datetime = Field(description="When the session was started")
    is_running: bool = Field(description="Whether the session is still active")
    is_streaming: bool = Field(default=False, description="Streaming input mode")
    pid: int | None = Field(default=None, description="Agent process id")
    exit_code: int | None = Field(default=None, description="Process exit code")
    exited_at: datetime | None = Field(default=None, description="Exit time")


@dataclass
class RunnerSession:
    """Mutable state of one agent run, owned by the runner."""

    streaming: bool = False
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    process: asyncio.subprocess.Process | None = None
    session_id: str | None = None
    exit_code: int | None = None
    exited_at: datetime | None = None
    stderr: str = ""
    last_assistant_text: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    queue: StreamingPrompt | None = None
    decoder: StreamDecoder | None = None
    recorder: TranscriptRecorder | None = None
    task: asyncio.Task[None] | None = None
    is_running: bool = True
    cancelled: bool = False

    def info(self) -> SessionInfo:
        return SessionInfo(
            run_id=self.run_id,
            session_id=self.session_id,
            started_at=self.started_at,
            is_running=self.is_running,
            is_streaming=self.streaming,
            pid=self.process.pid if self.process is not None else None,
            exit_code=self.exit_code,
            exited_at=self.exited_at,
        )


# ---------------------------------------------------------------------------
# Transcript log entries
# ---------------------------------------------------------------------------


class _EntryBase(BaseModel):
    """Common envelope shared by every transcript entry."""

    model_config = ConfigDict(extra="forbid")

    timestamp: str = Field(description="ISO 8601 timestamp with milliseconds")


class SessionMetadataEntry(_EntryBase):
    """First line of every transcript."""

    type: Literal["session-metadata"] = "session-metadata"
    run_id: str = Field(description="Local run identifier")
    started_at: str = Field(description="Session start time (ISO 8601)")
    working_directory: str | None = Field(
        default=None, description="Agent working directory"
    )
    workspace_name: str = Field(description="Workspace the session belongs to")


class AgentMessageEntry(_EntryBase):
    """One decoded message from the agent."""

    type: Literal["agent-message"] = "agent-message"
    message: dict[str, Any] = Field(description="Decoded message, as received")


class SessionEndEntry(_EntryBase):
    """Last line of a transcript."""

    type: Literal["session-end"] = "session-end"
    reason: Literal["complete", "stopped", "error"] = Field(
        description="Why the session ended"
    )
    session_id: str | None = Field(default=None, description="Agent session id")
    exit_code: int | None = Field(default=None, description="Process exit code")
    message_count: int = Field(ge=0, description="Messages in the transcript")


def _entry_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


TranscriptEntry = Annotated[
    Annotated[SessionMetadataEntry, Tag("session-metadata")]
    | Annotated[AgentMessageEntry, Tag("agent-message")]
    | Annotated[SessionEndEntry, Tag("session-end")],
    Discriminator(_entry_discriminator),
]
"""Discriminated union of transcript entry types."""


def transcript_path(log_dir: Path, workspace: str, run_id: str) -> Path:
    """Return ``<log_dir>/<workspace>/session-<run_id>-<timestamp>.jsonl``."""
    stamp = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3]
    return log_dir / workspace / f"session-{run_id}-{stamp}.jsonl"
