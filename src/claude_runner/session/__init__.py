"""Session state and JSONL transcript recording."""

from claude_runner.session.models import (
    AgentMessageEntry,
    RunnerSession,
    SessionEndEntry,
    SessionInfo,
    SessionMetadataEntry,
    TranscriptEntry,
)
from claude_runner.session.recorder import (
    EndReason,
    TranscriptRecorder,
    open_recorder,
)

__all__ = [
    "AgentMessageEntry",
    "EndReason",
    "RunnerSession",
    "SessionEndEntry",
    "SessionInfo",
    "SessionMetadataEntry",
    "TranscriptEntry",
    "TranscriptRecorder",
    "open_recorder",
]
