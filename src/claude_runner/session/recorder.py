"""Transcript recorder — append-only JSONL log of one agent session."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Literal

from claude_runner.session.models import (
    AgentMessageEntry,
    SessionEndEntry,
    SessionMetadataEntry,
    TranscriptEntry,
    transcript_path,
)

logger = logging.getLogger(__name__)

EndReason = Literal["complete", "stopped", "error"]


class TranscriptRecorder:
    """Records decoded agent messages to an append-only JSONL file.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every entry.
    """

    def __init__(
        self,
        log_dir: Path,
        workspace_name: str,
        run_id: str,
        started_at: datetime,
        working_directory: Path | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._closed = False
        self._count = 0
        self._path = transcript_path(log_dir, workspace_name, run_id)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        self._fh: IO[str] | None = None
        try:
            self._fh = self._path.open("a", encoding="utf-8")
            self.record(
                SessionMetadataEntry(
                    timestamp="",  # set by record()
                    run_id=run_id,
                    started_at=started_at.isoformat(),
                    working_directory=(
                        str(working_directory) if working_directory else None
                    ),
                    workspace_name=workspace_name,
                )
            )
        except Exception:
            self._close_handle()
            raise

    @property
    def path(self) -> Path:
        """Path to the JSONL transcript."""
        return self._path

    @property
    def entry_count(self) -> int:
        return self._count

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, entry: TranscriptEntry) -> None:
        """Stamp *entry* with the current time and append it.

        Silently drops entries after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            entry.timestamp = _iso_now()
            self._fh.write(entry.model_dump_json() + "\n")
            self._fh.flush()
            self._count += 1

    def record_message(self, message: dict[str, Any]) -> None:
        self.record(AgentMessageEntry(timestamp="", message=message))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def end(
        self,
        reason: EndReason,
        session_id: str | None,
        exit_code: int | None,
        message_count: int,
    ) -> None:
        """Write a ``session-end`` entry and close the file.  Idempotent."""
        if self._closed:
            return
        self.record(
            SessionEndEntry(
                timestamp="",
                reason=reason,
                session_id=session_id,
                exit_code=exit_code,
                message_count=message_count,
            )
        )
        self.close()

    def close(self) -> None:
        """Close the file **without** writing a ``session-end`` entry."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_handle()

    def _close_handle(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()


def open_recorder(
    log_dir: Path | None,
    workspace_name: str,
    run_id: str,
    started_at: datetime,
    working_directory: Path | None = None,
) -> TranscriptRecorder | None:
    """Create a recorder, or return None when logging is off or unavailable.

    A transcript that cannot be opened never blocks the session itself.
    """
    if log_dir is None:
        return None
    try:
        return TranscriptRecorder(
            log_dir, workspace_name, run_id, started_at, working_directory
        )
    except OSError as exc:
        logger.error("Failed to set up transcript log in %s: %s", log_dir, exc)
        return None


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
