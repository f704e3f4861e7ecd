"""Incremental decoder for the agent's newline-delimited JSON output.

The decoder is a synchronous state machine: callers push raw stdout chunks
with :meth:`StreamDecoder.feed` and call :meth:`StreamDecoder.finish` once at
end of stream.  Decoded messages are announced through events:

* ``line(text)`` -- every delimited, non-empty line (stripped), parsed or not
* ``message(dict)`` -- every successfully parsed JSON object
* ``assistant(dict)``, ``text(str)``, ``tool-use(name, input)``,
  ``end-turn(last_text)`` -- assistant output
* ``result(dict)`` -- terminal result of an agent call
* ``error(LineDecodeError | dict)`` -- malformed line or agent error message
* ``token-limit()`` -- context budget exhausted (latched, fires once)
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import Callable
from typing import Any

from claude_runner.constants import END_TURN, TOKEN_LIMIT_PHRASE
from claude_runner.errors import LineDecodeError
from claude_runner.events import EventEmitter

logger = logging.getLogger(__name__)

_FINAL_SPLIT_RE = re.compile(r"\r?\n")

_PHRASE_LOWER = TOKEN_LIMIT_PHRASE.lower()


def _mentions_token_limit(value: Any) -> bool:
    """Exact phrase, or case-insensitive substring, on a string field."""
    if not isinstance(value, str) or not value:
        return False
    return value == TOKEN_LIMIT_PHRASE or _PHRASE_LOWER in value.lower()


def is_token_limit_message(message: dict[str, Any]) -> bool:
    """Return True if *message* signals an exhausted context budget.

    Upstream reports the condition in several unrelated shapes depending on
    where it originated, so each shape is checked on its own.
    """
    msg_type = message.get("type")

    # Top-level error message.
    if msg_type == "error" and _mentions_token_limit(message.get("message")):
        return True

    # Nested error object on any message type.
    error = message.get("error")
    if isinstance(error, dict) and _mentions_token_limit(error.get("message")):
        return True

    # Assistant message whose whole content is the phrase.
    if msg_type == "assistant":
        body = message.get("message")
        if isinstance(body, dict) and body.get("content") == TOKEN_LIMIT_PHRASE:
            return True

    # Tool error with a string error field.
    if msg_type == "tool_error" and _mentions_token_limit(error):
        return True

    # Result that failed or carries the phrase as its text.
    if msg_type == "result":
        if message.get("result") == TOKEN_LIMIT_PHRASE:
            return True
        if message.get("is_error") is True:
            return True

    return False


class StreamDecoder(EventEmitter):
    """Turns arbitrary stdout fragments into decoded protocol events."""

    def __init__(
        self,
        session_id: str | None = None,
        on_token_limit: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        #: Injected into messages that lack their own ``session_id``.
        self.session_id = session_id
        self._on_token_limit = on_token_limit
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._token_limit_detected = False
        self._last_assistant_text = ""

    @property
    def last_assistant_text(self) -> str:
        """Most recent non-empty text produced by an assistant message."""
        return self._last_assistant_text

    @property
    def token_limit_detected(self) -> bool:
        return self._token_limit_detected

    @property
    def buffered(self) -> str:
        """Undispatched trailing content (a partial line)."""
        return self._buffer

    # ------------------------------------------------------------------ #
    # Stream input
    # ------------------------------------------------------------------ #

    def feed(self, chunk: bytes | str) -> None:
        """Consume a chunk; dispatch every line it completes."""
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        if not chunk:
            return

        self._buffer += chunk
        lines = self._buffer.split("\n")
        # The last segment has no terminator yet; keep it for the next chunk.
        self._buffer = lines.pop()
        for line in lines:
            stripped = line.strip()
            if stripped:
                self._process_line(stripped)

    def finish(self) -> None:
        """Flush whatever is left at end of stream.

        The remainder may still hold several messages separated by CRLF or LF.
        Calling ``finish`` again without new input emits nothing.
        """
        tail = self._utf8.decode(b"", final=True)
        remaining = (self._buffer + tail).strip()
        self._buffer = ""
        if not remaining:
            return
        for part in _FINAL_SPLIT_RE.split(remaining):
            stripped = part.strip()
            if stripped:
                self._process_line(stripped)

    def reset(self) -> None:
        """Clear buffered input and detection state for reuse."""
        self._buffer = ""
        self._utf8.reset()
        self._token_limit_detected = False
        self._last_assistant_text = ""

    def signal_token_limit(self) -> None:
        """Trip the token-limit latch from outside the stdout stream."""
        if self._token_limit_detected:
            return
        self._token_limit_detected = True
        logger.info("Token limit detected")
        self.emit("token-limit")
        if self._on_token_limit is not None:
            self._on_token_limit()

    # ------------------------------------------------------------------ #
    # Line handling
    # ------------------------------------------------------------------ #

    def _process_line(self, line: str) -> None:
        self.emit("line", line)

        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Malformed JSON from agent stdout: %s", line[:200])
            self.emit("error", LineDecodeError(line, str(exc)))
            return

        if not isinstance(message, dict):
            logger.warning("Non-object JSON from agent stdout: %s", line[:200])
            reason = f"expected a JSON object, got {type(message).__name__}"
            self.emit("error", LineDecodeError(line, reason))
            return

        if self.session_id and not message.get("session_id"):
            message["session_id"] = self.session_id

        self.emit("message", message)
        self._dispatch(message)

    def _dispatch(self, message: dict[str, Any]) -> None:
        if is_token_limit_message(message):
            self.signal_token_limit()
            return

        msg_type = message.get("type")
        if msg_type == "assistant":
            self._process_assistant(message)
        elif msg_type == "result":
            self.emit("result", message)
        elif msg_type in ("error", "tool_error"):
            self.emit("error", message)
        else:
            logger.debug("Unhandled message type: %s", msg_type)

    def _process_assistant(self, message: dict[str, Any]) -> None:
        self.emit("assistant", message)

        body = message.get("message")
        if not isinstance(body, dict):
            body = {}
        content = body.get("content")
        current_text = ""

        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text":
                    text = block.get("text")
                    if not isinstance(text, str):
                        continue
                    current_text += text
                    self.emit("text", text)
                elif block_type == "tool_use":
                    tool_input = block.get("input")
                    if not isinstance(tool_input, dict):
                        tool_input = {}
                    self.emit("tool-use", str(block.get("name", "")), tool_input)
        elif isinstance(content, str):
            current_text = content
            self.emit("text", current_text)

        if current_text == TOKEN_LIMIT_PHRASE:
            self.signal_token_limit()
            return

        if current_text.strip():
            self._last_assistant_text = current_text

        if body.get("stop_reason") == END_TURN:
            self.emit("end-turn", self._last_assistant_text)
