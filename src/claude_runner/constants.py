"""Shared constants and type aliases for the claude-runner runtime."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

#: Literal phrase the agent uses when its context budget is exhausted.
#: Downstream consumers match on it verbatim.
TOKEN_LIMIT_PHRASE = "Prompt is too long"

#: Stop reason that marks the end of an assistant turn.
END_TURN = "end_turn"

#: Flags present on every agent invocation.
BASE_ARGS = (
    "--print",
    "--verbose",
    "--output-format",
    "stream-json",
    "--input-format",
    "stream-json",
)

#: Callback type for event listeners (plain functions or coroutines).
Listener = Callable[..., Any]
