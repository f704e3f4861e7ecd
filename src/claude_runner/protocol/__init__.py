"""Agent wire protocol — message models and the stream decoder."""

from claude_runner.protocol.decoder import StreamDecoder, is_token_limit_message
from claude_runner.protocol.models import (
    AgentMessage,
    AssistantMessage,
    ContentBlock,
    ErrorMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolErrorMessage,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    parse_message,
    user_turn,
)

__all__ = [
    "AgentMessage",
    "AssistantMessage",
    "ContentBlock",
    "ErrorMessage",
    "ResultMessage",
    "StreamDecoder",
    "SystemMessage",
    "TextBlock",
    "ToolErrorMessage",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    "is_token_limit_message",
    "parse_message",
    "user_turn",
]
