"""Pydantic v2 models for the agent's stream-json wire protocol."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    """Upstream adds fields freely, so unknown keys are kept, not rejected."""

    model_config = ConfigDict(extra="allow")


class TextBlock(_WireModel):
    """Plain assistant text."""

    type: Literal["text"] = "text"
    text: str = Field(description="Text content")


class ToolUseBlock(_WireModel):
    """A tool invocation requested by the assistant."""

    type: Literal["tool_use"] = "tool_use"
    id: str = Field(default="", description="Tool-use identifier")
    name: str = Field(description="Tool name")
    input: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class ToolResultBlock(_WireModel):
    """Result of a tool invocation, linked to its ``tool_use`` by id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(description="Id of the originating tool_use block")
    content: str | list[dict[str, Any]] | None = Field(
        default=None, description="Tool output"
    )
    is_error: bool = Field(default=False, description="Whether the tool failed")


class ThinkingBlock(_WireModel):
    """Internal reasoning shown by the agent."""

    type: Literal["thinking"] = "thinking"
    thinking: str = Field(default="", description="Thinking content")


def _type_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


ContentBlock = Annotated[
    Annotated[TextBlock, Tag("text")]
    | Annotated[ToolUseBlock, Tag("tool_use")]
    | Annotated[ToolResultBlock, Tag("tool_result")]
    | Annotated[ThinkingBlock, Tag("thinking")],
    Discriminator(_type_discriminator),
]
"""Discriminated union of assistant/user content blocks."""


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class _MessageBase(_WireModel):
    session_id: str | None = Field(default=None, description="Agent session id")


class Usage(_WireModel):
    input_tokens: int = 0
    output_tokens: int = 0


class AssistantBody(_WireModel):
    """The API message wrapped by an ``assistant`` event."""

    id: str | None = None
    role: Literal["assistant"] = "assistant"
    model: str | None = None
    content: list[ContentBlock] | str = Field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage | None = None

    @property
    def text(self) -> str:
        """Concatenated text of every text block."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


class AssistantMessage(_MessageBase):
    type: Literal["assistant"] = "assistant"
    message: AssistantBody


class UserBody(_WireModel):
    role: Literal["user"] = "user"
    content: list[ContentBlock] | str = Field(default_factory=list)


class UserMessage(_MessageBase):
    """Echo of an injected user turn or a tool result fed back to the model."""

    type: Literal["user"] = "user"
    message: UserBody
    parent_tool_use_id: str | None = None


class McpServerStatus(_WireModel):
    name: str
    status: str


class SystemMessage(_MessageBase):
    """Session initialisation report."""

    type: Literal["system"] = "system"
    subtype: str = Field(default="init")
    tools: list[str] = Field(default_factory=list)
    mcp_servers: list[McpServerStatus] = Field(default_factory=list)
    model: str | None = None
    cwd: str | None = None


class ResultMessage(_MessageBase):
    """Terminal summary of one agent call."""

    type: Literal["result"] = "result"
    subtype: str = Field(default="success")
    is_error: bool = False
    result: str | None = None
    cost_usd: float | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int | None = None

    @property
    def cost(self) -> float | None:
        return self.total_cost_usd if self.total_cost_usd is not None else self.cost_usd


class ErrorMessage(_MessageBase):
    type: Literal["error"] = "error"
    message: str | None = None
    error: Any = None


class ToolErrorMessage(_MessageBase):
    type: Literal["tool_error"] = "tool_error"
    error: str | None = None


AgentMessage = Annotated[
    Annotated[AssistantMessage, Tag("assistant")]
    | Annotated[UserMessage, Tag("user")]
    | Annotated[SystemMessage, Tag("system")]
    | Annotated[ResultMessage, Tag("result")]
    | Annotated[ErrorMessage, Tag("error")]
    | Annotated[ToolErrorMessage, Tag("tool_error")],
    Discriminator(_type_discriminator),
]
"""Discriminated union of every decoded message type."""

_MESSAGE_ADAPTER: TypeAdapter[AgentMessage] = TypeAdapter(AgentMessage)

KNOWN_MESSAGE_TYPES = frozenset(
    {"assistant", "user", "system", "result", "error", "tool_error"}
)


def parse_message(data: dict[str, Any]) -> AgentMessage | None:
    """Return a typed view of a decoded message.

    Unknown message types and shapes that do not fit the model return
    ``None``; the raw dict stays authoritative either way.
    """
    if data.get("type") not in KNOWN_MESSAGE_TYPES:
        return None
    try:
        return _MESSAGE_ADAPTER.validate_python(data)
    except ValidationError:
        return None


def user_turn(
    content: str | list[dict[str, Any]], session_id: str = ""
) -> dict[str, Any]:
    """Build one stream-json input object carrying a user turn."""
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }
