"""Host-side chat model and wire-level response models."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    value: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    input: Any = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The result of a tool call, sent back by the host."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    content: list[TextPart] = Field(default_factory=list)


ContentPart = Annotated[Union[TextPart, ToolCallPart, ToolResultPart], Field(discriminator="type")]
ResponsePart = Union[TextPart, ToolCallPart]


class ChatMessage(BaseModel):
    """Single chat turn as the host hands it over."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: list[ContentPart] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls(role="user", content=[TextPart(value=text)])

    @classmethod
    def assistant(cls, text: str) -> ChatMessage:
        return cls(role="assistant", content=[TextPart(value=text)])

    def text(self) -> str:
        """Concatenate the text parts in order."""
        return "".join(part.value for part in self.content if isinstance(part, TextPart))

    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.content if isinstance(part, ToolCallPart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.content if isinstance(part, ToolResultPart)]


class ToolDefinition(BaseModel):
    """JSON-schema tool definition offered to the model for one request."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingEvent(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call: ToolCallPart


StreamEvent = Annotated[Union[TextEvent, ThinkingEvent, ToolCallEvent], Field(discriminator="type")]


class ModelStatus(BaseModel):
    value: str = "unloaded"
    args: list[str] | None = None


class ServerModel(BaseModel):
    """One entry of ``GET /models``."""

    id: str
    status: ModelStatus = Field(default_factory=ModelStatus)


class ModelsResponse(BaseModel):
    data: list[ServerModel] = Field(default_factory=list)


class WireMessage(BaseModel):
    """Reverse-direction view of an OpenAI chat message."""

    role: Role
    content: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    reasoning_content: str | None = None


class ParsedWireMessage(BaseModel):
    text: str
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    reasoning_content: str | None = None
