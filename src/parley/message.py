from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    mime: str = "image/png"
    base64: str

    @classmethod
    def from_data_url(cls, url: str) -> "ImagePart":
        """Parse a ``data:<mime>;base64,<data>`` URL.

        A header without a MIME type falls back to ``image/png``.
        """
        header, _, data = url.partition(",")
        mime = header.removeprefix("data:").split(";", 1)[0]
        return cls(mime=mime or "image/png", base64=data)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime};base64,{self.base64}"


Part = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ToolCallRequest(BaseModel):
    """A finalized tool invocation requested by the model.

    ``arguments`` is the raw JSON text exactly as streamed; it is only
    parsed when the tool runs.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = ""


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class PartsContent(BaseModel):
    type: Literal["parts"] = "parts"
    parts: list[Part]


class ToolCallsContent(BaseModel):
    type: Literal["tool_calls"] = "tool_calls"
    calls: list[ToolCallRequest]


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    call_id: str
    text: str


Content = Annotated[
    Union[TextContent, PartsContent, ToolCallsContent, ToolResultContent],
    Field(discriminator="type"),
]


class Message(BaseModel):
    role: MessageRole
    content: Content

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @model_validator(mode="after")
    def _check_role_content(self) -> "Message":
        is_result = isinstance(self.content, ToolResultContent)
        if (self.role is MessageRole.TOOL) != is_result:
            raise ValueError("tool messages carry exactly a tool result")
        if isinstance(self.content, ToolCallsContent) and self.role is not MessageRole.ASSISTANT:
            raise ValueError("only assistant messages carry tool calls")
        return self

    @classmethod
    def text_message(cls, role: MessageRole, text: str) -> "Message":
        return cls(role=role, content=TextContent(text=text))

    @classmethod
    def tool_calls(cls, calls: list[ToolCallRequest]) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=ToolCallsContent(calls=calls))

    @classmethod
    def tool_result(cls, call_id: str, text: str) -> "Message":
        return cls(
            role=MessageRole.TOOL,
            content=ToolResultContent(call_id=call_id, text=text),
        )

    @property
    def text(self) -> str | None:
        """The message's string payload, if it has one."""
        if isinstance(self.content, (TextContent, ToolResultContent)):
            return self.content.text
        return None

    def with_text(self, text: str) -> "Message":
        """Copy of this message with its string payload replaced."""
        if self.text is None:
            raise ValueError(f"{self.content.type} content has no text to replace")
        content = self.content.model_copy(update={"text": text})
        return self.model_copy(update={"content": content})
