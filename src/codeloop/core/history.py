"""Conversation history: messages made of text, reasoning and tool-call parts."""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

ToolState = Literal["input-streaming", "input-available", "output-available", "output-error"]

_TOOL_STATE_ORDER = {
    "input-streaming": 0,
    "input-available": 1,
    "output-available": 2,
    "output-error": 2,
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""
    state: Literal["streaming", "done"] = "done"


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""
    state: Literal["streaming", "done"] = "done"


class ToolCallPart(BaseModel):
    """One tool invocation and, once executed, its model-visible output.

    The state only moves forward and the output is written once. Compaction
    never rewrites ``output``; it sets ``compacted_at`` and the model-facing
    encoding substitutes a placeholder.
    """

    type: Literal["tool-call"] = "tool-call"
    tool_name: str
    call_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    state: ToolState = "input-streaming"
    output: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    compacted_at: float | None = None

    @property
    def is_error(self) -> bool:
        return self.state == "output-error"

    @property
    def compacted(self) -> bool:
        return self.compacted_at is not None

    def advance(self, state: ToolState) -> None:
        if _TOOL_STATE_ORDER[state] < _TOOL_STATE_ORDER[self.state]:
            raise ValueError(f"Tool call {self.call_id} cannot move from {self.state} back to {state}")
        if self.output is not None and state != self.state:
            raise ValueError(f"Tool call {self.call_id} already has an output")
        self.state = state

    def set_output(self, output: str, error_code: str | None = None, metadata: dict[str, Any] | None = None) -> None:
        if self.output is not None:
            raise ValueError(f"Tool call {self.call_id} already has an output")
        self.advance("output-error" if error_code else "output-available")
        self.output = output
        self.error_code = error_code
        if metadata:
            self.metadata.update(metadata)


Part = Annotated[Union[TextPart, ReasoningPart, ToolCallPart], Field(discriminator="type")]


class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total: int = 0

    @property
    def used(self) -> int:
        """Tokens occupying the context window after the call."""
        return self.total or (self.input + self.output + self.cache_read + self.cache_write)


class Message(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("msg"))
    role: Literal["user", "assistant", "tool"]
    parts: list[Part] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)

    synthetic: bool = False
    summary: bool = False
    compaction: dict[str, Any] | None = None
    mode: Literal["build", "plan"] | None = None
    finish_reason: str | None = None
    usage: TokenUsage | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def reasoning(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, ReasoningPart))

    @property
    def tool_parts(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def find_tool_part(self, call_id: str) -> ToolCallPart | None:
        for part in self.tool_parts:
            if part.call_id == call_id:
                return part
        return None


def user_message(text: str, synthetic: bool = False, **fields: Any) -> Message:
    return Message(role="user", parts=[TextPart(text=text)], synthetic=synthetic, **fields)


def assistant_message(text: str = "", **fields: Any) -> Message:
    parts: list[Any] = [TextPart(text=text)] if text else []
    return Message(role="assistant", parts=parts, **fields)
