"""Base types for tool system."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal

from codeloop.cancellation import CancellationToken

if TYPE_CHECKING:
    from codeloop.core.tool_result import ToolResult
    from codeloop.session import Session


@dataclass
class PatternRule:
    """Which argument feeds the permission pattern, and how to normalize it."""

    arg: str
    kind: Literal["path", "command", "raw"] = "raw"


@dataclass
class ToolPermission:
    """Permission metadata consulted by the execution pipeline."""

    name: str | None = None
    patterns: list[PatternRule] = field(default_factory=list)
    requires_approval: bool = False
    read_only: bool = False
    supports_external_paths: bool = False
    shell: bool = False


@dataclass
class ToolContext:
    """Per-call context handed to tool handlers."""

    workspace_root: str
    token: CancellationToken = field(default_factory=CancellationToken)
    session: Session | None = None
    call_id: str = ""
    timeout_sec: int = 60
    allow_external_paths: bool = False


@dataclass
class ToolDefinition:
    """Definition of a tool available to the agent."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[[dict, ToolContext], ToolResult]
    permission: ToolPermission = field(default_factory=ToolPermission)

    @property
    def is_shell(self) -> bool:
        return self.name == "bash" or self.permission.shell

    def to_openai(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters.get("properties", {}),
                    "required": self.parameters.get("required", []),
                },
            },
        }
