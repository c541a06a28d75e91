from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from codeloop.utils import truncate_output

if TYPE_CHECKING:
    from codeloop.errors import ToolError

MAX_TOOL_OUTPUT_CHARS = 40000
TRUNCATION_SUFFIX = "\n\n... [TRUNCATED]"


@dataclass
class ToolResult:
    """Standard envelope for all tool responses.

    ``data`` is whatever the tool produced; ``metadata`` carries presentation
    hints such as ``output_text`` (a pre-rendered view for the model) and flags
    set by the pipeline (``truncated``, ``blocked_reason``).
    """

    ok: bool
    error_code: Optional[str] = None
    message: str = ""
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(
        cls,
        data: Any = None,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "ToolResult":
        return cls(
            ok=True,
            error_code=None,
            message=message,
            data=data,
            metadata=metadata or {},
            warnings=warnings or [],
        )

    @classmethod
    def failure(
        cls,
        error_code: str,
        message: str,
        data: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ToolResult":
        return cls(
            ok=False,
            error_code=error_code,
            message=message,
            data=data,
            metadata=metadata or {},
        )

    @classmethod
    def from_error(cls, exc: "ToolError", metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        """Convert a raised or constructed ``ToolError`` into a failed result."""
        return cls.failure(exc.code, str(exc), data=exc.data or None, metadata=metadata)


def format_tool_result(result: ToolResult, max_chars: int = MAX_TOOL_OUTPUT_CHARS) -> str:
    """Render a result as the text the model sees, truncating long output."""
    if not result.ok:
        payload: Dict[str, Any] = {"error": result.message or "Tool failed"}
        if result.error_code:
            payload["code"] = result.error_code
        if isinstance(result.data, dict) and result.data:
            payload.update({k: v for k, v in result.data.items() if k not in payload})
        text = json.dumps(payload)
    elif isinstance(result.metadata.get("output_text"), str):
        text = result.metadata["output_text"]
    elif isinstance(result.data, str):
        text = result.data
    elif result.data is not None:
        text = json.dumps(result.data, indent=2, default=str)
    else:
        text = result.message or "Done"

    if result.warnings:
        text += "\n\nWarnings:\n" + "\n".join(f"- {w}" for w in result.warnings)

    if len(text) > max_chars:
        result.metadata["truncated"] = True
    return truncate_output(text, max_chars, TRUNCATION_SUFFIX)
