from __future__ import annotations

import os
from typing import Any, Dict

from codeloop.core.tool_result import ToolResult
from codeloop.errors import ToolValidationError
from codeloop.tool_guard import resolve_tool_path
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

SCHEMA = {
    "name": "write",
    "description": "Create or overwrite a file in the workspace with the given content.",
    "properties": {
        "file_path": {"type": "string", "description": "Relative or absolute path to the file."},
        "fileId": {"type": "string", "description": "File handle from a previous glob result."},
        "content": {"type": "string", "description": "Full file content to write."},
    },
    "required": ["content"],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("file_path", "path")],
    supports_external_paths=True,
)


class FileWriteTool:
    name = "write"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolValidationError("content must be a string")

        resolved = resolve_tool_path(args.get("file_path", ""), ctx.workspace_root, ctx.allow_external_paths)
        if os.path.isdir(resolved.abs_path):
            return ToolResult.failure("not_a_file", f"Path is a directory: {resolved.rel_path}")

        existed = os.path.exists(resolved.abs_path)
        os.makedirs(os.path.dirname(resolved.abs_path) or ".", exist_ok=True)
        with open(resolved.abs_path, "w", encoding="utf-8") as fh:
            fh.write(content)

        verb = "Updated" if existed else "Created"
        return ToolResult.success(
            data={"path": resolved.rel_path, "bytes": len(content.encode("utf-8")), "created": not existed},
            message=f"{verb} {resolved.rel_path}",
        )
