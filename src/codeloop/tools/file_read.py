from __future__ import annotations

from typing import Any, Dict, Optional

from codeloop.core.tool_result import ToolResult
from codeloop.tool_guard import resolve_tool_path
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

DEFAULT_LINE_LIMIT = 2000
_MAX_LINE_CHARS = 2000

SCHEMA = {
    "name": "read",
    "description": (
        "Read a file from the workspace. Lines are returned with 1-based line numbers. "
        "Pass file_path, or a fileId handle (e.g. F3) returned by glob."
    ),
    "properties": {
        "file_path": {"type": "string", "description": "Relative or absolute path to the file."},
        "fileId": {"type": "string", "description": "File handle from a previous glob result."},
        "offset": {"type": "integer", "description": "1-based line to start reading from. Default: 1."},
        "limit": {"type": "integer", "description": f"Maximum number of lines. Default: {DEFAULT_LINE_LIMIT}."},
    },
    "required": [],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("file_path", "path")],
    read_only=True,
    supports_external_paths=True,
)


class FileReadTool:
    name = "read"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        resolved = resolve_tool_path(args.get("file_path", ""), ctx.workspace_root, ctx.allow_external_paths)
        offset = max(1, int(args.get("offset") or 1))
        limit: Optional[int] = int(args.get("limit") or DEFAULT_LINE_LIMIT)

        try:
            with open(resolved.abs_path, encoding="utf-8", errors="replace") as fh:
                lines = fh.read().splitlines()
        except FileNotFoundError:
            return ToolResult.failure("file_not_found", f"File not found: {resolved.rel_path}")
        except IsADirectoryError:
            return ToolResult.failure("not_a_file", f"Path is a directory: {resolved.rel_path}")

        selected = lines[offset - 1: offset - 1 + limit]
        numbered = []
        for number, line in enumerate(selected, start=offset):
            if len(line) > _MAX_LINE_CHARS:
                line = line[:_MAX_LINE_CHARS] + "..."
            numbered.append(f"{number:>6}\t{line}")

        warnings = []
        end = offset - 1 + len(selected)
        if end < len(lines):
            warnings.append(f"Showing lines {offset}-{end} of {len(lines)}. Use offset to read more.")

        return ToolResult.success(
            data="\n".join(numbered),
            message=f"Read {len(selected)} line(s) from {resolved.rel_path}",
            metadata={"path": resolved.rel_path, "total_lines": len(lines)},
            warnings=warnings,
        )
