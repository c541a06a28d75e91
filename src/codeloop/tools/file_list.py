from __future__ import annotations

import os
from typing import Any, Dict

from codeloop.core.tool_result import ToolResult
from codeloop.tool_guard import resolve_tool_path
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

DEFAULT_MAX_ENTRIES = 500

SCHEMA = {
    "name": "list",
    "description": "List the entries of a directory. Directories are suffixed with '/'.",
    "properties": {
        "path": {"type": "string", "description": "Directory to list. Defaults to workspace root."},
        "include_hidden": {"type": "boolean", "description": "Include entries starting with '.'. Default: false."},
    },
    "required": [],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("path", "path")],
    read_only=True,
    supports_external_paths=True,
)


class FileListTool:
    name = "list"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        resolved = resolve_tool_path(args.get("path") or ".", ctx.workspace_root, ctx.allow_external_paths)
        include_hidden = bool(args.get("include_hidden", False))

        if not os.path.isdir(resolved.abs_path):
            return ToolResult.failure("dir_not_found", f"Not a directory: {resolved.rel_path}")

        entries = []
        with os.scandir(resolved.abs_path) as it:
            for entry in sorted(it, key=lambda e: e.name):
                if not include_hidden and entry.name.startswith("."):
                    continue
                entries.append(entry.name + ("/" if entry.is_dir() else ""))

        truncated = len(entries) > DEFAULT_MAX_ENTRIES
        return ToolResult.success(
            data={"path": resolved.rel_path, "entries": entries[:DEFAULT_MAX_ENTRIES], "truncated": truncated},
            message=f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'} in {resolved.rel_path}",
        )
