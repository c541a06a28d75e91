from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List

from codeloop.core.tool_result import ToolResult
from codeloop.tool_guard import resolve_tool_path, to_posix
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

DEFAULT_MAX_RESULTS = 500

SCHEMA = {
    "name": "glob",
    "description": (
        "Search for files in the workspace using a glob pattern. "
        "Each match is returned with a short fileId handle (F1, F2, ...) usable by read and write."
    ),
    "properties": {
        "pattern": {
            "type": "string",
            "description": "Glob pattern, e.g. '**/*.py', 'src/**/*.ts', '*.json'.",
        },
        "path": {
            "type": "string",
            "description": "Directory to search from. Defaults to workspace root.",
        },
        "include_hidden": {
            "type": "boolean",
            "description": "Include files/dirs starting with '.'. Default: false.",
        },
        "max_results": {
            "type": "integer",
            "description": f"Maximum number of results to return. Default: {DEFAULT_MAX_RESULTS}.",
        },
    },
    "required": ["pattern"],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("pattern", "raw"), PatternRule("path", "path")],
    read_only=True,
    supports_external_paths=True,
)


class GlobTool:
    name = "glob"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        pattern: str = args["pattern"]
        include_hidden: bool = bool(args.get("include_hidden", False))
        max_results: int = int(args.get("max_results") or DEFAULT_MAX_RESULTS)

        base = resolve_tool_path(args.get("path") or ".", ctx.workspace_root, ctx.allow_external_paths)
        base_dir = Path(base.abs_path)
        if not base_dir.is_dir():
            return ToolResult.failure("dir_not_found", f"Base path does not exist: {base.rel_path}")

        files: List[str] = []
        truncated = False
        for p in sorted(base_dir.glob(pattern)):
            ctx.token.raise_if_cancelled()
            if not p.is_file():
                continue
            if not include_hidden and any(part.startswith(".") for part in p.relative_to(base_dir).parts):
                continue
            if base.is_external:
                files.append(to_posix(str(p)))
            else:
                files.append(to_posix(os.path.relpath(p, ctx.workspace_root)))
            if len(files) >= max_results:
                truncated = True
                break

        return ToolResult.success(
            data={"pattern": pattern, "files": files, "count": len(files), "truncated": truncated},
            message=f"Found {len(files)} match(es) for '{pattern}'",
        )
