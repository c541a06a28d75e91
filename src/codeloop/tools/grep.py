from __future__ import annotations

import fnmatch
import os
import re
from typing import Any, Dict, List

from codeloop.core.tool_result import ToolResult
from codeloop.errors import ToolValidationError
from codeloop.tool_guard import resolve_tool_path, to_posix
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

DEFAULT_MAX_RESULTS = 200
_MAX_LINE_CHARS = 2000
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}

SCHEMA = {
    "name": "grep",
    "description": (
        "Search inside files using a regular expression. "
        "Returns matching file paths, line numbers, and matching lines."
    ),
    "properties": {
        "pattern": {"type": "string", "description": "Regular expression to search for."},
        "path": {
            "type": "string",
            "description": "File or directory to search. Defaults to workspace root.",
        },
        "include": {
            "type": "string",
            "description": "Only search files whose name matches this glob, e.g. '*.py'.",
        },
        "case_sensitive": {
            "type": "boolean",
            "description": "Case-sensitive search. Default: true.",
        },
        "max_results": {
            "type": "integer",
            "description": f"Maximum number of matching lines to return. Default: {DEFAULT_MAX_RESULTS}.",
        },
    },
    "required": ["pattern"],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("pattern", "raw"), PatternRule("path", "path")],
    read_only=True,
    supports_external_paths=True,
)


class GrepTool:
    name = "grep"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def _iter_files(self, root: str, include: str | None):
        if os.path.isfile(root):
            yield root
            return
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for filename in sorted(filenames):
                if include and not fnmatch.fnmatch(filename, include):
                    continue
                yield os.path.join(dirpath, filename)

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        flags = 0 if args.get("case_sensitive", True) else re.IGNORECASE
        try:
            regex = re.compile(args["pattern"], flags)
        except re.error as exc:
            raise ToolValidationError(f"Invalid regular expression: {exc}") from None
        max_results = int(args.get("max_results") or DEFAULT_MAX_RESULTS)
        include = (args.get("include") or "").strip() or None

        target = resolve_tool_path(args.get("path") or ".", ctx.workspace_root, ctx.allow_external_paths)
        if not os.path.exists(target.abs_path):
            return ToolResult.failure("path_not_found", f"Path does not exist: {target.rel_path}")

        matches: List[Dict[str, Any]] = []
        truncated = False
        for file_path in self._iter_files(target.abs_path, include):
            ctx.token.raise_if_cancelled()
            try:
                with open(file_path, encoding="utf-8") as fh:
                    lines = fh.readlines()
            except (UnicodeDecodeError, OSError):
                continue
            rel = to_posix(os.path.relpath(file_path, ctx.workspace_root)) if not target.is_external else file_path
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    matches.append({"file_path": rel, "line": number, "text": line.rstrip()[:_MAX_LINE_CHARS]})
                    if len(matches) >= max_results:
                        truncated = True
                        break
            if truncated:
                break

        if not matches:
            output = "No matches found"
        else:
            output = "\n".join(f"{m['file_path']}:{m['line']}: {m['text']}" for m in matches)
            if truncated:
                output += "\n\n(Results are truncated. Consider using a more specific path or pattern.)"

        return ToolResult.success(
            data={"matches": matches, "count": len(matches), "truncated": truncated},
            message=f"Found {len(matches)} match(es)",
            metadata={"output_text": output},
        )
