"""Short-lived file handles (``F1``, ``F2``...) that stand in for long paths."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from codeloop.core.tool_result import ToolResult
from codeloop.tool_guard import normalize_permission_path


class FileHandleState(BaseModel):
    """Session-owned handle table; exported with the session snapshot."""

    next_id: int = Field(default=1, ge=1)
    by_id: dict[str, str] = Field(default_factory=dict)


class FileHandleRegistry:
    """Maps handle ids to workspace-relative paths for one session."""

    def __init__(self, state: FileHandleState, workspace_root: Optional[str] = None) -> None:
        self.state = state
        self.workspace_root = workspace_root

    def resolve(self, file_id: str) -> Optional[str]:
        path = self.state.by_id.get((file_id or "").strip())
        return path.strip() if isinstance(path, str) and path.strip() else None

    def get_or_create(self, file_path: str) -> tuple[str, str]:
        """Return ``(handle_id, normalized_path)``, reusing an existing handle."""
        value = (file_path or "").strip()
        if not value:
            return "F0", value
        normalized = normalize_permission_path(value, self.workspace_root)
        for existing_id, existing_path in self.state.by_id.items():
            if existing_path == normalized:
                return existing_id, normalized
        handle_id = f"F{self.state.next_id}"
        self.state.next_id += 1
        self.state.by_id[handle_id] = normalized
        return handle_id, normalized

    def reset(self) -> None:
        self.state.next_id = 1
        self.state.by_id.clear()

    def decorate_glob_result(self, result: ToolResult) -> ToolResult:
        """Render glob matches as ``F{n}  path`` lines for the model."""
        if not result.ok or not isinstance(result.data, dict):
            return result
        files = result.data.get("files")
        if not isinstance(files, list):
            return result

        paths = [f.strip() for f in files if isinstance(f, str) and f.strip()]
        if not paths:
            lines = ["No files found"]
        else:
            lines = ["Use fileId with read/write/edit:", ""]
            for path in paths:
                handle_id, normalized = self.get_or_create(path)
                lines.append(f"{handle_id}  {normalized}")
            if result.data.get("truncated"):
                lines += ["", "(Results are truncated. Consider using a more specific path or pattern.)"]

        result.metadata["output_text"] = "\n".join(lines).rstrip()
        return result
