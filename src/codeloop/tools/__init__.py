"""
codeloop.tools
~~~~~~~~~~~~~~
Tool registry and the built-in tool set. Import from here so callers don't
need to know individual module paths.

Quick registration example::

    from codeloop.tools import build_registry

    registry = build_registry(workspace_root="/workspace")
    schemas = registry.to_openai()
"""
from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable, Optional

from codeloop.core.tool_result import ToolResult
from codeloop.errors import AbortedError, ToolError, ToolExecutionFailure
from codeloop.tools import file_list, file_read, file_write, glob, grep, shell
from codeloop.tools.base import PatternRule, ToolContext, ToolDefinition, ToolPermission
from codeloop.tools.file_list import FileListTool
from codeloop.tools.file_read import FileReadTool
from codeloop.tools.file_write import FileWriteTool
from codeloop.tools.glob import GlobTool
from codeloop.tools.grep import GrepTool
from codeloop.tools.shell import ShellTool

_log = logging.getLogger(__name__)

__all__ = [
    "ToolDefinition", "ToolPermission", "PatternRule", "ToolContext", "ToolRegistry",
    "FileReadTool", "FileWriteTool", "FileListTool", "GlobTool", "GrepTool", "ShellTool",
    "build_tools", "build_registry",
]

_BUILTIN_MODULES = (file_read, file_write, file_list, glob, grep, shell)
_BUILTIN_CLASSES = (FileReadTool, FileWriteTool, FileListTool, GlobTool, GrepTool, ShellTool)


def build_tools(workspace_root: str) -> list[ToolDefinition]:
    instances = [cls(workspace_root) for cls in _BUILTIN_CLASSES]
    return [
        ToolDefinition(
            name=t.name,
            description=t.schema()["description"],
            parameters=t.schema(),
            handler=t.run,
            permission=module.PERMISSION,
        )
        for t, module in zip(instances, _BUILTIN_MODULES)
    ]


class ToolRegistry:
    """Uniform ``{definition, handler}`` entries behind one execute contract."""

    def __init__(self, tools: Optional[Iterable[ToolDefinition]] = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def get_tools(self, allow: Optional[Iterable[str]] = None) -> list[ToolDefinition]:
        """All tools, or only those whose name matches one of the ``allow`` globs."""
        tools = list(self._tools.values())
        if allow is None:
            return tools
        patterns = list(allow)
        return [t for t in tools if any(fnmatch.fnmatchcase(t.name, p) for p in patterns)]

    def filtered(self, allow: Iterable[str]) -> "ToolRegistry":
        return ToolRegistry(self.get_tools(allow))

    def to_openai(self) -> list[dict[str, Any]]:
        return [t.to_openai() for t in self._tools.values()]

    def execute(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """Run a tool; tool errors and crashes come back as failed results.

        Raises:
            AbortedError: If the call was cancelled.
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.from_error(
                ToolExecutionFailure(f"Tool '{name}' is not registered.", code="tool_not_found")
            )
        try:
            result = tool.handler(args, context)
        except AbortedError:
            raise
        except ToolError as exc:
            return ToolResult.from_error(exc)
        except Exception as exc:
            _log.debug("Tool %s raised", name, exc_info=True)
            return ToolResult.from_error(ToolExecutionFailure(f"{type(exc).__name__}: {exc}"))
        if not isinstance(result, ToolResult):
            return ToolResult.success(data=result)
        return result


def build_registry(workspace_root: str) -> ToolRegistry:
    return ToolRegistry(build_tools(workspace_root))
