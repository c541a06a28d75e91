from __future__ import annotations

import subprocess
from typing import Any, Dict

from codeloop.core.tool_result import ToolResult
from codeloop.errors import AbortedError, ToolValidationError
from codeloop.safe_shell import safe_child_env
from codeloop.tool_guard import resolve_tool_path
from codeloop.tools.base import PatternRule, ToolContext, ToolPermission

SCHEMA = {
    "name": "bash",
    "description": (
        "Execute a shell command in the workspace. Commands outside a small safe set, "
        "or using shell operators, need user approval; destructive commands are blocked."
    ),
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute."},
        "workdir": {
            "type": "string",
            "description": "Working directory. Defaults to workspace root.",
        },
        "timeout_sec": {
            "type": "integer",
            "description": "Timeout in seconds. Defaults to the configured tool timeout.",
        },
    },
    "required": ["command"],
}

PERMISSION = ToolPermission(
    patterns=[PatternRule("command", "command")],
    shell=True,
)


class ShellTool:
    name = "bash"

    def __init__(self, workspace_root: str) -> None:
        self._workspace_root = workspace_root

    def schema(self) -> Dict[str, Any]:
        return SCHEMA

    def run(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolValidationError("command must be a non-empty string")
        timeout = int(args.get("timeout_sec") or ctx.timeout_sec)
        cwd = resolve_tool_path(args.get("workdir") or ".", ctx.workspace_root, ctx.allow_external_paths)

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd.abs_path,
            env=safe_child_env(),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        ctx.token.add_callback(proc.kill)
        try:
            stdout, stderr = self._communicate(proc, timeout, ctx)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            return ToolResult.failure("timeout", f"Command timed out after {timeout} seconds: {command}")
        finally:
            ctx.token.remove_callback(proc.kill)

        success = proc.returncode == 0
        return ToolResult.success(
            data={
                "command": command,
                "exit_code": proc.returncode,
                "stdout": stdout,
                "stderr": stderr,
            },
            message=f"Command exited with code {proc.returncode}",
            warnings=[] if success else [f"Command exited with non-zero code {proc.returncode}"],
        )

    @staticmethod
    def _communicate(proc: subprocess.Popen, timeout: int, ctx: ToolContext) -> tuple[str, str]:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        finally:
            if ctx.token.cancelled and proc.poll() is None:
                proc.kill()
        if ctx.token.cancelled:
            raise AbortedError()
        return stdout, stderr
