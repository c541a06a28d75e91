"""Tool execution pipeline: resolve one tool call end to end under the permission policy."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from codeloop.callbacks import AgentCallbacks, ToolCall, ToolHooks, invoke_callback
from codeloop.cancellation import CancellationToken
from codeloop.config import AgentConfig
from codeloop.core.tool_result import ToolResult, format_tool_result
from codeloop.errors import (
    AbortedError,
    ApprovalRejected,
    ExternalPathDisabled,
    PermissionDenied,
    ShellCommandBlocked,
    ToolError,
    ToolExecutionFailure,
    UnknownFileId,
)
from codeloop.handles import FileHandleRegistry
from codeloop.permissions import (
    PLAN_MODE_DENIED_MESSAGE,
    PermissionRule,
    default_ruleset,
    evaluate_tool_permission_action,
    find_dotenv_targets,
    get_external_path_patterns,
    get_tool_permission_name,
    get_tool_permission_patterns,
    is_tool_allowed_in_plan_mode,
)
from codeloop.safe_shell import evaluate_shell_command
from codeloop.tool_guard import EXTERNAL_PATHS_MESSAGE, find_external_paths_in_command, is_subpath
from codeloop.tools.base import ToolContext, ToolDefinition

if TYPE_CHECKING:
    from codeloop.session import Session
    from codeloop.tools import ToolRegistry

_log = logging.getLogger(__name__)

DENIED_MESSAGE = "Tool is denied by permissions."
REJECTED_MESSAGE = "User rejected this action"
SHELL_EXTERNAL_PATHS_MESSAGE = (
    "External paths are disabled. This shell command references paths outside the "
    "current workspace. Set allow_external_paths: true to allow external path access."
)
MAX_BLOCKED_PATHS = 20


@dataclass
class ToolOutcome:
    """A finished call: the structured result and the text the model will see."""

    result: ToolResult
    output: str


class ToolExecutionPipeline:
    """Runs tool calls through hooks, handles, permissions, approval and formatting.

    Every refusal short-circuits with a failed ``ToolResult`` carrying a
    human-readable reason and a machine code; the underlying tool is never
    invoked in that case.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: AgentConfig,
        workspace_root: str,
        hooks: Optional[ToolHooks] = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.workspace_root = workspace_root
        self.hooks = hooks or ToolHooks()

    def ruleset(self, mode: str) -> list[PermissionRule]:
        user_rules = [PermissionRule(r.permission, r.pattern, r.action) for r in self.config.permissions]
        return default_ruleset(mode, user_rules)

    # ── steps ────────────────────────────────────────────────────────────

    def _blocked(
        self,
        call: ToolCall,
        definition: ToolDefinition,
        callbacks: Optional[AgentCallbacks],
        error: ToolError,
    ) -> ToolResult:
        reason = str(error)
        _log.debug("Tool %s blocked (%s): %s", definition.name, error.code, reason)
        invoke_callback(callbacks, "on_tool_blocked", call, definition, reason)
        return ToolResult.from_error(error, metadata={"blocked_reason": reason})

    def _resolve_file_id(self, definition: ToolDefinition, args: dict[str, Any], session: Session) -> Optional[ToolResult]:
        if "fileId" not in definition.parameters.get("properties", {}):
            return None
        file_id = args.get("fileId")
        file_path = args.get("file_path")
        if not isinstance(file_id, str) or (isinstance(file_path, str) and file_path.strip()):
            return None
        resolved = FileHandleRegistry(session.file_handles, self.workspace_root).resolve(file_id)
        if resolved is None:
            return ToolResult.from_error(
                UnknownFileId(
                    f"Unknown fileId: {file_id}. Run glob first and use one of the returned fileId values.",
                    data={"fileId": file_id},
                )
            )
        args["file_path"] = resolved
        return None

    def _shell_external_paths(self, args: dict[str, Any]) -> list[str]:
        root = os.path.abspath(self.workspace_root)
        workdir = args.get("workdir")
        cwd = root
        if isinstance(workdir, str) and workdir.strip():
            value = os.path.expanduser(workdir.strip())
            cwd = os.path.normpath(value if os.path.isabs(value) else os.path.join(root, value))

        found: list[str] = []
        if not is_subpath(cwd, root):
            found.append(cwd)
        command = args.get("command")
        if isinstance(command, str) and command.strip():
            for path in find_external_paths_in_command(command, root, cwd=cwd):
                if path not in found:
                    found.append(path)
        return found

    def _ask_approval(
        self, call: ToolCall, definition: ToolDefinition, callbacks: Optional[AgentCallbacks]
    ) -> bool:
        approve = callbacks.on_request_approval if callbacks is not None else None
        if approve is None:
            return False
        try:
            return bool(approve(call, definition))
        except Exception:
            _log.warning("Approval callback failed for %s; treating as rejected", definition.name, exc_info=True)
            return False

    # ── entry point ─────────────────────────────────────────────────────

    def run(
        self,
        call: ToolCall,
        session: Session,
        mode: str,
        callbacks: Optional[AgentCallbacks] = None,
        token: Optional[CancellationToken] = None,
    ) -> ToolOutcome:
        """Resolve ``call`` to a result; the model sees ``ToolOutcome.output``.

        Raises:
            AbortedError: If ``token`` fires before or while the tool runs.
        """
        token = token or CancellationToken()
        try:
            result = self._run(call, session, mode, callbacks, token)
        except AbortedError:
            raise
        except Exception as exc:
            _log.warning("Tool pipeline failed for %s", call.tool_name, exc_info=True)
            result = ToolResult.from_error(ToolExecutionFailure(f"{type(exc).__name__}: {exc}"))
        return ToolOutcome(result=result, output=format_tool_result(result))

    def _run(
        self,
        call: ToolCall,
        session: Session,
        mode: str,
        callbacks: Optional[AgentCallbacks],
        token: CancellationToken,
    ) -> ToolResult:
        token.raise_if_cancelled()
        definition = self.registry.get(call.tool_name)
        if definition is None:
            return ToolResult.from_error(
                ToolExecutionFailure(f"Tool '{call.tool_name}' is not registered.", code="tool_not_found")
            )

        args: dict[str, Any] = dict(call.args or {})
        if self.hooks.before is not None:
            rewritten = self.hooks.before(definition.name, args)
            if isinstance(rewritten, dict):
                args = dict(rewritten)

        handle_failure = self._resolve_file_id(definition, args, session)
        if handle_failure is not None:
            return handle_failure
        call = ToolCall(call_id=call.call_id, tool_name=call.tool_name, args=args)

        if mode == "plan" and not is_tool_allowed_in_plan_mode(definition):
            return self._blocked(
                call, definition, callbacks, PermissionDenied(PLAN_MODE_DENIED_MESSAGE, code="plan_mode_denied")
            )

        permission = get_tool_permission_name(definition)
        patterns = get_tool_permission_patterns(definition, args, self.workspace_root)
        action = evaluate_tool_permission_action(permission, patterns, self.ruleset(mode))
        if action == "deny":
            if mode == "plan":
                return self._blocked(
                    call, definition, callbacks, PermissionDenied(PLAN_MODE_DENIED_MESSAGE, code="plan_mode_denied")
                )
            return self._blocked(call, definition, callbacks, PermissionDenied(DENIED_MESSAGE))

        requires_approval = action == "ask" or definition.permission.requires_approval
        forced_approval = bool(find_dotenv_targets(definition, args))

        if definition.is_shell and not self.config.allow_external_paths:
            external = self._shell_external_paths(args)
            if external:
                error = ExternalPathDisabled(SHELL_EXTERNAL_PATHS_MESSAGE, blocked_paths=external[:MAX_BLOCKED_PATHS])
                error.data["blockedPathsTruncated"] = len(external) > MAX_BLOCKED_PATHS
                return self._blocked(call, definition, callbacks, error)

        if definition.is_shell:
            decision = evaluate_shell_command(str(args.get("command") or ""))
            if decision.verdict == "deny":
                return self._blocked(
                    call, definition, callbacks, ShellCommandBlocked(f"Blocked command: {decision.reason}")
                )
            if decision.verdict == "needs_approval":
                forced_approval = True

        external_paths = get_external_path_patterns(definition, args, self.workspace_root)
        if external_paths and not self.config.allow_external_paths:
            return self._blocked(
                call,
                definition,
                callbacks,
                ExternalPathDisabled(EXTERNAL_PATHS_MESSAGE, blocked_paths=external_paths[:MAX_BLOCKED_PATHS]),
            )

        requires_approval = requires_approval or forced_approval
        if self.hooks.permission_ask is not None:
            if self.hooks.permission_ask(definition.name, args, requires_approval):
                requires_approval = True

        auto_approve = mode != "plan" and self.config.auto_approve and not forced_approval
        if requires_approval and not auto_approve:
            if not self._ask_approval(call, definition, callbacks):
                _log.debug("Tool %s rejected by user", definition.name)
                return ToolResult.from_error(ApprovalRejected(REJECTED_MESSAGE))

        token.raise_if_cancelled()
        context = ToolContext(
            workspace_root=self.workspace_root,
            token=token,
            session=session,
            call_id=call.call_id,
            timeout_sec=self.config.tool_timeout_sec,
            allow_external_paths=self.config.allow_external_paths,
        )
        result = self.registry.execute(definition.name, args, context)
        token.raise_if_cancelled()

        if definition.name == "glob":
            result = FileHandleRegistry(session.file_handles, self.workspace_root).decorate_glob_result(result)

        if self.hooks.after is not None:
            replaced = self.hooks.after(definition.name, args, result)
            if isinstance(replaced, ToolResult):
                result = replaced
        return result
