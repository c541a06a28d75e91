"""Exception hierarchy for the agent core.

Tool-level errors carry a machine-readable ``code`` and are converted into
``ToolResult`` failures by the tool execution pipeline, so the model sees them
as ordinary tool output. Turn-level errors unwind to the caller.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base class for all agent errors."""


# ── Tool-level errors ───────────────────────────────────────────────────────


class ToolError(AgentError):
    """An error that is reported back to the model as a failed tool result."""

    code = "tool_error"

    def __init__(self, message: str, code: str | None = None, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.data = data or {}


class ToolValidationError(ToolError):
    code = "invalid_arguments"


class PermissionDenied(ToolError):
    code = "permission_denied"


class ApprovalRejected(ToolError):
    code = "approval_rejected"


class ExternalPathDisabled(ToolError):
    """Raised when a tool call touches paths outside the workspace."""

    code = "external_paths_disabled"

    def __init__(self, message: str, blocked_paths: list[str] | None = None) -> None:
        super().__init__(message, data={"blockedPaths": list(blocked_paths or [])})
        self.blocked_paths = list(blocked_paths or [])


class WorkspaceBoundaryError(ToolError):
    """Raised when a path cannot be canonically resolved against the workspace."""

    code = "workspace_boundary_check_failed"


class ShellCommandBlocked(ToolError):
    code = "shell_command_blocked"


class UnknownFileId(ToolError):
    code = "unknown_file_id"


class ToolExecutionFailure(ToolError):
    code = "tool_execution_failed"


# ── Turn-level errors ───────────────────────────────────────────────────────


class AgentBusyError(AgentError):
    """Raised when a second turn is started while one is in flight."""

    def __init__(self, message: str = "Agent is already running") -> None:
        super().__init__(message)


class AbortedError(AgentError):
    """Raised when the turn's cancellation token fires."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


class ProviderError(AgentError):
    """Base class for model provider failures."""


class ProviderTransientError(ProviderError):
    """A retryable provider failure that exhausted its retry budget."""

    def __init__(self, message: str, retry_after_ms: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class ProviderFatalError(ProviderError):
    """A provider failure that is not worth retrying."""


class CompactionFailure(AgentError):
    """Raised when the summarization request fails; history is left untouched."""
