"""Host callbacks and tool hooks consulted by the agent loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from codeloop.core.tool_result import ToolResult
    from codeloop.tools.base import ToolDefinition

_log = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A tool invocation as the host sees it."""

    call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass
class AgentCallbacks:
    """Optional notifications from the agent loop.

    Every callback except ``on_request_approval`` is fire-and-forget: an
    exception is logged and the turn carries on. An exception from
    ``on_request_approval`` counts as a rejection.
    """

    on_request_approval: Optional[Callable[[ToolCall, "ToolDefinition"], bool]] = None
    on_status: Optional[Callable[[dict[str, Any]], None]] = None
    on_tool_call: Optional[Callable[[ToolCall, "ToolDefinition"], None]] = None
    on_tool_result: Optional[Callable[[ToolCall, "ToolResult"], None]] = None
    on_tool_blocked: Optional[Callable[[ToolCall, "ToolDefinition", str], None]] = None
    on_compaction_start: Optional[Callable[[dict[str, Any]], None]] = None
    on_compaction_end: Optional[Callable[[dict[str, Any]], None]] = None
    on_iteration_start: Optional[Callable[[int], None]] = None
    on_iteration_end: Optional[Callable[[int], None]] = None
    on_text_delta: Optional[Callable[[str], None]] = None


@dataclass
class ToolHooks:
    """Collaborator hooks around each tool call.

    ``before`` may rewrite the arguments, ``permission_ask`` may request an
    approval prompt (returning True) but can never lift a deny or a forced
    approval, and ``after`` may replace the result.
    """

    before: Optional[Callable[[str, dict[str, Any]], Optional[dict[str, Any]]]] = None
    permission_ask: Optional[Callable[[str, dict[str, Any], bool], Optional[bool]]] = None
    after: Optional[Callable[[str, dict[str, Any], "ToolResult"], Optional["ToolResult"]]] = None


def invoke_callback(callbacks: Optional[AgentCallbacks], name: str, *args: Any) -> None:
    """Call ``callbacks.<name>(*args)`` if set, logging and swallowing failures."""
    if callbacks is None:
        return
    fn = getattr(callbacks, name, None)
    if fn is None:
        return
    try:
        fn(*args)
    except Exception:
        _log.warning("Callback %s failed", name, exc_info=True)
