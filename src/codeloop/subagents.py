"""Sub-agents: the ``task`` tool that runs an independent nested agent."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from codeloop.callbacks import AgentCallbacks
from codeloop.core.tool_result import TRUNCATION_SUFFIX, ToolResult
from codeloop.errors import AbortedError, AgentError
from codeloop.session import Session
from codeloop.tools.base import ToolContext, ToolDefinition, ToolPermission

if TYPE_CHECKING:
    from codeloop.agent import Agent

_log = logging.getLogger(__name__)

MAX_TASK_SESSIONS = 50


@dataclass(frozen=True)
class SubagentDefinition:
    name: str
    description: str
    prompt: str
    tool_filter: Optional[tuple[str, ...]] = None


BUILTIN_SUBAGENTS: dict[str, SubagentDefinition] = {
    "general": SubagentDefinition(
        name="general",
        description=(
            "General-purpose agent for complex, multi-step tasks. "
            "Use when you want the agent to execute a longer workflow."
        ),
        prompt="\n".join([
            "You are a subagent (general).",
            "",
            "- Focus on completing the given subtask end-to-end.",
            "- Be explicit about assumptions and what you are returning to the parent.",
            "- You may use tools as needed, but keep output concise.",
            "",
            "Return a single final answer back to the parent agent.",
        ]),
    ),
    "explore": SubagentDefinition(
        name="explore",
        description=(
            "Fast, read-only agent specialized for exploring a workspace: "
            "list files, grep, read small snippets, and summarize findings."
        ),
        prompt="\n".join([
            "You are a subagent (explore).",
            "",
            "- Read-only exploration: do not write or edit files.",
            "- Prefer list/glob/grep/read and summarize findings.",
            "- If you need to change code, report back to the parent instead of editing.",
            "",
            "Return a single final answer back to the parent agent.",
        ]),
        tool_filter=("list", "glob", "grep", "read"),
    ),
}


def list_subagents() -> list[SubagentDefinition]:
    return list(BUILTIN_SUBAGENTS.values())


def resolve_subagent(name: str) -> Optional[SubagentDefinition]:
    return BUILTIN_SUBAGENTS.get((name or "").strip().lower())


def format_task_output(text: str, session_id: str, max_chars: int) -> str:
    """Child answer plus a metadata block; the answer is cut first when over ``max_chars``."""
    base = (text or "").rstrip()
    metadata_block = f"\n\n<task_metadata>\nsession_id: {session_id}\n</task_metadata>"
    full = base + metadata_block
    if max_chars <= 0 or len(full) <= max_chars:
        return full

    reserved = len(TRUNCATION_SUFFIX) + len(metadata_block)
    if reserved >= max_chars:
        return metadata_block[-max_chars:]
    available = max_chars - reserved
    return base[:available].rstrip() + TRUNCATION_SUFFIX + metadata_block


class TaskSessions:
    """LRU of child sessions so a later ``task`` call can continue one."""

    def __init__(self, capacity: int = MAX_TASK_SESSIONS) -> None:
        self.capacity = capacity
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def put(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        self._sessions.move_to_end(session.session_id)
        while len(self._sessions) > self.capacity:
            self._sessions.popitem(last=False)


_AGENTS_LIST = "\n".join(f"- {a.name}: {a.description}" for a in BUILTIN_SUBAGENTS.values())

TASK_SCHEMA = {
    "name": "task",
    "description": "\n".join([
        "Launch a subagent to handle a complex, multistep task autonomously.",
        "",
        "Available subagent types:",
        _AGENTS_LIST,
        "",
        "Usage:",
        "- Use `subagent_type` to select the agent.",
        "- Use `session_id` to continue a previous task session.",
        "",
        "Notes:",
        "- The subagent returns a single final answer back to you.",
        "- The task tool is non-recursive: subagents cannot spawn other subagents via task.",
    ]),
    "properties": {
        "description": {"type": "string", "description": "Short (3-5 words) description of the task"},
        "prompt": {"type": "string", "description": "Detailed instructions for the subagent"},
        "subagent_type": {"type": "string", "description": 'Which subagent to use (e.g. "explore", "general")'},
        "session_id": {"type": "string", "description": "Existing task session id to continue (optional)"},
    },
    "required": ["description", "prompt", "subagent_type"],
}

TASK_PERMISSION = ToolPermission(name="task")


def _require_string(args: dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class TaskTool:
    """Runs a nested :class:`~codeloop.agent.Agent` on its own session."""

    name = "task"

    def __init__(self, agent: Agent, sessions: Optional[TaskSessions] = None) -> None:
        self.agent = agent
        self.sessions = sessions or TaskSessions()

    def schema(self) -> dict[str, Any]:
        return TASK_SCHEMA

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=TASK_SCHEMA["description"],
            parameters=TASK_SCHEMA,
            handler=self.run,
            permission=TASK_PERMISSION,
        )

    def run(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        from codeloop.agent import Agent

        parent = ctx.session
        if parent is None or parent.is_subagent:
            return ToolResult.failure(
                "task_recursion_denied", "Subagents cannot spawn other subagents via task."
            )

        for key in ("description", "prompt", "subagent_type"):
            if _require_string(args, key) is None:
                return ToolResult.failure("invalid_arguments", f"{key} must be a non-empty string")
        prompt = _require_string(args, "prompt")
        description = _require_string(args, "description")
        requested = _require_string(args, "subagent_type")

        subagent = resolve_subagent(requested)
        if subagent is None:
            names = ", ".join(a.name for a in list_subagents())
            return ToolResult.failure(
                "unknown_subagent_type",
                f"Unknown subagent_type: {requested}. Available: {names}",
                data={"subagentType": requested},
            )
        if parent.mode == "plan" and subagent.name != "explore":
            return ToolResult.failure(
                "subagent_denied_in_plan",
                "Only the explore subagent is allowed in Plan mode.",
                data={"subagentType": subagent.name},
            )

        session_id = _require_string(args, "session_id")
        child_session = self.sessions.get(session_id) if session_id else None
        if child_session is None:
            child_session = Session(
                parent_session_id=parent.session_id,
                subagent_type=subagent.name,
                model_id=self.agent.config.model,
            )
            if session_id:
                child_session.session_id = session_id
        else:
            child_session.parent_session_id = parent.session_id
            child_session.subagent_type = subagent.name
        self.sessions.put(child_session)

        registry = self.agent.registry
        if subagent.tool_filter:
            registry = registry.filtered(subagent.tool_filter)
        parent_callbacks = self.agent.callbacks
        child = Agent(
            self.agent.config.model_copy(update={"mode": "build"}),
            llm=self.agent.llm,
            registry=registry,
            workspace_root=self.agent.workspace_root,
            session=child_session,
            callbacks=AgentCallbacks(
                on_request_approval=parent_callbacks.on_request_approval if parent_callbacks else None
            ),
            hooks=self.agent.pipeline.hooks,
            system_prompt_extra=subagent.prompt,
            parent_token=ctx.token,
            enable_tasks=False,
        )

        _log.debug("Subagent %s started (session %s): %s", subagent.name, child_session.session_id, description)
        try:
            text = child.continue_(prompt)
        except AbortedError:
            raise
        except AgentError as e:
            _log.debug("Subagent %s failed: %s", subagent.name, e)
            return ToolResult.failure("task_subagent_failed", str(e))
        _log.debug("Subagent %s finished (session %s)", subagent.name, child_session.session_id)

        return ToolResult.success(
            data={"session_id": child_session.session_id, "subagent_type": subagent.name, "text": text},
            metadata={
                "title": description,
                "output_text": format_task_output(
                    text, child_session.session_id, self.agent.config.task_max_output_chars
                ),
            },
        )
