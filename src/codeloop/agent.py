"""Agent - orchestration loop driving model calls, tool round-trips and compaction."""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from codeloop.callbacks import AgentCallbacks, ToolCall, ToolHooks, invoke_callback
from codeloop.cancellation import CancellationToken, cancellable_sleep
from codeloop.config import AgentConfig
from codeloop.core.compaction import (
    compact_session,
    create_history_for_model,
    get_effective_history,
    get_reserved_output_tokens,
    is_overflow,
    mark_previous_assistant_tool_outputs,
)
from codeloop.core.history import Message, ReasoningPart, TextPart, TokenUsage, ToolCallPart, user_message
from codeloop.core.llm import LLMClient, describe_llm_error, encode_messages
from codeloop.core.retry import classify_retryable, retry_delay_ms
from codeloop.core.stream import normalize_stream
from codeloop.errors import (
    AbortedError,
    AgentBusyError,
    AgentError,
    ProviderFatalError,
    ProviderTransientError,
)
from codeloop.handles import FileHandleRegistry
from codeloop.session import Session, export_snapshot, import_snapshot
from codeloop.subagents import TaskTool
from codeloop.system_prompt import build_system_prompt
from codeloop.tool_execution import ToolExecutionPipeline
from codeloop.tools import ToolRegistry, build_registry
from codeloop.utils import extract_plan_from_reasoning, strip_think_blocks, strip_tool_blocks

_log = logging.getLogger(__name__)

NO_ACTIVE_TASK_MESSAGE = "No active task. Call plan() or run() first."
NO_TASK_TO_RESUME_MESSAGE = "No active task to resume. Start a task first."


@dataclass
class _Attempt:
    """Private buffers for one streaming attempt; committed to history at finalize."""

    message: Message = field(default_factory=lambda: Message(role="assistant"))
    text: str = ""
    reasoning: str = ""
    saw_tool_call: bool = False
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


class Agent:
    """Drives one session: model calls, sequential tool dispatch, retry and compaction.

    Only one turn runs at a time; a second entry while a turn is in flight
    raises :class:`AgentBusyError`.
    """

    def __init__(
        self,
        config: AgentConfig,
        llm: Optional[LLMClient] = None,
        registry: Optional[ToolRegistry] = None,
        workspace_root: Optional[str] = None,
        session: Optional[Session] = None,
        callbacks: Optional[AgentCallbacks] = None,
        hooks: Optional[ToolHooks] = None,
        system_prompt_extra: Optional[str] = None,
        parent_token: Optional[CancellationToken] = None,
        enable_tasks: bool = True,
    ) -> None:
        """Initialize the agent.

        Args:
            config: Validated agent configuration
            llm: Model client (defaults to a LiteLLM client built from config)
            registry: Tool registry (defaults to the built-in tools)
            workspace_root: Root directory for tools (defaults to config, then cwd)
            session: Session to drive (defaults to a fresh one)
            callbacks: Host notifications and the approval prompt
            hooks: Collaborator hooks around each tool call
            system_prompt_extra: Extra system prompt text (used for subagent roles)
            parent_token: Cancelling this token cancels every turn of this agent
            enable_tasks: Register the ``task`` tool when the registry lacks one
        """
        self.config = config
        self.workspace_root = os.path.abspath(workspace_root or config.workspace_root or os.getcwd())
        self.llm = llm or LLMClient(config)
        self.registry = registry if registry is not None else build_registry(self.workspace_root)
        if enable_tasks and self.registry.get("task") is None:
            if registry is not None:
                # The task tool is bound to this agent; keep it out of the caller's registry.
                self.registry = ToolRegistry(registry.get_tools())
            self.registry.register(TaskTool(self).definition())
        self.session = session or Session(model_id=config.model, mode=config.mode)
        self.callbacks = callbacks
        self.system_prompt_extra = system_prompt_extra
        self.pipeline = ToolExecutionPipeline(self.registry, config, self.workspace_root, hooks)

        self._parent_token = parent_token
        self._lock = threading.Lock()
        self._running = False
        self._token: Optional[CancellationToken] = None

    # ── re-entrancy guard ────────────────────────────────────────────────

    @contextmanager
    def _turn(self) -> Iterator[CancellationToken]:
        with self._lock:
            if self._running:
                raise AgentBusyError()
            self._running = True
            token = self._parent_token.child() if self._parent_token else CancellationToken()
            self._token = token
        try:
            yield token
        finally:
            token.dispose()
            with self._lock:
                self._running = False
                self._token = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── public surface ───────────────────────────────────────────────────

    def run(self, task: str) -> str:
        """Start a fresh task and return the final answer."""
        with self._turn() as token:
            self.session.history = [user_message(task)]
            self.session.pending_plan = None
            return self._run_loop(token)

    def continue_(self, message: str) -> str:
        """Add a user message to the current history and run a turn."""
        with self._turn() as token:
            self.session.history.append(user_message(message))
            return self._run_loop(token)

    def resume(self) -> str:
        """Run another turn on the existing history (e.g. after an error)."""
        with self._turn() as token:
            if not self.session.history:
                raise AgentError(NO_TASK_TO_RESUME_MESSAGE)
            return self._run_loop(token)

    def plan(self, task: str) -> str:
        """Run a read-only planning turn and keep its answer as the pending plan."""
        with self._turn() as token:
            self.session.mode = "plan"
            self.session.history = [user_message(task)]
            plan = self._run_loop(token)
            self.session.pending_plan = plan or None
            return plan

    def execute(self) -> str:
        """Switch to build mode and carry out the pending plan."""
        with self._turn() as token:
            if not self.session.pending_plan and not self.session.history:
                raise AgentError(NO_ACTIVE_TASK_MESSAGE)
            self.session.mode = "build"
            if self.session.pending_plan:
                self.session.history.append(
                    user_message(f"## Approved Plan\n{self.session.pending_plan}", synthetic=True)
                )
                self.session.pending_plan = None
            return self._run_loop(token)

    def compact_session(self) -> Message:
        """Summarize the conversation now, regardless of the context budget."""
        with self._turn() as token:
            return compact_session(
                self.session,
                self.llm,
                self.config,
                auto=False,
                callbacks=self.callbacks,
                workspace_root=self.workspace_root,
                token=token,
            )

    def abort(self) -> None:
        """Cancel the in-flight turn, if any."""
        token = self._token
        if token is not None:
            _log.debug("Abort requested for session %s", self.session.session_id)
            token.cancel()

    def clear(self) -> None:
        with self._turn():
            self.session.history = []
            self.session.pending_plan = None
            self.session.usage = None
            FileHandleRegistry(self.session.file_handles).reset()

    @property
    def history(self) -> list[Message]:
        return list(self.session.history)

    def set_mode(self, mode: str) -> None:
        if mode not in ("build", "plan"):
            raise ValueError(f"Unknown mode: {mode!r}")
        with self._turn():
            self.session.mode = mode

    def export_session(self) -> dict[str, Any]:
        return export_snapshot(self.session)

    def import_session(self, data: dict[str, Any]) -> None:
        """Replace the session with a snapshot from :meth:`export_session`.

        Raises:
            ValueError: If the snapshot is invalid.
        """
        with self._turn():
            self.session = import_snapshot(data)

    # ── loop ─────────────────────────────────────────────────────────────

    def _run_loop(self, token: CancellationToken) -> str:
        mode = self.session.mode
        system_parts = build_system_prompt(mode, self.system_prompt_extra)
        tools = self.registry.to_openai()
        compaction = self.config.compaction
        last_response = ""

        for iteration in range(1, self.config.max_iterations + 1):
            token.raise_if_cancelled()
            invoke_callback(self.callbacks, "on_iteration_start", iteration)

            history = create_history_for_model(get_effective_history(self.session.history))
            messages = encode_messages(system_parts, history)
            attempt = self._stream_with_retry(messages, tools, mode, token)
            message = self._finalize(attempt, mode)

            self.session.history.append(message)
            if message.usage is not None:
                self.session.usage = message.usage
            last_response = message.text.strip() or last_response

            if compaction.prune and compaction.tool_output_mode == "afterToolCall":
                mark_previous_assistant_tool_outputs(self.session.history)
            invoke_callback(self.callbacks, "on_iteration_end", iteration)

            model_limit = self.config.get_model_limit(self.session.model_id)
            reserved = get_reserved_output_tokens(model_limit, self.config.max_output_tokens)
            if attempt.finish_reason == "tool-calls" and is_overflow(message.usage, model_limit, reserved, compaction):
                compact_session(
                    self.session,
                    self.llm,
                    self.config,
                    auto=True,
                    callbacks=self.callbacks,
                    workspace_root=self.workspace_root,
                    token=token,
                )
                continue

            if attempt.finish_reason == "tool-calls" or message.tool_parts:
                continue
            return last_response

        _log.warning("Stopped after %d iterations without a final answer", self.config.max_iterations)
        return last_response

    def _stream_with_retry(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        mode: str,
        token: CancellationToken,
    ) -> _Attempt:
        """Stream one model call, retrying transient failures with backoff.

        Raises:
            AbortedError: If the turn was cancelled.
            ProviderTransientError: If a retryable failure outlasted the retry budget.
            ProviderFatalError: If the failure is not retryable.
        """
        retries = 0
        while True:
            attempt = _Attempt()
            try:
                self._consume_stream(attempt, messages, tools, mode, token)
                return attempt
            except AbortedError:
                raise
            except Exception as exc:
                if token.cancelled:
                    raise AbortedError() from exc
                reason = classify_retryable(exc)
                can_retry = (
                    reason is not None
                    and retries < self.config.max_retries
                    and not attempt.saw_tool_call
                    and not attempt.text.strip()
                )
                if can_retry:
                    retries += 1
                    delay_ms = retry_delay_ms(retries, reason.retry_after_ms)
                    _log.debug("Retry %d in %dms: %s (%s)", retries, delay_ms, reason.message, exc)
                    invoke_callback(self.callbacks, "on_status", {
                        "type": "retry",
                        "attempt": retries,
                        "next_retry_time": time.time() + delay_ms / 1000,
                        "message": reason.message,
                    })
                    cancellable_sleep(delay_ms / 1000, token)
                    continue
                if reason is not None:
                    _log.warning("Giving up after %d retries: %s", retries, reason.message)
                    raise ProviderTransientError(reason.message, reason.retry_after_ms) from exc
                raise ProviderFatalError(describe_llm_error(exc, self.config.api_base)) from exc

    def _consume_stream(
        self,
        attempt: _Attempt,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        mode: str,
        token: CancellationToken,
    ) -> None:
        for event in normalize_stream(self.llm.stream(messages, tools=tools or None, token=token)):
            token.raise_if_cancelled()
            kind = event.type
            if kind == "text-delta":
                attempt.text += event.text
                invoke_callback(self.callbacks, "on_text_delta", event.text)
            elif kind == "reasoning-delta":
                attempt.reasoning += event.text
            elif kind == "tool-call":
                attempt.saw_tool_call = True
                self._dispatch_tool_call(attempt.message, event.tool_call_id, event.tool_name, event.input, mode, token)
            elif kind == "tool-error":
                part = attempt.message.find_tool_part(event.tool_call_id)
                if part is not None and part.output is None:
                    part.set_output(str(event.error or "Tool failed"), error_code="tool_execution_failed")
            elif kind == "error":
                raise event.error or AgentError("Stream error")
            elif kind == "finish":
                attempt.finish_reason = event.finish_reason
                attempt.usage = event.usage

    def _dispatch_tool_call(
        self,
        message: Message,
        call_id: str,
        tool_name: str,
        args: dict[str, Any],
        mode: str,
        token: CancellationToken,
    ) -> None:
        part = ToolCallPart(tool_name=tool_name, call_id=call_id, input=dict(args or {}), state="input-available")
        message.parts.append(part)

        call = ToolCall(call_id=call_id, tool_name=tool_name, args=dict(args or {}))
        definition = self.registry.get(tool_name)
        if definition is not None:
            invoke_callback(self.callbacks, "on_tool_call", call, definition)

        outcome = self.pipeline.run(call, self.session, mode, self.callbacks, token)
        result = outcome.result
        part.set_output(
            outcome.output,
            error_code=None if result.ok else (result.error_code or "tool_execution_failed"),
            metadata={k: v for k, v in result.metadata.items() if k != "output_text"},
        )
        invoke_callback(self.callbacks, "on_tool_result", call, result)

    def _finalize(self, attempt: _Attempt, mode: str) -> Message:
        cleaned = strip_tool_blocks(strip_think_blocks(attempt.text)).strip()
        final_text = cleaned
        if not final_text and mode == "plan" and attempt.reasoning.strip():
            final_text = extract_plan_from_reasoning(attempt.reasoning)

        message = attempt.message
        head: list[Any] = []
        if attempt.reasoning.strip():
            head.append(ReasoningPart(text=attempt.reasoning))
        if final_text:
            head.append(TextPart(text=final_text))
        message.parts = [*head, *message.tool_parts]
        message.mode = mode
        message.finish_reason = attempt.finish_reason
        message.usage = attempt.usage
        return message
