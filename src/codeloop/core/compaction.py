"""Context-budget management: overflow detection, tool-output pruning and summarization."""

from __future__ import annotations

import logging
import math
import os
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from codeloop.callbacks import AgentCallbacks, invoke_callback
from codeloop.config import AgentConfig, CompactionConfig, MemoryFlushConfig, ModelLimit
from codeloop.core.history import Message, TokenUsage, assistant_message, user_message
from codeloop.core.llm import LLMClient, encode_messages
from codeloop.errors import AbortedError, CompactionFailure
from codeloop.utils import strip_think_blocks

if TYPE_CHECKING:
    from codeloop.cancellation import CancellationToken
    from codeloop.session import Session

_log = logging.getLogger(__name__)

COMPACTION_MARKER_TEXT = "What did we do so far?"

COMPACTION_PROMPT_TEXT = (
    "Provide a detailed prompt for continuing our conversation above. Focus on information "
    "that would be helpful for continuing the conversation, including what we did, what we "
    "are doing, which files we are working on, and what we should do next. Assume a new "
    "session will not have access to the previous conversation."
)

COMPACTION_AUTO_CONTINUE_TEXT = "Continue if you have next steps."

COMPACTED_TOOL_PLACEHOLDER = "[Old tool result content cleared]"

COMPACTION_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with summarizing conversations.\n\n"
    "When asked to summarize, provide a detailed but concise summary of the conversation.\n"
    "Focus on information that would be helpful for continuing the conversation, including:\n"
    "- What was done\n"
    "- What is currently being worked on\n"
    "- Which files are being modified\n"
    "- What needs to be done next\n"
    "- Key user requests, constraints, or preferences that should persist\n"
    "- Important technical decisions and why they were made\n\n"
    "Your summary should be comprehensive enough to provide context but concise enough "
    "to be quickly understood."
)


# ── Overflow ────────────────────────────────────────────────────────────────


def get_reserved_output_tokens(model_limit: Optional[ModelLimit], max_output_tokens: int) -> int:
    max_output_tokens = max(0, int(max_output_tokens))
    if model_limit is not None and model_limit.output:
        return min(int(model_limit.output), max_output_tokens)
    return max_output_tokens


def is_overflow(
    usage: Optional[TokenUsage],
    model_limit: Optional[ModelLimit],
    reserved_output_tokens: int,
    config: CompactionConfig,
) -> bool:
    """True when the last call's usage exceeds the context minus the output reserve."""
    if not config.auto:
        return False
    if model_limit is None or model_limit.context <= 0:
        return False
    usable = model_limit.context - max(0, reserved_output_tokens)
    if usable <= 0:
        return False
    used = usage.used if usage is not None else 0
    if used <= 0:
        return False
    return used > usable


# ── History views ───────────────────────────────────────────────────────────


def get_effective_history(history: list[Message]) -> list[Message]:
    """The slice starting at the most recent summary (and its marker, if present)."""
    for i in range(len(history) - 1, -1, -1):
        msg = history[i]
        if msg.role == "assistant" and msg.summary:
            if i > 0 and history[i - 1].role == "user" and history[i - 1].compaction:
                return history[i - 1:]
            return history[i:]
    return history


def _estimate_tokens(text: Optional[str]) -> int:
    return math.ceil(len(text) / 4) if text else 0


def mark_prunable_tool_outputs(history: list[Message], config: CompactionConfig) -> dict[str, int]:
    """Mark old tool outputs beyond the protected budget as compacted.

    Walks backwards skipping the two most recent user turns, stops at a
    summary or an already compacted output, and only applies the marks when
    the prunable total exceeds ``prune_minimum_tokens``.
    """
    stats = {"total_tokens": 0, "pruned_tokens": 0, "marked_parts": 0}
    if not config.prune:
        return stats

    total = 0
    pruned = 0
    turns = 0
    to_mark = []
    done = False
    for msg in reversed(history):
        if done:
            break
        if msg.role == "user":
            turns += 1
        if turns < 2:
            continue
        if msg.role == "assistant" and msg.summary:
            break
        for part in reversed(msg.tool_parts):
            if part.state != "output-available":
                continue
            if part.compacted:
                done = True
                break
            estimate = _estimate_tokens(part.output)
            total += estimate
            if total > config.prune_protect_tokens:
                pruned += estimate
                to_mark.append(part)

    stats["total_tokens"] = total
    if pruned <= config.prune_minimum_tokens:
        return stats

    now = time.time()
    for part in to_mark:
        part.compacted_at = now
    stats["pruned_tokens"] = pruned
    stats["marked_parts"] = len(to_mark)
    _log.debug("Pruned %d tool output(s), ~%d tokens", len(to_mark), pruned)
    return stats


def mark_previous_assistant_tool_outputs(history: list[Message]) -> int:
    """Compact finished tool outputs in every assistant message before the last one."""
    last = None
    for i in range(len(history) - 1, -1, -1):
        if history[i].role == "assistant":
            last = i
            break
    if last is None:
        return 0

    now = time.time()
    marked = 0
    for msg in history[:last]:
        if msg.role != "assistant":
            continue
        for part in msg.tool_parts:
            if part.output is not None and not part.compacted:
                part.compacted_at = now
                marked += 1
    return marked


def create_history_for_model(history: list[Message]) -> list[Message]:
    """Deep copy of ``history`` with compacted tool outputs replaced by a placeholder."""
    copied = []
    for msg in history:
        clone = msg.model_copy(deep=True)
        for part in clone.tool_parts:
            if part.compacted and part.output is not None:
                part.output = COMPACTED_TOOL_PLACEHOLDER
                part.metadata["compacted"] = True
        copied.append(clone)
    return copied


def create_history_for_compaction_prompt(history: list[Message], config: CompactionConfig) -> list[Message]:
    """Model view used for the summary request.

    In ``onCompaction`` mode nothing has been pruned yet, so the protected
    budget is applied to a copy here.
    """
    view = [msg.model_copy(deep=True) for msg in history]
    if config.tool_output_mode == "onCompaction":
        mark_prunable_tool_outputs(view, config)
    return create_history_for_model(view)


# ── Memory flush ────────────────────────────────────────────────────────────


def flush_compaction_memory(
    summary: str,
    memory: MemoryFlushConfig,
    workspace_root: str,
    session_id: str,
    model_id: str,
) -> Optional[str]:
    """Append a compaction summary to the memory note; returns the file written."""
    if not memory.enabled or not summary.strip():
        return None
    text = summary.strip()
    if len(text) > memory.max_chars:
        text = text[: memory.max_chars - 1].rstrip() + "…"

    path = memory.path if os.path.isabs(memory.path) else os.path.join(workspace_root, memory.path)
    stamp = datetime.now(timezone.utc).isoformat()
    entry = f"## Compaction memory ({stamp})\nSession: {session_id}\nModel: {model_id}\n\n{text}\n"
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        prefix = "\n" if os.path.exists(path) and os.path.getsize(path) > 0 else ""
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(prefix + entry)
    except OSError as e:
        _log.warning("Could not write compaction memory to %s: %s", path, e)
        return None
    return path


# ── Summarization ───────────────────────────────────────────────────────────


def compact_session(
    session: Session,
    llm: LLMClient,
    config: AgentConfig,
    auto: bool = False,
    callbacks: Optional[AgentCallbacks] = None,
    workspace_root: Optional[str] = None,
    token: Optional[CancellationToken] = None,
) -> Message:
    """Summarize the effective history and restart it from the summary.

    Returns the summary message. On failure only the boundary marker is
    removed, so the prior history is left exactly as it was.

    Raises:
        AbortedError: If ``token`` fires during the summary request.
        CompactionFailure: If the summary request fails for any other reason.
    """
    marker = user_message(COMPACTION_MARKER_TEXT, synthetic=True, compaction={"auto": auto})
    session.history.append(marker)
    marker_index = len(session.history) - 1
    _log.debug("Compaction started (auto=%s) for session %s", auto, session.session_id)
    invoke_callback(callbacks, "on_compaction_start", {"auto": auto, "marker_message_id": marker.id})

    try:
        if token is not None:
            token.raise_if_cancelled()
        effective = get_effective_history(session.history)
        prepared = create_history_for_compaction_prompt(effective, config.compaction)
        prepared.append(user_message(COMPACTION_PROMPT_TEXT, synthetic=True))
        raw = llm.complete(encode_messages([COMPACTION_SYSTEM_PROMPT], prepared), temperature=0.0)
        if token is not None:
            token.raise_if_cancelled()
    except Exception as exc:
        status = "canceled" if isinstance(exc, AbortedError) else "error"
        if marker_index < len(session.history) and session.history[marker_index].id == marker.id:
            del session.history[marker_index]
        _log.warning("Compaction %s: %s", status, exc)
        invoke_callback(
            callbacks,
            "on_compaction_end",
            {"auto": auto, "marker_message_id": marker.id, "status": status, "error": str(exc)},
        )
        if isinstance(exc, AbortedError):
            raise
        raise CompactionFailure(f"Compaction failed: {exc}") from exc

    summary_text = strip_think_blocks(raw or "").strip()
    flush_compaction_memory(
        summary_text,
        config.memory,
        workspace_root or config.workspace_root or os.getcwd(),
        session.session_id,
        session.model_id or config.model,
    )

    summary = assistant_message(summary_text, summary=True, mode=session.mode, finish_reason="stop")
    session.history.append(summary)
    if auto:
        session.history.append(user_message(COMPACTION_AUTO_CONTINUE_TEXT, synthetic=True))
    session.history = get_effective_history(session.history)

    _log.debug("Compaction finished; %d message(s) retained", len(session.history))
    invoke_callback(
        callbacks,
        "on_compaction_end",
        {"auto": auto, "marker_message_id": marker.id, "summary_message_id": summary.id, "status": "done"},
    )
    return summary
