"""LiteLLM client wrapper - streaming completions as typed events."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any, Optional

import litellm

from codeloop.cancellation import CancellationToken
from codeloop.config import AgentConfig
from codeloop.core.history import Message, TextPart, TokenUsage
from codeloop.core.stream import StreamEvent
from codeloop.errors import AbortedError

_log = logging.getLogger(__name__)

_FINISH_REASONS = {
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "stop": "stop",
    "length": "length",
    "content_filter": "content-filter",
}

_TEXT_ID = "text-0"
_REASONING_ID = "reasoning-0"


def map_finish_reason(reason: Optional[str], has_tool_calls: bool = False) -> str:
    if reason is None:
        return "tool-calls" if has_tool_calls else "stop"
    return _FINISH_REASONS.get(reason, "other")


def extract_usage(response: Any) -> Optional[TokenUsage]:
    """Token usage from a (re)assembled LiteLLM response, if the provider sent any."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    completion = getattr(usage, "completion_tokens", 0) or 0
    details = getattr(usage, "prompt_tokens_details", None)
    cache_read = getattr(details, "cached_tokens", 0) or 0
    cache_write = getattr(usage, "cache_creation_input_tokens", 0) or 0
    total = getattr(usage, "total_tokens", 0) or (prompt + completion)
    return TokenUsage(
        input=max(0, prompt - cache_read),
        output=completion,
        cache_read=cache_read,
        cache_write=cache_write,
        total=total,
    )


def _parse_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def encode_messages(system_parts: list[str], history: list[Message]) -> list[dict[str, Any]]:
    """Encode history into OpenAI-style chat messages.

    Assistant tool calls become ``tool_calls`` followed by one ``tool``
    message per call. Calls without an output yet are skipped so the
    transcript stays well-formed. Reasoning is not sent back.
    """
    messages: list[dict[str, Any]] = [{"role": "system", "content": text} for text in system_parts if text]
    for message in history:
        if message.role == "user":
            messages.append({"role": "user", "content": message.text})
            continue

        finished = [p for p in message.tool_parts if p.output is not None]
        if message.role == "tool":
            for part in finished:
                messages.append({"role": "tool", "tool_call_id": part.call_id, "content": part.output})
            continue

        text = "".join(p.text for p in message.parts if isinstance(p, TextPart))
        if not finished:
            if text:
                messages.append({"role": "assistant", "content": text})
            continue
        messages.append({
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": part.call_id,
                    "type": "function",
                    "function": {"name": part.tool_name, "arguments": json.dumps(part.input)},
                }
                for part in finished
            ],
        })
        for part in finished:
            messages.append({"role": "tool", "tool_call_id": part.call_id, "content": part.output})
    return messages


class LLMClient:
    """LiteLLM client for model communication."""

    def __init__(self, config: AgentConfig) -> None:
        self.model = config.model
        self.api_base = config.api_base
        self.api_key = config.api_key
        self.temperature = config.temperature
        self.max_output_tokens = config.max_output_tokens
        self.request_timeout = 300

    def _base_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"model": self.model, "timeout": self.request_timeout}
        if self.api_base:
            params["api_base"] = self.api_base
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        """Stream a completion as typed events.

        Text and reasoning deltas are yielded as they arrive. Tool calls and
        usage come from the reassembled response and are yielded just before
        ``finish``. Provider exceptions propagate unchanged.

        Raises:
            AbortedError: If ``token`` fires while streaming.
        """
        chunks = []
        text_open = False
        reasoning_open = False

        _log.debug("Streaming %s: %d message(s), %d tool(s)", self.model, len(messages), len(tools or []))
        response_stream = litellm.completion(
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
            tools=tools or None,
            max_tokens=self.max_output_tokens,
            temperature=self.temperature,
            **self._base_params(),
        )
        for chunk in response_stream:
            if token is not None and token.cancelled:
                raise AbortedError()
            chunks.append(chunk)
            if not getattr(chunk, "choices", None):
                continue
            delta = chunk.choices[0].delta
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                if not reasoning_open:
                    reasoning_open = True
                    yield StreamEvent("reasoning-start", id=_REASONING_ID)
                yield StreamEvent("reasoning-delta", id=_REASONING_ID, text=reasoning)
            if delta.content:
                if not text_open:
                    text_open = True
                    yield StreamEvent("text-start", id=_TEXT_ID)
                yield StreamEvent("text-delta", id=_TEXT_ID, text=delta.content)

        if reasoning_open:
            yield StreamEvent("reasoning-end", id=_REASONING_ID)
        if text_open:
            yield StreamEvent("text-end", id=_TEXT_ID)

        assembled = litellm.stream_chunk_builder(chunks) if chunks else None
        tool_calls = []
        raw_finish = None
        if assembled is not None and assembled.choices:
            choice = assembled.choices[0]
            raw_finish = getattr(choice, "finish_reason", None)
            tool_calls = getattr(choice.message, "tool_calls", None) or []

        for tc in tool_calls:
            yield StreamEvent(
                "tool-call",
                tool_call_id=tc.id,
                tool_name=tc.function.name,
                input=_parse_arguments(tc.function.arguments),
            )

        yield StreamEvent(
            "finish",
            finish_reason=map_finish_reason(raw_finish, bool(tool_calls)),
            usage=extract_usage(assembled) if assembled is not None else None,
        )

    def complete(self, messages: list[dict[str, Any]], temperature: float = 0.0) -> str:
        """Single non-streaming completion without tools."""
        response = litellm.completion(
            messages=messages,
            max_tokens=self.max_output_tokens,
            temperature=temperature,
            **self._base_params(),
        )
        return response.choices[0].message.content or ""


def describe_llm_error(error: BaseException, api_base: Optional[str] = None) -> str:
    """Human-readable explanation of a fatal provider error."""
    server = f"  Server: {api_base}\n" if api_base else ""
    if isinstance(error, litellm.AuthenticationError):
        return (
            f"Authentication failed.\n\n"
            f"{server}"
            f"  Error: {error.message}\n\n"
            f"Check your api_key in ~/.codeloop/config.yaml"
        )
    if isinstance(error, litellm.BadRequestError):
        return (
            f"Model rejected the request.\n\n"
            f"{server}"
            f"  Error: {error}\n\n"
            f"The model may not support tool calls or this message format."
        )
    if isinstance(error, litellm.APIConnectionError):
        return (
            f"Cannot connect to the model provider.\n\n"
            f"{server}"
            f"  Error: {error.message}\n\n"
            f"Verify the server is running and api_base in ~/.codeloop/config.yaml"
        )
    if isinstance(error, litellm.APIError):
        return (
            f"Provider request failed (status {error.status_code}).\n\n"
            f"{server}"
            f"  Error: {error.message}"
        )
    return f"Unexpected provider error.\n\n{server}  Error: {type(error).__name__}: {error}"
