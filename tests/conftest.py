"""Shared pytest fixtures and helpers for codeloop tests."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from codeloop.config import AgentConfig
from codeloop.core.history import Message, TokenUsage, ToolCallPart
from codeloop.core.stream import StreamEvent
from codeloop.core.tool_result import ToolResult
from codeloop.tools.base import ToolDefinition, ToolPermission


@pytest.fixture
def workspace(tmp_path):
    """A temporary directory that acts as the workspace root."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def config(workspace):
    return AgentConfig(model="litellm/gpt-4o", api_base="http://localhost:4000", workspace_root=str(workspace))


# ── Plain helper functions ─────────────────────────────────────────────────
# Each test file imports these directly:
#   from conftest import assert_ok, assert_fail, make_file

def make_file(workspace: Path, relative_path: str, content: str = "hello\n") -> Path:
    p = workspace / relative_path
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
    return p


def assert_ok(result: ToolResult) -> None:
    assert result.ok, f"Expected ok=True but got error: {result.error_code}: {result.message}"


def assert_fail(result: ToolResult, error_code: str | None = None) -> None:
    assert not result.ok, f"Expected ok=False but result succeeded: {result.message}"
    if error_code:
        assert result.error_code == error_code, (
            f"Expected error_code={error_code!r}, got {result.error_code!r}"
        )


def make_echo_tool(name: str = "echo", permission: ToolPermission | None = None) -> ToolDefinition:
    def handler(args, ctx):
        return ToolResult.success(data=args.get("text", ""))

    return ToolDefinition(
        name=name,
        description="Echo text back",
        parameters={"properties": {"text": {"type": "string"}}, "required": ["text"]},
        handler=handler,
        permission=permission or ToolPermission(read_only=True),
    )


def tool_message(call_id: str, output: str, tool_name: str = "read") -> Message:
    part = ToolCallPart(tool_name=tool_name, call_id=call_id, state="input-available")
    part.set_output(output)
    return Message(role="assistant", parts=[part])


class FakeHTTPError(Exception):
    """Provider error carrying an HTTP status and headers."""

    def __init__(self, status_code: int, message: str = "provider error", headers: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}


# ── Scripted provider ──────────────────────────────────────────────────────

def text_turn(text: str, usage: TokenUsage | None = None) -> list:
    return [
        StreamEvent("text-start", id="t0"),
        StreamEvent("text-delta", id="t0", text=text),
        StreamEvent("text-end", id="t0"),
        StreamEvent("finish", finish_reason="stop", usage=usage),
    ]


def tool_turn(call_id: str, tool_name: str, args: dict, usage: TokenUsage | None = None) -> list:
    return [
        StreamEvent("tool-call", tool_call_id=call_id, tool_name=tool_name, input=args),
        StreamEvent("finish", finish_reason="tool-calls", usage=usage),
    ]


class FakeLLM:
    """Plays one script per ``stream`` call; exceptions in a script are raised in place."""

    def __init__(self, scripts=None, summaries=None):
        self.scripts = list(scripts or [])
        self.summaries = list(summaries or [])
        self.stream_calls: list[dict] = []
        self.complete_calls: list[list[dict]] = []

    def stream(self, messages, tools=None, token=None):
        self.stream_calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        script = self.scripts.pop(0)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    def complete(self, messages, temperature=0.0):
        self.complete_calls.append(copy.deepcopy(messages))
        summary = self.summaries.pop(0)
        if isinstance(summary, BaseException):
            raise summary
        return summary
