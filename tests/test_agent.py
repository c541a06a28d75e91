"""Tests for the orchestration loop and the Agent public surface."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from codeloop.agent import NO_ACTIVE_TASK_MESSAGE, NO_TASK_TO_RESUME_MESSAGE, Agent
from codeloop.callbacks import AgentCallbacks
from codeloop.config import ModelLimit
from codeloop.core.compaction import COMPACTION_AUTO_CONTINUE_TEXT, COMPACTION_MARKER_TEXT
from codeloop.core.history import TokenUsage
from codeloop.core.stream import StreamEvent
from codeloop.errors import AbortedError, AgentBusyError, AgentError, ProviderFatalError, ProviderTransientError
from codeloop.tools import build_registry

from conftest import FakeHTTPError, FakeLLM, make_file, text_turn, tool_turn


@pytest.fixture
def no_sleep():
    with patch("codeloop.agent.cancellable_sleep") as mock_sleep:
        yield mock_sleep


def make_agent(config, workspace, scripts=(), summaries=(), callbacks=None, **config_fields):
    if config_fields:
        config = config.model_copy(update=config_fields)
    llm = FakeLLM(list(scripts), list(summaries))
    return Agent(config, llm=llm, workspace_root=str(workspace), callbacks=callbacks), llm


class TestToolRoundTrip:
    def test_single_tool_call_then_answer(self, config, workspace):
        make_file(workspace, "notes.txt", "remember the milk\n")
        agent, llm = make_agent(config, workspace, [
            tool_turn("call_1", "read", {"file_path": "notes.txt"}),
            text_turn("The note says to remember the milk."),
        ])

        answer = agent.run("What does notes.txt say?")

        assert answer == "The note says to remember the milk."
        history = agent.history
        assert [m.role for m in history] == ["user", "assistant", "assistant"]
        assert history[0].text == "What does notes.txt say?"
        tool_parts = history[1].tool_parts
        assert len(tool_parts) == 1
        assert tool_parts[0].state == "output-available"
        assert "remember the milk" in tool_parts[0].output
        assert history[2].text == "The note says to remember the milk."
        assert history[2].tool_parts == []

    def test_tool_output_sent_back_to_model(self, config, workspace):
        make_file(workspace, "notes.txt", "remember the milk\n")
        agent, llm = make_agent(config, workspace, [
            tool_turn("call_1", "read", {"file_path": "notes.txt"}),
            text_turn("done"),
        ])
        agent.run("read it")
        second = llm.stream_calls[1]["messages"]
        assert second[0]["role"] == "system"
        assistant = next(m for m in second if m.get("tool_calls"))
        assert assistant["tool_calls"][0]["function"]["name"] == "read"
        tool_msg = next(m for m in second if m["role"] == "tool")
        assert tool_msg["tool_call_id"] == "call_1"
        assert "remember the milk" in tool_msg["content"]

    def test_earlier_tool_outputs_compacted_after_turn(self, config, workspace):
        make_file(workspace, "notes.txt", "remember the milk\n")
        agent, _ = make_agent(config, workspace, [
            tool_turn("call_1", "read", {"file_path": "notes.txt"}),
            text_turn("done"),
        ])
        agent.run("read it")
        part = agent.history[1].tool_parts[0]
        assert part.compacted
        assert "remember the milk" in part.output

    def test_failed_tool_reported_to_model(self, config, workspace):
        agent, _ = make_agent(config, workspace, [
            tool_turn("call_1", "read", {"file_path": "missing.txt"}),
            text_turn("It does not exist."),
        ])
        agent.run("read missing.txt")
        part = agent.history[1].tool_parts[0]
        assert part.state == "output-error"
        assert part.error_code == "file_not_found"

    def test_callbacks_fired(self, config, workspace):
        make_file(workspace, "a.txt")
        callbacks = AgentCallbacks(
            on_tool_call=MagicMock(),
            on_tool_result=MagicMock(),
            on_iteration_start=MagicMock(),
            on_iteration_end=MagicMock(),
            on_text_delta=MagicMock(),
        )
        agent, _ = make_agent(config, workspace, [
            tool_turn("call_1", "read", {"file_path": "a.txt"}),
            text_turn("ok"),
        ], callbacks=callbacks)
        agent.run("go")
        assert callbacks.on_tool_call.call_args[0][0].tool_name == "read"
        assert callbacks.on_tool_result.call_args[0][1].ok
        assert callbacks.on_iteration_start.call_count == 2
        assert callbacks.on_iteration_end.call_count == 2
        callbacks.on_text_delta.assert_called_once_with("ok")

    def test_callback_errors_do_not_break_turn(self, config, workspace):
        callbacks = AgentCallbacks(on_text_delta=MagicMock(side_effect=RuntimeError("ui crashed")))
        agent, _ = make_agent(config, workspace, [text_turn("fine")], callbacks=callbacks)
        assert agent.run("hi") == "fine"

    def test_think_and_tool_markup_stripped(self, config, workspace):
        agent, _ = make_agent(config, workspace, [
            text_turn("<think>private</think>Answer <tool_call>{}</tool_call>here"),
        ])
        assert agent.run("hi") == "Answer here"

    def test_usage_recorded(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("hi", usage=TokenUsage(input=10, output=5, total=15))])
        agent.run("hi")
        assert agent.session.usage.total == 15
        assert agent.history[-1].usage.total == 15

    def test_max_iterations(self, config, workspace):
        make_file(workspace, "a.txt")
        agent, _ = make_agent(config, workspace, [
            tool_turn("c1", "read", {"file_path": "a.txt"}),
            tool_turn("c2", "read", {"file_path": "a.txt"}),
        ], max_iterations=2)
        assert agent.run("loop") == ""
        assert len(agent.history) == 3


class TestRetry:
    def test_transient_error_retried(self, config, workspace, no_sleep):
        status = MagicMock()
        agent, llm = make_agent(config, workspace, [
            [FakeHTTPError(429, headers={"retry-after": "1"})],
            text_turn("recovered"),
        ], callbacks=AgentCallbacks(on_status=status))
        assert agent.run("hi") == "recovered"
        info = status.call_args[0][0]
        assert info["type"] == "retry"
        assert info["attempt"] == 1
        assert info["message"] == "Too Many Requests"
        no_sleep.assert_called_once()
        assert no_sleep.call_args[0][0] == pytest.approx(1.0)
        assert [m.role for m in agent.history] == ["user", "assistant"]

    def test_retry_budget_exhausted(self, config, workspace, no_sleep):
        error = FakeHTTPError(503)
        agent, _ = make_agent(config, workspace, [[error], [error]], max_retries=1)
        with pytest.raises(ProviderTransientError) as exc_info:
            agent.run("hi")
        assert str(exc_info.value) == "Provider is overloaded"
        assert exc_info.value.__cause__ is error
        assert no_sleep.call_count == 1

    def test_no_retry_after_text(self, config, workspace, no_sleep):
        agent, _ = make_agent(config, workspace, [
            [StreamEvent("text-delta", id="t", text="partial answer"), FakeHTTPError(503)],
        ])
        with pytest.raises(ProviderTransientError):
            agent.run("hi")
        no_sleep.assert_not_called()

    def test_no_retry_after_tool_call(self, config, workspace, no_sleep):
        make_file(workspace, "a.txt")
        agent, _ = make_agent(config, workspace, [
            [StreamEvent("tool-call", tool_call_id="c1", tool_name="read", input={"file_path": "a.txt"}),
             FakeHTTPError(500)],
        ])
        with pytest.raises(ProviderTransientError):
            agent.run("hi")
        no_sleep.assert_not_called()

    def test_fatal_error_not_retried(self, config, workspace, no_sleep):
        error = ValueError("model does not support tools")
        agent, _ = make_agent(config, workspace, [[error]])
        with pytest.raises(ProviderFatalError) as exc_info:
            agent.run("hi")
        assert exc_info.value.__cause__ is error
        no_sleep.assert_not_called()

    def test_stream_error_event(self, config, workspace, no_sleep):
        agent, _ = make_agent(config, workspace, [
            [StreamEvent("error", error=FakeHTTPError(502))],
            text_turn("ok"),
        ])
        assert agent.run("hi") == "ok"


class TestCancellation:
    def test_abort_during_stream(self, config, workspace):
        agent_ref = {}

        def abort_on_delta(_text):
            agent_ref["agent"].abort()

        agent, _ = make_agent(config, workspace, [
            [StreamEvent("text-delta", id="t", text="a"), StreamEvent("text-delta", id="t", text="b")],
        ], callbacks=AgentCallbacks(on_text_delta=abort_on_delta))
        agent_ref["agent"] = agent
        with pytest.raises(AbortedError):
            agent.run("hi")
        assert not agent.is_running

    def test_abort_during_backoff(self, config, workspace):
        agent_ref = {}

        def abort_on_retry(_info):
            agent_ref["agent"].abort()

        agent, _ = make_agent(config, workspace, [[FakeHTTPError(429)], text_turn("never")],
                              callbacks=AgentCallbacks(on_status=abort_on_retry))
        agent_ref["agent"] = agent
        with pytest.raises(AbortedError):
            agent.run("hi")

    def test_abort_when_idle_is_noop(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("ok")])
        agent.abort()
        assert agent.run("hi") == "ok"


class TestReentrancy:
    def test_second_entry_rejected(self, config, workspace):
        errors = []
        agent_ref = {}

        def reenter(_text):
            try:
                agent_ref["agent"].continue_("again")
            except AgentBusyError as e:
                errors.append(e)

        agent, _ = make_agent(config, workspace, [text_turn("ok")], callbacks=AgentCallbacks(on_text_delta=reenter))
        agent_ref["agent"] = agent
        assert agent.run("hi") == "ok"
        assert len(errors) == 1
        assert str(errors[0]) == "Agent is already running"

    def test_lock_released_after_error(self, config, workspace, no_sleep):
        agent, _ = make_agent(config, workspace, [[ValueError("bad")], text_turn("second")])
        with pytest.raises(ProviderFatalError):
            agent.run("hi")
        assert not agent.is_running
        assert agent.resume() == "second"


class TestPublicSurface:
    def test_continue_keeps_history(self, config, workspace):
        agent, llm = make_agent(config, workspace, [text_turn("one"), text_turn("two")])
        agent.run("first")
        agent.continue_("second")
        assert [m.text for m in agent.history] == ["first", "one", "second", "two"]

    def test_run_starts_fresh(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("one"), text_turn("two")])
        agent.run("first")
        agent.run("again")
        assert [m.text for m in agent.history] == ["again", "two"]

    def test_resume_without_history(self, config, workspace):
        agent, _ = make_agent(config, workspace)
        with pytest.raises(AgentError, match=NO_TASK_TO_RESUME_MESSAGE):
            agent.resume()

    def test_execute_without_plan(self, config, workspace):
        agent, _ = make_agent(config, workspace)
        with pytest.raises(AgentError, match=NO_ACTIVE_TASK_MESSAGE.split(".")[0]):
            agent.execute()

    def test_clear(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("one")])
        agent.run("first")
        agent.session.file_handles.by_id["F1"] = "a.py"
        agent.clear()
        assert agent.history == []
        assert agent.session.file_handles.by_id == {}

    def test_set_mode(self, config, workspace):
        agent, _ = make_agent(config, workspace)
        agent.set_mode("plan")
        assert agent.session.mode == "plan"
        with pytest.raises(ValueError):
            agent.set_mode("yolo")

    def test_export_import(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("one")])
        agent.run("first")
        snapshot = agent.export_session()
        other, _ = make_agent(config, workspace)
        other.import_session(snapshot)
        assert [m.text for m in other.history] == ["first", "one"]
        assert other.session.session_id == agent.session.session_id

    def test_task_tool_registered(self, config, workspace):
        agent, _ = make_agent(config, workspace)
        assert agent.registry.get("task") is not None
        child = Agent(config, llm=FakeLLM(), workspace_root=str(workspace), enable_tasks=False)
        assert child.registry.get("task") is None

    def test_shared_registry_not_mutated(self, config, workspace):
        shared = build_registry(str(workspace))
        first = Agent(config, llm=FakeLLM(), registry=shared, workspace_root=str(workspace))
        second = Agent(config, llm=FakeLLM(), registry=shared, workspace_root=str(workspace))
        assert shared.get("task") is None
        assert first.registry.get("task").handler.__self__.agent is first
        assert second.registry.get("task").handler.__self__.agent is second
        assert first.registry.get("read") is shared.get("read")


class TestPlanMode:
    def test_plan_then_execute(self, config, workspace):
        agent, llm = make_agent(config, workspace, [
            tool_turn("c1", "write", {"file_path": "a.txt", "content": "x"}),
            text_turn("1. Create a.txt\n2. Fill it in"),
            text_turn("Done."),
        ])
        plan = agent.plan("make a.txt")
        assert plan == "1. Create a.txt\n2. Fill it in"
        assert agent.history[1].tool_parts[0].error_code == "plan_mode_denied"
        assert not (workspace / "a.txt").exists()
        assert agent.session.pending_plan == plan

        assert agent.execute() == "Done."
        assert agent.session.mode == "build"
        approved = [m for m in agent.history if m.synthetic]
        assert approved[0].text == f"## Approved Plan\n{plan}"
        assert agent.session.pending_plan is None

    def test_plan_prompt_in_system_messages(self, config, workspace):
        agent, llm = make_agent(config, workspace, [text_turn("1. Step")])
        agent.plan("task")
        system_text = " ".join(m["content"] for m in llm.stream_calls[0]["messages"] if m["role"] == "system")
        assert "Plan mode is active" in system_text

    def test_plan_recovered_from_reasoning(self, config, workspace):
        agent, _ = make_agent(config, workspace, [[
            StreamEvent("reasoning-delta", id="r", text="Thinking...\n1. Read the code\n2. Write tests"),
            StreamEvent("finish", finish_reason="stop"),
        ]])
        assert agent.plan("task") == "1. Read the code\n2. Write tests"


class TestAutoCompaction:
    def test_overflow_compacts_and_continues(self, config, workspace):
        limits = {"litellm/gpt-4o": ModelLimit(context=1000)}
        agent, llm = make_agent(config, workspace, [
            tool_turn("c1", "list", {}, usage=TokenUsage(total=950)),
            text_turn("final"),
        ], summaries=["We listed the workspace."], model_limits=limits, max_output_tokens=100)

        assert agent.run("look around") == "final"
        history = agent.history
        assert history[0].text == COMPACTION_MARKER_TEXT
        assert history[0].compaction == {"auto": True}
        assert history[1].summary
        assert history[2].text == COMPACTION_AUTO_CONTINUE_TEXT
        assert history[3].text == "final"
        sent = [m.get("content") for m in llm.stream_calls[1]["messages"] if m["role"] != "system"]
        assert sent == [COMPACTION_MARKER_TEXT, "We listed the workspace.", COMPACTION_AUTO_CONTINUE_TEXT]

    def test_under_budget_no_compaction(self, config, workspace):
        limits = {"litellm/gpt-4o": ModelLimit(context=100_000)}
        agent, llm = make_agent(config, workspace, [
            tool_turn("c1", "list", {}, usage=TokenUsage(total=950)),
            text_turn("final"),
        ], model_limits=limits)
        agent.run("look around")
        assert llm.complete_calls == []

    def test_manual_compaction(self, config, workspace):
        agent, _ = make_agent(config, workspace, [text_turn("one")], summaries=["summary"])
        agent.run("first")
        summary = agent.compact_session()
        assert summary.text == "summary"
        assert [m.text for m in agent.history] == [COMPACTION_MARKER_TEXT, "summary"]
