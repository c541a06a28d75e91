"""Tests for the tool execution pipeline."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from codeloop.callbacks import AgentCallbacks, ToolCall, ToolHooks
from codeloop.cancellation import CancellationToken
from codeloop.config import AgentConfig, PermissionRuleConfig
from codeloop.core.tool_result import TRUNCATION_SUFFIX, ToolResult
from codeloop.errors import (
    AbortedError,
    ApprovalRejected,
    ExternalPathDisabled,
    PermissionDenied,
    ShellCommandBlocked,
    ToolExecutionFailure,
    UnknownFileId,
)
from codeloop.handles import FileHandleRegistry
from codeloop.permissions import PLAN_MODE_DENIED_MESSAGE
from codeloop.session import Session
from codeloop.tool_execution import REJECTED_MESSAGE, ToolExecutionPipeline
from codeloop.tools import build_registry
from codeloop.tools.base import ToolPermission

from conftest import assert_fail, assert_ok, make_echo_tool, make_file


def call(tool_name, **args):
    return ToolCall(call_id="call_1", tool_name=tool_name, args=args)


def approving(answer=True):
    return AgentCallbacks(on_request_approval=MagicMock(return_value=answer), on_tool_blocked=MagicMock())


@pytest.fixture
def registry(workspace):
    registry = build_registry(str(workspace))
    registry.register(make_echo_tool())
    return registry


@pytest.fixture
def session():
    return Session()


def pipeline_for(registry, workspace, hooks=None, **config_fields):
    config = AgentConfig(model="litellm/gpt-4o", workspace_root=str(workspace), **config_fields)
    return ToolExecutionPipeline(registry, config, str(workspace), hooks)


class TestBasics:
    def test_unknown_tool(self, registry, workspace, session):
        outcome = pipeline_for(registry, workspace).run(call("nope"), session, "build")
        assert_fail(outcome.result, "tool_not_found")
        assert json.loads(outcome.output)["code"] == "tool_not_found"

    def test_read_runs_without_approval(self, registry, workspace, session):
        make_file(workspace, "a.txt", "alpha\nbeta\n")
        callbacks = approving()
        outcome = pipeline_for(registry, workspace).run(call("read", file_path="a.txt"), session, "build", callbacks)
        assert_ok(outcome.result)
        assert "alpha" in outcome.output
        callbacks.on_request_approval.assert_not_called()

    def test_output_truncated(self, registry, workspace, session):
        outcome = pipeline_for(registry, workspace).run(call("echo", text="x" * 50_000), session, "build")
        assert outcome.output.endswith(TRUNCATION_SUFFIX)
        assert outcome.result.metadata["truncated"] is True

    def test_handler_crash_becomes_failure(self, registry, workspace, session):
        def boom(args, ctx):
            raise RuntimeError("kaput")

        registry.get("echo").handler = boom
        outcome = pipeline_for(registry, workspace).run(call("echo", text="x"), session, "build")
        assert_fail(outcome.result, "tool_execution_failed")
        assert "kaput" in outcome.result.message

    def test_cancelled_before_execution(self, registry, workspace, session):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AbortedError):
            pipeline_for(registry, workspace).run(call("echo", text="x"), session, "build", token=token)


class TestPlanMode:
    def test_write_denied(self, registry, workspace, session):
        callbacks = approving()
        outcome = pipeline_for(registry, workspace).run(
            call("write", file_path="a.txt", content="x"), session, "plan", callbacks
        )
        assert_fail(outcome.result, "plan_mode_denied")
        assert outcome.result.message == PLAN_MODE_DENIED_MESSAGE
        assert not (workspace / "a.txt").exists()
        callbacks.on_tool_blocked.assert_called_once()

    def test_read_allowed(self, registry, workspace, session):
        make_file(workspace, "a.txt")
        outcome = pipeline_for(registry, workspace).run(call("read", file_path="a.txt"), session, "plan")
        assert_ok(outcome.result)

    def test_plan_ignores_auto_approve(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="read", pattern="*", action="ask")]
        callbacks = approving(False)
        make_file(workspace, "a.txt")
        outcome = pipeline_for(registry, workspace, auto_approve=True, permissions=rules).run(
            call("read", file_path="a.txt"), session, "plan", callbacks
        )
        assert_fail(outcome.result, "approval_rejected")
        callbacks.on_request_approval.assert_called_once()


class TestRules:
    def test_user_deny_rule(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="read", pattern="secret/*", action="deny")]
        make_file(workspace, "secret/key.txt")
        outcome = pipeline_for(registry, workspace, permissions=rules).run(
            call("read", file_path="secret/key.txt"), session, "build"
        )
        assert_fail(outcome.result, "permission_denied")
        assert outcome.result.metadata["blocked_reason"]

    def test_ask_rule_approved(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="edit", pattern="*", action="ask")]
        callbacks = approving(True)
        outcome = pipeline_for(registry, workspace, permissions=rules).run(
            call("write", file_path="a.txt", content="new"), session, "build", callbacks
        )
        assert_ok(outcome.result)
        assert (workspace / "a.txt").read_text() == "new"
        approved_call, definition = callbacks.on_request_approval.call_args[0]
        assert approved_call.args["file_path"] == "a.txt"
        assert definition.name == "write"

    def test_ask_rule_rejected(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="edit", pattern="*", action="ask")]
        outcome = pipeline_for(registry, workspace, permissions=rules).run(
            call("write", file_path="a.txt", content="new"), session, "build", approving(False)
        )
        assert_fail(outcome.result, "approval_rejected")
        assert outcome.result.message == REJECTED_MESSAGE
        assert not (workspace / "a.txt").exists()

    def test_missing_approval_callback_rejects(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="edit", pattern="*", action="ask")]
        outcome = pipeline_for(registry, workspace, permissions=rules).run(
            call("write", file_path="a.txt", content="new"), session, "build"
        )
        assert_fail(outcome.result, "approval_rejected")

    def test_approval_callback_error_rejects(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="edit", pattern="*", action="ask")]
        callbacks = AgentCallbacks(on_request_approval=MagicMock(side_effect=RuntimeError("tty gone")))
        outcome = pipeline_for(registry, workspace, permissions=rules).run(
            call("write", file_path="a.txt", content="new"), session, "build", callbacks
        )
        assert_fail(outcome.result, "approval_rejected")

    def test_auto_approve_skips_prompt(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="edit", pattern="*", action="ask")]
        callbacks = approving(False)
        outcome = pipeline_for(registry, workspace, permissions=rules, auto_approve=True).run(
            call("write", file_path="a.txt", content="new"), session, "build", callbacks
        )
        assert_ok(outcome.result)
        callbacks.on_request_approval.assert_not_called()

    def test_tool_requires_approval_flag(self, registry, workspace, session):
        registry.register(make_echo_tool(name="danger", permission=ToolPermission(requires_approval=True)))
        callbacks = approving(True)
        outcome = pipeline_for(registry, workspace).run(call("danger", text="x"), session, "build", callbacks)
        assert_ok(outcome.result)
        callbacks.on_request_approval.assert_called_once()


class TestDotenv:
    def test_dotenv_forces_approval_despite_auto_approve(self, registry, workspace, session):
        make_file(workspace, ".env", "KEY=1\n")
        callbacks = approving(False)
        outcome = pipeline_for(registry, workspace, auto_approve=True).run(
            call("read", file_path=".env"), session, "build", callbacks
        )
        assert_fail(outcome.result, "approval_rejected")
        callbacks.on_request_approval.assert_called_once()

    def test_dotenv_template_not_guarded(self, registry, workspace, session):
        make_file(workspace, ".env.example", "KEY=\n")
        callbacks = approving(False)
        outcome = pipeline_for(registry, workspace).run(
            call("read", file_path=".env.example"), session, "build", callbacks
        )
        assert_ok(outcome.result)


class TestExternalPaths:
    def test_read_outside_workspace_blocked(self, registry, workspace, session, tmp_path):
        outside = make_file(tmp_path, "outside.txt")
        outcome = pipeline_for(registry, workspace).run(call("read", file_path=str(outside)), session, "build")
        assert_fail(outcome.result, "external_paths_disabled")
        assert outcome.result.data["blockedPaths"] == [str(outside)]

    def test_read_outside_allowed_when_enabled(self, registry, workspace, session, tmp_path):
        outside = make_file(tmp_path, "outside.txt", "far away\n")
        outcome = pipeline_for(registry, workspace, allow_external_paths=True).run(
            call("read", file_path=str(outside)), session, "build"
        )
        assert_ok(outcome.result)
        assert "far away" in outcome.output

    def test_shell_command_outside_blocked(self, registry, workspace, session, tmp_path):
        outside = make_file(tmp_path, "notes.txt")
        outcome = pipeline_for(registry, workspace).run(call("bash", command=f"cat {outside}"), session, "build")
        assert_fail(outcome.result, "external_paths_disabled")
        assert outcome.result.data["blockedPaths"] == [str(outside)]
        assert outcome.result.data["blockedPathsTruncated"] is False

    def test_shell_workdir_outside_blocked(self, registry, workspace, session, tmp_path):
        outcome = pipeline_for(registry, workspace).run(
            call("bash", command="ls", workdir=str(tmp_path)), session, "build"
        )
        assert_fail(outcome.result, "external_paths_disabled")


class TestShell:
    def test_denylisted_command_blocked(self, registry, workspace, session):
        outcome = pipeline_for(registry, workspace, auto_approve=True).run(
            call("bash", command="sudo ls"), session, "build"
        )
        assert_fail(outcome.result, "shell_command_blocked")
        assert outcome.result.message.startswith("Blocked command: ")

    def test_safe_command_runs(self, registry, workspace, session):
        outcome = pipeline_for(registry, workspace).run(call("bash", command="echo hi"), session, "build")
        assert_ok(outcome.result)
        assert outcome.result.data["stdout"] == "hi\n"

    def test_operators_force_approval(self, registry, workspace, session):
        callbacks = approving(False)
        outcome = pipeline_for(registry, workspace, auto_approve=True).run(
            call("bash", command="echo hi | wc -c"), session, "build", callbacks
        )
        assert_fail(outcome.result, "approval_rejected")
        callbacks.on_request_approval.assert_called_once()


class TestFileHandles:
    def test_file_id_resolved(self, registry, workspace, session):
        make_file(workspace, "src/deep/module.py", "print('x')\n")
        FileHandleRegistry(session.file_handles, str(workspace)).get_or_create("src/deep/module.py")
        outcome = pipeline_for(registry, workspace).run(call("read", fileId="F1"), session, "build")
        assert_ok(outcome.result)
        assert "print('x')" in outcome.output

    def test_unknown_file_id(self, registry, workspace, session):
        outcome = pipeline_for(registry, workspace).run(call("read", fileId="F9"), session, "build")
        assert_fail(outcome.result, "unknown_file_id")
        assert outcome.result.data == {"fileId": "F9"}

    def test_explicit_path_wins(self, registry, workspace, session):
        make_file(workspace, "a.txt", "from path\n")
        outcome = pipeline_for(registry, workspace).run(call("read", file_path="a.txt", fileId="F9"), session, "build")
        assert_ok(outcome.result)

    def test_glob_output_lists_handles(self, registry, workspace, session):
        make_file(workspace, "a.py")
        make_file(workspace, "b.py")
        outcome = pipeline_for(registry, workspace).run(call("glob", pattern="*.py"), session, "build")
        assert outcome.output.splitlines()[2:] == ["F1  a.py", "F2  b.py"]
        assert session.file_handles.by_id == {"F1": "a.py", "F2": "b.py"}


class TestHooks:
    def test_before_hook_rewrites_args(self, registry, workspace, session):
        hooks = ToolHooks(before=lambda name, args: {**args, "text": args["text"].upper()})
        outcome = pipeline_for(registry, workspace, hooks).run(call("echo", text="hi"), session, "build")
        assert outcome.output == "HI"

    def test_permission_ask_hook_adds_approval(self, registry, workspace, session):
        hooks = ToolHooks(permission_ask=lambda name, args, requires: True)
        callbacks = approving(False)
        outcome = pipeline_for(registry, workspace, hooks).run(call("echo", text="hi"), session, "build", callbacks)
        assert_fail(outcome.result, "approval_rejected")

    def test_permission_ask_hook_cannot_lift_deny(self, registry, workspace, session):
        rules = [PermissionRuleConfig(permission="echo", pattern="*", action="deny")]
        hooks = ToolHooks(permission_ask=lambda name, args, requires: False)
        outcome = pipeline_for(registry, workspace, hooks, permissions=rules).run(
            call("echo", text="hi"), session, "build"
        )
        assert_fail(outcome.result, "permission_denied")

    def test_after_hook_replaces_result(self, registry, workspace, session):
        hooks = ToolHooks(after=lambda name, args, result: ToolResult.success(data="replaced"))
        outcome = pipeline_for(registry, workspace, hooks).run(call("echo", text="hi"), session, "build")
        assert outcome.output == "replaced"

    def test_hook_crash_becomes_failure(self, registry, workspace, session):
        def broken(name, args):
            raise KeyError("missing")

        outcome = pipeline_for(registry, workspace, ToolHooks(before=broken)).run(
            call("echo", text="hi"), session, "build"
        )
        assert_fail(outcome.result, "tool_execution_failed")


class TestErrorCodes:
    @pytest.mark.parametrize(
        ("tool_call", "config_fields", "mode", "code"),
        [
            (call("write", file_path="a.txt", content="x"), {}, "plan", "plan_mode_denied"),
            (call("read", file_path="k.pem"), {"permissions": [PermissionRuleConfig(
                permission="read", pattern="*.pem", action="deny")]}, "build", PermissionDenied.code),
            (call("bash", command="sudo ls"), {"auto_approve": True}, "build", ShellCommandBlocked.code),
            (call("bash", command="cat /etc/hosts"), {}, "build", ExternalPathDisabled.code),
            (call("read", file_path="/etc/hosts"), {}, "build", ExternalPathDisabled.code),
            (call("read", fileId="F7"), {}, "build", UnknownFileId.code),
            (call("write", file_path="a.txt", content="x"), {"permissions": [PermissionRuleConfig(
                permission="edit", pattern="*", action="ask")]}, "build", ApprovalRejected.code),
            (call("nope"), {}, "build", "tool_not_found"),
        ],
        ids=["plan", "denied", "shell", "shell-external", "external", "file-id", "rejected", "missing"],
    )
    def test_blocked_codes_match_error_classes(
        self, registry, workspace, session, tool_call, config_fields, mode, code
    ):
        outcome = pipeline_for(registry, workspace, **config_fields).run(tool_call, session, mode, approving(False))
        assert_fail(outcome.result, code)

    def test_crash_code_matches_error_class(self, registry, workspace, session):
        registry.get("echo").handler = lambda args, ctx: [][1]
        outcome = pipeline_for(registry, workspace).run(call("echo", text="x"), session, "build")
        assert outcome.result.error_code == ToolExecutionFailure.code
        assert outcome.result.message.startswith("IndexError")
