"""Rich terminal output helpers for the CLI."""

from __future__ import annotations

import io
import time
from typing import Any

from rich.align import Align
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.text import Text

from codeloop.callbacks import AgentCallbacks, ToolCall
from codeloop.core.history import TokenUsage
from codeloop.core.tool_result import ToolResult
from codeloop.tools.base import ToolDefinition

_MAX_ARG_DISPLAY = 50


class Renderer:
    """Render markdown, tool activity and status lines; ask for tool approval."""

    def __init__(self, output_file: io.TextIOBase | None = None) -> None:
        if output_file is not None:
            self.console = Console(file=output_file, force_terminal=False, highlight=False, width=120)
        else:
            self.console = Console()
        self._streamed = False
        self.streamed_chars = 0

    def render_markdown(self, text: str) -> None:
        """Render markdown content with Rich formatting."""
        self.console.print(Markdown(text))

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]{message}[/red]", highlight=False)

    def print_info(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]", highlight=False)

    def print_warning(self, message: str) -> None:
        self.console.print(f"[yellow]{message}[/yellow]", highlight=False)

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]{message}[/green]", highlight=False)

    def render_separator(self) -> None:
        self.console.print(Rule(style="dim"))

    def render_banner(self, version: str) -> None:
        content = Text.assemble(
            ("codeloop", "bold cyan"),
            ("  v" + version, "dim"),
        )
        self.console.print(Panel(
            Align.left(content),
            border_style="cyan dim",
            expand=False,
            padding=(0, 2),
        ))

    def render_config(self, config_items: dict) -> None:
        """Render configuration items one per line, left-aligned."""
        for key, value in config_items.items():
            line = Text.assemble(
                (f"{key}: ", "dim"),
                (str(value), "#888888"),
            )
            self.console.print(line, highlight=False)

    # ── streaming ────────────────────────────────────────────────────────

    def stream_text(self, delta: str) -> None:
        """Write raw streamed text as it arrives."""
        self._streamed = True
        self.streamed_chars += len(delta)
        self.console.print(delta, end="", markup=False, highlight=False, soft_wrap=True)

    def end_stream(self) -> None:
        if self._streamed:
            self.console.print()
            self._streamed = False

    # ── tool activity ────────────────────────────────────────────────────

    def render_tool_panel(self, call: ToolCall, definition: ToolDefinition | None = None) -> None:
        """Compact inline display of a tool call and its arguments."""
        self.end_stream()
        self.console.print(f"[bold cyan]◆[/bold cyan] [cyan]{call.tool_name}[/cyan]")
        for key, value in call.args.items():
            value_str = str(value)
            if len(value_str) > _MAX_ARG_DISPLAY:
                value_str = value_str[: _MAX_ARG_DISPLAY - 3] + "..."
            self.console.print(f"  [dim]{key}[/dim]: {value_str}", highlight=False)

    def render_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        if result.ok:
            self.print_success("  ✓ done")
        else:
            self.print_error(f"  ✗ {result.error_code}: {result.message}")

    def render_tool_blocked(self, call: ToolCall, definition: ToolDefinition, reason: str) -> None:
        self.print_warning(f"  ⊘ {call.tool_name} blocked: {reason}")

    def confirm_tool(self, call: ToolCall, definition: ToolDefinition) -> bool:
        """Ask whether the tool call may run."""
        self.end_stream()
        body = Text()
        for key, value in call.args.items():
            body.append(f"{key}: ", style="dim")
            body.append(f"{value}\n")
        self.console.print(Panel(
            body,
            title=f"[bold yellow]Approve {call.tool_name}?[/bold yellow]",
            border_style="yellow",
            expand=False,
        ))
        return Confirm.ask("Allow", console=self.console, default=False)

    # ── status ───────────────────────────────────────────────────────────

    def render_status(self, status: dict[str, Any]) -> None:
        if status.get("type") == "retry":
            wait = max(0.0, float(status.get("next_retry_time", 0)) - time.time())
            self.end_stream()
            self.print_warning(
                f"  ↻ {status.get('message', 'Retrying')} (attempt {status.get('attempt')}, retrying in {wait:.0f}s)"
            )

    def render_compaction(self, info: dict[str, Any]) -> None:
        status = info.get("status")
        if status is None:
            self.print_info("  Compacting conversation...")
        elif status == "done":
            self.print_info("  Conversation compacted.")
        else:
            self.print_warning(f"  Compaction {status}: {info.get('error', '')}")

    def render_status_line(self, model: str, usage: TokenUsage | None, session_id: str | None) -> None:
        """Compact status line after each assistant response."""
        parts = [model]
        if usage is not None and usage.used:
            parts.append(f"{usage.used:,} tokens")
        if session_id is not None:
            short_id = session_id[:12] + "..." if len(session_id) > 12 else session_id
            parts.append(short_id)
        self.console.print(Text(" | ".join(parts), style="dim"))

    def callbacks(self) -> AgentCallbacks:
        """Agent callbacks that render to this console and prompt for approval."""
        return AgentCallbacks(
            on_request_approval=self.confirm_tool,
            on_status=self.render_status,
            on_tool_call=self.render_tool_panel,
            on_tool_result=self.render_tool_result,
            on_tool_blocked=self.render_tool_blocked,
            on_compaction_start=self.render_compaction,
            on_compaction_end=self.render_compaction,
            on_text_delta=self.stream_text,
        )
