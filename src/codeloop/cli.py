"""codeloop CLI entry point."""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import click
import litellm
from prompt_toolkit import PromptSession
from rich.prompt import Confirm

from codeloop import __version__
from codeloop.agent import Agent
from codeloop.config import AgentConfig, ConfigError, apply_cli_overrides, load_config
from codeloop.core.llm import LLMClient
from codeloop.errors import AbortedError, AgentError, ProviderError
from codeloop.renderer import Renderer
from codeloop.session import Session, SessionStore

litellm.suppress_debug_info = True

USER_PROMPT = "You   > "
EXIT_COMMANDS = ("exit", "quit", "/exit", "/quit")

_log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not verbose:
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def _load_session(store: SessionStore, session_id: str | None, config: AgentConfig, renderer: Renderer) -> Session:
    if session_id is None:
        return Session(model_id=config.model, mode=config.mode)
    session = store.load(session_id)
    if session is None:
        renderer.print_info(f"Starting new session: {session_id}")
        return Session(session_id=session_id, model_id=config.model, mode=config.mode)
    renderer.print_info(f"Resuming session: {session_id} ({len(session.history)} messages)")
    if session.mode != config.mode:
        session.mode = config.mode
    return session


def _run_turn(agent: Agent, renderer: Renderer, fn: Callable[..., str], *args: Any) -> str:
    """Run one agent turn on a worker thread so Ctrl+C can abort it."""
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn(*args)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="codeloop-turn", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.1)
        except KeyboardInterrupt:
            renderer.end_stream()
            renderer.print_warning("Interrupting...")
            agent.abort()
    renderer.end_stream()

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value", "")


class _App:
    """Everything a subcommand needs, built once per invocation."""

    def __init__(self, config: AgentConfig, session_id: str | None) -> None:
        self.config = config
        self.session_id = session_id
        self.renderer = Renderer()
        self.store = SessionStore()
        session = _load_session(self.store, session_id, config, self.renderer)
        self.agent = Agent(
            config,
            llm=LLMClient(config),
            workspace_root=config.workspace_root or os.getcwd(),
            session=session,
            callbacks=self.renderer.callbacks(),
        )

    def turn(self, fn: Callable[..., str], *args: Any) -> bool:
        """Run ``fn`` as a turn; report errors and return whether it succeeded."""
        ok = True
        self.renderer.streamed_chars = 0
        try:
            answer = _run_turn(self.agent, self.renderer, fn, *args)
        except AbortedError:
            self.renderer.print_warning("Aborted.")
            ok = False
        except ProviderError as e:
            self.renderer.print_error(f"Model request failed: {e}")
            ok = False
        except AgentError as e:
            self.renderer.print_error(str(e))
            ok = False
        else:
            # Plan text recovered from reasoning is never streamed.
            if isinstance(answer, str) and answer and not self.renderer.streamed_chars:
                self.renderer.render_markdown(answer)
        session = self.agent.session
        self.renderer.render_status_line(self.config.model, session.usage, session.session_id)
        if self.session_id is not None:
            path = self.store.save(session)
            _log.debug("Saved session to %s", path)
        return ok


@click.group()
@click.version_option(__version__, prog_name="codeloop")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to config.yaml (default: ~/.codeloop/config.yaml)")
@click.option("--model", default=None, help="Override LLM model (e.g., litellm/gpt-4o)")
@click.option("--mode", type=click.Choice(["build", "plan"]), default=None, help="Agent mode")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Auto-approve tool calls that would ask")
@click.option("--session", "session_id", default=None, help="Load and save this session snapshot")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    model: str | None,
    mode: str | None,
    auto_approve: bool,
    session_id: str | None,
    verbose: bool,
) -> None:
    """codeloop - an interactive coding agent loop."""
    _configure_logging(verbose)
    try:
        config = load_config(config_path)
        config = apply_cli_overrides(
            config, model=model, mode=mode, auto_approve=True if auto_approve else None
        )
    except ConfigError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    ctx.obj = _App(config, session_id)


@main.command()
@click.argument("task")
@click.pass_obj
def run(app: _App, task: str) -> None:
    """Run TASK to completion in a single turn."""
    if not app.turn(app.agent.run, task):
        sys.exit(1)


@main.command()
@click.argument("task")
@click.pass_obj
def plan(app: _App, task: str) -> None:
    """Plan TASK read-only, then optionally execute the plan."""
    if not app.turn(app.agent.plan, task):
        sys.exit(1)
    if not app.agent.session.pending_plan:
        app.renderer.print_warning("No plan was produced.")
        return
    if app.config.auto_approve or Confirm.ask("Execute this plan?", console=app.renderer.console, default=False):
        if not app.turn(app.agent.execute):
            sys.exit(1)


def _handle_command(app: _App, text: str) -> bool:
    """Handle a REPL slash command; returns True when ``text`` was one."""
    command, _, arg = text.partition(" ")
    if command == "/clear":
        app.agent.clear()
        app.renderer.print_success("History cleared.")
    elif command == "/compact":
        app.turn(app.agent.compact_session)
    elif command == "/mode":
        try:
            app.agent.set_mode(arg.strip())
        except ValueError as e:
            app.renderer.print_error(str(e))
        else:
            app.renderer.print_success(f"Mode: {app.agent.session.mode}")
    elif command == "/execute":
        app.turn(app.agent.execute)
    elif command == "/resume":
        app.turn(app.agent.resume)
    else:
        return False
    return True


@main.command()
@click.pass_obj
def chat(app: _App) -> None:
    """Interactive REPL that continues the same session."""
    app.renderer.render_banner(__version__)
    app.renderer.render_config({"Model": app.config.model, "Mode": app.agent.session.mode})
    app.renderer.print_info("Type 'exit' to quit. Commands: /clear /compact /mode build|plan /execute /resume")

    prompt_session = PromptSession()
    while True:
        try:
            text = prompt_session.prompt(USER_PROMPT)
        except KeyboardInterrupt:
            app.renderer.print_info("Use Ctrl+D or type 'exit' to quit.")
            continue
        except EOFError:
            break

        text = text.strip()
        if not text:
            continue
        if text.lower() in EXIT_COMMANDS:
            break
        if text.startswith("/") and _handle_command(app, text):
            continue

        if app.agent.session.mode == "plan" and not app.agent.session.history:
            app.turn(app.agent.plan, text)
        else:
            app.turn(app.agent.continue_, text)
