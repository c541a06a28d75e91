"""codeloop - interactive coding agent loop over LiteLLM."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("codeloop")
except PackageNotFoundError:
    __version__ = "0.0.0"

from codeloop.agent import Agent
from codeloop.callbacks import AgentCallbacks, ToolCall, ToolHooks
from codeloop.config import AgentConfig, ConfigError, load_config
from codeloop.core.tool_result import ToolResult
from codeloop.errors import AbortedError, AgentBusyError, AgentError
from codeloop.session import Session, SessionStore
