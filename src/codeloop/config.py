"""Configuration management - Pydantic models with YAML loading and CLI overrides."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_DIR = Path.home() / ".codeloop"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

_EXAMPLE_CONFIG = (
    "Minimal example:\n"
    "  model: openai/gpt-4o\n\n"
    "With an OpenAI-compatible proxy:\n"
    "  model: litellm/gpt-4o\n"
    "  api_base: http://localhost:4000\n\n"
    "Optional fields: api_key, max_retries, mode, model_limits, compaction, memory, permissions"
)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


class CompactionConfig(BaseModel):
    """Context-budget management settings."""

    model_config = ConfigDict(extra="forbid")

    auto: bool = True
    prune: bool = True
    prune_protect_tokens: int = Field(default=40_000, ge=0)
    prune_minimum_tokens: int = Field(default=20_000, ge=0)
    tool_output_mode: Literal["afterToolCall", "onCompaction"] = "afterToolCall"


class ModelLimit(BaseModel):
    """Token limits for one model id."""

    model_config = ConfigDict(extra="forbid")

    context: int = Field(ge=0)
    output: int | None = Field(default=None, ge=0)


class MemoryFlushConfig(BaseModel):
    """Appending compaction summaries to a durable memory note."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    path: str = "MEMORY.md"
    max_chars: int = Field(default=8000, ge=500)


class PermissionRuleConfig(BaseModel):
    """A user-supplied permission rule appended after the mode defaults."""

    model_config = ConfigDict(extra="forbid")

    permission: str
    pattern: str = "*"
    action: Literal["allow", "ask", "deny"]


class AgentConfig(BaseModel):
    """Agent configuration with validation."""

    model_config = ConfigDict(extra="forbid")

    model: str
    api_base: str | None = None
    api_key: str | None = None

    # Model sampling parameters
    temperature: float = 0.0
    max_output_tokens: int = Field(default=4096, gt=0)

    # Loop behaviour
    max_retries: int = Field(default=3, ge=0)
    max_iterations: int = Field(default=50, gt=0)
    tool_timeout_sec: int = Field(default=60, gt=0)
    mode: Literal["build", "plan"] = "build"
    auto_approve: bool = False
    allow_external_paths: bool = False
    workspace_root: str | None = None
    task_max_output_chars: int = Field(default=8000, gt=0)

    model_limits: dict[str, ModelLimit] = Field(default_factory=dict)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    memory: MemoryFlushConfig = Field(default_factory=MemoryFlushConfig)
    permissions: list[PermissionRuleConfig] = Field(default_factory=list)

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Must start with http:// or https://")
        return v.rstrip("/")

    def get_model_limit(self, model_id: str | None = None) -> ModelLimit | None:
        return self.model_limits.get(model_id or self.model)

    def __repr__(self) -> str:
        api_key_display = "***" if self.api_key else "None"
        return (
            f"AgentConfig(model={self.model!r}, "
            f"api_base={self.api_base!r}, "
            f"api_key={api_key_display!r}, "
            f"mode={self.mode!r}, "
            f"max_output_tokens={self.max_output_tokens!r}, "
            f"max_retries={self.max_retries!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


def _format_validation_error(e: ValidationError) -> str:
    errors = []
    for err in e.errors():
        field = ".".join(str(loc) for loc in err["loc"])
        msg = err["msg"]
        errors.append(f"  - {field}: {msg}")
    return "\n".join(errors)


def load_config(config_path: Path | None = None) -> AgentConfig:
    """Load and validate config from YAML file.

    Args:
        config_path: Path to config file. Defaults to ~/.codeloop/config.yaml.

    Returns:
        Validated AgentConfig instance.

    Raises:
        ConfigError: If file is missing, empty, or contains invalid config.
    """
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        raise ConfigError(
            f"Configuration file not found.\n\n"
            f"Expected location: {path}\n\n"
            f"{_EXAMPLE_CONFIG}"
        )

    raw = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}\n\n  {e}") from None

    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration in {path}\n\n"
            f"  Config file is empty or not a valid YAML mapping.\n\n"
            f"{_EXAMPLE_CONFIG}"
        )

    try:
        return AgentConfig(**data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration in {path}\n\n{_format_validation_error(e)}"
        ) from None


def apply_cli_overrides(config: AgentConfig, **overrides) -> AgentConfig:
    """Apply CLI flag overrides to config. Returns a new AgentConfig instance.

    Override precedence: Defaults → YAML → CLI flags. ``None`` values are ignored.
    """
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return config

    try:
        return AgentConfig.model_validate(config.model_dump() | overrides)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid CLI override:\n\n{_format_validation_error(e)}"
        ) from None
