"""Permission rules: wildcard matching, rulesets and per-tool policy helpers."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Literal, Optional, Sequence

from codeloop.tool_guard import normalize_permission_path
from codeloop.tools.base import ToolDefinition

PermissionAction = Literal["allow", "ask", "deny"]

EDIT_TOOL_NAMES = frozenset({"edit", "write"})

PLAN_MODE_ALLOWED_PERMISSIONS = (
    "read", "list", "glob", "grep", "lsp", "memory", "skill", "task", "todoread", "todowrite",
)

PLAN_MODE_DENIED_MESSAGE = "Tool is disabled in Plan mode. Switch to Build mode to use it."


@dataclass(frozen=True)
class PermissionRule:
    permission: str
    pattern: str
    action: PermissionAction


Ruleset = Sequence[PermissionRule]

BUILD_RULESET: tuple[PermissionRule, ...] = (PermissionRule("*", "*", "allow"),)

PLAN_RULESET: tuple[PermissionRule, ...] = (
    PermissionRule("*", "*", "deny"),
    *(PermissionRule(name, "*", "allow") for name in PLAN_MODE_ALLOWED_PERMISSIONS),
)


@lru_cache(maxsize=512)
def _compile_wildcard(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def wildcard_match(pattern: str, value: str) -> bool:
    """Match ``value`` against a ``*``/``?`` wildcard; empty or ``*`` matches anything."""
    pattern = (pattern or "").strip()
    if not pattern or pattern == "*":
        return True
    return _compile_wildcard(pattern).match(value) is not None


def evaluate_permission(permission: str, value: str, ruleset: Ruleset) -> Optional[PermissionRule]:
    """Return the last rule whose permission and pattern both match, or None."""
    for rule in reversed(ruleset):
        if wildcard_match(rule.permission, permission) and wildcard_match(rule.pattern, value):
            return rule
    return None


def combine_actions(*actions: PermissionAction) -> PermissionAction:
    """deny beats ask beats allow."""
    if "deny" in actions:
        return "deny"
    if "ask" in actions:
        return "ask"
    return "allow"


def default_ruleset(mode: str, extra: Optional[Iterable[PermissionRule]] = None) -> list[PermissionRule]:
    """Mode defaults followed by user rules (which therefore win on conflict)."""
    rules = list(PLAN_RULESET if mode == "plan" else BUILD_RULESET)
    rules.extend(extra or ())
    return rules


# ── Per-tool policy ─────────────────────────────────────────────────────────


def get_tool_permission_name(definition: ToolDefinition) -> str:
    explicit = (definition.permission.name or "").strip()
    if explicit:
        return explicit
    if definition.name in EDIT_TOOL_NAMES:
        return "edit"
    return definition.name


def _pattern_values(definition: ToolDefinition, args: dict[str, Any], kind: str | None = None):
    for rule in definition.permission.patterns:
        if not rule.arg or (kind is not None and rule.kind != kind):
            continue
        raw = args.get(rule.arg)
        if not isinstance(raw, str) or not raw.strip():
            continue
        yield rule, raw.strip()


def get_tool_permission_patterns(
    definition: ToolDefinition, args: dict[str, Any], workspace_root: str | None = None
) -> list[str]:
    """One pattern per declared argument present in the call; ``["*"]`` otherwise."""
    patterns = []
    for rule, value in _pattern_values(definition, args or {}):
        if rule.kind == "path":
            patterns.append(normalize_permission_path(value, workspace_root))
        else:
            patterns.append(value)
    return patterns or ["*"]


def get_external_path_patterns(
    definition: ToolDefinition, args: dict[str, Any], workspace_root: str | None = None
) -> list[str]:
    """Path arguments that resolve outside the workspace, for tools that accept them."""
    if not definition.permission.supports_external_paths or not workspace_root:
        return []
    found: list[str] = []
    for _, value in _pattern_values(definition, args or {}, kind="path"):
        normalized = normalize_permission_path(value, workspace_root)
        if os.path.isabs(normalized) and normalized not in found:
            found.append(normalized)
    return found


def evaluate_tool_permission_action(permission: str, patterns: Iterable[str], ruleset: Ruleset) -> PermissionAction:
    """Combine the per-pattern verdicts; a pattern no rule matches counts as ask."""
    action: PermissionAction = "allow"
    for pattern in patterns:
        rule = evaluate_permission(permission, pattern, ruleset)
        action = combine_actions(action, rule.action if rule else "ask")
    return action


def is_tool_allowed_in_plan_mode(definition: ToolDefinition) -> bool:
    return definition.permission.read_only or definition.name in ("task", "todowrite")


# ── Dotenv guard ────────────────────────────────────────────────────────────

DOTENV_ALLOWLIST_SUFFIXES = (".env.sample", ".env.example", ".example", ".env.template", ".sample", ".template")
_DOTENV_BASENAME_RE = re.compile(r"^\.env(\.|$)")
_DOTENV_TOKEN_RE = re.compile(r"(^|[^A-Za-z0-9_])(\.env(?:\.[A-Za-z0-9_.-]+)?)(?=$|[^A-Za-z0-9_.-])")
_SHELL_TOKEN_STRIP_RE = re.compile(r"^[`\"'()\[\]{}<>,;|&]+|[`\"'()\[\]{}<>,;|&]+$")


def is_protected_dotenv_path(value: str) -> bool:
    """True for ``.env``/``.env.local``-style names that are not templates."""
    basename = re.split(r"[\\/]", value.strip())[-1].lower()
    if not _DOTENV_BASENAME_RE.match(basename):
        return False
    return not basename.endswith(DOTENV_ALLOWLIST_SUFFIXES)


def _dotenv_mentions(text: str) -> list[str]:
    return [m.group(2) for m in _DOTENV_TOKEN_RE.finditer(text) if is_protected_dotenv_path(m.group(2))]


def _add(out: list[str], value: str) -> None:
    if value and value not in out:
        out.append(value)


def find_dotenv_targets(definition: ToolDefinition, args: dict[str, Any]) -> list[str]:
    """Protected dotenv files a call would touch; any hit forces manual approval."""
    out: list[str] = []
    args = args or {}

    file_path = args.get("file_path")
    if isinstance(file_path, str) and is_protected_dotenv_path(file_path):
        _add(out, file_path)

    if definition.name == "grep":
        search_path = args.get("path")
        if isinstance(search_path, str) and is_protected_dotenv_path(search_path):
            _add(out, search_path)
        include = args.get("include")
        if isinstance(include, str):
            for token in include.split():
                token = _SHELL_TOKEN_STRIP_RE.sub("", token)
                if token and is_protected_dotenv_path(token):
                    _add(out, token)
            for token in _dotenv_mentions(include):
                _add(out, token)

    if definition.is_shell:
        command = args.get("command")
        if isinstance(command, str):
            for token in command.split():
                token = _SHELL_TOKEN_STRIP_RE.sub("", token)
                rhs = token[token.rindex("=") + 1:] if "=" in token else token
                if rhs and is_protected_dotenv_path(rhs):
                    _add(out, rhs)
            for token in _dotenv_mentions(command):
                _add(out, token)

    return out
