"""Workspace containment checks for tool paths."""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass

from codeloop.errors import ExternalPathDisabled, ToolValidationError, WorkspaceBoundaryError

EXTERNAL_PATHS_MESSAGE = (
    "External paths are disabled. Set allow_external_paths: true in the config "
    "to allow access outside the workspace."
)

_IGNORED_SHELL_PATHS = {"/dev/null", "/dev/stdin", "/dev/stdout", "/dev/stderr"}
_URL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_SHELL_TOKEN_STRIP_RE = re.compile(r"^[`\"'()\[\]{}<>,;|&]+|[`\"'()\[\]{}<>,;|&]+$")


@dataclass
class ResolvedPath:
    abs_path: str
    rel_path: str
    is_external: bool


def is_subpath(child: str, parent: str) -> bool:
    """Lexical containment: ``child`` equals ``parent`` or lives below it."""
    child = os.path.normcase(os.path.normpath(child))
    parent = os.path.normcase(os.path.normpath(parent))
    try:
        return os.path.commonpath([child, parent]) == parent
    except ValueError:
        # different drives on Windows
        return False


def to_posix(path: str) -> str:
    return path.replace("\\", "/")


def _absolute(raw: str, base: str) -> str:
    expanded = os.path.expanduser(raw)
    if os.path.isabs(expanded):
        return os.path.normpath(expanded)
    return os.path.normpath(os.path.join(base, expanded))


def canonicalize(path: str) -> str:
    """Resolve symlinks on the nearest existing ancestor and rejoin the rest.

    Raises:
        OSError: If no ancestor can be resolved.
    """
    current = os.path.normpath(path)
    suffix: list[str] = []
    while not os.path.lexists(current):
        parent = os.path.dirname(current)
        if parent == current:
            raise FileNotFoundError(path)
        suffix.append(os.path.basename(current))
        current = parent
    resolved = os.path.realpath(current, strict=True)
    for part in reversed(suffix):
        resolved = os.path.join(resolved, part)
    return resolved


def resolve_tool_path(raw: str, workspace_root: str, allow_external: bool = False) -> ResolvedPath:
    """Resolve a tool path argument and classify it against the workspace.

    Containment is checked lexically and canonically; the canonical answer
    wins whenever it can be computed. When it cannot and external paths are
    disabled the check fails closed.

    Raises:
        ToolValidationError: If the path is empty.
        WorkspaceBoundaryError: If containment cannot be verified.
        ExternalPathDisabled: If the path is outside the workspace and
            external paths are not allowed.
    """
    value = (raw or "").strip()
    if not value:
        raise ToolValidationError("Path must be a non-empty string")

    root = os.path.normpath(os.path.abspath(workspace_root))
    abs_path = _absolute(value, root)
    lexical_inside = is_subpath(abs_path, root)

    canonical_inside: bool | None = None
    canonical_root = root
    canonical_abs = abs_path
    try:
        canonical_root = canonicalize(root)
        canonical_abs = canonicalize(abs_path)
        canonical_inside = is_subpath(canonical_abs, canonical_root)
    except OSError:
        if not allow_external:
            raise WorkspaceBoundaryError(
                f"Unable to verify that '{value}' is inside the workspace."
            ) from None

    inside = canonical_inside if canonical_inside is not None else lexical_inside
    if not inside:
        if not allow_external:
            raise ExternalPathDisabled(EXTERNAL_PATHS_MESSAGE, blocked_paths=[abs_path])
        return ResolvedPath(abs_path=abs_path, rel_path=to_posix(abs_path), is_external=True)

    if canonical_inside:
        rel = os.path.relpath(canonical_abs, canonical_root)
    else:
        rel = os.path.relpath(abs_path, root)
    return ResolvedPath(abs_path=abs_path, rel_path=to_posix(rel), is_external=False)


def normalize_permission_path(value: str, workspace_root: str | None) -> str:
    """Workspace-relative POSIX path for rule matching; external paths stay absolute."""
    if not workspace_root:
        return value
    root = os.path.normpath(os.path.abspath(workspace_root))
    abs_path = _absolute(value, root)
    if not is_subpath(abs_path, root):
        return abs_path
    rel = os.path.relpath(abs_path, root)
    return "." if rel == "." else to_posix(rel)


def _is_external(path: str, workspace_root: str) -> bool:
    try:
        return not is_subpath(canonicalize(path), canonicalize(workspace_root))
    except OSError:
        return True


def find_external_paths_in_command(command: str, workspace_root: str, cwd: str | None = None) -> list[str]:
    """Absolute paths referenced by a shell command that fall outside the workspace.

    Only tokens that look like filesystem paths (absolute, home-relative or
    containing a ``..`` segment) are considered; URLs and bare words are not.
    """
    base = _absolute(cwd, workspace_root) if cwd else os.path.abspath(workspace_root)
    try:
        tokens = shlex.split(command, posix=True)
    except ValueError:
        tokens = command.split()

    found: list[str] = []
    for token in tokens:
        token = _SHELL_TOKEN_STRIP_RE.sub("", token)
        if "=" in token:
            token = token[token.rindex("=") + 1:]
        if not token or token in _IGNORED_SHELL_PATHS or _URL_RE.match(token):
            continue
        segments = re.split(r"[\\/]", token)
        looks_like_path = token.startswith(("/", "~")) or ".." in segments
        if not looks_like_path:
            continue
        abs_path = _absolute(token, base)
        if _is_external(abs_path, workspace_root) and abs_path not in found:
            found.append(abs_path)
    return found
