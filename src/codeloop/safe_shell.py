"""Shell command safety classification and a scrubbed child-process environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, Literal, Mapping, Optional

ShellVerdict = Literal["allow", "deny", "needs_approval"]

# ── Default patterns ────────────────────────────────────────────────────────

SAFE_COMMANDS = frozenset({
    "ls", "dir", "pwd", "echo", "cat", "head", "tail", "wc", "grep", "find",
    "git", "npm", "npx", "yarn", "pnpm", "node", "python", "python3", "pip",
    "cargo", "go", "make", "cmake", "dotnet", "mvn", "gradle", "tsc", "eslint",
    "prettier", "jest", "mocha", "pytest", "docker", "kubectl", "terraform",
    "curl", "wget", "jq", "yq",
})

DEFAULT_DENYLIST = [
    r"\brm\s+-rf?\s+[/~]",
    r"\bsudo\b",
    r"\b(shutdown|reboot|halt)\b",
    r"\bdd\s+if=",
    r"\bmkfs",
    r"(?<![-=\w./])format(?![-.\w])",
    r">[>&]?\s*/dev/(?!null\b)",
]

_DENY_RE = [re.compile(p, re.IGNORECASE) for p in DEFAULT_DENYLIST]
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

_META_REASONS = {
    "separator": "Command contains shell operators (;, &&, ||, |) and requires approval",
    "redirect": "Command contains shell redirection (<, >) and requires approval",
    "background": "Command contains background chaining (&) and requires approval",
    "subshell": "Command contains command substitution (` or $()) and requires approval",
    "newline": "Command contains newlines and requires approval",
}


@dataclass
class ShellDecision:
    verdict: ShellVerdict
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict == "allow"


def find_first_shell_meta(command: str) -> Optional[str]:
    """Return the category of the first unquoted shell metacharacter, if any.

    Single quotes make everything literal up to the closing quote. Backslash
    escapes the next character outside single quotes. Inside double quotes
    only backticks and ``$(`` are live.
    """
    in_single = False
    in_double = False
    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        nxt = command[i + 1] if i + 1 < n else ""

        if in_single:
            if ch == "'":
                in_single = False
            i += 1
            continue

        if ch == "\\":
            i += 2
            continue

        if in_double:
            if ch == '"':
                in_double = False
            elif ch == "`" or (ch == "$" and nxt == "("):
                return "subshell"
            i += 1
            continue

        if ch == "'":
            in_single = True
        elif ch == '"':
            in_double = True
        elif ch in "\r\n":
            return "newline"
        elif ch in "<>":
            return "redirect"
        elif ch == ";":
            return "separator"
        elif ch == "&":
            return "separator" if nxt == "&" else "background"
        elif ch == "|":
            return "separator"
        elif ch == "`" or (ch == "$" and nxt == "("):
            return "subshell"
        i += 1
    return None


def _match_denylist(command: str) -> Optional[str]:
    for pattern in _DENY_RE:
        if pattern.search(command):
            return pattern.pattern
    return None


def get_base_command(command: str) -> str:
    """First real word of the command with leading ``NAME=value`` words removed."""
    for word in command.strip().split():
        if _ENV_ASSIGNMENT_RE.match(word):
            continue
        return re.split(r"[\\/]", word)[-1]
    return ""


def evaluate_shell_command(command: str) -> ShellDecision:
    """Classify a command as allow, deny or needs_approval.

    The destructive-pattern denylist is checked first so a dangerous command
    is denied even when it also contains operators.
    """
    text = (command or "").strip()
    if not text:
        return ShellDecision("needs_approval", "Empty command requires approval")

    matched = _match_denylist(text)
    if matched is not None:
        return ShellDecision("deny", f"Command matches blocked pattern: {matched}")

    meta = find_first_shell_meta(text)
    if meta is not None:
        return ShellDecision("needs_approval", _META_REASONS[meta])

    base = get_base_command(text)
    if base in SAFE_COMMANDS:
        return ShellDecision("allow")
    return ShellDecision("needs_approval", f"Command '{base}' requires approval")


# ── Child process environment ───────────────────────────────────────────────

SAFE_ENV_ALLOWLIST = (
    # POSIX
    "PATH", "HOME", "PWD", "OLDPWD", "SHELL", "TERM", "LANG", "LC_ALL", "LC_CTYPE",
    "USER", "LOGNAME", "TMPDIR", "TMP", "TEMP",
    # XDG
    "XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME", "XDG_RUNTIME_DIR",
    # SSH agent
    "SSH_AUTH_SOCK", "SSH_AGENT_PID",
    # TLS/CA
    "SSL_CERT_FILE", "SSL_CERT_DIR", "REQUESTS_CA_BUNDLE",
    "CI",
    # Windows
    "SystemRoot", "ComSpec", "PATHEXT", "WINDIR", "USERNAME", "USERPROFILE",
    "HOMEDRIVE", "HOMEPATH", "APPDATA", "LOCALAPPDATA", "ProgramFiles", "ProgramFiles(x86)",
)


def safe_child_env(
    base_env: Optional[Mapping[str, str]] = None,
    extra_allowlist: Iterable[str] = (),
) -> dict[str, str]:
    """Environment for shell tools with secrets (API keys, tokens) filtered out."""
    source = os.environ if base_env is None else base_env
    allowed = set(SAFE_ENV_ALLOWLIST) | {name for name in extra_allowlist if name}
    return {key: value for key, value in source.items() if key in allowed}
