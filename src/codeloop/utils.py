"""Shared text utilities."""

import re

THINK_BLOCK_RE = re.compile(r"<think>[\s\S]*?</think>\s*|</?think>\s*", re.IGNORECASE)

TOOL_BLOCK_RE = re.compile(
    r"(<tool_call>[\s\S]*?</tool_call>\s*"
    r"|<tool_code>[\s\S]*?</tool_code>\s*"
    r"|<invoke>[\s\S]*?</invoke>\s*"
    r"|\[TOOL_CALL\][\s\S]*?\[/TOOL_CALL\]\s*)",
    re.IGNORECASE,
)

_NUMBERED_RE = re.compile(r"^\d+\.\s+\S")
_BULLET_RE = re.compile(r"^[-*•]\s+\S")


def truncate_output(text: str, max_length: int = 30000, indicator: str | None = None) -> str:
    """Truncate output to max_length characters.

    Args:
        text: The text to truncate
        max_length: Maximum length (default 30000)
        indicator: Suffix appended after the cut

    Returns:
        Truncated text with indicator appended
    """
    if len(text) <= max_length:
        return text

    if indicator is None:
        indicator = f"\n\n[Output truncated - showing first {max_length} characters]"
    return text[:max_length] + indicator


def strip_think_blocks(content: str) -> str:
    """Remove ``<think>`` blocks and stray think tags."""
    return THINK_BLOCK_RE.sub("", content or "")


def strip_tool_blocks(content: str) -> str:
    """Remove tool-call markup some models leak into their visible text."""
    return TOOL_BLOCK_RE.sub("", content or "")


def extract_plan_from_reasoning(reasoning: str) -> str:
    """Recover a plan from reasoning text when a plan-mode answer is empty.

    Prefers numbered steps, then bullet points (renumbered), then trailing
    questions. Returns an empty string when nothing plan-like is found.
    """
    cleaned = strip_tool_blocks(strip_think_blocks(reasoning or "")).replace("\r\n", "\n")
    lines = [line.strip() for line in cleaned.split("\n") if line.strip()]

    numbered = [line for line in lines if _NUMBERED_RE.match(line)]
    if numbered:
        return "\n".join(numbered[:12]).strip()

    bullets = [re.sub(r"^[-*•]\s+", "", line).strip() for line in lines if _BULLET_RE.match(line)]
    bullets = [b for b in bullets if b]
    if bullets:
        return "\n".join(f"{i}. {item}" for i, item in enumerate(bullets[:8], start=1)).strip()

    questions = [line for line in lines if re.search(r"\?\s*$", line)][:3]
    if questions:
        questions = [re.sub(r"^\d+\.\s+", "", q) for q in questions]
        return "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1)).strip()

    return ""
