"""User-message cleaning shared by preview extraction in discovery and conversion."""
from __future__ import annotations

import re
from typing import Any

from agentlogs import config

_IGNORE_STATUS_MESSAGES = {
    "[request interrupted by user]",
    "[request aborted by user]",
    "[request cancelled by user]",
}
_COMMAND_ENVELOPE_PATTERN = re.compile(r"^</?(?:command|local)-[a-z-]+>", re.IGNORECASE)
_SHELL_PROMPT_PATTERN = re.compile(r"^[α-ωΑ-Ω]\s", re.IGNORECASE)
_SYSTEM_REMINDER_PATTERN = re.compile(r"<system-reminder>[\s\S]*?</system-reminder>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_ALNUM_PATTERN = re.compile(r"[A-Za-z0-9]")

# Build-tool and stack-trace noise that is rarely a real prompt.
_NON_PROMPT_PREFIXES = (
    "npm ",
    "npm:",
    "npm error",
    "node:",
    "node.js",
    "error:",
    "fatal:",
    "warning:",
    "traceback (most recent call last):",
    "usage:",
    "hint:",
    "note:",
    "code:",
    "requirestack",
)

_PROMPT_KEYWORD_PATTERN = re.compile(
    r"\b("
    + "|".join(
        [
            "fix", "please", "should", "update", "change", "add", "remove", "create",
            "write", "implement", "refactor", "investigate", "explain", "help", "why",
            "what", "how", "need", "ensure", "make", "build", "let's", "optimize",
            "review", "check",
        ]
    )
    + r")\b",
    re.IGNORECASE,
)
_CUE_PHRASES = (
    "can you",
    "can we",
    "could you",
    "could we",
    "would you",
    "would we",
    "should we",
    "should i",
    "let's",
    "let us",
)

MAX_PREVIEW_LINES = 3


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_PATTERN.sub(" ", value).strip()


def strip_system_reminders(text: str) -> str:
    return _SYSTEM_REMINDER_PATTERN.sub("", text).strip()


def is_command_envelope(text: str) -> bool:
    return bool(_COMMAND_ENVELOPE_PATTERN.match(text))


def has_prompt_cue(value: str) -> bool:
    lower = value.lower()
    if "?" in lower or _PROMPT_KEYWORD_PATTERN.search(lower):
        return True
    return any(phrase in lower for phrase in _CUE_PHRASES)


def meaningful_lines(text: str) -> list[str]:
    lines: list[str] = []
    for raw_line in re.split(r"\r?\n", text):
        trimmed = raw_line.strip()
        if not trimmed:
            continue
        lower = trimmed.lower()
        if lower in _IGNORE_STATUS_MESSAGES:
            continue
        if is_command_envelope(trimmed) or _SHELL_PROMPT_PATTERN.match(trimmed):
            continue
        if lower.startswith(_NON_PROMPT_PREFIXES) and not has_prompt_cue(trimmed):
            continue
        if not _ALNUM_PATTERN.search(trimmed):
            continue
        lines.append(trimmed)
    return lines


def clean_user_message(text: Any, max_lines: int = MAX_PREVIEW_LINES) -> str | None:
    """Reduce a raw user utterance to its first meaningful lines, or None."""
    if not isinstance(text, str):
        return None
    lines = meaningful_lines(strip_system_reminders(text))
    if not lines:
        return None
    return collapse_whitespace(" ".join(lines[:max_lines])) or None


def truncate_preview(text: str | None, max_length: int = config.PREVIEW_MAX_LENGTH) -> str | None:
    if text is None:
        return None
    collapsed = collapse_whitespace(text)
    if not collapsed:
        return None
    if len(collapsed) <= max_length:
        return collapsed
    return collapsed[: max_length - 1] + "…"


def preview_from_text(text: Any) -> str | None:
    return truncate_preview(clean_user_message(text))
