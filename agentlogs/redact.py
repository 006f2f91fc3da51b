"""Length-preserving secret redaction for JSON-like transcript payloads.

Every match of a secret pattern is replaced by a mask of the same length.
Structural characters inside a match (quotes, brackets, separators and line
breaks) are kept so redacted JSON stays parseable and line numbers do not
move. Patterns apply in list order, each over the previous pattern's output.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import BaseModel, ValidationError

from agentlogs import config

logger = logging.getLogger("agentlogs.redact")

DEFAULT_MASK_CHAR = "*"
PRESERVED_CHARS = frozenset("\n\r\t\"':,{}[]\\")
_CASE_INSENSITIVE_PREFIX = "(?i)"


class SecretPattern(BaseModel):
    name: str
    regex: str


@dataclass(frozen=True)
class PatternSet:
    """An immutable, compiled list of secret patterns."""

    patterns: tuple[SecretPattern, ...]
    compiled: tuple[re.Pattern[str], ...]

    def __len__(self) -> int:
        return len(self.compiled)


def _compile(pattern: SecretPattern) -> re.Pattern[str] | None:
    source = pattern.regex
    flags = 0
    if source.startswith(_CASE_INSENSITIVE_PREFIX):
        source = source[len(_CASE_INSENSITIVE_PREFIX):]
        flags = re.IGNORECASE
    try:
        return re.compile(source, flags)
    except re.error as exc:
        logger.warning("Skipping invalid secret pattern %r: %s", pattern.name, exc)
        return None


def compile_patterns(patterns: Iterable[SecretPattern | dict[str, Any]]) -> PatternSet:
    """Build a :class:`PatternSet`; invalid entries and regexes are skipped."""
    kept: list[SecretPattern] = []
    compiled: list[re.Pattern[str]] = []
    for raw in patterns:
        try:
            pattern = raw if isinstance(raw, SecretPattern) else SecretPattern.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed secret pattern entry: %r", raw)
            continue
        regex = _compile(pattern)
        if regex is None:
            continue
        kept.append(pattern)
        compiled.append(regex)
    return PatternSet(patterns=tuple(kept), compiled=tuple(compiled))


def load_patterns_file(path: Path) -> PatternSet:
    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    entries = payload.get("patterns") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        logger.warning("Secret pattern file %s has no pattern list", path)
        return PatternSet(patterns=(), compiled=())
    return compile_patterns(entries)


@lru_cache(maxsize=1)
def load_default_patterns() -> PatternSet:
    """The bundled pattern set, loaded once on first use."""
    pattern_set = load_patterns_file(config.SECRET_PATTERNS_PATH)
    logger.debug("Loaded %d secret patterns", len(pattern_set))
    return pattern_set


def mask_match(text: str, mask_char: str = DEFAULT_MASK_CHAR) -> str:
    return "".join(char if char in PRESERVED_CHARS else mask_char for char in text)


def redact_text(text: str, patterns: Optional[PatternSet] = None, placeholder: str = DEFAULT_MASK_CHAR) -> str:
    pattern_set = patterns if patterns is not None else load_default_patterns()
    mask_char = placeholder[0] if placeholder else DEFAULT_MASK_CHAR
    result = text
    for regex in pattern_set.compiled:
        result = regex.sub(lambda match: mask_match(match.group(0), mask_char), result)
    return result


def redact_secrets(value: Any, patterns: Optional[PatternSet] = None, placeholder: str = DEFAULT_MASK_CHAR) -> Any:
    """Recursively redact every string leaf of ``value``.

    Dicts, lists and tuples are rebuilt with redacted leaves; mapping keys are
    left alone. Datetimes, numbers and other scalars pass through unchanged.
    """
    pattern_set = patterns if patterns is not None else load_default_patterns()

    def _walk(item: Any) -> Any:
        if isinstance(item, str):
            return redact_text(item, pattern_set, placeholder)
        if isinstance(item, dict):
            return {key: _walk(entry) for key, entry in item.items()}
        if isinstance(item, list):
            return [_walk(entry) for entry in item]
        if isinstance(item, tuple):
            return tuple(_walk(entry) for entry in item)
        return item

    return _walk(value)
