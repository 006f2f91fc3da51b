"""Helpers shared by the per-source transcript converters."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from agentlogs.date_utils import latest_timestamp, timestamp_ms, utc_now
from agentlogs.models import (
    GitContext,
    ModelUsage,
    TokenUsage,
    ToolCallMessage,
    Transcript,
    UserMessage,
)
from agentlogs.parsers.stats import calculate_transcript_stats

logger = logging.getLogger("agentlogs.parsers")

# modelUsage key for usage reported without a resolvable model id.
UNKNOWN_MODEL = "unknown"


def coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_str(value: Any) -> str | None:
    """Return ``value`` when it is a non-empty string."""
    if isinstance(value, str) and value:
        return value
    return None


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_json_lines(lines: Iterable[str]) -> list[dict[str, Any]]:
    """Decode JSON object lines, skipping blanks and malformed entries."""
    records: list[dict[str, Any]] = []
    skipped = 0
    for line in lines:
        token = line.strip()
        if not token:
            continue
        try:
            payload = json.loads(token)
        except ValueError:
            skipped += 1
            continue
        if isinstance(payload, dict):
            records.append(payload)
    if skipped:
        logger.debug("Skipped %d malformed JSON lines", skipped)
    return records


def read_jsonl_file(path: Path) -> list[dict[str, Any]] | None:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Could not read %s: %s", path, exc)
        return None
    return parse_json_lines(text.splitlines())


def order_messages(messages: Sequence[Any]) -> list[Any]:
    """Stable sort by event time; untimed messages inherit the previous time."""
    keyed: list[tuple[int, int, Any]] = []
    previous = 0
    for index, message in enumerate(messages):
        ms = timestamp_ms(getattr(message, "timestamp", None)) or previous
        previous = ms
        keyed.append((ms, index, message))
    keyed.sort(key=lambda item: (item[0], item[1]))
    return [message for _, _, message in keyed]


def blended_tokens(usage: TokenUsage) -> int:
    non_cached = max(0, usage.inputTokens - usage.cachedInputTokens)
    return non_cached + usage.outputTokens + usage.reasoningOutputTokens


def assemble_transcript(
    *,
    source: str,
    session_id: str,
    messages: Sequence[Any],
    cwd: str,
    git: GitContext | None,
    preview: str | None,
    model: str | None,
    model_usage: Mapping[str, TokenUsage],
    cost_usd: float,
    client_version: str | None = None,
    fallback_timestamp: datetime | None = None,
    now: datetime | None = None,
    extra_timestamps: Iterable[Any] = (),
    token_usage: TokenUsage | None = None,
) -> Transcript:
    """Build the canonical transcript and its derived counters.

    ``timestamp`` is the latest message (or extra event) time; the fallback (file mtime) and
    then ``now`` are only used when no message carries a timestamp.
    """
    ordered = order_messages(messages)
    timestamp = latest_timestamp([*(message.timestamp for message in ordered), *extra_timestamps])
    if timestamp is None:
        timestamp = fallback_timestamp or now or utc_now()

    if token_usage is None:
        token_usage = TokenUsage()
        for usage in model_usage.values():
            token_usage.add(usage)

    stats = calculate_transcript_stats(ordered)
    return Transcript(
        id=session_id,
        source=source,
        timestamp=timestamp,
        preview=preview,
        model=model,
        clientVersion=client_version,
        blendedTokens=blended_tokens(token_usage),
        costUsd=cost_usd,
        messageCount=len(ordered),
        userMessageCount=sum(1 for message in ordered if isinstance(message, UserMessage)),
        toolCount=sum(1 for message in ordered if isinstance(message, ToolCallMessage)),
        filesChanged=stats.filesChanged,
        linesAdded=stats.linesAdded,
        linesRemoved=stats.linesRemoved,
        linesModified=stats.linesModified,
        tokenUsage=token_usage,
        modelUsage=[
            ModelUsage(model=name, usage=usage.model_copy()) for name, usage in model_usage.items()
        ],
        git=git,
        cwd=cwd,
        messages=ordered,
    )
