"""Health scoring and anti-pattern detection over canonical transcripts."""
from __future__ import annotations

import difflib
import json
import re
from typing import Any, Iterable

from agentlogs.date_utils import parse_timestamp
from agentlogs.models import (
    AnalysisMetrics,
    AnalysisResult,
    AntiPattern,
    ThinkingMessage,
    ToolCallMessage,
    Transcript,
)

# Overflow and truncation markers as providers and tools report them.
_CONTEXT_OVERFLOW_PATTERNS = (
    re.compile(r"context[ _-]?(?:length|window|limit)", re.IGNORECASE),
    re.compile(r"maximum context", re.IGNORECASE),
    re.compile(r"token limit", re.IGNORECASE),
    re.compile(r"too many tokens", re.IGNORECASE),
    re.compile(r"(?:prompt|input|request|output|response|file)\b[^\n]{0,40}\btoo (?:large|long)", re.IGNORECASE),
    re.compile(r"output (?:was |has been )?truncated", re.IGNORECASE),
    re.compile(r"\[truncated\]|\(truncated\)|<truncated>", re.IGNORECASE),
)

_EXIT_CODE_KEYS = ("exitCode", "exit_code", "exitcode", "returncode")
_ERROR_STATUSES = {"error", "failed", "failure", "errored"}
# Outputs of these tools are file or search content and only count when the call failed.
_CONTENT_TOOLS = {"Read", "Grep", "Glob"}

RETRY_SIMILARITY = 0.9
RETRY_THRESHOLD = 2
HIGH_RETRY_THRESHOLD = 5
TOOL_FAILURE_RATE_THRESHOLD = 0.3
HIGH_TOOL_FAILURE_RATE = 0.5
MIN_TOOL_CALLS_FOR_FAILURE_RATE = 3
EXTENDED_REASONING_CHARS = 400
LARGE_TOKEN_USAGE = 120_000
LONG_IDLE_GAP_MS = 30 * 60 * 1000

RETRY_PENALTY = 5
ERROR_PENALTY = 3
CONTEXT_OVERFLOW_PENALTY = 10
SEVERITY_PENALTIES = {"high": 15, "medium": 10, "low": 5}


def _tool_calls(transcript: Transcript) -> list[ToolCallMessage]:
    return [message for message in transcript.messages if isinstance(message, ToolCallMessage)]


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _exit_code(output: dict[str, Any]) -> int | None:
    for key in _EXIT_CODE_KEYS:
        value = output.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
    return None


def is_tool_error(call: ToolCallMessage) -> bool:
    """A call failed when it is flagged, carries an error, or exited nonzero."""
    if call.isError is True:
        return True
    if _non_empty_string(call.error):
        return True
    output = call.output
    if not isinstance(output, dict):
        return False
    exit_code = _exit_code(output)
    if exit_code is not None and exit_code != 0:
        return True
    if _non_empty_string(output.get("error")):
        return True
    status = output.get("status")
    return isinstance(status, str) and status.strip().lower() in _ERROR_STATUSES


def _input_fingerprint(value: Any) -> str:
    if isinstance(value, str):
        return " ".join(value.split())
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _similar_inputs(left: Any, right: Any) -> bool:
    first = _input_fingerprint(left)
    second = _input_fingerprint(right)
    if first == second:
        return True
    return difflib.SequenceMatcher(None, first, second).ratio() >= RETRY_SIMILARITY


def count_retries(calls: list[ToolCallMessage]) -> int:
    """Count calls that repeat a failed call with the same tool and (near-)identical input."""
    return sum(
        1
        for previous, current in zip(calls, calls[1:])
        if is_tool_error(previous)
        and previous.toolName
        and previous.toolName == current.toolName
        and _similar_inputs(previous.input, current.input)
    )


def _has_overflow_marker(candidate: Any) -> bool:
    if isinstance(candidate, str):
        return any(pattern.search(candidate) for pattern in _CONTEXT_OVERFLOW_PATTERNS)
    if isinstance(candidate, dict):
        return any(_has_overflow_marker(value) for value in candidate.values() if isinstance(value, str))
    return False


def is_context_overflow(call: ToolCallMessage) -> bool:
    if _has_overflow_marker(call.error):
        return True
    if call.toolName in _CONTENT_TOOLS and not is_tool_error(call):
        return False
    return _has_overflow_marker(call.output)


def count_context_overflows(calls: list[ToolCallMessage]) -> int:
    return sum(1 for call in calls if is_context_overflow(call))


def _sorted_message_times(transcript: Transcript) -> list[int]:
    times: list[int] = []
    for message in transcript.messages:
        parsed = parse_timestamp(message.timestamp)
        if parsed is not None:
            times.append(int(parsed.timestamp() * 1000))
    return sorted(times)


def _duration_ms(times: list[int]) -> int:
    if len(times) < 2:
        return 0
    return times[-1] - times[0]


def _long_gaps(times: list[int]) -> list[int]:
    return [later - earlier for earlier, later in zip(times, times[1:]) if later - earlier > LONG_IDLE_GAP_MS]


def _failure_rate(metrics: AnalysisMetrics) -> float:
    return metrics.errors / metrics.toolCalls if metrics.toolCalls > 0 else 0.0


def _derive_anti_patterns(
    metrics: AnalysisMetrics,
    transcript: Transcript,
    idle_gaps: list[int],
) -> list[AntiPattern]:
    anti_patterns: list[AntiPattern] = []

    if metrics.retries > RETRY_THRESHOLD:
        anti_patterns.append(
            AntiPattern(
                type="retry_loops",
                description=f"Detected {metrics.retries} retries of failed tool calls",
                severity="high" if metrics.retries > HIGH_RETRY_THRESHOLD else "medium",
            )
        )

    if metrics.contextOverflows > 0:
        anti_patterns.append(
            AntiPattern(
                type="context_overflow",
                description=f"Detected {metrics.contextOverflows} context overflow errors",
                severity="high",
            )
        )

    failure_rate = _failure_rate(metrics)
    if failure_rate > TOOL_FAILURE_RATE_THRESHOLD and metrics.toolCalls >= MIN_TOOL_CALLS_FOR_FAILURE_RATE:
        anti_patterns.append(
            AntiPattern(
                type="tool_failures",
                description=f"Tool failure rate {failure_rate * 100:.1f}% across {metrics.toolCalls} calls",
                severity="high" if failure_rate > HIGH_TOOL_FAILURE_RATE else "medium",
            )
        )

    long_thinking = sum(
        1
        for message in transcript.messages
        if isinstance(message, ThinkingMessage) and len(message.text or "") > EXTENDED_REASONING_CHARS
    )
    if long_thinking > 0:
        anti_patterns.append(
            AntiPattern(
                type="extended_reasoning",
                description=f"Detected {long_thinking} extended thinking segments (>{EXTENDED_REASONING_CHARS} chars)",
                severity="medium" if long_thinking > 2 else "low",
            )
        )

    total_tokens = transcript.tokenUsage.totalTokens
    if total_tokens > LARGE_TOKEN_USAGE:
        anti_patterns.append(
            AntiPattern(
                type="large_token_usage",
                description=f"Session used {total_tokens:,} tokens",
                severity="low",
            )
        )

    if idle_gaps:
        longest_minutes = max(idle_gaps) // 60_000
        anti_patterns.append(
            AntiPattern(
                type="long_idle_gap",
                description=f"Detected {len(idle_gaps)} idle gaps over 30 minutes (longest {longest_minutes} min)",
                severity="low",
            )
        )

    return anti_patterns


def _derive_recommendations(metrics: AnalysisMetrics, anti_patterns: Iterable[AntiPattern]) -> list[str]:
    types = {pattern.type for pattern in anti_patterns}
    recommendations: list[str] = []

    if metrics.retries > RETRY_THRESHOLD:
        recommendations.append("Review why the assistant repeated the same tool; consider improving tool feedback.")
    if metrics.contextOverflows > 0:
        recommendations.append("Break large tasks into smaller chunks to avoid context overflows.")
    if _failure_rate(metrics) > TOOL_FAILURE_RATE_THRESHOLD:
        recommendations.append("Audit tool implementations and ensure proper error handling for frequent failures.")
    if "extended_reasoning" in types:
        recommendations.append("Consider capping reasoning output or using short responses to stay within limits.")
    if "large_token_usage" in types:
        recommendations.append("Large token usage detected; evaluate opportunities to trim prompts or leverage caching.")
    if "long_idle_gap" in types:
        recommendations.append("Split long-running work into separate sessions instead of resuming after long pauses.")

    return recommendations


def calculate_health_score(metrics: AnalysisMetrics, anti_patterns: Iterable[AntiPattern]) -> int:
    """Start at 100 and subtract fixed penalties; clamped to 0..100."""
    score = 100
    score -= metrics.retries * RETRY_PENALTY
    score -= metrics.errors * ERROR_PENALTY
    score -= metrics.contextOverflows * CONTEXT_OVERFLOW_PENALTY
    for pattern in anti_patterns:
        score -= SEVERITY_PENALTIES.get(pattern.severity, 0)
    return max(0, min(100, score))


def analyze_transcript(transcript: Transcript) -> AnalysisResult:
    calls = _tool_calls(transcript)
    times = _sorted_message_times(transcript)
    metrics = AnalysisMetrics(
        totalEvents=len(transcript.messages),
        toolCalls=len(calls),
        errors=sum(1 for call in calls if is_tool_error(call)),
        retries=count_retries(calls),
        contextOverflows=count_context_overflows(calls),
        duration=_duration_ms(times),
    )
    anti_patterns = _derive_anti_patterns(metrics, transcript, _long_gaps(times))
    return AnalysisResult(
        transcriptId=transcript.id,
        metrics=metrics,
        antiPatterns=anti_patterns,
        recommendations=_derive_recommendations(metrics, anti_patterns),
        healthScore=calculate_health_score(metrics, anti_patterns),
    )
