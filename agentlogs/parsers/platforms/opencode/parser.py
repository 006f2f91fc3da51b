"""Convert ``opencode export`` payloads into canonical transcripts."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from agentlogs.date_utils import file_mtime, normalize_timestamp
from agentlogs.git_context import resolve_git_context
from agentlogs.model_identity import join_provider_model
from agentlogs.models import (
    AgentMessage,
    GitContext,
    ThinkingMessage,
    TokenUsage,
    ToolCallMessage,
    Transcript,
    UserMessage,
)
from agentlogs.parsers.common import (
    UNKNOWN_MODEL,
    as_dict,
    as_str,
    assemble_transcript,
    coerce_float,
    coerce_int,
)
from agentlogs.parsers.platforms.opencode import cli
from agentlogs.parsers.shell_reclassify import reclassify_shell_call
from agentlogs.paths import format_cwd_with_tilde, relativize_path
from agentlogs.previews import truncate_preview
from agentlogs.pricing import PricingTable, calculate_cost

logger = logging.getLogger("agentlogs.parsers.opencode")

SOURCE = "opencode"

TOOL_NAME_MAP = {
    "shell": "Bash",
    "bash": "Bash",
    "read_file": "Read",
    "read": "Read",
    "write_file": "Write",
    "write": "Write",
    "edit_file": "Edit",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "find": "Glob",
    "list_files": "Glob",
}

_FILE_TOOLS = {"Read", "Write", "Edit"}
_PATH_KEYS = ("filePath", "file_path", "path", "workdir")


@dataclass
class _ConversionState:
    cwd: str | None
    messages: list[Any] = field(default_factory=list)
    user_texts: list[str] = field(default_factory=list)
    model_usage: dict[str, TokenUsage] = field(default_factory=dict)
    cache_creation: dict[str, int] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)
    reported_cost: float = 0.0
    primary_model: str | None = None
    event_times: list[Any] = field(default_factory=list)


def _created_ms(message: Any) -> int:
    return coerce_int(as_dict(as_dict(as_dict(message).get("info")).get("time")).get("created"))


def _message_model(info: Mapping[str, Any]) -> str | None:
    nested = as_dict(info.get("model"))
    model_id = info.get("modelID") or nested.get("modelID")
    provider_id = info.get("providerID") or nested.get("providerID")
    return join_provider_model(provider_id, model_id)


def _tool_input(tool_name: str, raw_input: Any, cwd: str | None) -> Any:
    if not isinstance(raw_input, dict):
        return raw_input
    record = dict(raw_input)
    if cwd:
        for key in _PATH_KEYS:
            if isinstance(record.get(key), str):
                record[key] = relativize_path(record[key], cwd)
    # Stats and sensitive-file checks look for ``file_path``.
    if tool_name in _FILE_TOOLS and isinstance(record.get("filePath"), str) and "file_path" not in record:
        record["file_path"] = record.pop("filePath")
    return record


def _tool_output(tool_name: str, output: Any, metadata: Mapping[str, Any]) -> Any:
    if tool_name == "Bash" and metadata:
        result: dict[str, Any] = {}
        if isinstance(metadata.get("output"), str):
            result["stdout"] = metadata["output"]
        exit_code = metadata.get("exit")
        if isinstance(exit_code, (int, float)) and not isinstance(exit_code, bool):
            result["exitCode"] = exit_code
        if isinstance(metadata.get("description"), str):
            result["description"] = metadata["description"]
        return result or output
    if tool_name == "Read" and metadata.get("preview"):
        return {"content": metadata["preview"]}
    if tool_name == "Edit" and isinstance(metadata.get("filediff"), dict):
        filediff = metadata["filediff"]
        return {
            "diff": metadata.get("diff"),
            "additions": filediff.get("additions"),
            "deletions": filediff.get("deletions"),
        }
    if tool_name == "Write" and metadata:
        return {"created": not metadata.get("exists")}
    return output


def _tool_call(part: Mapping[str, Any], timestamp: str | None, model: str | None, cwd: str | None) -> ToolCallMessage:
    raw_name = as_str(part.get("tool")) or ""
    tool_name = TOOL_NAME_MAP.get(raw_name.lower(), raw_name)
    state = as_dict(part.get("state"))
    error = as_str(state.get("error"))
    call = ToolCallMessage(
        id=as_str(part.get("callID")) or as_str(part.get("id")),
        toolName=tool_name,
        input=_tool_input(tool_name, state.get("input"), cwd),
        output=_tool_output(tool_name, state.get("output"), as_dict(state.get("metadata"))),
        error=error,
        isError=state.get("status") == "error" or bool(error),
        timestamp=timestamp,
        model=model,
    )
    return reclassify_shell_call(call, cwd)


def _record_usage(state: _ConversionState, info: Mapping[str, Any], model: str | None) -> None:
    tokens = as_dict(info.get("tokens"))
    if not tokens:
        return
    cache = as_dict(tokens.get("cache"))
    cache_read = coerce_int(cache.get("read"))
    cache_write = coerce_int(cache.get("write"))
    input_tokens = coerce_int(tokens.get("input")) + cache_read + cache_write
    output_tokens = coerce_int(tokens.get("output"))
    reasoning = coerce_int(tokens.get("reasoning"))
    usage = TokenUsage(
        inputTokens=input_tokens,
        cachedInputTokens=cache_read,
        outputTokens=output_tokens,
        reasoningOutputTokens=reasoning,
        totalTokens=input_tokens + output_tokens + reasoning,
    )
    state.usage.add(usage)
    key = model or UNKNOWN_MODEL
    state.model_usage.setdefault(key, TokenUsage()).add(usage)
    state.cache_creation[key] = state.cache_creation.get(key, 0) + cache_write


def _handle_message(state: _ConversionState, message: Mapping[str, Any]) -> None:
    info = as_dict(message.get("info"))
    role = info.get("role")
    times = as_dict(info.get("time"))
    timestamp = normalize_timestamp(times.get("created"))
    state.event_times.extend([times.get("created"), times.get("completed")])
    model = _message_model(info) if role == "assistant" else None

    if role == "assistant":
        if model and state.primary_model is None:
            state.primary_model = model
        _record_usage(state, info, model)
        cost = coerce_float(info.get("cost"))
        if cost:
            state.reported_cost += cost

    for part in message.get("parts") or []:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type in {"step-start", "step-finish"}:
            continue
        if part_type == "text":
            text = (as_str(part.get("text")) or "").strip()
            if not text:
                continue
            if role == "user":
                state.user_texts.append(text)
                state.messages.append(UserMessage(text=text, id=as_str(info.get("id")), timestamp=timestamp))
            else:
                state.messages.append(
                    AgentMessage(text=text, id=as_str(info.get("id")), timestamp=timestamp, model=model)
                )
        elif part_type == "reasoning":
            text = (as_str(part.get("text")) or "").strip()
            if text:
                state.messages.append(ThinkingMessage(text=text, timestamp=timestamp, model=model))
        elif part_type == "tool":
            state.messages.append(_tool_call(part, timestamp, model, state.cwd))
        else:
            logger.debug("Ignoring OpenCode part of type %s", part_type)


def _preview(user_texts: list[str]) -> str | None:
    for text in user_texts:
        if text.startswith("<") and ">" in text:
            continue
        return truncate_preview(text.strip("\"'"))
    return truncate_preview(user_texts[0]) if user_texts else None


def _relative_cwd(messages: list[Any]) -> str | None:
    for message in messages:
        path_info = as_dict(as_dict(as_dict(message).get("info")).get("path"))
        root, cwd = as_str(path_info.get("root")), as_str(path_info.get("cwd"))
        if not root or not cwd:
            continue
        if root == cwd:
            return None
        relative = os.path.relpath(cwd, root)
        if relative != ".." and not relative.startswith("../") and not os.path.isabs(relative):
            return relative
    return None


_UNSET: Any = object()


def _build_transcript(
    export: Mapping[str, Any],
    now: datetime | None,
    pricing: PricingTable | None,
    git: GitContext | None,
    cwd: str | None,
    fallback_timestamp: datetime | None,
) -> Transcript | None:
    info = as_dict(export.get("info"))
    raw_messages = [message for message in export.get("messages") or [] if isinstance(message, dict)]
    if not raw_messages:
        return None
    session_id = as_str(info.get("id"))
    if not session_id:
        logger.debug("OpenCode export without a session id")
        return None

    cwd = cwd or as_str(info.get("directory"))
    ordered = sorted(raw_messages, key=_created_ms)
    state = _ConversionState(cwd=cwd)
    for message in ordered:
        try:
            _handle_message(state, message)
        except Exception:
            logger.debug("Skipping malformed OpenCode message", exc_info=True)

    if not state.messages:
        return None

    if git is _UNSET:
        git = resolve_git_context(cwd)
        if git is None:
            relative = _relative_cwd(ordered)
            git = GitContext(relativeCwd=relative) if relative else None

    if state.reported_cost > 0:
        cost = state.reported_cost
    else:
        cost = sum(
            calculate_cost(usage, pricing, model, state.cache_creation.get(model, 0))
            for model, usage in state.model_usage.items()
        )
    times = as_dict(info.get("time"))

    return assemble_transcript(
        source=SOURCE,
        session_id=session_id,
        messages=state.messages,
        cwd=format_cwd_with_tilde(cwd) if cwd else "",
        git=git,
        preview=_preview(state.user_texts),
        model=state.primary_model,
        model_usage=state.model_usage,
        cost_usd=cost,
        client_version=as_str(info.get("version")),
        fallback_timestamp=fallback_timestamp,
        now=now,
        extra_timestamps=[times.get("created"), times.get("updated"), *state.event_times],
        token_usage=state.usage,
    )


def convert_opencode_transcript(
    export: Mapping[str, Any],
    *,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    git: GitContext | None = _UNSET,
    cwd: str | None = None,
    fallback_timestamp: datetime | None = None,
) -> Transcript | None:
    """Convert one ``opencode export`` document (``{info, messages}``)."""
    if not isinstance(export, Mapping):
        return None
    try:
        return _build_transcript(export, now, pricing, git, cwd, fallback_timestamp)
    except Exception:
        logger.exception("Failed to convert OpenCode transcript")
        return None


def convert_opencode_file(
    path: Path,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
) -> Transcript | None:
    """Convert an export previously saved to disk."""
    try:
        export = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Could not read OpenCode export %s: %s", path, exc)
        return None
    return convert_opencode_transcript(export, now=now, pricing=pricing, fallback_timestamp=file_mtime(path))


async def convert_opencode_session(
    session_id: str,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    timeout: float | None = None,
) -> Transcript | None:
    """Export a session through the ``opencode`` CLI and convert it.

    Subagent sessions (those with a ``parentID``) are skipped.
    """
    export = await cli.export_session(session_id, timeout=timeout)
    if export is None:
        return None
    if as_dict(export.get("info")).get("parentID"):
        logger.debug("Skipping OpenCode subagent session %s", session_id)
        return None
    return convert_opencode_transcript(export, now=now, pricing=pricing)
