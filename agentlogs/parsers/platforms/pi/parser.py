"""Convert Pi agent session files into canonical transcripts.

A Pi session file starts with a ``session`` header line followed by entries
that form a tree through ``parentId``. Only the branch ending at the most
recent leaf is converted; when that branch diverged from a sibling, the
transcript id gains the id of the first entry after the fork so each branch
maps to a distinct transcript.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from agentlogs.date_utils import file_mtime, normalize_timestamp, timestamp_ms
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
    read_jsonl_file,
)
from agentlogs.parsers.shell_reclassify import reclassify_shell_call
from agentlogs.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agentlogs.previews import preview_from_text
from agentlogs.pricing import PricingTable, calculate_cost

logger = logging.getLogger("agentlogs.parsers.pi")

SOURCE = "pi"

TOOL_NAME_MAP = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "bash": "Bash",
    "grep": "Grep",
    "find": "Glob",
    "ls": "Ls",
}


# ── Session tree ───────────────────────────────────────────────────

def find_leaf_id(entries: Sequence[Mapping[str, Any]]) -> str | None:
    """Return the most recent entry that no other entry points to."""
    parents = {entry.get("parentId") for entry in entries if entry.get("parentId")}
    leaf: Mapping[str, Any] | None = None
    for entry in entries:
        if entry.get("id") in parents:
            continue
        if leaf is None or timestamp_ms(entry.get("timestamp")) > timestamp_ms(leaf.get("timestamp")):
            leaf = entry
    return as_str(leaf.get("id")) if leaf else None


def linear_branch(entries: Sequence[Mapping[str, Any]], leaf_id: str) -> list[Mapping[str, Any]]:
    """Entries from the root to ``leaf_id`` in chronological order."""
    by_id = {entry.get("id"): entry for entry in entries if entry.get("id")}
    branch: list[Mapping[str, Any]] = []
    seen: set[str] = set()
    current: str | None = leaf_id
    while current and current not in seen:
        entry = by_id.get(current)
        if entry is None:
            break
        seen.add(current)
        branch.append(entry)
        current = as_str(entry.get("parentId"))
    branch.reverse()
    return branch


def branch_anchor_id(entries: Sequence[Mapping[str, Any]], leaf_id: str) -> str | None:
    """First entry after the nearest fork on the way to ``leaf_id``, or None when linear."""
    children: dict[Any, int] = {}
    for entry in entries:
        children[entry.get("parentId")] = children.get(entry.get("parentId"), 0) + 1
    for entry in reversed(linear_branch(entries, leaf_id)):
        if children.get(entry.get("parentId"), 0) > 1:
            return as_str(entry.get("id"))
    return None


# ── Message conversion ─────────────────────────────────────────────

@dataclass
class _ConversionState:
    cwd: str | None
    messages: list[Any] = field(default_factory=list)
    calls: dict[str, int] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_usage: dict[str, TokenUsage] = field(default_factory=dict)
    cache_creation: dict[str, int] = field(default_factory=dict)
    reported_cost: float = 0.0
    primary_model: str | None = None


def _relative(target: str, cwd: str | None) -> str:
    return relativize_path(target, cwd, tilde_outside=True)


def _block_texts(content: Any) -> list[str]:
    if isinstance(content, str):
        return [content] if content else []
    texts: list[str] = []
    for block in content if isinstance(content, list) else []:
        if isinstance(block, dict) and block.get("type") == "text" and as_str(block.get("text")):
            texts.append(block["text"])
    return texts


def _tool_input(raw_input: Any, cwd: str | None) -> Any:
    if not isinstance(raw_input, dict):
        return raw_input
    record = dict(raw_input)
    if isinstance(record.get("path"), str):
        record["file_path"] = _relative(record.pop("path"), cwd)
    elif isinstance(record.get("file_path"), str):
        record["file_path"] = _relative(record["file_path"], cwd)
    return relativize_paths(record, cwd)


def _tool_output(raw_name: str, content: Any, details: Any, cwd: str | None) -> Any:
    text = "\n".join(_block_texts(content))
    if raw_name == "edit" and isinstance(details, dict) and details.get("diff"):
        return {"diff": details["diff"]}
    if raw_name == "read" and text:
        num_lines = len(text.split("\n"))
        return {"file": {"content": text, "numLines": num_lines, "totalLines": num_lines}}
    return relativize_paths(text, cwd) or relativize_paths(details, cwd)


def _record_usage(state: _ConversionState, model: str | None, raw_usage: Any) -> None:
    usage_record = as_dict(raw_usage)
    if not usage_record:
        return
    cache_read = coerce_int(usage_record.get("cacheRead"))
    cache_write = coerce_int(usage_record.get("cacheWrite"))
    input_tokens = coerce_int(usage_record.get("input")) + cache_read + cache_write
    output_tokens = coerce_int(usage_record.get("output"))
    usage = TokenUsage(
        inputTokens=input_tokens,
        cachedInputTokens=cache_read,
        outputTokens=output_tokens,
        totalTokens=coerce_int(usage_record.get("totalTokens"), input_tokens + output_tokens),
    )
    state.usage.add(usage)
    state.reported_cost += coerce_float(as_dict(usage_record.get("cost")).get("total")) or 0.0
    key = model or UNKNOWN_MODEL
    state.model_usage.setdefault(key, TokenUsage()).add(usage)
    state.cache_creation[key] = state.cache_creation.get(key, 0) + cache_write


def _handle_assistant(state: _ConversionState, message: Mapping[str, Any], timestamp: str | None) -> None:
    model = join_provider_model(message.get("provider"), message.get("model"))
    if model and state.primary_model is None:
        state.primary_model = model
    _record_usage(state, model, message.get("usage"))

    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "thinking" and as_str(block.get("thinking")):
            state.messages.append(ThinkingMessage(text=block["thinking"], timestamp=timestamp, model=model))
        elif block_type == "text" and as_str(block.get("text")):
            state.messages.append(AgentMessage(text=block["text"], timestamp=timestamp, model=model))
        elif block_type == "toolCall":
            raw_name = as_str(block.get("name")) or ""
            call_id = as_str(block.get("id"))
            if call_id:
                state.calls[call_id] = len(state.messages)
            state.messages.append(
                ToolCallMessage(
                    id=call_id,
                    toolName=TOOL_NAME_MAP.get(raw_name.lower(), raw_name),
                    input=_tool_input(block.get("arguments"), state.cwd),
                    timestamp=timestamp,
                    model=model,
                )
            )


def _handle_message_entry(state: _ConversionState, entry: Mapping[str, Any]) -> None:
    message = as_dict(entry.get("message"))
    role = message.get("role")
    timestamp = normalize_timestamp(entry.get("timestamp")) or normalize_timestamp(message.get("timestamp"))

    if role == "user":
        text = "\n\n".join(_block_texts(message.get("content")))
        if text.strip():
            state.messages.append(UserMessage(text=text, id=as_str(entry.get("id")), timestamp=timestamp))
    elif role == "assistant":
        _handle_assistant(state, message, timestamp)
    elif role == "toolResult":
        index = state.calls.get(as_str(message.get("toolCallId")) or "")
        if index is None:
            return
        raw_name = (as_str(message.get("toolName")) or "").lower()
        update: dict[str, Any] = {
            "output": _tool_output(raw_name, message.get("content"), message.get("details"), state.cwd)
        }
        if message.get("isError"):
            update["isError"] = True
        state.messages[index] = state.messages[index].model_copy(update=update)
    elif role == "bashExecution":
        # A command the user ran directly (``!`` / ``!!``).
        output: dict[str, Any] = {}
        if as_str(message.get("output")):
            output["stdout"] = message["output"]
        exit_code = message.get("exitCode")
        if isinstance(exit_code, int) and not isinstance(exit_code, bool):
            output["exitCode"] = exit_code
        state.messages.append(
            ToolCallMessage(
                id=as_str(entry.get("id")),
                toolName="Bash",
                input={"command": message.get("command") or ""},
                output=output or None,
                isError=True if isinstance(exit_code, int) and exit_code != 0 else None,
                timestamp=timestamp,
            )
        )
    elif role == "compactionSummary" and as_str(message.get("summary")):
        state.messages.append(AgentMessage(text=f"[Compaction summary] {message['summary']}", timestamp=timestamp))
    elif role == "branchSummary" and as_str(message.get("summary")):
        state.messages.append(AgentMessage(text=f"[Branch summary] {message['summary']}", timestamp=timestamp))
    else:
        logger.debug("Ignoring Pi message with role %s", role)


def _handle_entry(state: _ConversionState, entry: Mapping[str, Any]) -> None:
    entry_type = entry.get("type")
    timestamp = normalize_timestamp(entry.get("timestamp"))
    if entry_type == "message":
        _handle_message_entry(state, entry)
    elif entry_type == "compaction" and as_str(entry.get("summary")):
        state.messages.append(AgentMessage(text=f"[Compaction summary] {entry['summary']}", timestamp=timestamp))
    elif entry_type == "branch_summary" and as_str(entry.get("summary")):
        state.messages.append(AgentMessage(text=f"[Branch summary] {entry['summary']}", timestamp=timestamp))
    else:
        # model_change, thinking_level_change, custom, label and session_info carry no messages.
        logger.debug("Ignoring Pi entry of type %s", entry_type)


# ── Entry points ───────────────────────────────────────────────────

_UNSET: Any = object()


def _build_transcript(
    header: Mapping[str, Any],
    entries: Sequence[Mapping[str, Any]],
    now: datetime | None,
    pricing: PricingTable | None,
    git: GitContext | None,
    cwd: str | None,
    leaf_id: str | None,
    client_version: str | None,
    fallback_timestamp: datetime | None,
) -> Transcript | None:
    session_id = as_str(header.get("id"))
    if not session_id:
        logger.debug("Pi session without a header id")
        return None
    entries = [entry for entry in entries if isinstance(entry, dict) and entry.get("id")]
    if not entries:
        return None

    leaf_id = leaf_id or find_leaf_id(entries)
    if not leaf_id:
        return None
    branch = linear_branch(entries, leaf_id)
    if not branch:
        return None
    anchor = branch_anchor_id(entries, leaf_id)
    transcript_id = f"{session_id}-{anchor}" if anchor else session_id

    cwd = cwd or as_str(header.get("cwd"))
    state = _ConversionState(cwd=cwd)
    for entry in branch:
        try:
            _handle_entry(state, entry)
        except Exception:
            logger.debug("Skipping malformed Pi entry %s", entry.get("id"), exc_info=True)

    if not state.messages:
        return None

    messages = [
        reclassify_shell_call(message, cwd) if isinstance(message, ToolCallMessage) else message
        for message in state.messages
    ]
    if git is _UNSET:
        git = resolve_git_context(cwd)
    preview = next(
        (preview_from_text(message.text) for message in messages if isinstance(message, UserMessage)), None
    )
    if state.reported_cost > 0:
        cost = state.reported_cost
    else:
        cost = sum(
            calculate_cost(usage, pricing, model, state.cache_creation.get(model, 0))
            for model, usage in state.model_usage.items()
        )

    return assemble_transcript(
        source=SOURCE,
        session_id=transcript_id,
        messages=messages,
        cwd=format_cwd_with_tilde(cwd) if cwd else "",
        git=git,
        preview=preview,
        model=state.primary_model,
        model_usage=state.model_usage,
        cost_usd=cost,
        client_version=client_version,
        fallback_timestamp=fallback_timestamp,
        now=now,
        extra_timestamps=[header.get("timestamp"), *(entry.get("timestamp") for entry in branch)],
        token_usage=state.usage,
    )


def convert_pi_transcript(
    header: Mapping[str, Any],
    entries: Sequence[Mapping[str, Any]],
    *,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    git: GitContext | None = _UNSET,
    cwd: str | None = None,
    leaf_id: str | None = None,
    client_version: str | None = None,
    fallback_timestamp: datetime | None = None,
) -> Transcript | None:
    """Convert a parsed Pi session (header plus entries) along its latest branch."""
    try:
        return _build_transcript(
            header, entries, now, pricing, git, cwd, leaf_id, client_version, fallback_timestamp
        )
    except Exception:
        logger.exception("Failed to convert Pi transcript")
        return None


def convert_pi_file(
    path: Path,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
) -> Transcript | None:
    records = read_jsonl_file(path)
    if not records:
        return None
    header, entries = records[0], records[1:]
    if header.get("type") != "session":
        logger.debug("Pi file %s does not start with a session header", path)
        return None
    return convert_pi_transcript(header, entries, now=now, pricing=pricing, fallback_timestamp=file_mtime(path))
