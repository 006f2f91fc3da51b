"""Convert Claude Code JSONL session logs into canonical transcripts."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from agentlogs.date_utils import file_mtime, normalize_timestamp, timestamp_ms
from agentlogs.git_context import resolve_git_context
from agentlogs.model_identity import standardize_model_name
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
    coerce_int,
    read_jsonl_file,
)
from agentlogs.parsers.shell_reclassify import reclassify_shell_call, strip_shell_wrapper
from agentlogs.paths import format_cwd_with_tilde, relativize_paths
from agentlogs.previews import (
    clean_user_message,
    is_command_envelope,
    strip_system_reminders,
    truncate_preview,
)
from agentlogs.pricing import PricingTable, calculate_cost

logger = logging.getLogger("agentlogs.parsers.claude_code")

SOURCE = "claude-code"

_COMMAND_NAME_PATTERN = re.compile(r"<command-name>(.*?)</command-name>", re.DOTALL)
_COMMAND_ARGS_PATTERN = re.compile(r"<command-args>(.*?)</command-args>", re.DOTALL)
_LOCAL_COMMAND_STDOUT_PATTERN = re.compile(r"^<local-command-stdout>(.*)</local-command-stdout>$", re.DOTALL)
_CAT_N_LINE_PATTERN = re.compile(r"^\s*(\d+)[→\t]", re.MULTILINE)
_ERROR_PREFIX_PATTERN = re.compile(r"^error:", re.IGNORECASE)
_IGNORED_COMMANDS = {"/clear"}
_COMPACTION_PREFIX = "[Compaction summary] "

_EDIT_OUTPUT_DROP_KEYS = ("filePath", "newString", "oldString", "originalFile", "structuredPatch", "replaceAll")
_EDIT_INPUT_DROP_KEYS = ("old_string", "new_string", "oldString", "newString")


@dataclass(frozen=True)
class ClaudeRecord:
    uuid: str
    type: str
    timestamp: str | None
    parent_uuid: str | None
    session_id: str | None
    cwd: str | None
    git_branch: str | None
    version: str | None
    is_sidechain: bool
    is_meta: bool
    is_compact_summary: bool
    message: dict[str, Any]
    raw: dict[str, Any] = field(repr=False)

    @property
    def content(self) -> Any:
        return self.message.get("content")

    @property
    def model(self) -> str | None:
        return as_str(self.message.get("model"))


def _to_record(raw: dict[str, Any]) -> ClaudeRecord | None:
    record_type = raw.get("type")
    uuid = as_str(raw.get("uuid"))
    if record_type == "summary" or not uuid or not isinstance(record_type, str):
        return None
    return ClaudeRecord(
        uuid=uuid,
        type=record_type,
        timestamp=as_str(raw.get("timestamp")),
        parent_uuid=as_str(raw.get("parentUuid")),
        session_id=as_str(raw.get("sessionId")),
        cwd=as_str(raw.get("cwd")),
        git_branch=as_str(raw.get("gitBranch")),
        version=as_str(raw.get("version")),
        is_sidechain=raw.get("isSidechain") is True,
        is_meta=raw.get("isMeta") is True,
        is_compact_summary=raw.get("isCompactSummary") is True,
        message=as_dict(raw.get("message")),
        raw=raw,
    )


def _flat_transcript(raw_records: Sequence[Mapping[str, Any]]) -> list[ClaudeRecord]:
    records: dict[str, ClaudeRecord] = {}
    for raw in raw_records:
        if not isinstance(raw, dict):
            continue
        record = _to_record(raw)
        if record is not None:
            records[record.uuid] = record
    main_thread = [record for record in records.values() if not record.is_sidechain]
    return sorted(main_thread, key=lambda record: (timestamp_ms(record.timestamp), record.uuid))


# ── Usage ──────────────────────────────────────────────────────────

def _usage_key(record: ClaudeRecord) -> str:
    message_id = as_str(record.message.get("id"))
    request_id = as_str(record.raw.get("requestId"))
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    return message_id or request_id or record.uuid


def _collect_usage(
    transcript: Sequence[ClaudeRecord],
) -> tuple[dict[str, TokenUsage], dict[str, int]]:
    """Aggregate deduplicated assistant usage per raw model name."""
    by_model: dict[str, TokenUsage] = {}
    cache_creation: dict[str, int] = {}
    seen: set[str] = set()
    for record in transcript:
        if record.type != "assistant":
            continue
        usage = record.message.get("usage")
        if not isinstance(usage, dict):
            continue
        key = _usage_key(record)
        if key in seen:
            continue
        seen.add(key)

        model = record.model or UNKNOWN_MODEL
        input_tokens = coerce_int(usage.get("input_tokens"))
        created = coerce_int(usage.get("cache_creation_input_tokens"))
        cached = coerce_int(usage.get("cache_read_input_tokens"))
        output_tokens = coerce_int(usage.get("output_tokens"))
        reasoning = coerce_int(usage.get("reasoning_output_tokens"))

        bucket = by_model.setdefault(model, TokenUsage())
        bucket.add(
            TokenUsage(
                inputTokens=input_tokens + created + cached,
                cachedInputTokens=cached,
                outputTokens=output_tokens,
                reasoningOutputTokens=reasoning,
                totalTokens=input_tokens + created + cached + output_tokens + reasoning,
            )
        )
        cache_creation[model] = cache_creation.get(model, 0) + created
    return by_model, cache_creation


def _primary_model(by_model: Mapping[str, TokenUsage]) -> str | None:
    best: str | None = None
    best_total = -1
    for model, usage in by_model.items():
        if model == UNKNOWN_MODEL or model.startswith("<"):
            continue
        if usage.totalTokens > best_total:
            best, best_total = model, usage.totalTokens
    return best


# ── Preview ────────────────────────────────────────────────────────

def _is_tool_result_part(part: Any) -> bool:
    if not isinstance(part, dict):
        return False
    return part.get("type") == "tool_result" or isinstance(part.get("tool_use_id"), str)


def _message_text(record: ClaudeRecord) -> str | None:
    content = record.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
                return part["text"]
    return None


def _is_prompt_candidate(record: ClaudeRecord) -> bool:
    if record.type != "user" or record.is_sidechain or record.is_meta or record.is_compact_summary:
        return False
    if "toolUseResult" in record.raw or "tool_use_result" in record.raw:
        return False
    content = record.content
    if isinstance(content, list) and any(_is_tool_result_part(part) for part in content):
        return False
    text = _message_text(record)
    if not text or is_command_envelope(text.strip()):
        return False
    return clean_user_message(text) is not None


def _preview(transcript: Sequence[ClaudeRecord]) -> str | None:
    for record in transcript:
        if _is_prompt_candidate(record):
            return truncate_preview(clean_user_message(_message_text(record)))
    return None


# ── Tool-call sanitization ─────────────────────────────────────────

def _strip_active_form(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    return [
        {key: item_value for key, item_value in item.items() if key != "activeForm"} if isinstance(item, dict) else item
        for item in value
    ]


def _relative(value: Any, cwd: str | None) -> Any:
    if not cwd or not isinstance(value, str):
        return value
    prefix = cwd if cwd.endswith("/") else f"{cwd}/"
    if value.startswith(prefix):
        return f"./{value[len(prefix):]}"
    return value


def _edit_diff(tool_input: dict[str, Any], output: Any, is_error: bool | None) -> tuple[str | None, int | None]:
    diff: str | None = None
    line_offset: int | None = None
    output_obj = output if isinstance(output, dict) else None

    patch = output_obj.get("structuredPatch") if output_obj else None
    if isinstance(patch, list):
        lines: list[str] = []
        for hunk in patch:
            if not isinstance(hunk, dict):
                continue
            if line_offset is None and isinstance(hunk.get("oldStart"), int):
                line_offset = hunk["oldStart"]
            lines.extend(line for line in hunk.get("lines") or [] if isinstance(line, str))
        if lines:
            diff = "\n".join(lines) + "\n"

    if line_offset is None and isinstance(output, str):
        match = _CAT_N_LINE_PATTERN.search(output)
        if match:
            line_offset = int(match.group(1))

    if diff is None:
        old = tool_input.get("old_string", tool_input.get("oldString"))
        new = tool_input.get("new_string", tool_input.get("newString"))
        error_like = (
            is_error is True
            or (isinstance(output, str) and "has been updated" not in output)
            or (output_obj is not None and output_obj.get("type") == "error")
        )
        if not error_like and isinstance(old, str) and isinstance(new, str):
            parts = [f"-{line}" for line in old.split("\n")] + [f"+{line}" for line in new.split("\n")]
            diff = "\n".join(parts) + "\n"
    return diff, line_offset


def sanitize_tool_call(call: ToolCallMessage, cwd: str | None) -> ToolCallMessage:
    """Trim Claude tool payloads to the fields the canonical schema keeps."""
    tool_input = dict(call.input) if isinstance(call.input, dict) else call.input
    output = dict(call.output) if isinstance(call.output, dict) else call.output
    tool_name = call.toolName

    if tool_name == "Write":
        if isinstance(tool_input, dict):
            tool_input["file_path"] = _relative(tool_input.get("file_path"), cwd)
        if isinstance(output, dict):
            output = {"type": output["type"]} if "type" in output else {}
    elif tool_name == "Read":
        if isinstance(tool_input, dict):
            tool_input["file_path"] = _relative(tool_input.get("file_path"), cwd)
        if isinstance(output, dict):
            trimmed: dict[str, Any] = {}
            if isinstance(output.get("type"), str):
                trimmed["type"] = output["type"]
            file_obj = output.get("file")
            if isinstance(file_obj, dict):
                file_fields = {
                    key: file_obj[key]
                    for key in ("content", "numLines", "startLine", "totalLines")
                    if key in file_obj and file_obj[key] is not None
                }
                if file_fields:
                    trimmed["file"] = file_fields
            output = trimmed
    elif tool_name == "Edit":
        if isinstance(tool_input, dict):
            diff, line_offset = _edit_diff(tool_input, call.output, call.isError)
            tool_input["file_path"] = _relative(tool_input.get("file_path"), cwd)
            for key in _EDIT_INPUT_DROP_KEYS:
                tool_input.pop(key, None)
            if diff:
                tool_input["diff"] = diff
            if line_offset and line_offset > 0:
                tool_input["lineOffset"] = line_offset
        if isinstance(output, dict):
            for key in _EDIT_OUTPUT_DROP_KEYS:
                output.pop(key, None)
            output = output or None
    elif tool_name in {"Glob", "Grep"}:
        if isinstance(output, dict):
            filenames = output.get("filenames")
            if isinstance(filenames, list):
                output["filenames"] = [_relative(name, cwd) for name in filenames]
            output.pop("numFiles", None)
    elif tool_name in {"Bash", "BashOutput"}:
        if isinstance(tool_input, dict) and isinstance(tool_input.get("command"), str):
            tool_input["command"] = strip_shell_wrapper(tool_input["command"])
        if isinstance(output, dict):
            output.pop("stdoutLines", None)
            output.pop("stderrLines", None)
    elif tool_name == "Task":
        if isinstance(output, dict):
            usage = output.pop("usage", None)
            output.pop("totalTokens", None)
            output.pop("prompt", None)
            if isinstance(usage, dict):
                output["tokenUsage"] = {
                    "inputTokens": coerce_int(usage.get("input_tokens"))
                    + coerce_int(usage.get("cache_creation_input_tokens"))
                    + coerce_int(usage.get("cache_read_input_tokens")),
                    "cachedInputTokens": coerce_int(usage.get("cache_read_input_tokens")),
                    "outputTokens": coerce_int(usage.get("output_tokens")),
                }
    elif tool_name == "TodoWrite":
        if isinstance(tool_input, dict):
            tool_input["todos"] = _strip_active_form(tool_input.get("todos"))
        if isinstance(output, dict):
            for key in ("oldTodos", "newTodos"):
                if key in output:
                    output[key] = _strip_active_form(output[key])

    is_error = call.isError
    if is_error is None:
        if call.error:
            is_error = True
        elif isinstance(call.output, str) and _ERROR_PREFIX_PATTERN.match(call.output.strip()):
            is_error = True

    sanitized = call.model_copy(
        update={
            "input": relativize_paths(tool_input, cwd),
            "output": relativize_paths(output, cwd),
            "isError": is_error,
        }
    )
    return reclassify_shell_call(sanitized, cwd)


# ── Messages ───────────────────────────────────────────────────────

@dataclass
class _ToolResult:
    call_id: str | None
    output: Any
    error: str | None
    is_error: bool | None


def _user_content(record: ClaudeRecord) -> tuple[list[str], list[_ToolResult]]:
    content = record.content
    if isinstance(content, str):
        return ([content] if content else []), []
    if not isinstance(content, list):
        return [], []

    texts: list[str] = []
    results: list[_ToolResult] = []
    for part in content:
        if isinstance(part, str):
            if part:
                texts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "tool_result":
            output = part.get("content")
            tool_use_result = record.raw.get("toolUseResult", record.raw.get("tool_use_result"))
            if tool_use_result:
                output = tool_use_result
            raw_is_error = part.get("is_error", part.get("isError"))
            if isinstance(raw_is_error, bool):
                is_error: bool | None = raw_is_error
            elif isinstance(part.get("success"), bool):
                is_error = not part["success"]
            else:
                is_error = None
            results.append(
                _ToolResult(
                    call_id=as_str(part.get("tool_use_id")),
                    output=output,
                    error=as_str(part.get("error")),
                    is_error=is_error,
                )
            )
        elif part_type == "text":
            if isinstance(part.get("text"), str) and part["text"]:
                texts.append(part["text"])
        elif part_type == "image":
            continue
        else:
            for key in ("content", "text"):
                if isinstance(part.get(key), str) and part[key]:
                    texts.append(part[key])
    return texts, results


def _command_text(text: str) -> str | None:
    name_match = _COMMAND_NAME_PATTERN.search(text)
    if not name_match:
        return None
    name = name_match.group(1).strip()
    args_match = _COMMAND_ARGS_PATTERN.search(text)
    args = args_match.group(1).strip() if args_match else ""
    return f"{name} {args}".strip()


def _convert_messages(transcript: Sequence[ClaudeRecord], cwd: str | None) -> list[Any]:
    messages: list[Any] = []
    calls: dict[str, int] = {}
    seen_user: set[str] = set()
    seen_assistant: set[str] = set()

    for record in transcript:
        if record.is_meta:
            continue
        timestamp = normalize_timestamp(record.timestamp)
        model = standardize_model_name(record.model, "anthropic")

        if record.type == "user":
            texts, results = _user_content(record)
            for text in texts:
                if not text.strip() or _LOCAL_COMMAND_STDOUT_PATTERN.match(text.strip()):
                    continue
                command = _command_text(text)
                if command is not None:
                    if command.split(" ", 1)[0] in _IGNORED_COMMANDS:
                        continue
                    cleaned = command
                else:
                    cleaned = strip_system_reminders(text)
                if not cleaned:
                    continue
                if record.is_compact_summary:
                    messages.append(
                        AgentMessage(text=_COMPACTION_PREFIX + cleaned, id=record.uuid, timestamp=timestamp)
                    )
                    continue
                key = f"{timestamp}:{cleaned}"
                if key in seen_user:
                    continue
                seen_user.add(key)
                messages.append(UserMessage(text=cleaned, id=record.uuid, timestamp=timestamp))

            for result in results:
                index = calls.get(result.call_id or "")
                if index is None:
                    continue
                call: ToolCallMessage = messages[index]
                update: dict[str, Any] = {"output": result.output}
                if result.error:
                    update["error"] = result.error
                if result.is_error is not None:
                    update["isError"] = result.is_error
                messages[index] = call.model_copy(update=update)

        elif record.type == "assistant":
            content = record.content
            if not isinstance(content, list):
                continue
            message_id = as_str(record.message.get("id"))
            for part in content:
                if not isinstance(part, dict):
                    continue
                part_type = part.get("type")
                if part_type == "thinking" and isinstance(part.get("thinking"), str):
                    key = f"thinking:{message_id}:{timestamp}:{part['thinking']}"
                    if key not in seen_assistant:
                        seen_assistant.add(key)
                        messages.append(
                            ThinkingMessage(text=part["thinking"], id=message_id, timestamp=timestamp, model=model)
                        )
                elif part_type == "text" and isinstance(part.get("text"), str):
                    key = f"agent:{message_id}:{timestamp}:{part['text']}"
                    if key not in seen_assistant:
                        seen_assistant.add(key)
                        messages.append(
                            AgentMessage(text=part["text"], id=message_id, timestamp=timestamp, model=model)
                        )
                elif part_type == "tool_use":
                    call_id = as_str(part.get("id"))
                    if call_id and call_id in calls:
                        continue
                    messages.append(
                        ToolCallMessage(
                            id=call_id,
                            toolName=as_str(part.get("name")),
                            input=part.get("input"),
                            timestamp=timestamp,
                            model=model,
                        )
                    )
                    if call_id:
                        calls[call_id] = len(messages) - 1
        else:
            # system, progress, file-history-snapshot and other bookkeeping records
            continue

    return [
        sanitize_tool_call(message, cwd) if isinstance(message, ToolCallMessage) else message
        for message in messages
    ]


# ── Entry points ───────────────────────────────────────────────────

_UNSET: Any = object()


def _build_transcript(
    raw_records: Sequence[Mapping[str, Any]],
    now: datetime | None,
    pricing: PricingTable | None,
    git: GitContext | None,
    fallback_timestamp: datetime | None,
) -> Transcript | None:
    transcript = _flat_transcript(raw_records)
    if not transcript:
        return None

    session_id = next((record.session_id for record in transcript if record.session_id), None)
    if not session_id:
        logger.debug("Claude Code transcript without a session id")
        return None

    cwd = next((record.cwd for record in transcript if record.cwd), None)
    if git is _UNSET:
        git = resolve_git_context(cwd, transcript[-1].git_branch)

    by_model, cache_creation = _collect_usage(transcript)
    cost = sum(
        calculate_cost(usage, pricing, model, cache_creation.get(model, 0)) for model, usage in by_model.items()
    )
    model_usage = {
        (standardize_model_name(model, "anthropic") if model != UNKNOWN_MODEL else model): usage
        for model, usage in by_model.items()
    }
    client_version = next((record.version for record in transcript if record.version), None)

    return assemble_transcript(
        source=SOURCE,
        session_id=session_id,
        messages=_convert_messages(transcript, cwd),
        cwd=format_cwd_with_tilde(cwd) if cwd else "",
        git=git,
        preview=_preview(transcript),
        model=standardize_model_name(_primary_model(by_model), "anthropic"),
        model_usage=model_usage,
        cost_usd=cost,
        client_version=client_version,
        fallback_timestamp=fallback_timestamp,
        extra_timestamps=[record.timestamp for record in transcript],
        now=now,
    )


def convert_claude_code_transcript(
    raw_records: Sequence[Mapping[str, Any]],
    *,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    git: GitContext | None = _UNSET,
    fallback_timestamp: datetime | None = None,
) -> Transcript | None:
    """Convert parsed Claude Code records; returns None when no session can be built."""
    try:
        return _build_transcript(raw_records, now, pricing, git, fallback_timestamp)
    except Exception:
        logger.exception("Failed to convert Claude Code transcript")
        return None


def convert_claude_code_file(
    path: Path,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
) -> Transcript | None:
    records = read_jsonl_file(path)
    if not records:
        return None
    return convert_claude_code_transcript(records, now=now, pricing=pricing, fallback_timestamp=file_mtime(path))
