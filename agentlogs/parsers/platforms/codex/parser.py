"""Convert Codex CLI rollout JSONL files into canonical transcripts."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from agentlogs.date_utils import file_mtime, normalize_timestamp
from agentlogs.git_context import parse_git_remote_url, resolve_git_context
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
    coerce_float,
    coerce_int,
    read_jsonl_file,
)
from agentlogs.parsers.shell_reclassify import extract_shell_command, reclassify_shell_call
from agentlogs.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agentlogs.previews import collapse_whitespace, preview_from_text
from agentlogs.pricing import PricingTable, calculate_cost

logger = logging.getLogger("agentlogs.parsers.codex")

SOURCE = "codex"

_SHELL_TOOLS = {"shell", "exec_command"}
_TOOL_NAMES = {"shell": "Bash", "exec_command": "Bash", "apply_patch": "Edit"}
_IGNORED_USER_PREFIXES = (
    "<user_instructions",
    "<environment_context",
    "# agents.md instructions for",
    "<permissions instructions>",
)
_IMAGE_PLACEHOLDER_PATTERNS = (
    re.compile(r"<image[^>]*>", re.IGNORECASE),
    re.compile(r"</image>", re.IGNORECASE),
    re.compile(r"\[\s*image\s*#?\d+\s*\]", re.IGNORECASE),
)
_PATCH_FILE_PATTERN = re.compile(r"^\*\*\* (?:Update|Add|Delete) File: (.+)$")
_EXIT_CODE_PATTERN = re.compile(r"Process exited with code (\d+)")
_WALL_TIME_PATTERN = re.compile(r"Wall time: ([\d.]+) seconds")
_EXEC_OUTPUT_PATTERN = re.compile(r"Output:\n([\s\S]*?)$")


@dataclass(frozen=True)
class CodexEvent:
    type: str
    timestamp: str | None
    payload: dict[str, Any]


@dataclass
class _SessionMeta:
    id: str | None = None
    cwd: str | None = None
    cli_version: str | None = None
    branch: str | None = None
    repository_url: str | None = None


@dataclass
class _ConversionState:
    meta: _SessionMeta | None = None
    cwd: str | None = None
    model: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    previous_total: TokenUsage = field(default_factory=TokenUsage)
    messages: list[Any] = field(default_factory=list)
    user_texts: list[str] = field(default_factory=list)
    calls: dict[str, tuple[int, str | None]] = field(default_factory=dict)
    signatures: set[str] = field(default_factory=set)


def _normalize_events(raw_events: Sequence[Mapping[str, Any]]) -> list[CodexEvent]:
    events: list[CodexEvent] = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            continue
        event_type = as_str(raw.get("type"))
        if not event_type:
            continue
        events.append(
            CodexEvent(type=event_type, timestamp=as_str(raw.get("timestamp")), payload=as_dict(raw.get("payload")))
        )
    return events


def _parse_json_string(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _token_usage(info: Any, key: str) -> TokenUsage | None:
    usage = as_dict(info).get(key)
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        inputTokens=coerce_int(usage.get("input_tokens")),
        cachedInputTokens=coerce_int(usage.get("cached_input_tokens")),
        outputTokens=coerce_int(usage.get("output_tokens")),
        reasoningOutputTokens=coerce_int(usage.get("reasoning_output_tokens")),
        totalTokens=coerce_int(usage.get("total_tokens")),
    )


def _usage_delta(total: TokenUsage, previous: TokenUsage) -> TokenUsage:
    return TokenUsage(
        inputTokens=max(0, total.inputTokens - previous.inputTokens),
        cachedInputTokens=max(0, total.cachedInputTokens - previous.cachedInputTokens),
        outputTokens=max(0, total.outputTokens - previous.outputTokens),
        reasoningOutputTokens=max(0, total.reasoningOutputTokens - previous.reasoningOutputTokens),
        totalTokens=max(0, total.totalTokens - previous.totalTokens),
    )


def _strip_image_placeholders(text: str) -> str:
    for pattern in _IMAGE_PLACEHOLDER_PATTERNS:
        text = pattern.sub("", text)
    return text


def _content_texts(content: Any, strip_images: bool = False) -> list[str]:
    if isinstance(content, str):
        content = [content]
    if not isinstance(content, list):
        return []
    texts: list[str] = []
    for part in content:
        if isinstance(part, str):
            text: str | None = part
        elif isinstance(part, dict):
            if part.get("type") in {"input_image", "image"}:
                continue
            text = as_str(part.get("text")) or as_str(part.get("content"))
        else:
            text = None
        if not text:
            continue
        if strip_images:
            text = _strip_image_placeholders(text)
        if text.strip():
            texts.append(text)
    return texts


def _reasoning_texts(payload: dict[str, Any]) -> list[str]:
    pieces: list[str] = []
    for entry in payload.get("summary") or []:
        if isinstance(entry, dict) and as_str(entry.get("text")):
            pieces.append(collapse_whitespace(entry["text"]))
    for entry in payload.get("content") or []:
        if isinstance(entry, dict) and entry.get("type") in {"reasoning", "text"}:
            text = as_str(entry.get("text")) or as_str(entry.get("content"))
            if text:
                pieces.append(collapse_whitespace(text))
    return [piece for piece in pieces if piece]


def _is_ignored_user_text(text: str) -> bool:
    return text.strip().lower().startswith(_IGNORED_USER_PREFIXES)


def _add_message(state: _ConversionState, message: Any) -> int | None:
    if isinstance(message, ToolCallMessage):
        signature = f"{message.type}|{message.timestamp}|{message.id}|{message.toolName}"
    else:
        signature = f"{message.type}|{message.timestamp}|{message.text}"
    if signature in state.signatures:
        return None
    state.signatures.add(signature)
    state.messages.append(message)
    return len(state.messages) - 1


# ── Tool payloads ──────────────────────────────────────────────────

def parse_apply_patch(patch: str, cwd: str | None) -> dict[str, Any]:
    """Turn an ``apply_patch`` envelope into ``{file_path, diff}``."""
    file_path: str | None = None
    diff_lines: list[str] = []
    for line in re.split(r"\r?\n", patch):
        if line.startswith("*** "):
            match = _PATCH_FILE_PATTERN.match(line)
            if match:
                file_path = match.group(1).strip()
            continue
        diff_lines.append(line)

    result: dict[str, Any] = {}
    if file_path:
        result["file_path"] = relativize_path(file_path, cwd)
    diff = "\n".join(diff_lines).strip()
    if diff:
        result["diff"] = diff if diff.endswith("\n") else f"{diff}\n"
    return result


def _call_input(raw_name: str | None, value: Any, cwd: str | None) -> Any:
    if raw_name in _SHELL_TOOLS:
        record = as_dict(value)
        bash_input: dict[str, Any] = {}
        command = extract_shell_command(record)
        if command:
            bash_input["command"] = command
        if isinstance(record.get("description"), str):
            bash_input["description"] = record["description"]
        return bash_input
    if raw_name == "apply_patch" and isinstance(value, str) and value:
        parsed = parse_apply_patch(value, cwd)
        if parsed:
            return parsed
    if isinstance(value, dict) and isinstance(value.get("workdir"), str) and cwd:
        return {**value, "workdir": relativize_path(value["workdir"], cwd)}
    return value


def _metadata_fields(record: dict[str, Any], result: dict[str, Any]) -> None:
    metadata = as_dict(record.get("metadata"))
    exit_code = metadata.get("exit_code", metadata.get("exitCode", record.get("exit_code", record.get("exitCode"))))
    if isinstance(exit_code, (int, float)) and not isinstance(exit_code, bool):
        result["exitCode"] = exit_code
    duration = coerce_float(metadata.get("duration_seconds", metadata.get("durationSeconds")))
    if duration is not None and duration > 0:
        result["durationSeconds"] = duration


def _shell_output(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    result: dict[str, Any] = {}
    stdout = value.get("stdout")
    if isinstance(stdout, str):
        result["stdout"] = stdout
    elif as_str(value.get("output")):
        result["stdout"] = value["output"]
    if as_str(value.get("stderr")):
        result["stderr"] = value["stderr"]
    _metadata_fields(value, result)
    return result or None


def _exec_command_output(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return _shell_output(value)
    result: dict[str, Any] = {}
    exit_match = _EXIT_CODE_PATTERN.search(value)
    if exit_match:
        result["exitCode"] = int(exit_match.group(1))
    time_match = _WALL_TIME_PATTERN.search(value)
    if time_match:
        duration = coerce_float(time_match.group(1))
        if duration and duration > 0:
            result["durationSeconds"] = duration
    output_match = _EXEC_OUTPUT_PATTERN.search(value)
    if output_match and output_match.group(1).strip():
        result["stdout"] = output_match.group(1).strip()
    return result or None


def _apply_patch_output(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    result: dict[str, Any] = {}
    if as_str(value.get("output")):
        result["message"] = value["output"]
    _metadata_fields(value, result)
    return result or None


def _call_output(raw_name: str | None, value: Any) -> Any:
    if raw_name == "shell":
        return _shell_output(value)
    if raw_name == "exec_command":
        return _exec_command_output(value)
    if raw_name == "apply_patch":
        return _apply_patch_output(value)
    return value


def _finish_call(call: ToolCallMessage, cwd: str | None) -> ToolCallMessage:
    finished = call.model_copy(
        update={"input": relativize_paths(call.input, cwd), "output": relativize_paths(call.output, cwd)}
    )
    if isinstance(finished.output, dict) and isinstance(finished.output.get("exitCode"), (int, float)):
        if finished.output["exitCode"] != 0 and finished.isError is None:
            finished = finished.model_copy(update={"isError": True})
    return reclassify_shell_call(finished, cwd)


# ── Event handling ─────────────────────────────────────────────────

def _handle_response_item(state: _ConversionState, event: CodexEvent) -> None:
    payload = event.payload
    payload_type = payload.get("type")
    timestamp = normalize_timestamp(event.timestamp)

    if payload_type == "message":
        role = payload.get("role")
        if role == "user":
            text = collapse_whitespace("\n\n".join(_content_texts(payload.get("content"), strip_images=True)))
            if not text or _is_ignored_user_text(text):
                return
            state.user_texts.append(text)
            _add_message(state, UserMessage(text=text, id=as_str(payload.get("id")), timestamp=timestamp))
        elif role == "assistant":
            text = collapse_whitespace("\n\n".join(_content_texts(payload.get("content"))))
            if text:
                _add_message(
                    state,
                    AgentMessage(text=text, id=as_str(payload.get("id")), timestamp=timestamp, model=state.model),
                )
    elif payload_type == "reasoning":
        for text in _reasoning_texts(payload):
            _add_message(
                state,
                ThinkingMessage(text=text, id=as_str(payload.get("id")), timestamp=timestamp, model=state.model),
            )
    elif payload_type in {"function_call", "custom_tool_call"}:
        call_id = as_str(payload.get("call_id")) or as_str(payload.get("id"))
        raw_name = as_str(payload.get("name"))
        raw_input = payload.get("arguments") if payload_type == "function_call" else payload.get("input")
        if payload_type == "function_call":
            raw_input = _parse_json_string(raw_input)
        call = ToolCallMessage(
            id=call_id,
            toolName=_TOOL_NAMES.get(raw_name or "", raw_name),
            input=_call_input(raw_name, raw_input, state.cwd),
            timestamp=timestamp,
            model=state.model,
        )
        index = _add_message(state, call)
        if index is not None and call_id:
            state.calls[call_id] = (index, raw_name)
    elif payload_type in {"function_call_output", "custom_tool_call_output"}:
        call_id = as_str(payload.get("call_id"))
        entry = state.calls.get(call_id or "")
        if entry is None:
            return
        index, raw_name = entry
        output = _call_output(raw_name, _parse_json_string(payload.get("output")))
        state.messages[index] = state.messages[index].model_copy(update={"output": output})
    else:
        logger.debug("Ignoring Codex response item of type %s", payload_type)


def _handle_event(state: _ConversionState, event: CodexEvent) -> None:
    payload = event.payload
    if event.type == "session_meta":
        git = as_dict(payload.get("git"))
        state.meta = _SessionMeta(
            id=as_str(payload.get("id")),
            cwd=as_str(payload.get("cwd")),
            cli_version=as_str(payload.get("cli_version")) or as_str(payload.get("cliVersion")),
            branch=as_str(git.get("branch")),
            repository_url=as_str(git.get("repository_url")) or as_str(git.get("repositoryUrl")),
        )
        if not state.cwd:
            state.cwd = state.meta.cwd
    elif event.type == "turn_context":
        if as_str(payload.get("cwd")):
            state.cwd = payload["cwd"]
        model = standardize_model_name(payload.get("model"), "openai")
        if model:
            state.model = model
    elif event.type == "event_msg":
        # Chat events mirror response items; only token counts are read here.
        if payload.get("type") != "token_count":
            return
        last = _token_usage(payload.get("info"), "last_token_usage")
        total = _token_usage(payload.get("info"), "total_token_usage")
        if last is not None:
            state.usage.add(last)
        elif total is not None:
            state.usage.add(_usage_delta(total, state.previous_total))
        if total is not None:
            state.previous_total = total
    elif event.type == "response_item":
        _handle_response_item(state, event)
    else:
        logger.debug("Ignoring Codex event of type %s", event.type)


def _git_context(meta: _SessionMeta | None, cwd: str | None) -> GitContext | None:
    if meta is None:
        return GitContext()
    repo = parse_git_remote_url(meta.repository_url)
    if repo is None:
        return resolve_git_context(cwd, meta.branch) or GitContext(branch=meta.branch)

    relative_cwd = ""
    repo_name = repo.rsplit("/", 1)[-1]
    if cwd and repo_name:
        segments = [segment for segment in cwd.split("/") if segment]
        if repo_name in segments:
            last = len(segments) - 1 - segments[::-1].index(repo_name)
            relative_cwd = "/".join(segments[last + 1:])
    return GitContext(repo=repo, branch=meta.branch, relativeCwd=relative_cwd)


def _preview(user_texts: Sequence[str]) -> str | None:
    for text in user_texts:
        lowered = text.lower()
        if lowered.startswith("<user_instructions>") or lowered.startswith("<environment_context>"):
            continue
        preview = preview_from_text(text)
        if preview:
            return preview
    return None


# ── Entry points ───────────────────────────────────────────────────

def _build_transcript(
    raw_events: Sequence[Mapping[str, Any]],
    now: datetime | None,
    pricing: PricingTable | None,
    fallback_timestamp: datetime | None,
) -> Transcript | None:
    events = _normalize_events(raw_events)
    if not events:
        return None

    state = _ConversionState()
    for event in events:
        try:
            _handle_event(state, event)
        except Exception:
            logger.debug("Skipping malformed Codex event %s", event.type, exc_info=True)

    if not state.messages:
        return None

    messages = [
        _finish_call(message, state.cwd) if isinstance(message, ToolCallMessage) else message
        for message in state.messages
    ]
    session_id = state.meta.id if state.meta else None
    if not session_id:
        logger.debug("Codex transcript without session_meta id")
        return None

    has_usage = state.model or state.usage != TokenUsage()
    model_usage = {state.model or UNKNOWN_MODEL: state.usage} if has_usage else {}
    return assemble_transcript(
        source=SOURCE,
        session_id=session_id,
        messages=messages,
        cwd=format_cwd_with_tilde(state.cwd) if state.cwd else "",
        git=_git_context(state.meta, state.cwd),
        preview=_preview(state.user_texts),
        model=state.model,
        model_usage=model_usage,
        cost_usd=calculate_cost(state.usage, pricing, state.model),
        client_version=state.meta.cli_version if state.meta else None,
        fallback_timestamp=fallback_timestamp,
        now=now,
        # Trailing events such as token counts still count toward recency.
        extra_timestamps=[event.timestamp for event in events],
        token_usage=state.usage.model_copy(),
    )


def convert_codex_transcript(
    raw_events: Sequence[Mapping[str, Any]],
    *,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    fallback_timestamp: datetime | None = None,
) -> Transcript | None:
    """Convert parsed Codex rollout events; returns None when no session can be built."""
    try:
        return _build_transcript(raw_events, now, pricing, fallback_timestamp)
    except Exception:
        logger.exception("Failed to convert Codex transcript")
        return None


def convert_codex_file(
    path: Path,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
) -> Transcript | None:
    events = read_jsonl_file(path)
    if not events:
        return None
    return convert_codex_transcript(events, now=now, pricing=pricing, fallback_timestamp=file_mtime(path))
