"""Convert Cline task histories (``api_conversation_history.json``) into canonical transcripts.

Cline stores each task as a directory named after the task id holding the
Anthropic-style message array plus a ``task_metadata.json`` sidecar. Messages
carry no timestamps, so the transcript time falls back to the file mtime.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from agentlogs.date_utils import file_mtime
from agentlogs.git_context import resolve_git_context
from agentlogs.model_identity import join_provider_model
from agentlogs.models import AgentMessage, GitContext, TokenUsage, ToolCallMessage, Transcript, UserMessage
from agentlogs.parsers.common import UNKNOWN_MODEL, as_dict, as_str, assemble_transcript, coerce_int
from agentlogs.parsers.shell_reclassify import reclassify_shell_call
from agentlogs.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agentlogs.previews import preview_from_text
from agentlogs.pricing import PricingTable, calculate_cost

logger = logging.getLogger("agentlogs.parsers.cline")

SOURCE = "cline"
HISTORY_FILE_NAME = "api_conversation_history.json"
METADATA_FILE_NAME = "task_metadata.json"

TOOL_NAME_MAP = {
    "read_file": "Read",
    "write_to_file": "Write",
    "replace_in_file": "Edit",
    "execute_command": "Bash",
    "search_files": "Grep",
    "list_files": "Glob",
    "list_code_definition_names": "Ls",
    "load_mcp_documentation": "LoadMcpDocs",
    "access_mcp_resource": "AccessMcpResource",
    "focus_chain": "FocusChain",
    # Responses to the user rather than tool invocations.
    "attempt_completion": "AgentResponse",
    "plan_mode_respond": "AgentResponse",
    "ask_followup_question": "AgentResponse",
}

_INJECTED_BLOCK_PATTERN = re.compile(r"<(environment_details|feedback)>[\s\S]*?</\1>")
_TASK_TAG_PATTERN = re.compile(r"^<task>\n?([\s\S]*?)\n?</task>")
_TOOL_RESULT_PREFIX_PATTERN = re.compile(r"^\[[\w_]+ for '[^']*'\] Result:\n?")

_INJECTED_MARKERS = ("# TODO LIST UPDATE REQUIRED", "# task_progress RECOMMENDED")
_INJECTED_PREFIXES = (
    "[apply_patch for patch application]",
    "[read_file for ",
    "[write_to_file for ",
    "[replace_in_file for ",
    "[execute_command for ",
    "[search_files for ",
    "[list_files for ",
    "[list_code_definition_names for ",
    "[access_mcp_resource for ",
    "[attempt_completion] ",
    "[ask_followup_question] ",
    "[focus_chain] ",
    "[plan_mode_respond] ",
    "[load_mcp_documentation] ",
    "The user has provided feedback on the results.",
)


@dataclass
class _ConversionState:
    cwd: str | None
    messages: list[Any] = field(default_factory=list)
    calls: dict[str, int] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_usage: dict[str, TokenUsage] = field(default_factory=dict)
    primary_model: str | None = None


def _text_content(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, ensure_ascii=False).strip() or None
        except (TypeError, ValueError):
            return str(value).strip() or None
    return str(value).strip() or None


def _is_injected_text(text: str) -> bool:
    if any(marker in text for marker in _INJECTED_MARKERS):
        return True
    if text.startswith(_INJECTED_PREFIXES):
        return True
    return "# Current Mode" in text and "environment_details" in text


def _user_text(raw: str) -> str | None:
    """Strip Cline's injected context and unwrap ``<task>`` content."""
    if _TOOL_RESULT_PREFIX_PATTERN.match(raw):
        return None
    cleaned = _INJECTED_BLOCK_PATTERN.sub("", raw).strip()
    if not cleaned:
        return None
    task = _TASK_TAG_PATTERN.match(cleaned)
    text = task.group(1).strip() if task else cleaned
    if not text or _is_injected_text(text):
        return None
    return text


def _tool_result_content(content: Any) -> str | None:
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and as_str(block.get("text"))
        ]
        return "\n".join(texts) if texts else None
    return None


def _tool_input(tool_name: str, raw_input: Any, cwd: str | None) -> Any:
    if not isinstance(raw_input, dict):
        return raw_input
    record = dict(raw_input)
    record.pop("task_progress", None)

    if isinstance(record.get("path"), str) and cwd:
        record["file_path"] = relativize_path(record.pop("path"), cwd)
    if isinstance(record.get("file_path"), str) and cwd:
        record["file_path"] = relativize_path(record["file_path"], cwd)
    if tool_name == "Grep" and isinstance(record.get("regex"), str):
        record["pattern"] = record.pop("regex")
    if tool_name == "AgentResponse":
        for key in ("response", "result", "question", "options"):
            if record.get(key) is not None:
                return record[key]
        return None
    return relativize_paths(record, cwd)


def _record_usage(state: _ConversionState, model: str | None, metrics: Any) -> None:
    tokens = as_dict(as_dict(metrics).get("tokens"))
    if not tokens:
        return
    prompt = coerce_int(tokens.get("prompt"))
    completion = coerce_int(tokens.get("completion"))
    cached = coerce_int(tokens.get("cached"))
    usage = TokenUsage(
        inputTokens=prompt + cached,
        cachedInputTokens=cached,
        outputTokens=completion,
        totalTokens=prompt + cached + completion,
    )
    state.usage.add(usage)
    state.model_usage.setdefault(model or UNKNOWN_MODEL, TokenUsage()).add(usage)


def _handle_user(state: _ConversionState, content: Sequence[Any]) -> None:
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            raw = _text_content(block.get("text"))
            text = _user_text(raw) if raw else None
            if text:
                state.messages.append(UserMessage(text=text))
        elif block_type == "tool_result":
            index = state.calls.get(as_str(block.get("tool_use_id")) or "")
            if index is None:
                continue
            update: dict[str, Any] = {"output": _tool_result_content(block.get("content"))}
            if block.get("is_error"):
                update["isError"] = True
            state.messages[index] = state.messages[index].model_copy(update=update)
        else:
            logger.debug("Ignoring Cline user block of type %s", block_type)


def _handle_assistant(state: _ConversionState, model: str | None, content: Sequence[Any]) -> None:
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = _text_content(block.get("text"))
            if text:
                state.messages.append(AgentMessage(text=text, model=model))
        elif block_type == "tool_use":
            raw_name = as_str(block.get("name")) or ""
            tool_name = TOOL_NAME_MAP.get(raw_name, raw_name)
            tool_input = _tool_input(tool_name, block.get("input"), state.cwd)
            if tool_name == "AgentResponse":
                text = _text_content(tool_input)
                if text:
                    state.messages.append(AgentMessage(text=text, model=model))
                continue
            call_id = as_str(block.get("id"))
            if call_id:
                state.calls[call_id] = len(state.messages)
            state.messages.append(ToolCallMessage(id=call_id, toolName=tool_name, input=tool_input, model=model))
        else:
            logger.debug("Ignoring Cline assistant block of type %s", block_type)


def _finish_call(call: ToolCallMessage, cwd: str | None) -> ToolCallMessage:
    finished = call.model_copy(
        update={"input": relativize_paths(call.input, cwd), "output": relativize_paths(call.output, cwd)}
    )
    return reclassify_shell_call(finished, cwd)


def _client_version(metadata: Mapping[str, Any] | None) -> str | None:
    history = as_dict(metadata).get("environment_history")
    if isinstance(history, list) and history and isinstance(history[0], dict):
        return as_str(history[0].get("cline_version"))
    return None


_UNSET: Any = object()


def _build_transcript(
    raw_messages: Sequence[Mapping[str, Any]],
    task_id: str | None,
    now: datetime | None,
    pricing: PricingTable | None,
    git: GitContext | None,
    cwd: str | None,
    metadata: Mapping[str, Any] | None,
    client_version: str | None,
    fallback_timestamp: datetime | None,
) -> Transcript | None:
    if not isinstance(raw_messages, list) or not raw_messages:
        return None
    if not task_id:
        logger.debug("Cline transcript without a task id")
        return None

    state = _ConversionState(cwd=cwd)
    for raw in raw_messages:
        if not isinstance(raw, dict) or not isinstance(raw.get("content"), list):
            continue
        role = raw.get("role")
        if role == "user":
            _handle_user(state, raw["content"])
        elif role == "assistant":
            info = as_dict(raw.get("modelInfo"))
            model = join_provider_model(info.get("providerId"), info.get("modelId"))
            if model and state.primary_model is None:
                state.primary_model = model
            _record_usage(state, model, raw.get("metrics"))
            _handle_assistant(state, model, raw["content"])
        else:
            logger.debug("Ignoring Cline message with role %s", role)

    if not state.messages:
        return None

    messages = [
        _finish_call(message, cwd) if isinstance(message, ToolCallMessage) else message
        for message in state.messages
    ]
    if git is _UNSET:
        git = resolve_git_context(cwd)
    preview = next(
        (preview_from_text(message.text) for message in messages if isinstance(message, UserMessage)), None
    )

    return assemble_transcript(
        source=SOURCE,
        session_id=task_id,
        messages=messages,
        cwd=format_cwd_with_tilde(cwd) if cwd else "",
        git=git,
        preview=preview,
        model=state.primary_model,
        model_usage=state.model_usage,
        cost_usd=sum(calculate_cost(usage, pricing, model) for model, usage in state.model_usage.items()),
        client_version=client_version or _client_version(metadata),
        fallback_timestamp=fallback_timestamp,
        now=now,
        token_usage=state.usage,
    )


def convert_cline_transcript(
    raw_messages: Sequence[Mapping[str, Any]],
    *,
    task_id: str | None,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    git: GitContext | None = _UNSET,
    cwd: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    client_version: str | None = None,
    fallback_timestamp: datetime | None = None,
) -> Transcript | None:
    """Convert a parsed Cline message array; the task id becomes the transcript id."""
    try:
        return _build_transcript(
            raw_messages, task_id, now, pricing, git, cwd, metadata, client_version, fallback_timestamp
        )
    except Exception:
        logger.exception("Failed to convert Cline transcript")
        return None


def read_task_metadata(task_dir: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads((task_dir / METADATA_FILE_NAME).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def convert_cline_file(
    path: Path,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
    cwd: str | None = None,
) -> Transcript | None:
    try:
        raw_messages = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Could not read Cline history %s: %s", path, exc)
        return None
    return convert_cline_transcript(
        raw_messages,
        task_id=path.parent.name or None,
        now=now,
        pricing=pricing,
        cwd=cwd,
        metadata=read_task_metadata(path.parent),
        fallback_timestamp=file_mtime(path),
    )
