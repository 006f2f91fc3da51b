"""Working-tree change statistics derived from canonical messages."""
from __future__ import annotations

from typing import Sequence

from agentlogs.models import ToolCallMessage, TranscriptStats

_FILE_CHANGE_TOOLS = {"Edit", "Write"}


def count_diff_lines(diff: str) -> tuple[int, int]:
    added = 0
    removed = 0
    for line in diff.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed


def calculate_transcript_stats(messages: Sequence[object]) -> TranscriptStats:
    """Count changed files and added/removed/modified lines.

    Errored tool calls are ignored. Write content counts every line as added;
    Edit diffs (from input or output) pair additions with removals as
    modifications.
    """
    changed_files: set[str] = set()
    added_total = 0
    removed_total = 0
    modified_total = 0

    for message in messages:
        if not isinstance(message, ToolCallMessage):
            continue
        if message.isError or message.error:
            continue
        tool_name = message.toolName
        tool_input = message.input if isinstance(message.input, dict) else {}
        tool_output = message.output if isinstance(message.output, dict) else {}

        file_path = tool_input.get("file_path")
        if tool_name in _FILE_CHANGE_TOOLS and isinstance(file_path, str):
            changed_files.add(file_path)

        content = tool_input.get("content")
        if tool_name == "Write" and isinstance(content, str):
            added_total += len(content.split("\n"))

        diff = tool_input.get("diff")
        if diff is None:
            diff = tool_output.get("diff")
        if tool_name == "Edit" and isinstance(diff, str):
            added, removed = count_diff_lines(diff)
            modified = min(added, removed)
            added_total += added - modified
            removed_total += removed - modified
            modified_total += modified

    return TranscriptStats(
        filesChanged=len(changed_files),
        linesAdded=added_total,
        linesRemoved=removed_total,
        linesModified=modified_total,
    )
