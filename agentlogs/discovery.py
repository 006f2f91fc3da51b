"""Fast discovery of agent session logs on disk.

Discovery never converts a whole transcript. Each source scan runs in two
phases: enumerate candidate files and sort them by mtime, then partially parse
only the best ``limit * 2`` candidates. A partial parse reads the first
``HEAD_READ_SIZE`` bytes for identity and preview and, for larger files, the
last ``TAIL_READ_SIZE`` bytes for the latest timestamp.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from agentlogs import config
from agentlogs.date_utils import EPOCH, file_mtime, from_epoch_ms, latest_timestamp, parse_timestamp
from agentlogs.models import TRANSCRIPT_SOURCES, DiscoveredTranscript
from agentlogs.parsers.platforms.cline.parser import HISTORY_FILE_NAME
from agentlogs.parsers.platforms.opencode import cli as opencode_cli
from agentlogs.paths import path_contains
from agentlogs.previews import preview_from_text, truncate_preview

logger = logging.getLogger("agentlogs.discovery")

_CLINE_TASK_PATTERN = re.compile(r"<task>(?:\\n)?([\s\S]*?)(?:\\n)?</task>")
_CLINE_USER_TEXT_PATTERN = re.compile(
    r'"role"\s*:\s*"user"[\s\S]*?"type"\s*:\s*"text"\s*,\s*"text"\s*:\s*"((?:[^"\\]|\\.){1,200})'
)
_CLINE_INJECTED_PATTERN = re.compile(r"<(environment_details|task|feedback)>[\s\S]*?</\1>")


@dataclass(frozen=True)
class FileCandidate:
    path: Path
    mtime: float


@dataclass
class PartialInfo:
    session_id: Optional[str]
    timestamp: Optional[datetime]
    cwd: Optional[str] = None
    preview: Optional[str] = None


# ── Partial reads ──────────────────────────────────────────────────

def read_head_tail(path: Path) -> tuple[str, str]:
    """Return the head window and, for files larger than it, the tail window."""
    with path.open("rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        head = handle.read(config.HEAD_READ_SIZE).decode("utf-8", errors="replace")
        tail = ""
        if size > config.HEAD_READ_SIZE:
            offset = max(0, size - config.TAIL_READ_SIZE)
            handle.seek(offset)
            tail = handle.read(config.TAIL_READ_SIZE).decode("utf-8", errors="replace")
            if offset > 0:
                # The first tail line is almost always cut mid-record.
                _, _, tail = tail.partition("\n")
    return head, tail


def iter_window_records(window: str) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from complete lines; a line not ending in ``}`` ends the window."""
    for line in re.split(r"\r?\n", window):
        token = line.strip()
        if not token:
            continue
        if not token.endswith("}"):
            break
        try:
            record = json.loads(token)
        except ValueError:
            continue
        if isinstance(record, dict):
            yield record


def _tail_latest(head: str, tail: str, current: Optional[datetime]) -> Optional[datetime]:
    # Without a tail the head holds the whole file, and the peek may have stopped early.
    window = tail or head
    return latest_timestamp([current, *(record.get("timestamp") for record in iter_window_records(window))])


# ── Per-source peeks ──────────────────────────────────────────────

def _claude_user_text(record: dict[str, Any]) -> Optional[str]:
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    for part in content if isinstance(content, list) else []:
        if isinstance(part, str):
            return part
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
            return part["text"]
    return None


def peek_claude_code(path: Path) -> Optional[PartialInfo]:
    head, tail = read_head_tail(path)
    info = PartialInfo(session_id=path.stem, timestamp=None)
    for record in iter_window_records(head):
        if info.cwd is None and isinstance(record.get("cwd"), str):
            info.cwd = record["cwd"]
        info.timestamp = latest_timestamp([info.timestamp, record.get("timestamp")])
        if record.get("isSidechain") or record.get("isMeta") or record.get("isCompactSummary"):
            continue
        if info.preview is None and record.get("type") == "user":
            if record.get("toolUseResult") or record.get("tool_use_result"):
                continue
            info.preview = preview_from_text(_claude_user_text(record))
        if info.cwd and info.preview:
            break
    info.timestamp = _tail_latest(head, tail, info.timestamp)
    return info


def peek_codex(path: Path) -> Optional[PartialInfo]:
    head, tail = read_head_tail(path)
    info = PartialInfo(session_id=None, timestamp=None)
    for record in iter_window_records(head):
        info.timestamp = latest_timestamp([info.timestamp, record.get("timestamp")])
        payload = record.get("payload")
        if not isinstance(payload, dict):
            continue
        record_type = record.get("type")
        if record_type == "session_meta":
            info.session_id = payload.get("id") if isinstance(payload.get("id"), str) else None
            info.cwd = payload.get("cwd") if isinstance(payload.get("cwd"), str) else None
        elif record_type == "event_msg" and payload.get("type") == "user_message" and info.preview is None:
            info.preview = preview_from_text(payload.get("message"))
        if info.session_id and info.cwd and info.preview:
            break
    if not info.session_id:
        return None
    info.timestamp = _tail_latest(head, tail, info.timestamp)
    return info


def _decode_json_fragment(fragment: str) -> str:
    try:
        return json.loads(f'"{fragment}"')
    except ValueError:
        return fragment


def peek_cline(path: Path) -> Optional[PartialInfo]:
    # Cline writes a single JSON array and no per-message timestamps.
    head, _ = read_head_tail(path)
    info = PartialInfo(session_id=path.parent.name, timestamp=file_mtime(path))
    task = _CLINE_TASK_PATTERN.search(head)
    if task:
        info.preview = truncate_preview(_decode_json_fragment(task.group(1)))
    if info.preview is None:
        user_text = _CLINE_USER_TEXT_PATTERN.search(head)
        if user_text:
            text = _CLINE_INJECTED_PATTERN.sub("", _decode_json_fragment(user_text.group(1))).strip()
            if text and not text.startswith(("[", "#")):
                info.preview = truncate_preview(text)
    return info


def peek_pi(path: Path) -> Optional[PartialInfo]:
    head, tail = read_head_tail(path)
    info = PartialInfo(session_id=None, timestamp=None)
    for index, record in enumerate(iter_window_records(head)):
        if index == 0:
            if record.get("type") != "session" or not isinstance(record.get("id"), str):
                return None
            info.session_id = record["id"]
            info.cwd = record.get("cwd") if isinstance(record.get("cwd"), str) else None
            info.timestamp = parse_timestamp(record.get("timestamp"))
            continue
        info.timestamp = latest_timestamp([info.timestamp, record.get("timestamp")])
        message = record.get("message")
        if info.preview is None and record.get("type") == "message" and isinstance(message, dict):
            if message.get("role") == "user":
                content = message.get("content")
                if isinstance(content, str):
                    info.preview = truncate_preview(content)
                for part in content if isinstance(content, list) else []:
                    if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                        info.preview = truncate_preview(part["text"])
                        break
        if info.session_id and info.cwd and info.preview:
            break
    if not info.session_id:
        return None
    info.timestamp = _tail_latest(head, tail, info.timestamp)
    return info


# ── Candidate enumeration ──────────────────────────────────────────

def _candidate(path: Path) -> Optional[FileCandidate]:
    try:
        return FileCandidate(path=path, mtime=path.stat().st_mtime)
    except OSError:
        return None


def _scan_project_dirs(root: Path, suffix: str) -> list[FileCandidate]:
    """``root/<project>/<file><suffix>``, one level deep."""
    candidates: list[FileCandidate] = []
    try:
        project_dirs = [entry for entry in root.iterdir() if entry.is_dir()]
    except OSError:
        return candidates
    for project_dir in project_dirs:
        try:
            files = [entry for entry in project_dir.iterdir() if entry.is_file() and entry.suffix == suffix]
        except OSError:
            logger.debug("Skipping unreadable directory %s", project_dir)
            continue
        candidates.extend(filter(None, (_candidate(path) for path in files)))
    return candidates


def _scan_nested(root: Path, suffix: str, max_depth: int) -> list[FileCandidate]:
    candidates: list[FileCandidate] = []

    def _walk(directory: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            entries = list(directory.iterdir())
        except OSError:
            logger.debug("Skipping unreadable directory %s", directory)
            return
        for entry in entries:
            if entry.is_dir():
                _walk(entry, depth + 1)
            elif entry.is_file() and entry.suffix == suffix:
                candidate = _candidate(entry)
                if candidate:
                    candidates.append(candidate)

    _walk(root, 0)
    return candidates


def _scan_cline_tasks(root: Path) -> list[FileCandidate]:
    try:
        task_dirs = [entry for entry in root.iterdir() if entry.is_dir()]
    except OSError:
        return []
    return list(filter(None, (_candidate(task_dir / HISTORY_FILE_NAME) for task_dir in task_dirs)))


@dataclass(frozen=True)
class FileSource:
    name: str
    root: Callable[[], Path]
    scan: Callable[[Path], list[FileCandidate]]
    peek: Callable[[Path], Optional[PartialInfo]]


FILE_SOURCES: dict[str, FileSource] = {
    "claude-code": FileSource(
        name="claude-code",
        root=lambda: config.claude_home() / "projects",
        scan=lambda root: _scan_project_dirs(root, ".jsonl"),
        peek=peek_claude_code,
    ),
    "codex": FileSource(
        name="codex",
        root=lambda: config.codex_home() / "sessions",
        scan=lambda root: _scan_nested(root, ".jsonl", config.CODEX_MAX_SCAN_DEPTH),
        peek=peek_codex,
    ),
    "cline": FileSource(
        name="cline",
        root=lambda: config.cline_home() / "data" / "tasks",
        scan=_scan_cline_tasks,
        peek=peek_cline,
    ),
    "pi": FileSource(
        name="pi",
        root=config.pi_sessions_dir,
        scan=lambda root: _scan_project_dirs(root, ".jsonl"),
        peek=peek_pi,
    ),
}


# ── Discovery ──────────────────────────────────────────────────────

def _sort_and_limit(transcripts: list[DiscoveredTranscript], limit: int) -> list[DiscoveredTranscript]:
    transcripts.sort(key=lambda item: item.timestamp, reverse=True)
    return transcripts[: max(0, limit)]


def _scan_and_peek(source: FileSource, limit: int) -> list[DiscoveredTranscript]:
    root = source.root()
    if not root.is_dir():
        return []

    candidates = sorted(source.scan(root), key=lambda item: item.mtime, reverse=True)
    discovered: list[DiscoveredTranscript] = []
    for candidate in candidates[: limit * 2]:
        try:
            info = source.peek(candidate.path)
        except Exception:
            logger.debug("Skipping unreadable %s transcript %s", source.name, candidate.path, exc_info=True)
            continue
        if info is None or not info.session_id:
            continue
        discovered.append(
            DiscoveredTranscript(
                id=info.session_id,
                source=source.name,
                path=str(candidate.path),
                timestamp=info.timestamp or file_mtime(candidate.path) or EPOCH,
                preview=info.preview,
                cwd=info.cwd,
            )
        )
    return _sort_and_limit(discovered, limit)


async def _discover_files(source: FileSource, limit: int) -> list[DiscoveredTranscript]:
    # Directory walks and partial reads block, so they run off the event loop.
    return await asyncio.to_thread(_scan_and_peek, source, limit)


async def discover_opencode(limit: int) -> list[DiscoveredTranscript]:
    """List OpenCode sessions through the CLI; the session id doubles as the path."""
    discovered: list[DiscoveredTranscript] = []
    for session in await opencode_cli.list_sessions(limit * 2):
        session_id = session.get("id")
        if not isinstance(session_id, str) or not session_id:
            continue
        if session.get("parentId") or session.get("parentID"):
            continue
        title = session.get("title")
        discovered.append(
            DiscoveredTranscript(
                id=session_id,
                source="opencode",
                path=session_id,
                timestamp=from_epoch_ms(session.get("updated")) or from_epoch_ms(session.get("created")) or EPOCH,
                preview=truncate_preview(title) if isinstance(title, str) else None,
                cwd=session.get("directory") if isinstance(session.get("directory"), str) else None,
            )
        )
    return _sort_and_limit(discovered, limit)


async def discover(source: str, limit: int = config.DISCOVERY_DEFAULT_LIMIT) -> list[DiscoveredTranscript]:
    """Most recent transcripts of one source, newest first; never raises."""
    try:
        if source == "opencode":
            return await discover_opencode(limit)
        file_source = FILE_SOURCES.get(source)
        if file_source is None:
            logger.warning("Unknown transcript source %s", source)
            return []
        return await _discover_files(file_source, limit)
    except Exception:
        logger.warning("Discovery failed for %s", source, exc_info=True)
        return []


def _matches_cwd(transcript: DiscoveredTranscript, cwd_filter: str) -> bool:
    if not transcript.cwd:
        return False
    candidate = os.path.abspath(os.path.expanduser(transcript.cwd))
    return path_contains(cwd_filter, candidate) or path_contains(candidate, cwd_filter)


async def discover_all(
    sources: Optional[Sequence[str]] = None,
    cwd: Optional[str] = None,
    limit: int = config.DISCOVERY_DEFAULT_LIMIT,
) -> list[DiscoveredTranscript]:
    """Merge the newest transcripts across sources.

    Each source is asked for ``limit * 3`` results so the merged top ``limit``
    is not skewed by one busy source. Transcripts without a preview are
    dropped, and ``cwd`` keeps only transcripts recorded in that directory,
    beneath it, or in one of its parents.
    """
    selected = list(sources) if sources is not None else list(TRANSCRIPT_SOURCES)
    per_source = limit * 3
    results = await asyncio.gather(
        *(discover(source, per_source) for source in selected), return_exceptions=True
    )

    merged: list[DiscoveredTranscript] = []
    for source, result in zip(selected, results):
        if isinstance(result, BaseException):
            logger.warning("Discovery failed for %s: %s", source, result)
            continue
        merged.extend(result)

    merged = [item for item in merged if item.preview and item.preview.strip()]
    if cwd:
        cwd_filter = os.path.abspath(os.path.expanduser(cwd))
        merged = [item for item in merged if _matches_cwd(item, cwd_filter)]
    return _sort_and_limit(merged, limit)
