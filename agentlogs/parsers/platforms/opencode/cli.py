"""Async wrappers around the ``opencode`` CLI.

OpenCode keeps sessions in a backend-specific store (JSON files or SQLite), so
sessions are listed and exported through the CLI instead of being read from
disk. Every call runs under a deadline; a missing binary, non-zero exit,
timeout or malformed JSON all resolve to ``None``.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from agentlogs import config

logger = logging.getLogger("agentlogs.parsers.opencode")


async def run_opencode(*args: str, timeout: float | None = None) -> str | None:
    """Run ``opencode <args>`` and return trimmed stdout, or None."""
    deadline = config.OPENCODE_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        process = await asyncio.create_subprocess_exec(
            config.OPENCODE_BIN,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.debug("opencode is not available: %s", exc)
        return None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=deadline)
    except asyncio.TimeoutError:
        logger.warning("opencode %s timed out after %ss", " ".join(args), deadline)
        process.kill()
        await process.wait()
        return None

    if process.returncode != 0:
        logger.debug(
            "opencode %s exited with %s: %s",
            " ".join(args),
            process.returncode,
            stderr.decode("utf-8", errors="replace").strip(),
        )
        return None
    output = stdout.decode("utf-8", errors="replace").strip()
    return output or None


def _load_json(output: str | None) -> Any:
    if not output:
        return None
    try:
        return json.loads(output)
    except ValueError:
        logger.debug("opencode returned malformed JSON")
        return None


async def list_sessions(max_count: int, timeout: float | None = None) -> list[dict[str, Any]]:
    payload = _load_json(
        await run_opencode("session", "list", "--format", "json", "-n", str(max_count), timeout=timeout)
    )
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


async def export_session(session_id: str, timeout: float | None = None) -> dict[str, Any] | None:
    payload = _load_json(await run_opencode("export", session_id, timeout=timeout))
    return payload if isinstance(payload, dict) else None
