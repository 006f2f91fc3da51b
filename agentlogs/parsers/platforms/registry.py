"""Converter registry for platform-specific transcript formats."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from agentlogs.models import Transcript
from agentlogs.parsers.platforms.claude_code import parser as claude_code_parser
from agentlogs.parsers.platforms.cline import parser as cline_parser
from agentlogs.parsers.platforms.codex import parser as codex_parser
from agentlogs.parsers.platforms.opencode import parser as opencode_parser
from agentlogs.parsers.platforms.pi import parser as pi_parser
from agentlogs.pricing import PricingTable

logger = logging.getLogger("agentlogs.parsers")

FileConverter = Callable[[Path, Optional[datetime], Optional[PricingTable]], Optional[Transcript]]

FILE_CONVERTERS: dict[str, FileConverter] = {
    "claude-code": claude_code_parser.convert_claude_code_file,
    "codex": codex_parser.convert_codex_file,
    "cline": cline_parser.convert_cline_file,
    "opencode": opencode_parser.convert_opencode_file,
    "pi": pi_parser.convert_pi_file,
}


def _first_record_type(path: Path) -> str | None:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                if line.strip():
                    record = json.loads(line)
                    return record.get("type") if isinstance(record, dict) else None
    except (OSError, ValueError):
        return None
    return None


def detect_source(path: Path) -> str | None:
    """Guess which agent wrote ``path`` from its name and first record."""
    if path.name == cline_parser.HISTORY_FILE_NAME:
        return "cline"
    suffix = path.suffix.lower()
    if suffix == ".json":
        return "opencode"
    if suffix != ".jsonl":
        return None
    first_type = _first_record_type(path)
    if first_type == "session_meta":
        return "codex"
    if first_type == "session":
        return "pi"
    return "claude-code"


def convert_transcript_file(
    path: Path,
    source: str | None = None,
    now: datetime | None = None,
    pricing: PricingTable | None = None,
) -> Transcript | None:
    """Convert a session file by delegating to the matching platform converter.

    ``source`` skips detection when the caller already knows the format
    (discovery does).
    """
    source = source or detect_source(path)
    converter = FILE_CONVERTERS.get(source or "")
    if converter is None:
        logger.debug("No converter for %s (source=%s)", path, source)
        return None
    return converter(path, now, pricing)
