"""Mask file contents for tool calls that touch credential-like files.

Converters never call this themselves; a transcript comes back from
``convert_transcript_file`` (``agentlogs.parsers.platforms.registry``) with
file contents intact. Callers that publish or store transcripts apply the
pass afterwards, before pattern-based redaction::

    transcript = convert_transcript_file(path)
    transcript = redact_sensitive_files(transcript)
    payload = redact_secrets(transcript.model_dump(mode="json"))

Write content and Read output are masked for matching paths; every other
message passes through and the input transcript is left untouched.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Union

from agentlogs.models import ToolCallMessage, Transcript

logger = logging.getLogger("agentlogs.redact")

SensitivePattern = Union[str, re.Pattern]

SENSITIVE_FILE_PATTERNS: tuple[SensitivePattern, ...] = (
    # Environment files
    ".env",
    ".env.local",
    ".env.development",
    ".env.production",
    ".env.test",
    ".env.staging",
    re.compile(r"\.env\.(dev|prod|stage|preview|ci|build|docker)$"),
    # Shell configs and history
    ".bashrc",
    ".bash_profile",
    ".bash_history",
    ".zshrc",
    ".zsh_history",
    ".profile",
    # SSH keys
    "id_rsa",
    "id_ed25519",
    "id_ecdsa",
    "id_dsa",
    re.compile(r"^id_[a-z0-9]+$"),
    re.compile(r"\.pem$"),
    re.compile(r"\.key$"),
    # Cloud and tool configs
    ".aws/credentials",
    ".aws/config",
    ".docker/config.json",
    ".npmrc",
    ".yarnrc",
    ".yarnrc.yml",
    ".git-credentials",
    ".netrc",
    ".kube/config",
    "kubeconfig",
    # Application secrets
    "database.yml",
    "secrets.yml",
    "secrets.yaml",
    "master.key",
    "credentials.yml.enc",
    # Cloud credentials
    ".gcloud/credentials",
    "service-account.json",
    "service_account.json",
    re.compile(r"gcp.*credentials.*\.json$"),
    re.compile(r"firebase.*\.json$"),
)

_WHITESPACE_CHARS = frozenset(" \t\n\r")
_READ_TOOL = "Read"
_WRITE_TOOL = "Write"


def _matches(pattern: SensitivePattern, path: str, filename: str) -> bool:
    if isinstance(pattern, str):
        return filename == pattern or path == pattern or path.endswith("/" + pattern)
    return bool(pattern.search(filename) or pattern.search(path))


def is_sensitive_file(path: str | None) -> bool:
    """True when ``path`` names an env file, key, credential store or similar."""
    if not path:
        return False
    normalized = path.replace("\\", "/")
    filename = normalized.rsplit("/", 1)[-1]
    return any(_matches(pattern, normalized, filename) for pattern in SENSITIVE_FILE_PATTERNS)


def redact_content(text: str) -> str:
    """Replace every non-whitespace character with ``*``."""
    return "".join(char if char in _WHITESPACE_CHARS else "*" for char in text)


def _tool_file_path(call: ToolCallMessage) -> str | None:
    if not isinstance(call.input, dict):
        return None
    value = call.input.get("file_path")
    return value if isinstance(value, str) else None


def _redact_read_output(output: Any) -> Any:
    if isinstance(output, str):
        return redact_content(output)
    if isinstance(output, dict):
        file_obj = output.get("file")
        if isinstance(file_obj, dict) and isinstance(file_obj.get("content"), str):
            return {**output, "file": {**file_obj, "content": redact_content(file_obj["content"])}}
    return output


def redact_sensitive_file_message(call: ToolCallMessage) -> ToolCallMessage:
    """Return ``call`` with Write content or Read output masked for sensitive files."""
    path = _tool_file_path(call)
    if not is_sensitive_file(path):
        return call
    if call.toolName == _WRITE_TOOL and isinstance(call.input.get("content"), str):
        logger.debug("Masking write content for sensitive file %s", path)
        return call.model_copy(update={"input": {**call.input, "content": redact_content(call.input["content"])}})
    if call.toolName == _READ_TOOL and call.output is not None:
        logger.debug("Masking read output for sensitive file %s", path)
        return call.model_copy(update={"output": _redact_read_output(call.output)})
    return call


def redact_sensitive_files(transcript: Transcript) -> Transcript:
    messages = [
        redact_sensitive_file_message(message) if isinstance(message, ToolCallMessage) else message
        for message in transcript.messages
    ]
    return transcript.model_copy(update={"messages": messages})
