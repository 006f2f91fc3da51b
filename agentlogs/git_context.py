"""Resolve repository identity and branch for a working directory."""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from agentlogs.models import GitContext
from agentlogs.paths import normalize_relative_cwd

logger = logging.getLogger("agentlogs.git")

_SSH_REMOTE_PATTERN = re.compile(r"git@([^:]+):(.+?)(?:\.git)?$")
_HTTPS_REMOTE_PATTERN = re.compile(r"https?://(?:[^@/]+@)?([^/]+)/(.+?)(?:\.git)?$")
_ORIGIN_URL_PATTERN = re.compile(r'\[remote "origin"\]\s+url\s*=\s*(.+)', re.IGNORECASE)


def parse_git_remote_url(url: str | None) -> str | None:
    """Return ``host/owner/repo`` for SSH or HTTPS remote URLs."""
    token = (url or "").strip()
    if not token:
        return None
    match = _SSH_REMOTE_PATTERN.search(token)
    if match:
        return f"{match.group(1)}/{match.group(2)}"
    match = _HTTPS_REMOTE_PATTERN.search(token)
    if match:
        return f"{match.group(1)}/{match.group(2)}"
    return None


def locate_git_root(start: str | Path) -> Path | None:
    try:
        current = Path(start).resolve()
    except OSError:
        return None
    for candidate in (current, *current.parents):
        git_entry = candidate / ".git"
        if git_entry.is_dir() or git_entry.is_file():
            return candidate
    return None


def _git_dir(repo_root: Path) -> Path:
    git_entry = repo_root / ".git"
    if git_entry.is_file():
        # Worktrees and submodules point at the real git dir.
        try:
            content = git_entry.read_text(encoding="utf-8").strip()
        except OSError:
            return git_entry
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:"):].strip())
            return target if target.is_absolute() else (repo_root / target).resolve()
    return git_entry


def read_git_remote_url(repo_root: Path) -> str | None:
    try:
        config_text = (_git_dir(repo_root) / "config").read_text(encoding="utf-8")
    except OSError:
        return None
    match = _ORIGIN_URL_PATTERN.search(config_text)
    if not match:
        return None
    return match.group(1).strip() or None


def get_repo_id_from_git_root(repo_root: Path) -> str | None:
    return parse_git_remote_url(read_git_remote_url(repo_root))


def read_git_branch(repo_root: Path, fallback: str | None = None) -> str | None:
    try:
        head = (_git_dir(repo_root) / "HEAD").read_text(encoding="utf-8").strip()
    except OSError:
        return fallback
    if head.startswith("ref:"):
        ref = head[4:].strip()
        if ref.startswith("refs/heads/"):
            return ref[len("refs/heads/"):] or fallback
        return ref.rsplit("/", 1)[-1] or fallback
    return head or fallback


def resolve_git_context(cwd: str | None, branch_hint: str | None = None) -> GitContext | None:
    """Walk up from ``cwd`` to a repository root and collect repo, branch and relative cwd.

    Returns None when there is no cwd or no repository root; a cwd that no
    longer exists on disk keeps the recorded branch hint only.
    """
    if not cwd:
        return None
    if not os.path.isdir(cwd):
        if not branch_hint:
            return None
        return GitContext(repo=None, branch=branch_hint, relativeCwd=None)

    repo_root = locate_git_root(cwd)
    if repo_root is None:
        return None

    try:
        relative = os.path.relpath(Path(cwd).resolve(), repo_root)
    except ValueError:
        relative = None
    branch = branch_hint or read_git_branch(repo_root)
    repo = get_repo_id_from_git_root(repo_root)
    logger.debug("Resolved git context for %s: repo=%s branch=%s", cwd, repo, branch)
    return GitContext(
        repo=repo,
        branch=branch,
        relativeCwd=normalize_relative_cwd(relative),
    )
