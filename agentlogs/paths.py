"""Path display helpers shared by the converters."""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

_HOME_PATTERN = re.compile(r"^(/Users/[^/]+|/home/[^/]+)")


def format_cwd_with_tilde(absolute_path: str) -> str:
    """Abbreviate a home-directory prefix with ``~``.

    The current user's home is tried first; other ``/Users/<name>`` and
    ``/home/<name>`` prefixes are matched by pattern so fixtures recorded on
    another machine render the same way.
    """
    if not absolute_path:
        return ""
    home = str(Path.home())
    if home and home != "/" and (absolute_path == home or absolute_path.startswith(home + "/")):
        return "~" + absolute_path[len(home):]
    return _HOME_PATTERN.sub("~", absolute_path, count=1)


def normalize_relative_cwd(relative_cwd: str | None) -> str:
    if relative_cwd is None or relative_cwd == ".":
        return ""
    return relative_cwd


def relativize_path(target: str, cwd: str | None, tilde_outside: bool = False) -> str:
    """Render ``target`` relative to ``cwd`` as ``./...``.

    Relative inputs are prefixed with ``./`` unless they already start with
    ``./`` or ``../``. Absolute paths outside ``cwd`` stay absolute (or
    tilde-abbreviated when ``tilde_outside`` is set).
    """
    if not target:
        return target
    if not os.path.isabs(target):
        if target in {".", "./"}:
            return "."
        if target.startswith("./") or target.startswith("../"):
            return target
        return f"./{target}"
    if not cwd:
        return format_cwd_with_tilde(target) if tilde_outside else target
    try:
        rel = os.path.relpath(target, cwd)
    except ValueError:
        return target
    if rel == ".":
        return "."
    if rel == ".." or rel.startswith("../") or os.path.isabs(rel):
        return format_cwd_with_tilde(target) if tilde_outside else target
    return f"./{rel}"


def relativize_paths(value: Any, cwd: str | None) -> Any:
    """Recursively rewrite occurrences of ``cwd`` inside string leaves to ``.``."""
    if not cwd:
        return value
    with_slash = cwd if cwd.endswith("/") else f"{cwd}/"
    without_slash = with_slash[:-1]

    def _walk(item: Any) -> Any:
        if isinstance(item, str):
            if with_slash in item:
                return item.replace(with_slash, "./")
            if without_slash and without_slash in item:
                return item.replace(without_slash, ".")
            return item
        if isinstance(item, list):
            return [_walk(entry) for entry in item]
        if isinstance(item, dict):
            return {key: _walk(entry) for key, entry in item.items()}
        return item

    return _walk(value)


def path_contains(parent: str, child: str) -> bool:
    """True when ``child`` equals ``parent`` or lives beneath it."""
    if not parent or not child:
        return False
    parent_norm = parent.rstrip("/") or "/"
    if child == parent_norm:
        return True
    prefix = parent_norm if parent_norm.endswith("/") else parent_norm + "/"
    return child.startswith(prefix)
