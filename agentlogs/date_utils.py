"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision."""
    dt = _as_utc(value)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return _as_utc(datetime.fromisoformat(cleaned.replace("Z", "+00:00")))
    except Exception:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except Exception:
            continue
    return None


def from_epoch_ms(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch milliseconds and datetimes into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        return _parse_datetime_token(value)
    return from_epoch_ms(value)


def normalize_timestamp(value: Any) -> str | None:
    parsed = parse_timestamp(value)
    return format_timestamp(parsed) if parsed else None


def timestamp_ms(value: Any) -> int:
    """Epoch milliseconds for sorting; unparseable values sort first."""
    parsed = parse_timestamp(value)
    if not parsed:
        return 0
    return int(parsed.timestamp() * 1000)


def latest_timestamp(values: Any) -> datetime | None:
    latest: datetime | None = None
    for value in values:
        parsed = parse_timestamp(value)
        if parsed and (latest is None or parsed > latest):
            latest = parsed
    return latest


def file_mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
