"""Reads the enriched comment dump and turns it into scheduler input.

The dump is whatever the comment collector saved: a JSON array, an object
with a ``comments`` array, or one JSON object per line. Records may be bare
comments or wrappers carrying the comment under ``data``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

from lane_scheduler import CommentEvent


@dataclass(frozen=True)
class AuthorInfo:
    author_id: str
    user_name: str | None = None
    profile_image_url: str | None = None


@dataclass(frozen=True)
class CommentRecord:
    user_id: str
    created_at: datetime
    text: str | None = None
    gift: int | None = None
    hidden: bool = False
    user_name: str | None = None
    profile_image_url: str | None = None


def _ensure_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string or epoch number (seconds or milliseconds) -> aware datetime."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = _ensure_str(value)
    if not text:
        raise ValueError("Missing timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _maybe_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_comment_record(raw: dict[str, Any]) -> CommentRecord:
    """Validates one raw comment dict. Raises ValueError when it cannot be placed in time."""
    if not isinstance(raw, dict):
        raise ValueError(f"Comment record must be an object, got {type(raw).__name__}")
    if isinstance(raw.get("data"), dict):
        raw = raw["data"]

    user_id = _ensure_str(raw.get("user_id"))
    if not user_id:
        raise ValueError(f"Comment {raw.get('id')!r} has no user_id")

    content = raw.get("content") if isinstance(raw.get("content"), dict) else {}
    user_info = raw.get("userInfo") if isinstance(raw.get("userInfo"), dict) else {}

    return CommentRecord(
        user_id=user_id,
        created_at=parse_timestamp(raw.get("created_at")),
        text=content.get("text") if isinstance(content.get("text"), str) else None,
        gift=_maybe_int(content.get("gift")),
        hidden=bool(_maybe_int(raw.get("is_hide"))),
        user_name=_ensure_str(user_info.get("userName")) or None,
        profile_image_url=_ensure_str(user_info.get("profileImageUrl")) or None,
    )


def load_comment_dump(path: str | Path) -> list[dict[str, Any]]:
    """Loads raw comment dicts from a JSON / JSON Lines file."""
    text = Path(path).read_text(encoding="utf-8-sig")
    stripped = text.lstrip()
    if not stripped:
        return []

    if stripped[0] in "[{":
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            if isinstance(data.get("comments"), list):
                return data["comments"]
            return [data]

    records = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{path}:{line_no}: invalid JSON line: {exc}") from exc
    return records


def parse_comment_records(raw_records: Iterable[Any], log_fn=None) -> list[CommentRecord]:
    """Parses every record, skipping (and reporting) the ones that are unusable."""
    emit = log_fn or print
    records = []
    skipped = 0
    for raw in raw_records:
        try:
            records.append(parse_comment_record(raw))
        except ValueError as exc:
            skipped += 1
            emit(f"Warning: skipped comment ({exc})")
    if skipped:
        emit(f"Skipped {skipped} malformed comment(s)")
    return records


def comment_text(record: CommentRecord) -> str:
    """Returns the text shown for a comment, or a gift label."""
    if record.text and record.text.strip():
        return record.text.strip()
    if record.gift is not None:
        return f"[Gift: {record.gift}]"
    return ""


def build_events(records: Iterable[CommentRecord]) -> list[CommentEvent]:
    """Time-ordered events with offsets relative to the earliest comment.

    Sorting is stable, so comments sharing a timestamp keep dump order.
    Hidden comments and comments with nothing to show are dropped here,
    before scheduling.
    """
    ordered = sorted((r for r in records if not r.hidden), key=lambda r: r.created_at)
    if not ordered:
        return []
    base = ordered[0].created_at
    events = []
    for record in ordered:
        text = comment_text(record)
        if not text:
            continue
        offset_ms = (record.created_at - base) // timedelta(milliseconds=1)
        events.append(CommentEvent(author_id=record.user_id, text=text, timestamp_ms=offset_ms))
    return events


def collect_authors(records: Iterable[CommentRecord]) -> dict[str, AuthorInfo]:
    """One AuthorInfo per user id of a visible comment; later non-empty metadata replaces earlier."""
    authors: dict[str, AuthorInfo] = {}
    for record in records:
        if record.hidden:
            continue
        known = authors.get(record.user_id)
        authors[record.user_id] = AuthorInfo(
            author_id=record.user_id,
            user_name=record.user_name or (known.user_name if known else None),
            profile_image_url=record.profile_image_url or (known.profile_image_url if known else None),
        )
    return authors
