"""Renders lane assignments as an Advanced SubStation Alpha (ASS) track."""

from __future__ import annotations

import base64
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable

from danmaku_config import DanmakuConfig
from danmaku_errors import EncodingError
from lane_scheduler import LaneAssignment

# Average glyph width as a fraction of the font size
CHAR_WIDTH_FACTOR = 0.6
TEXT_PADDING = 20
OFFSCREEN_MARGIN = 100

STYLE_NAME = "Danmaku"
FALLBACK_STYLE_NAME = "Fallback"

STYLE_FORMAT = (
    "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
    "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, "
    "Shadow, Alignment, MarginL, MarginR, MarginV, Encoding"
)
EVENT_FORMAT = "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text"


def format_ass_time(ms: int) -> str:
    """Converts milliseconds to H:MM:SS.CC, dropping anything below a centisecond."""
    if ms < 0:
        raise EncodingError(f"Negative timestamp: {ms}")
    total_cs = int(ms) // 10
    hours = total_cs // 360000
    minutes = (total_cs % 360000) // 6000
    seconds = (total_cs % 6000) // 100
    centiseconds = total_cs % 100
    return f"{hours}:{minutes:02d}:{seconds:02d}.{centiseconds:02d}"


def ass_colour(rgb: str, alpha: int = 0) -> str:
    """'#RRGGBB' -> '&HAABBGGRR'."""
    h = rgb.lstrip("#")
    if len(h) == 3:
        h = "".join(c * 2 for c in h)
    if not re.fullmatch(r"[0-9a-fA-F]{6}", h):
        raise EncodingError(f"Invalid colour: {rgb}")
    return f"&H{alpha:02X}{h[4:6]}{h[2:4]}{h[0:2]}".upper()


def escape_text(text: str) -> str:
    """Makes comment text safe to place after override tags."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Break accidental escape sequences by inserting a zero-width space
    text = re.sub(r"\\([Nnh])", lambda m: "\\\u200b" + m.group(1), text)
    text = text.replace("{", "｛").replace("}", "｝")
    return text.replace("\n", r"\N")


def embedded_avatar_names(
    avatar_paths: dict[str, str | Path] | None,
) -> tuple[dict[str, str], dict[str, str | Path]]:
    """Maps author id -> [Graphics] file name, and file name -> source path.

    Files are keyed by resolved path; distinct files sharing a base name get
    a numeric suffix so every author keeps their own image.
    """
    by_path = {}
    files = {}
    names = {}
    for author_id, path in (avatar_paths or {}).items():
        key = str(Path(path).resolve())
        if key not in by_path:
            name = Path(path).name
            stem, suffix = Path(name).stem, Path(name).suffix
            counter = 1
            while name in files:
                name = f"{stem}_{counter}{suffix}"
                counter += 1
            by_path[key] = name
            files[name] = path
        names[author_id] = by_path[key]
    return names, files


def _num(value: float) -> str:
    rounded = round(value, 2)
    if rounded == int(rounded):
        return str(int(rounded))
    return f"{rounded:.2f}".rstrip("0")


class AssEncoder:
    """Builds the ASS document: script info, styles, embedded avatars, events."""

    def __init__(self, config: DanmakuConfig, title: str | None = None):
        self.config = config
        self.title = title or config.title

    def header(self) -> str:
        """Builds the [Script Info] and [V4+ Styles] sections."""
        cfg = self.config
        white = ass_colour("#FFFFFF")
        red = ass_colour("#FF0000")
        black = ass_colour("#000000")
        shadow = ass_colour("#000000", alpha=0x80)
        style_tail = f"{white},{red},{black},{shadow},0,0,0,0,100,100,0,0,1,2,0,2,10,10,10,1"
        lines = [
            "[Script Info]",
            f"Title: {self.title}",
            "ScriptType: v4.00+",
            f"PlayResX: {cfg.frame_width}",
            f"PlayResY: {cfg.frame_height}",
            "",
            "[V4+ Styles]",
            STYLE_FORMAT,
            f"Style: {STYLE_NAME},{cfg.font_name},{cfg.font_size},{style_tail}",
            f"Style: {FALLBACK_STYLE_NAME},{cfg.fallback_font_name},{cfg.font_size},{style_tail}",
            "",
        ]
        return "\n".join(lines) + "\n"

    def graphics(self, avatar_paths: dict[str, str | Path]) -> str:
        """One 'filename:' line plus a base64 line per distinct avatar file."""
        if not avatar_paths:
            return ""
        _, files = embedded_avatar_names(avatar_paths)
        lines = ["[Graphics]"]
        for name, path in files.items():
            try:
                blob = Path(path).read_bytes()
            except OSError as exc:
                raise EncodingError(f"Cannot embed avatar {path}: {exc}") from exc
            lines.append(f"filename: {name}")
            lines.append(base64.b64encode(blob).decode("ascii"))
        lines.append("")
        return "\n".join(lines) + "\n"

    def event_text(self, assignment: LaneAssignment, author_name: str | None = None, avatar_name: str | None = None) -> str:
        """Motion directive followed by the (optionally author-prefixed) comment."""
        cfg = self.config
        y = assignment.lane * cfg.line_height + cfg.line_height / 2

        visible = assignment.event.text
        if author_name:
            visible = f"{author_name}: {visible}"

        text_width = len(visible) * cfg.font_size * CHAR_WIDTH_FACTOR
        start_x = cfg.frame_width + OFFSCREEN_MARGIN
        end_x = -(text_width + TEXT_PADDING) - OFFSCREEN_MARGIN

        payload = f"{{\\move({_num(start_x)},{_num(y)},{_num(end_x)},{_num(y)})}}"
        if avatar_name:
            payload += f"{{\\img({avatar_name})}}"
        return payload + escape_text(visible)

    def events(
        self,
        assignments: Iterable[LaneAssignment],
        author_names: dict[str, str] | None = None,
        avatar_paths: dict[str, str | Path] | None = None,
    ) -> str:
        author_names = author_names or {}
        avatar_names, _ = embedded_avatar_names(avatar_paths)
        lines = ["[Events]", EVENT_FORMAT]
        for assignment in assignments:
            author_id = assignment.event.author_id
            text = self.event_text(
                assignment,
                author_name=author_names.get(author_id),
                avatar_name=avatar_names.get(author_id),
            )
            start = format_ass_time(assignment.display_start)
            end = format_ass_time(assignment.display_end)
            lines.append(f"Dialogue: 0,{start},{end},{STYLE_NAME},,0,0,0,,{text}")
        return "\n".join(lines) + "\n"

    def encode(
        self,
        assignments: Iterable[LaneAssignment],
        author_names: dict[str, str] | None = None,
        avatar_paths: dict[str, str | Path] | None = None,
    ) -> str:
        try:
            return (
                self.header()
                + self.graphics(avatar_paths or {})
                + self.events(assignments, author_names, avatar_paths)
            )
        except EncodingError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise EncodingError(f"Failed to encode track: {exc}") from exc

    def write(
        self,
        path: str | Path,
        assignments: Iterable[LaneAssignment],
        author_names: dict[str, str] | None = None,
        avatar_paths: dict[str, str | Path] | None = None,
    ) -> Path:
        """Encodes fully in memory, then replaces ``path`` atomically."""
        content = self.encode(assignments, author_names, avatar_paths)
        target = Path(path)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=target.parent, prefix=".tmp-", suffix=".ass", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(content)
            os.replace(tmp_name, target)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise EncodingError(f"Failed to write {target}: {exc}") from exc
        return target
