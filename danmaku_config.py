"""Options for the danmaku pipeline.

Options travel as a plain dict (the CLI builds one from argparse) and are
normalized once by ``normalize_options``. ``DanmakuConfig`` is the holder the
scheduler and encoder read from.
"""

from __future__ import annotations

import math
from typing import Any

from danmaku_errors import ConfigurationError

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULTS: dict[str, Any] = {
    "title": "Live",
    "frame_width": 1920,
    "frame_height": 1080,
    "font_size": 24,
    "font_name": "@Microsoft YaHei",
    "fallback_font_name": "@SimHei",
    "speed_ms": 8000,
    "line_spacing": 0.7,
    "display_area_ratio": 0.25,
    "max_lanes": None,
    "avatar_size": 48,
    "max_workers": 6,
    "max_retries": 3,
    "retry_delay_ms": 1000,
    "inter_job_delay_ms": 50,
    "timeout_ms": 15000,
    "token": "",
    "referer": "",
    "user_agent": DEFAULT_USER_AGENT,
}

_INT_KEYS = (
    "frame_width",
    "frame_height",
    "font_size",
    "speed_ms",
    "avatar_size",
    "max_workers",
    "max_retries",
    "retry_delay_ms",
    "inter_job_delay_ms",
    "timeout_ms",
)
_FLOAT_KEYS = ("line_spacing", "display_area_ratio")
_STR_KEYS = ("title", "font_name", "fallback_font_name", "token", "referer", "user_agent")


def _to_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc


def _to_float(key: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise ConfigurationError(f"{key} must be finite")
    return number


def normalize_options(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Merges ``raw`` over DEFAULTS and validates types and ranges."""
    opts = dict(DEFAULTS)
    opts.update({k: v for k, v in (raw or {}).items() if v is not None or k == "max_lanes"})

    for key in _INT_KEYS:
        opts[key] = _to_int(key, opts[key])
    for key in _FLOAT_KEYS:
        opts[key] = _to_float(key, opts[key])
    for key in _STR_KEYS:
        opts[key] = "" if opts[key] is None else str(opts[key]).strip()

    if opts["max_lanes"] is not None:
        opts["max_lanes"] = _to_int("max_lanes", opts["max_lanes"])
        if opts["max_lanes"] < 1:
            raise ConfigurationError(f"max_lanes must be >= 1, got {opts['max_lanes']}")

    for key in ("frame_width", "frame_height", "font_size", "speed_ms", "avatar_size"):
        if opts[key] <= 0:
            raise ConfigurationError(f"{key} must be > 0")
    for key in ("max_retries", "retry_delay_ms", "inter_job_delay_ms", "timeout_ms"):
        if opts[key] < 0:
            raise ConfigurationError(f"{key} must be >= 0")
    if opts["max_workers"] < 1:
        raise ConfigurationError("max_workers must be >= 1")
    if opts["line_spacing"] < 0:
        raise ConfigurationError("line_spacing must be >= 0")
    if not 0 < opts["display_area_ratio"] <= 1:
        raise ConfigurationError("display_area_ratio must be in (0, 1]")
    if not opts["title"]:
        opts["title"] = DEFAULTS["title"]
    return opts


def derive_max_lanes(frame_height: int, display_area_ratio: float, font_size: int, line_spacing: float) -> int:
    """Number of lanes that fit in the reserved top area of the frame (at least 1)."""
    line_height = font_size + font_size * line_spacing
    if line_height <= 0:
        raise ConfigurationError("line height must be > 0")
    reserved_height = frame_height * display_area_ratio
    return max(1, math.floor(reserved_height / line_height))


class DanmakuConfig:
    """Holds layout and fetch settings derived from normalized options."""

    def __init__(self, options: dict[str, Any] | None = None):
        opts = normalize_options(options)
        self.options = opts

        self.title = opts["title"]
        self.frame_width = opts["frame_width"]
        self.frame_height = opts["frame_height"]
        self.font_size = opts["font_size"]
        self.font_name = opts["font_name"]
        self.fallback_font_name = opts["fallback_font_name"]
        self.speed_ms = opts["speed_ms"]
        self.line_spacing = opts["line_spacing"]
        self.display_area_ratio = opts["display_area_ratio"]
        self.avatar_size = opts["avatar_size"]

        # Vertical pitch of one lane: glyph height plus spacing
        self.line_height = self.font_size + self.font_size * self.line_spacing

        if opts["max_lanes"] is not None:
            self.max_lanes = opts["max_lanes"]
        else:
            self.max_lanes = derive_max_lanes(
                self.frame_height, self.display_area_ratio, self.font_size, self.line_spacing
            )

        self.max_workers = opts["max_workers"]
        self.max_retries = opts["max_retries"]
        self.retry_delay_ms = opts["retry_delay_ms"]
        self.inter_job_delay_ms = opts["inter_job_delay_ms"]
        self.timeout_ms = opts["timeout_ms"]
        self.token = opts["token"]
        self.referer = opts["referer"]
        self.user_agent = opts["user_agent"]
