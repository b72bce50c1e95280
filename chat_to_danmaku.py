"""
Live Comment Replay to Danmaku Track.
Loads an enriched comment dump, downloads avatars and page assets, and writes
the comments as a scrolling danmaku ASS subtitle track.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ass_encoder import AssEncoder
from comment_source import build_events, collect_authors, load_comment_dump, parse_comment_records
from danmaku_config import DEFAULTS, DanmakuConfig
from danmaku_errors import ConfigurationError, EncodingError
from lane_scheduler import LaneScheduler
from resource_fetcher import FetchPool, HttpFetcher, ResourceCache, ResourceRef
from resource_orchestrator import AcquisitionResult, ResourceOrchestrator, sanitize_filename

REPORT_NAME = "download-report.json"


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def load_page_resources(path: str | Path) -> list[str]:
    """Reads page asset URLs: a JSON list, or an object with 'resourceUrls'."""
    data = json.loads(Path(path).read_text(encoding="utf-8-sig"))
    if isinstance(data, dict):
        data = data.get("resourceUrls") or []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of URLs")
    return [str(url).strip() for url in data if isinstance(url, str) and url.strip()]


def default_output_dir(title: str) -> str:
    """Directory named after the broadcast, or a timestamped fallback."""
    if title and title != DEFAULTS["title"]:
        return sanitize_filename(title)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return f"live_{stamp}"


def print_progress(done: int, total: int) -> None:
    """Prints a PROGRESS marker line for the front end."""
    print(f"PROGRESS:{int(done / total * 100) if total else 100}", flush=True)


def run(
    options: dict[str, Any],
    comments_path: str | Path,
    *,
    output_dir: str | Path | None = None,
    resources_path: str | Path | None = None,
    skip_avatars: bool = False,
    skip_resources: bool = False,
    write_ass: bool = True,
    author_names: bool = False,
    embed_avatars: bool = False,
    fetcher: Callable[[ResourceRef], bytes] | None = None,
    log_fn: Callable[[str], None] | None = None,
    progress_fn: Callable[[int, int], None] | None = None,
) -> int:
    """Runs the whole pipeline. Returns 0, or 2 when some downloads failed."""
    emit = log_fn or print
    config = DanmakuConfig(options)

    raw_records = load_comment_dump(comments_path)
    records = parse_comment_records(raw_records, log_fn=emit)
    events = build_events(records)
    authors = collect_authors(records)
    emit(f"Loaded {len(events)} comments from {len(authors)} authors")

    out_dir = Path(output_dir or default_output_dir(config.title)).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    emit(f"Output: {out_dir}")

    page_urls = load_page_resources(resources_path) if resources_path else []

    acquisition = AcquisitionResult()
    if not (skip_avatars and skip_resources):
        fetcher = fetcher or HttpFetcher(
            token=config.token,
            referer=config.referer,
            user_agent=config.user_agent,
            timeout_ms=config.timeout_ms,
        )
        pool = FetchPool(
            ResourceCache(),
            fetcher,
            out_dir,
            max_workers=config.max_workers,
            max_retries=config.max_retries,
            retry_delay_ms=config.retry_delay_ms,
            inter_job_delay_ms=config.inter_job_delay_ms,
            log_fn=emit,
            progress_fn=progress_fn,
        )
        orchestrator = ResourceOrchestrator(out_dir, pool, log_fn=emit)
        started_at = _iso_now()
        acquisition = orchestrator.acquire(
            authors.values(),
            page_urls,
            skip_avatars=skip_avatars,
            skip_resources=skip_resources,
        )
        report = {"startedAt": started_at, "endedAt": _iso_now(), "outputDir": str(out_dir)}
        report.update(acquisition.to_dict())
        report_path = out_dir / REPORT_NAME
        report_path.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
        emit(f"Report: {report_path}")

        if embed_avatars and acquisition.avatar_paths:
            acquisition.avatar_paths = orchestrator.build_avatar_thumbnails(acquisition.avatar_paths, config.avatar_size)

    if write_ass:
        if not events:
            emit("No comments to render, skipping ASS track")
        else:
            scheduler = LaneScheduler(config.max_lanes, config.speed_ms)
            assignments = scheduler.schedule(events)
            if scheduler.forced_reuses:
                emit(f"Warning: {scheduler.forced_reuses} comments reused a busy lane ({config.max_lanes} lanes)")

            names = None
            if author_names:
                names = {a.author_id: a.user_name for a in authors.values() if a.user_name}
            avatars = acquisition.avatar_paths if embed_avatars else None

            ass_path = out_dir / "ass" / f"{sanitize_filename(config.title)}.ass"
            AssEncoder(config).write(ass_path, assignments, names, avatars)
            emit(f"OUTPUT_FILE:{ass_path}")

    emit("Done.")
    emit(f"Failed downloads: {acquisition.failed}")
    return 2 if acquisition.failed else 0


def parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parses command line arguments."""
    parser = argparse.ArgumentParser("chat-to-danmaku", description="Render a live comment dump as a danmaku ASS track")
    parser.add_argument("comments", help="Enriched comment dump (.json / .jsonl)")
    parser.add_argument("-o", "--output", help="Output directory (default: named after --title)")
    parser.add_argument("--resources", help="JSON list of page asset URLs (or an object with resourceUrls)")
    parser.add_argument("--title", default=DEFAULTS["title"], help="Track title, also used for the file name")
    parser.add_argument("--token", default=DEFAULTS["token"], help="Session token sent as a cookie with downloads")
    parser.add_argument("--referer", default=DEFAULTS["referer"], help="Referer header for downloads (page URL)")
    parser.add_argument("--user-agent", default=DEFAULTS["user_agent"], help="User-Agent header for downloads")

    parser.add_argument("-W", "--frame-width", type=int, default=DEFAULTS["frame_width"], help="Video width")
    parser.add_argument("-H", "--frame-height", type=int, default=DEFAULTS["frame_height"], help="Video height")
    parser.add_argument("--font-size", type=int, default=DEFAULTS["font_size"], help="Comment font size")
    parser.add_argument("--font-name", default=DEFAULTS["font_name"], help="Comment font")
    parser.add_argument("--speed-ms", type=int, default=DEFAULTS["speed_ms"], help="Time a comment takes to cross the screen")
    parser.add_argument("--line-spacing", type=float, default=DEFAULTS["line_spacing"], help="Gap between lanes, in font sizes")
    parser.add_argument("--display-area-ratio", type=float, default=DEFAULTS["display_area_ratio"], help="Share of the frame height used for comments")
    parser.add_argument("--max-lanes", type=int, help="Override the derived number of lanes")
    parser.add_argument("--avatar-size", type=int, default=DEFAULTS["avatar_size"], help="Embedded avatar size")

    parser.add_argument("--max-workers", type=int, default=DEFAULTS["max_workers"], help="Parallel downloads")
    parser.add_argument("--max-retries", type=int, default=DEFAULTS["max_retries"], help="Retries per download")
    parser.add_argument("--retry-delay-ms", type=int, default=DEFAULTS["retry_delay_ms"], help="Retry base delay in ms")
    parser.add_argument("--inter-job-delay-ms", type=int, default=DEFAULTS["inter_job_delay_ms"], help="Delay between download starts in ms")
    parser.add_argument("--timeout-ms", type=int, default=DEFAULTS["timeout_ms"], help="Request timeout in ms")

    parser.add_argument("--skip-avatars", action="store_true", help="Don't download user avatars")
    parser.add_argument("--skip-resources", action="store_true", help="Don't download page assets")
    parser.add_argument("--no-ass", action="store_true", help="Don't write the ASS track")
    parser.add_argument("--author-names", action="store_true", help="Prefix comments with the author name")
    parser.add_argument("--embed-avatars", action="store_true", help="Embed avatar thumbnails and reference them per comment")
    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Collects the option keys from parsed arguments."""
    keys = (
        "title", "token", "referer", "user_agent", "frame_width", "frame_height", "font_size",
        "font_name", "speed_ms", "line_spacing", "display_area_ratio", "max_lanes", "avatar_size",
        "max_workers", "max_retries", "retry_delay_ms", "inter_job_delay_ms", "timeout_ms",
    )
    return {key: getattr(args, key) for key in keys}


def main(argv: list[str] | None = None) -> int:
    """Entry point for the chat-to-danmaku command."""
    args = parse_cli_args(argv)
    try:
        return run(
            options_from_args(args),
            args.comments,
            output_dir=args.output,
            resources_path=args.resources,
            skip_avatars=args.skip_avatars,
            skip_resources=args.skip_resources,
            write_ass=not args.no_ass,
            author_names=args.author_names,
            embed_avatars=args.embed_avatars,
            progress_fn=print_progress,
        )
    except (ConfigurationError, EncodingError, OSError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
