"""Works out which remote files a broadcast needs and drives the fetch pool.

Avatars come from the comment authors, page assets (gift icons, banners,
backgrounds) from the page-resource list. Each unique URL becomes one
``ResourceRef`` with a sanitized file name that is unique inside its category
directory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable
from urllib import parse as url_parse

from PIL import Image, ImageDraw, UnidentifiedImageError

from comment_source import AuthorInfo
from resource_fetcher import (
    ANIMATION,
    AVATAR,
    IMAGE,
    FetchPool,
    FetchReport,
    ResourceRef,
    category_dir,
    ensure_category_dirs,
)

ILLEGAL_FILENAME_CHARS = '<>:"/\\|?*'
AVATAR_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"}
THUMB_DIR = "thumbs"


def sanitize_filename(name: str) -> str:
    """Replaces characters that are illegal in file names with '_'."""
    return "".join("_" if ch in ILLEGAL_FILENAME_CHARS else ch for ch in name)


def _is_gif_url(url: str) -> bool:
    lowered = url.lower()
    return "gif" in lowered or "animation" in lowered


def resource_filename(url: str) -> str:
    """File name for a page asset: last URL path segment, with an extension guessed if missing."""
    parts = url_parse.urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return sanitize_filename(url) or "resource"

    name = url_parse.unquote(parts.path.rsplit("/", 1)[-1]) or "unknown"
    name = sanitize_filename(name)
    if "." not in name:
        name += ".gif" if _is_gif_url(url) else ".png"
    return name


def classify_resource(url: str) -> str:
    """Sorts a page asset into the animation or image category."""
    if resource_filename(url).lower().endswith(".gif"):
        return ANIMATION
    return IMAGE


def avatar_filename(author: AuthorInfo) -> str:
    """Names an avatar after its author, keeping a known image extension."""
    suffix = Path(url_parse.urlsplit(author.profile_image_url or "").path).suffix.lower()
    if suffix not in AVATAR_EXTENSIONS:
        suffix = ".jpg"
    return f"{sanitize_filename(author.author_id)}{suffix}"


def _unique_name(name: str, taken: set[str]) -> str:
    if name not in taken:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    counter = 1
    while True:
        candidate = f"{stem}_{counter}.{ext}" if dot else f"{stem}_{counter}"
        if candidate not in taken:
            return candidate
        counter += 1


def collect_avatar_refs(authors: Iterable[AuthorInfo]) -> tuple[list[ResourceRef], dict[str, str]]:
    """Unique avatar refs plus author id -> avatar URL for authors that have one."""
    refs: dict[str, ResourceRef] = {}
    author_urls: dict[str, str] = {}
    taken: set[str] = set()
    for author in authors:
        url = author.profile_image_url
        if not url:
            continue
        author_urls[author.author_id] = url
        if url in refs:
            continue
        name = _unique_name(avatar_filename(author), taken)
        taken.add(name)
        refs[url] = ResourceRef(url, name, AVATAR)
    return list(refs.values()), author_urls


def collect_page_refs(urls: Iterable[str]) -> list[ResourceRef]:
    """Turns page asset URLs into unique refs."""
    refs: dict[str, ResourceRef] = {}
    taken: dict[str, set[str]] = {IMAGE: set(), ANIMATION: set()}
    for url in urls:
        url = (url or "").strip()
        if not url or url in refs:
            continue
        category = classify_resource(url)
        name = _unique_name(resource_filename(url), taken[category])
        taken[category].add(name)
        refs[url] = ResourceRef(url, name, category)
    return list(refs.values())


def create_avatar_mask(size: int, scale: int = 4) -> Image.Image:
    """Creates a circular alpha mask for avatars."""
    hires_size = size * scale
    mask = Image.new("L", (hires_size, hires_size), 0)
    draw = ImageDraw.Draw(mask)
    draw.ellipse((0, 0, hires_size, hires_size), fill=255)
    return mask.resize((size, size), Image.Resampling.LANCZOS)


def make_avatar_thumbnail(source: str | Path, target: str | Path, size: int, mask: Image.Image | None = None) -> Path:
    """Scales an avatar to ``size`` px, crops it to a circle and saves it as PNG.

    Animated images contribute their first frame.
    """
    mask = mask or create_avatar_mask(size)
    with Image.open(source) as img:
        img.seek(0)
        frame = img.convert("RGBA").resize((size, size), Image.Resampling.LANCZOS)
    thumb = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    thumb.paste(frame, (0, 0), mask=mask)
    target = Path(target)
    thumb.save(target, format="PNG")
    return target


@dataclass
class AcquisitionResult:
    avatars: FetchReport = field(default_factory=FetchReport)
    resources: FetchReport = field(default_factory=FetchReport)
    avatar_paths: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return self.avatars.failed + self.resources.failed

    def to_dict(self) -> dict:
        return {
            "avatars": self.avatars.to_dict(),
            "resources": self.resources.to_dict(),
        }


class ResourceOrchestrator:
    """Collects refs, prepares directories and hands the jobs to the pool."""

    def __init__(self, output_dir: str | Path, pool: FetchPool, log_fn: Callable[[str], None] | None = None):
        self.output_dir = Path(output_dir)
        self.pool = pool
        self.emit = log_fn or print

    def prepare_directories(self) -> None:
        """Creates the category directories under the output directory."""
        ensure_category_dirs(self.output_dir)

    def acquire(
        self,
        authors: Iterable[AuthorInfo],
        page_urls: Iterable[str] = (),
        *,
        skip_avatars: bool = False,
        skip_resources: bool = False,
    ) -> AcquisitionResult:
        """Downloads avatars and page assets; failures are counted, never raised."""
        self.prepare_directories()
        result = AcquisitionResult()

        if not skip_avatars:
            avatar_refs, author_urls = collect_avatar_refs(authors)
            if avatar_refs:
                self.emit(f"Downloading {len(avatar_refs)} avatars...")
                result.avatars = self.pool.submit_all(avatar_refs)
                by_url = {outcome.ref.id: outcome for outcome in result.avatars.outcomes}
                for author_id, url in author_urls.items():
                    outcome = by_url.get(url)
                    if outcome is not None and outcome.ok:
                        result.avatar_paths[author_id] = outcome.local_path
                self.emit(f"Avatars: {result.avatars.success}/{result.avatars.total} downloaded")
            else:
                self.emit("No avatars to download")

        if not skip_resources:
            page_refs = collect_page_refs(page_urls)
            if page_refs:
                self.emit(f"Downloading {len(page_refs)} page resources...")
                result.resources = self.pool.submit_all(page_refs)
                self.emit(f"Page resources: {result.resources.success}/{result.resources.total} downloaded")
            else:
                self.emit("No page resources to download")

        return result

    def build_avatar_thumbnails(self, avatar_paths: dict[str, str], size: int) -> dict[str, str]:
        """Circular PNG thumbnails under avatars/thumbs/, keyed by author id."""
        thumb_dir = category_dir(self.output_dir, AVATAR) / THUMB_DIR
        thumb_dir.mkdir(parents=True, exist_ok=True)
        mask = create_avatar_mask(size)

        done: dict[str, str | None] = {}
        thumbs: dict[str, str] = {}
        for author_id, source in avatar_paths.items():
            if source not in done:
                target = thumb_dir / f"{Path(source).stem}.png"
                try:
                    done[source] = str(make_avatar_thumbnail(source, target, size, mask))
                except (UnidentifiedImageError, OSError, ValueError) as exc:
                    self.emit(f"Warning: skipping unreadable avatar {source}: {exc}")
                    done[source] = None
            if done[source]:
                thumbs[author_id] = done[source]
        return thumbs
