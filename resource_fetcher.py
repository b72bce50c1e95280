"""Deduplicated, rate-limited, retrying resource downloads.

``ResourceCache`` guarantees one fetch per resource id for the lifetime of a
run; ``FetchPool`` executes fetches with a bounded number of simultaneous
requests, a start throttle between distinct jobs and per-job retries. A job
that runs out of retries is recorded as a failed outcome and never stops its
siblings.
"""

from __future__ import annotations

import random
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from io import BytesIO
from pathlib import Path
from typing import Callable

import requests
from PIL import Image, UnidentifiedImageError

from danmaku_config import DEFAULT_USER_AGENT
from danmaku_errors import DecodeError, TransportError

AVATAR = "avatar"
IMAGE = "image"
ANIMATION = "animation"

CATEGORY_DIRS = {
    AVATAR: "avatars",
    IMAGE: "images",
    ANIMATION: "gifs",
}

SUCCESS = "success"
FAILED = "failed"

TOKEN_COOKIE = "nglives_pltk"

MAX_RETRY_DELAY_MS = 120000
RETRY_JITTER_RATIO = 0.25
RETRY_AFTER_STATUSES = {429, 503}


@dataclass(frozen=True)
class ResourceRef:
    id: str
    target_file_name: str
    category: str

    def __post_init__(self):
        if self.category not in CATEGORY_DIRS:
            raise ValueError(f"Unknown resource category: {self.category}")


@dataclass(frozen=True)
class FetchOutcome:
    ref: ResourceRef
    status: str
    local_path: str | None = None
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass
class FetchReport:
    total: int = 0
    success: int = 0
    failed: int = 0
    outcomes: list[FetchOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "items": [
                {
                    "id": outcome.ref.id,
                    "category": outcome.ref.category,
                    "status": outcome.status,
                    "output": outcome.local_path,
                    "error": outcome.error,
                    "attempts": outcome.attempts,
                }
                for outcome in self.outcomes
            ],
        }


def category_dir(output_dir: str | Path, category: str) -> Path:
    """Returns the directory a category is saved to."""
    return Path(output_dir) / CATEGORY_DIRS[category]


def ensure_category_dirs(output_dir: str | Path) -> None:
    """Creates avatars/, images/ and gifs/ under ``output_dir``."""
    for category in CATEGORY_DIRS:
        category_dir(output_dir, category).mkdir(parents=True, exist_ok=True)


def _parse_retry_after_ms(raw_value: str | None) -> int | None:
    if not raw_value:
        return None
    text = raw_value.strip()
    if text.isdigit():
        return int(text) * 1000
    try:
        parsed_dt = parsedate_to_datetime(text)
        if parsed_dt.tzinfo is None:
            parsed_dt = parsed_dt.replace(tzinfo=timezone.utc)
        seconds_left = (parsed_dt - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(seconds_left * 1000))
    except (TypeError, ValueError, OverflowError):
        return None


def compute_retry_delay_ms(
    *,
    attempt: int,
    retry_delay_ms: int,
    status: int | None = None,
    retry_after_ms: int | None = None,
) -> int:
    """Exponential backoff with jitter; 429 waits at least 5s and Retry-After wins if longer."""
    if retry_delay_ms <= 0:
        return 0
    exponential_ms = min(MAX_RETRY_DELAY_MS, retry_delay_ms * (2**attempt))
    jitter_span = max(1, int(exponential_ms * RETRY_JITTER_RATIO))
    wait_ms = max(1, exponential_ms + random.randint(-jitter_span, jitter_span))

    if status == 429:
        wait_ms = max(wait_ms, 5000)

    if retry_after_ms is not None:
        wait_ms = max(wait_ms, min(MAX_RETRY_DELAY_MS, retry_after_ms))

    return min(MAX_RETRY_DELAY_MS, wait_ms)


def _check_image(data: bytes) -> None:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise DecodeError(f"Not a readable image: {exc}") from exc


class HttpFetcher:
    """Downloads a resource body with requests; one Session per worker thread."""

    def __init__(self, token="", referer="", user_agent=DEFAULT_USER_AGENT, timeout_ms=15000):
        self.token = token
        self.referer = referer
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.timeout_sec = max(0.1, timeout_ms / 1000)
        self._local = threading.local()

    def headers(self) -> dict[str, str]:
        """Builds the request headers sent with every download."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        }
        if self.referer:
            headers["Referer"] = self.referer
        if self.token:
            headers["Cookie"] = f"{TOKEN_COOKIE}={self.token}"
        return headers

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.headers())
            self._local.session = session
        return session

    def __call__(self, ref: ResourceRef) -> bytes:
        try:
            response = self._session().get(ref.id, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            retry_after_ms = None
            if response.status_code in RETRY_AFTER_STATUSES:
                retry_after_ms = _parse_retry_after_ms(response.headers.get("Retry-After"))
            raise TransportError(f"HTTP {response.status_code}", response.status_code, retry_after_ms)

        data = response.content
        if not data:
            raise DecodeError("Empty response body")
        _check_image(data)
        return data


class ResourceCache:
    """Resource id -> future outcome. One instance per run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, Future] = {}

    def claim(self, ref: ResourceRef) -> tuple[Future, bool]:
        """Returns the future for ``ref.id`` and whether the caller must fetch it."""
        with self._lock:
            future = self._entries.get(ref.id)
            if future is not None:
                return future, False
            future = Future()
            self._entries[ref.id] = future
            return future, True

    def get(self, resource_id: str) -> FetchOutcome | None:
        """Returns the finished outcome for an id, if any."""
        with self._lock:
            future = self._entries.get(resource_id)
        if future is None or not future.done():
            return None
        return future.result()

    def outcomes(self) -> list[FetchOutcome]:
        with self._lock:
            futures = list(self._entries.values())
        return [future.result() for future in futures if future.done() and future.exception() is None]

    def __contains__(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FetchPool:
    """Runs fetch jobs through the shared cache with bounded concurrency."""

    def __init__(
        self,
        cache: ResourceCache,
        fetcher: Callable[[ResourceRef], bytes],
        output_dir: str | Path,
        *,
        max_workers: int = 6,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        inter_job_delay_ms: int = 50,
        log_fn: Callable[[str], None] | None = None,
        progress_fn: Callable[[int, int], None] | None = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.cache = cache
        self.fetcher = fetcher
        self.output_dir = Path(output_dir)
        self.max_workers = max_workers
        self.max_retries = max(0, max_retries)
        self.retry_delay_ms = max(0, retry_delay_ms)
        self.emit = log_fn or print
        self.progress_fn = progress_fn

        self._slots = threading.BoundedSemaphore(max_workers)
        self._schedule_lock = threading.Lock()
        self._next_dispatch = time.monotonic()
        self._throttle_sec = max(0, inter_job_delay_ms) / 1000

    def _wait_for_dispatch_slot(self) -> None:
        if self._throttle_sec <= 0:
            return
        with self._schedule_lock:
            now = time.monotonic()
            wait = max(0.0, self._next_dispatch - now)
            self._next_dispatch = max(now, self._next_dispatch) + self._throttle_sec
        if wait > 0:
            time.sleep(wait)

    def _write(self, ref: ResourceRef, data: bytes) -> Path:
        path = category_dir(self.output_dir, ref.category) / ref.target_file_name
        path.write_bytes(data)
        return path

    def _run_job(self, ref: ResourceRef) -> FetchOutcome:
        self._wait_for_dispatch_slot()
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            with self._slots:
                try:
                    data = self.fetcher(ref)
                except Exception as exc:  # any fetch failure counts against the retry budget
                    last_error = exc
                else:
                    try:
                        path = self._write(ref, data)
                    except OSError as exc:
                        return FetchOutcome(ref, FAILED, error=str(exc), error_kind=type(exc).__name__, attempts=attempts)
                    return FetchOutcome(ref, SUCCESS, local_path=str(path), attempts=attempts)

            if attempt >= self.max_retries:
                break
            status = getattr(last_error, "status", None)
            wait_ms = compute_retry_delay_ms(
                attempt=attempt,
                retry_delay_ms=self.retry_delay_ms,
                status=status,
                retry_after_ms=getattr(last_error, "retry_after_ms", None),
            )
            self.emit(f"Retry {attempts}/{self.max_retries} {ref.target_file_name}: {last_error}")
            if wait_ms > 0:
                time.sleep(wait_ms / 1000)

        return FetchOutcome(
            ref,
            FAILED,
            error=str(last_error),
            error_kind=type(last_error).__name__,
            attempts=attempts,
        )

    def submit(self, ref: ResourceRef) -> FetchOutcome:
        """Fetches ``ref`` once per run; concurrent and later callers share the outcome."""
        future, owner = self.cache.claim(ref)
        if owner:
            try:
                outcome = self._run_job(ref)
            except BaseException as exc:
                future.set_exception(exc)
                raise
            future.set_result(outcome)
        return future.result()

    def submit_all(self, refs: list[ResourceRef]) -> FetchReport:
        """Fetches every ref with up to ``max_workers`` threads and waits for all of them."""
        jobs: list[ResourceRef] = []
        seen: set[str] = set()
        for ref in refs:
            if ref.id not in seen:
                seen.add(ref.id)
                jobs.append(ref)

        report = FetchReport(total=len(jobs))
        if not jobs:
            return report

        results: list[FetchOutcome | None] = [None] * len(jobs)
        pointer_lock = threading.Lock()
        report_lock = threading.Lock()
        next_pointer = 0
        done = 0

        def next_job() -> int | None:
            nonlocal next_pointer
            with pointer_lock:
                if next_pointer >= len(jobs):
                    return None
                index = next_pointer
                next_pointer += 1
                return index

        def worker() -> None:
            nonlocal done
            while True:
                index = next_job()
                if index is None:
                    return
                ref = jobs[index]
                outcome = self.submit(ref)
                with report_lock:
                    results[index] = outcome
                    if outcome.ok:
                        report.success += 1
                    else:
                        report.failed += 1
                    done += 1
                    current = done
                if outcome.ok:
                    self.emit(f"OK -> {ref.target_file_name}")
                else:
                    self.emit(f"FAILED -> {ref.target_file_name}: {outcome.error}")
                if self.progress_fn is not None:
                    self.progress_fn(current, len(jobs))

        threads = [threading.Thread(target=worker, daemon=True) for _ in range(min(self.max_workers, len(jobs)))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        report.outcomes = [outcome for outcome in results if outcome is not None]
        return report
