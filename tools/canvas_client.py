#!/usr/bin/env python3
"""
Canvas LMS API Client

Thin transport layer used by the mirror: bearer-token auth, Link-header
pagination, retry with backoff, per-request timeouts and a cancellation
token. Listings come back as typed, immutable records.

Usage:
    from canvas_client import CanvasClient, MirrorConfig

    client = CanvasClient(MirrorConfig(base_url=..., api_token=..., output_dir=...))
    for course in client.list_courses():
        ...
"""

import logging
import os
import random
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

import requests

log = logging.getLogger('canvas_downloader')

T = TypeVar('T')


# ============ ERRORS ============

class CanvasAPIError(Exception):
    """A request to Canvas failed and will not be retried."""

    def __init__(self, message: str, url: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class MirrorCancelled(Exception):
    """The run was cancelled; raised at the next request or chunk."""
    pass


# ============ CONFIGURATION ============

@dataclass(frozen=True)
class MirrorConfig:
    """Run configuration, built once in main() and passed everywhere."""
    base_url: str
    api_token: str
    output_dir: str
    course: Optional[str] = None  # None means every course
    per_page: int = 100
    max_retries: int = 5
    rate_limit_ms: int = 0
    timeout: float = 60.0
    connect_timeout: float = 10.0
    workers: int = 4

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip('/')


# ============ DATA CLASSES ============

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Canvas ISO-8601 timestamp ('Z' suffix allowed) into an aware datetime."""
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class CanvasCourse:
    id: int
    name: str
    course_code: str = ""

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasCourse':
        return cls(id=data["id"], name=data.get("name") or "", course_code=data.get("course_code") or "")


@dataclass(frozen=True)
class CanvasFolder:
    id: int
    full_name: str

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasFolder':
        return cls(id=data["id"], full_name=data.get("full_name", ""))


@dataclass(frozen=True)
class CanvasFile:
    id: int
    folder_id: int
    filename: str
    url: str
    modified_at: datetime

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasFile':
        modified_at = parse_timestamp(data.get("modified_at") or data.get("updated_at"))
        if modified_at is None:
            raise ValueError(f"file {data.get('id')} has no modification time")
        return cls(
            id=data["id"],
            folder_id=data["folder_id"],
            filename=data["filename"],
            url=data.get("url") or "",
            modified_at=modified_at,
        )


@dataclass(frozen=True)
class CanvasPage:
    url: str
    updated_at: datetime

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasPage':
        updated_at = parse_timestamp(data.get("updated_at"))
        if updated_at is None:
            raise ValueError(f"page {data.get('url')} has no updated_at")
        return cls(url=data["url"], updated_at=updated_at)


@dataclass(frozen=True)
class CanvasAnnouncement:
    id: int
    title: str
    message: str
    created_at: datetime

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasAnnouncement':
        created_at = parse_timestamp(data.get("created_at") or data.get("posted_at"))
        if created_at is None:
            raise ValueError(f"announcement {data.get('id')} has no created_at")
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            message=data.get("message") or "",
            created_at=created_at,
        )


@dataclass(frozen=True)
class CanvasModule:
    id: int
    name: str
    items_url: str

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasModule':
        return cls(id=data["id"], name=data.get("name") or f"module_{data['id']}", items_url=data["items_url"])


@dataclass(frozen=True)
class CanvasModuleItem:
    title: str
    type: str
    url: Optional[str] = None  # API locator; absent for headers, external links, ...

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasModuleItem':
        return cls(
            title=data.get("title") or "",
            type=data.get("type") or "",
            url=data.get("url") or None,
        )


@dataclass(frozen=True)
class CanvasAssignment:
    id: int
    description: str = ""

    @classmethod
    def from_api(cls, data: dict) -> 'CanvasAssignment':
        return cls(id=data["id"], description=data.get("description") or "")


@dataclass(frozen=True)
class ResolvedContent:
    """What a module item or attachment locator points at.

    Only file-like targets carry url, filename and modified_at; anything
    else (quizzes, discussions, ...) leaves them empty.
    """
    url: Optional[str]
    filename: Optional[str]
    modified_at: Optional[datetime]

    @property
    def downloadable(self) -> bool:
        return bool(self.url and self.filename and self.modified_at)

    @classmethod
    def from_api(cls, data) -> 'ResolvedContent':
        if not isinstance(data, dict):
            return cls(url=None, filename=None, modified_at=None)
        return cls(
            url=data.get("url") or None,
            filename=data.get("filename") or None,
            modified_at=parse_timestamp(data.get("modified_at") or data.get("updated_at")),
        )


# ============ BACKOFF STRATEGY ============

class BackoffStrategy:
    """Exponential backoff with jitter, shared by every request of a client."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 60.0,
                 rate_limit: float = 0.0, sleep: Callable[[float], None] = time.sleep):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rate_limit = rate_limit
        self.sleep = sleep
        self.total_requests = 0
        self.total_errors = 0
        self.total_wait_time = 0.0
        self._lock = threading.Lock()

    def wait_between_requests(self):
        """Configured politeness delay between requests."""
        if self.rate_limit <= 0:
            return
        self._wait(self.rate_limit)

    def wait_after_error(self, attempt: int, max_retries: int) -> float:
        """Exponential backoff after a retryable error."""
        delay = min(self.max_delay, (2 ** (attempt - 1)) * self.base_delay)
        total_delay = delay + random.uniform(0, delay * 0.5)
        log.warning(f"Backing off for {total_delay:.1f}s (attempt {attempt}/{max_retries})")
        self._wait(total_delay)
        return total_delay

    def wait_retry_after(self, seconds: float):
        log.warning(f"Rate limited! Waiting {seconds:.0f}s...")
        self._wait(seconds)

    def record_success(self):
        with self._lock:
            self.total_requests += 1

    def record_error(self):
        with self._lock:
            self.total_requests += 1
            self.total_errors += 1

    def get_stats(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "total_wait_time_seconds": round(self.total_wait_time, 1),
        }

    def _wait(self, seconds: float):
        with self._lock:
            self.total_wait_time += seconds
        self.sleep(seconds)


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; None when absent or not a number (e.g. an HTTP date)."""
    if value is None:
        return 60.0
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(0.0, seconds)


# ============ CANVAS API CLIENT ============

class CanvasClient:
    """Client for the Canvas LMS REST API."""

    CHUNK_SIZE = 65536

    def __init__(self, config: MirrorConfig, cancel_event: Optional[threading.Event] = None,
                 backoff: Optional[BackoffStrategy] = None):
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.session = requests.Session()
        self.backoff = backoff or BackoffStrategy(rate_limit=config.rate_limit_ms / 1000)
        self.session.headers["Authorization"] = f"Bearer {config.api_token}"
        self.session.headers["Accept"] = "application/json"
        self.session.headers["User-Agent"] = "CanvasMirror/1.0"

    def cancel(self):
        self.cancel_event.set()

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise MirrorCancelled("mirror run cancelled")

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.config.api_url}/{path.lstrip('/')}"

    def _request(self, url: str, params: Optional[dict] = None, stream: bool = False) -> requests.Response:
        """GET with retry and backoff. Raises CanvasAPIError once attempts run out."""
        max_retries = self.config.max_retries
        timeout = (self.config.connect_timeout, self.config.timeout)
        last_error = None

        for attempt in range(1, max_retries + 1):
            self.check_cancelled()
            self.backoff.wait_between_requests()
            log.debug(f"GET {url} {params or ''}")

            try:
                response = self.session.get(url, params=params, stream=stream, timeout=timeout)
            except requests.exceptions.Timeout as e:
                log.warning(f"Request timeout (attempt {attempt}): {url}: {e}")
                last_error = e
            except requests.exceptions.ConnectionError as e:
                log.warning(f"Connection error (attempt {attempt}): {url}: {e}")
                last_error = e
            except requests.exceptions.RequestException as e:
                # Redirect loops, bad URLs and the like will not fix themselves
                self.backoff.record_error()
                raise CanvasAPIError(f"Request to {url} failed: {e!r}", url) from e
            else:
                if response.status_code == 429:
                    self.backoff.record_error()
                    last_error = CanvasAPIError("rate limited", url, 429)
                    if attempt < max_retries:
                        retry_after = _retry_after_seconds(response.headers.get("Retry-After"))
                        if retry_after is None:
                            self.backoff.wait_after_error(attempt, max_retries)
                        else:
                            self.backoff.wait_retry_after(retry_after)
                    continue

                if response.status_code >= 500:
                    log.warning(f"Server error {response.status_code} for {url}")
                    last_error = CanvasAPIError(f"server error {response.status_code}", url, response.status_code)
                elif response.status_code >= 400:
                    self.backoff.record_error()
                    raise CanvasAPIError(
                        f"[{response.status_code}] {url} params:{params or {}} {response.text[:200]}",
                        url, response.status_code,
                    )
                else:
                    self.backoff.record_success()
                    return response

            self.backoff.record_error()
            if attempt < max_retries:
                self.backoff.wait_after_error(attempt, max_retries)

        status = getattr(last_error, "status", None)
        raise CanvasAPIError(f"Request failed after {max_retries} attempts: {url}: {last_error}", url, status)

    def get_json(self, path: str, params: Optional[dict] = None):
        """Fetch a single JSON document."""
        url = self._url(path)
        response = self._request(url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise CanvasAPIError(f"Invalid JSON from {url}: {e}", url, response.status_code) from e

    def _fetch_all_pages(self, path: str, params: Optional[dict] = None) -> list:
        """Fetch every page of a paginated endpoint by following Link rel="next"."""
        all_data = []
        current_url = self._url(path)
        current_params = {"per_page": self.config.per_page, **(params or {})}
        page = 1

        while current_url:
            log.debug(f"Fetching page {page} of {current_url}...")
            response = self._request(current_url, params=current_params)
            try:
                data = response.json()
            except ValueError as e:
                raise CanvasAPIError(f"Invalid JSON from {current_url}: {e}", current_url) from e

            if not isinstance(data, list):
                raise CanvasAPIError(f"Expected a list from {current_url}, got {type(data).__name__}", current_url)
            all_data.extend(data)

            current_url = None
            link_header = response.headers.get("Link", "")
            for link in link_header.split(","):
                if 'rel="next"' in link:
                    match = re.search(r'<([^>]+)>', link)
                    if match:
                        current_url = match.group(1)
                        # The next link already carries the query string
                        current_params = None
                        page += 1
                        break

        return all_data

    def _records(self, data: list, factory: Callable[[dict], T], kind: str) -> list[T]:
        """Build records, dropping the malformed ones instead of the whole listing."""
        records = []
        for item in data:
            try:
                records.append(factory(item))
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"Skipping malformed {kind} record: {e!r}")
        return records

    # ---- listings ----

    def list_courses(self) -> list[CanvasCourse]:
        return self._records(self._fetch_all_pages("courses"), CanvasCourse.from_api, "course")

    def list_folders(self, course_id: int) -> list[CanvasFolder]:
        data = self._fetch_all_pages(f"courses/{course_id}/folders")
        return self._records(data, CanvasFolder.from_api, "folder")

    def list_files(self, course_id: int) -> list[CanvasFile]:
        data = self._fetch_all_pages(f"courses/{course_id}/files")
        return self._records(data, CanvasFile.from_api, "file")

    def list_modules(self, course_id: int) -> list[CanvasModule]:
        data = self._fetch_all_pages(f"courses/{course_id}/modules")
        return self._records(data, CanvasModule.from_api, "module")

    def list_module_items(self, module: CanvasModule) -> list[CanvasModuleItem]:
        return self._records(self._fetch_all_pages(module.items_url), CanvasModuleItem.from_api, "module item")

    def list_assignments(self, course_id: int) -> list[CanvasAssignment]:
        data = self._fetch_all_pages(f"courses/{course_id}/assignments")
        return self._records(data, CanvasAssignment.from_api, "assignment")

    def list_pages(self, course_id: int) -> list[CanvasPage]:
        data = self._fetch_all_pages(f"courses/{course_id}/pages")
        return self._records(data, CanvasPage.from_api, "page")

    def list_announcements(self, course_id: int) -> list[CanvasAnnouncement]:
        data = self._fetch_all_pages("announcements", {"context_codes[]": f"course_{course_id}"})
        return self._records(data, CanvasAnnouncement.from_api, "announcement")

    # ---- single resources ----

    def get_page_body(self, course_id: int, page_url: str) -> str:
        data = self.get_json(f"courses/{course_id}/pages/{page_url}")
        return (data or {}).get("body") or ""

    def resolve(self, locator: str) -> ResolvedContent:
        """Follow an API locator (module item url, data-api-endpoint) to its descriptor."""
        return ResolvedContent.from_api(self.get_json(locator))

    def download(self, url: str, dest_path: Path):
        """Stream url into dest_path, replacing it only once the transfer completes."""
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = dest_path.with_name(dest_path.name + ".part")

        response = self._request(url, stream=True)
        try:
            with open(part_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    self.check_cancelled()
                    if chunk:
                        f.write(chunk)
            os.replace(part_path, dest_path)
        except requests.exceptions.RequestException as e:
            if part_path.exists():
                part_path.unlink()
            raise CanvasAPIError(f"Download of {url} broke off: {e!r}", url) from e
        except BaseException:
            # Clean up partial file
            if part_path.exists():
                part_path.unlink()
            raise
        finally:
            response.close()
