#!/usr/bin/env python3
"""
Canvas LMS Course Mirror

Mirrors course files, module items, assignment attachments, pages and
announcements from the Canvas API into a local directory tree. Re-running
only fetches what changed: every local file carries its remote modification
time, and a file whose mtime already matches is skipped.

BEST-EFFORT POLICY: a failing item, category or course is logged and
skipped; the run always moves on to the next one.

Usage:
    python canvas_downloader.py --all --dir ./canvas --url https://school.instructure.com/api/v1 --token TOKEN
    python canvas_downloader.py --course "Biology 101" --dir ./canvas --url ... --token ...
    python canvas_downloader.py --all --dir ./canvas --url ... --log mirror.log -v
"""

import argparse
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from assignment_links import extract_attachment_links
from canvas_client import (
    CanvasAPIError,
    CanvasClient,
    CanvasCourse,
    CanvasFolder,
    MirrorCancelled,
    MirrorConfig,
)
from mirror_sync import deduplicate, ensure_fresh, resolve_path, split_remote_path

# ============ LOGGING SETUP ============

class ColorFormatter(logging.Formatter):
    """Console formatter: level names and gate decisions in colour, when stdout is a terminal."""

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[41m',
    }
    TAG_COLORS = {
        '[WRITE]': '\033[32m',
        '[SKIP]': '\033[2m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, use_color: bool = True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        if not self.use_color:
            return super().format(record)
        record = logging.makeLogRecord(record.__dict__)
        color = self.LEVEL_COLORS.get(record.levelname)
        if color:
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        message = record.getMessage()
        for tag, tag_color in self.TAG_COLORS.items():
            if message.startswith(tag):
                message = f"{tag_color}{tag}{self.RESET}{message[len(tag):]}"
                break
        record.msg, record.args = message, None
        return super().format(record)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Send the mirror's log to stdout, and to log_file when given.

    The file always gets DEBUG, so a quiet console run still leaves a full
    per-request trace behind.
    """
    logger = logging.getLogger('canvas_downloader')
    logger.setLevel(logging.DEBUG if verbose or log_file else logging.INFO)
    logger.handlers.clear()

    # Worker threads only matter when reading a verbose trace
    fmt = '%(asctime)s [%(levelname)s] %(threadName)s %(message)s' if verbose else '%(asctime)s [%(levelname)s] %(message)s'
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(ColorFormatter(fmt, datefmt='%H:%M:%S', use_color=sys.stdout.isatty()))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(threadName)s %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")

    return logger


log = logging.getLogger('canvas_downloader')


# ============ RUN STATISTICS ============

@dataclass
class MirrorStats:
    """Counters for one mirror run."""
    total_courses: int = 0
    completed_courses: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    start_time: float = field(default_factory=time.time)
    errors: list = field(default_factory=list)

    def add_error(self, error: str):
        """Record a gap in the mirror."""
        self.errors.append(error)
        log.error(f"ERROR: {error}")

    def record_result(self, written: bool):
        if written:
            self.written += 1
        else:
            self.skipped += 1

    def record_failure(self, error: str):
        self.failed += 1
        self.add_error(error)

    def log_summary(self):
        """Log final summary."""
        elapsed = time.time() - self.start_time

        log.info("")
        log.info("=" * 60)
        log.info("MIRROR SUMMARY")
        log.info("=" * 60)
        log.info(f"  Courses:  {self.completed_courses}/{self.total_courses}")
        log.info(f"  Written:  {self.written} files")
        log.info(f"  Skipped:  {self.skipped} files (unchanged)")
        log.info(f"  Failed:   {self.failed} files")
        log.info(f"  Duration: {format_duration(elapsed)}")

        if self.errors:
            log.warning("")
            log.warning(f"ERRORS ({len(self.errors)}):")
            for err in self.errors:
                log.warning(f"  - {err}")

        log.info("=" * 60)


def format_duration(seconds: float) -> str:
    """'42s', '3m 5s' or '1h 20m'."""
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


# ============ SYNC HELPERS ============

@dataclass(frozen=True)
class MirrorEntry:
    """One local artifact to keep in step with its remote record."""
    dest: Path
    modified_at: datetime
    produce: Callable[[], None]


def _list_or_none(what: str, course: CanvasCourse, stats: MirrorStats, fetch: Callable[[], list]) -> Optional[list]:
    """Run an enumeration call; a failure means the category has nothing to mirror."""
    try:
        return fetch()
    except CanvasAPIError as e:
        log.warning(f"  Could not list {what} for {course.name}: {e}")
        stats.errors.append(f"{course.name}: listing {what} failed: {e}")
        return None


def _sync_entry(category: str, entry: MirrorEntry, stats: MirrorStats):
    try:
        written = ensure_fresh(entry.dest, entry.modified_at, entry.produce)
    except MirrorCancelled:
        raise
    except Exception as e:
        stats.record_failure(f"{category}: {entry.dest}: {e}")
        return
    stats.record_result(written)


def _sync_entries(category: str, entries: Iterable[MirrorEntry], stats: MirrorStats):
    for entry in entries:
        _sync_entry(category, entry, stats)


def _run_bounded(client: CanvasClient, tasks: list, call: Callable) -> Iterator[tuple]:
    """Run call(task) on a bounded worker pool, yielding (task, result, error) as each finishes.

    Every task is joined before the pool closes. Cancellation (or Ctrl-C)
    sets the client's cancel token and drops the tasks not yet started.
    """
    with ThreadPoolExecutor(max_workers=max(1, client.config.workers)) as executor:
        futures = {executor.submit(call, task): task for task in tasks}
        try:
            for future in as_completed(futures):
                task = futures[future]
                try:
                    result = future.result()
                except MirrorCancelled:
                    raise
                except Exception as e:
                    yield task, None, e
                    continue
                yield task, result, None
        except (KeyboardInterrupt, MirrorCancelled):
            client.cancel()
            for f in futures:
                f.cancel()
            raise


def _write_text(dest: Path, text: str):
    dest.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest.with_name(dest.name + ".part")
    part_path.write_text(text, encoding="utf-8")
    os.replace(part_path, dest)


def _save_page(client: CanvasClient, course_id: int, page_url: str, dest: Path):
    _write_text(dest, client.get_page_body(course_id, page_url))


# ============ CATEGORY DOWNLOADERS ============

def build_folder_map(folders: list[CanvasFolder]) -> dict[int, list[str]]:
    """Map folder IDs to their path segments ('course files/Unit 1' -> ['course files', 'Unit 1'])."""
    return {folder.id: split_remote_path(folder.full_name) for folder in folders}


def download_files(client: CanvasClient, course: CanvasCourse, course_dir: Path, stats: MirrorStats):
    """Mirror the course file tree, newest record winning each folder+filename."""
    folders = _list_or_none("folders", course, stats, lambda: client.list_folders(course.id))
    if folders is None:
        return
    files = _list_or_none("files", course, stats, lambda: client.list_files(course.id))
    if files is None:
        return

    folder_map = build_folder_map(folders)
    unique_files = deduplicate(files, key=lambda f: (f.folder_id, f.filename))
    log.info(f"  Files: {len(unique_files)} ({len(files) - len(unique_files)} stale duplicates dropped)")

    entries = []
    for file in unique_files:
        segments = folder_map.get(file.folder_id)
        if segments is None:
            stats.record_failure(f"files: {file.filename}: unknown folder {file.folder_id}")
            continue
        if not file.url:
            log.warning(f"  No download URL for {file.filename} (locked?), skipping")
            continue
        dest = resolve_path(course_dir, segments, file.filename)
        entries.append(MirrorEntry(dest, file.modified_at, partial(client.download, file.url, dest)))

    # Distinct remote names can sanitize to one local path
    _sync_entries("files", deduplicate(entries, key=lambda e: e.dest), stats)


def download_modules(client: CanvasClient, course: CanvasCourse, course_dir: Path, stats: MirrorStats):
    """Mirror downloadable module items into modules/<module name>/."""
    modules = _list_or_none("modules", course, stats, lambda: client.list_modules(course.id))
    if modules is None:
        return

    entries = []
    for module in modules:
        items = _list_or_none(f"items of module '{module.name}'", course, stats,
                              partial(client.list_module_items, module))
        if items is None:
            continue

        for item in items:
            if not item.url:
                log.debug(f"  Module item '{item.title}' ({item.type}) has no API url, skipping")
                continue

            try:
                content = client.resolve(item.url)
            except (CanvasAPIError, ValueError) as e:
                stats.record_failure(f"modules: could not resolve '{item.title}': {e}")
                continue

            if not content.downloadable:
                log.debug(f"  Module item '{item.title}' ({item.type}) is not a file, skipping")
                continue

            dest = resolve_path(course_dir, ["modules", module.name], content.filename)
            entries.append(MirrorEntry(dest, content.modified_at, partial(client.download, content.url, dest)))

    _sync_entries("modules", deduplicate(entries, key=lambda e: e.dest), stats)


def download_assignments(client: CanvasClient, course: CanvasCourse, course_dir: Path, stats: MirrorStats):
    """Mirror files linked from assignment descriptions into psets/."""
    assignments = _list_or_none("assignments", course, stats, lambda: client.list_assignments(course.id))
    if assignments is None:
        return

    links = []
    for assignment in assignments:
        for link in extract_attachment_links(assignment.description):
            if link not in links:
                links.append(link)
    if not links:
        return
    log.info(f"  Assignments: {len(links)} attachment links in {len(assignments)} assignments")

    resolved = []
    for link, content, error in _run_bounded(client, links, lambda link: client.resolve(link.endpoint)):
        if error is not None:
            stats.record_failure(f"assignments: could not resolve '{link.text}': {error}")
            continue
        filename = link.text or content.filename
        if not (content.url and content.modified_at and filename):
            log.debug(f"  Attachment '{link.text}' is not a file, skipping")
            continue
        dest = resolve_path(course_dir, ["psets"], filename)
        resolved.append(MirrorEntry(dest, content.modified_at, partial(client.download, content.url, dest)))

    # Two links can share a name; only one may own the destination
    entries = deduplicate(resolved, key=lambda e: e.dest)

    for entry, written, error in _run_bounded(
            client, entries, lambda e: ensure_fresh(e.dest, e.modified_at, e.produce)):
        if error is not None:
            stats.record_failure(f"assignments: {entry.dest}: {error}")
        else:
            stats.record_result(written)


def download_pages(client: CanvasClient, course: CanvasCourse, course_dir: Path, stats: MirrorStats):
    """Mirror wiki pages as pages/<page url>.html."""
    pages = _list_or_none("pages", course, stats, lambda: client.list_pages(course.id))
    if pages is None:
        return

    entries = []
    for page in pages:
        dest = resolve_path(course_dir, ["pages"], f"{page.url}.html")
        entries.append(MirrorEntry(dest, page.updated_at, partial(_save_page, client, course.id, page.url, dest)))

    _sync_entries("pages", entries, stats)


def download_announcements(client: CanvasClient, course: CanvasCourse, course_dir: Path, stats: MirrorStats):
    """Mirror announcement bodies as announcements/<title>_<id>.html."""
    announcements = _list_or_none("announcements", course, stats, lambda: client.list_announcements(course.id))
    if announcements is None:
        return

    entries = []
    for announcement in announcements:
        # The id keeps identically titled announcements apart
        dest = resolve_path(course_dir, ["announcements"], f"{announcement.title}_{announcement.id}.html")
        entries.append(MirrorEntry(dest, announcement.created_at, partial(_write_text, dest, announcement.message)))

    _sync_entries("announcements", entries, stats)


CATEGORY_DOWNLOADERS = (
    ("assignments", download_assignments),
    ("files", download_files),
    ("pages", download_pages),
    ("announcements", download_announcements),
    ("modules", download_modules),
)


# ============ MAIN OPERATIONS ============

def course_directory(output_dir: Path, course: CanvasCourse) -> Path:
    return resolve_path(output_dir, [], f"{course.name}_{course.id}")


def select_courses(courses: list[CanvasCourse], selector: Optional[str]) -> list[CanvasCourse]:
    """All courses, or those whose name, course code or id equals selector."""
    if selector is None:
        return list(courses)
    return [c for c in courses if selector in (c.name, c.course_code, str(c.id))]


def mirror_course(client: CanvasClient, course: CanvasCourse, output_dir: Path, stats: MirrorStats):
    """Run every category for one course; a failing category never stops the others."""
    log.info("")
    log.info("=" * 60)
    log.info(f"> Downloading from {course.course_code} {course.name}")
    log.info("=" * 60)

    course_dir = course_directory(output_dir, course)
    course_dir.mkdir(parents=True, exist_ok=True)

    for category, downloader in CATEGORY_DOWNLOADERS:
        log.info(f"--- {category} ---")
        try:
            downloader(client, course, course_dir, stats)
        except MirrorCancelled:
            raise
        except Exception as e:
            log.exception(f"  {category} failed for {course.name}")
            stats.add_error(f"{course.name}: {category} aborted: {e}")

    stats.completed_courses += 1


def mirror_all(client: CanvasClient, output_dir: Path) -> MirrorStats:
    """Mirror every selected course into output_dir."""
    stats = MirrorStats()

    log.info("")
    log.info("=" * 60)
    log.info("CANVAS COURSE MIRROR")
    log.info("=" * 60)
    log.info(f"API URL: {client.config.api_url}")
    log.info(f"Output: {Path(output_dir).absolute()}")
    log.info(f"Course: {client.config.course or 'all'}")
    log.info("=" * 60)

    try:
        courses = client.list_courses()
    except CanvasAPIError as e:
        stats.add_error(f"Could not list courses: {e}")
        stats.log_summary()
        return stats

    selected = select_courses(courses, client.config.course)
    if not selected:
        log.info("Found no courses to download")
        stats.log_summary()
        return stats

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stats.total_courses = len(selected)

    for i, course in enumerate(selected, 1):
        if not course.name:
            log.info(f"No course name, skipping. Data: {course}")
            continue
        log.info(f"\n>>> COURSE {i}/{len(selected)}: {course.id}")
        try:
            mirror_course(client, course, output_dir, stats)
        except MirrorCancelled:
            raise
        except Exception as e:
            log.exception(f"Course {course.name} failed")
            stats.add_error(f"{course.name}: {e}")

    stats.log_summary()

    api_stats = client.backoff.get_stats()
    log.info(
        f"API Stats: {api_stats['total_requests']} requests, {api_stats['total_errors']} errors, "
        f"{api_stats['total_wait_time_seconds']}s total delay"
    )
    return stats


# ============ CLI ============

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mirror Canvas LMS course content into a local directory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python canvas_downloader.py --all --dir ./canvas --url https://school.instructure.com/api/v1 --token TOKEN
    python canvas_downloader.py --course BIO-101 --dir ./canvas --url ... --token ...
    CANVAS_API_TOKEN=... python canvas_downloader.py --all --dir ./canvas --url ...
"""
    )

    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--course", "-c", type=str, help="Course to download (name, code or id)")
    selection.add_argument("--all", "-a", action="store_true", help="Get all courses")

    parser.add_argument("--dir", "-d", type=str, required=True, help="Location to download to")
    parser.add_argument("--url", "-u", type=str, required=True, help="Canvas API URL (.../api/v1)")
    parser.add_argument("--token", "-t", type=str, default=os.environ.get("CANVAS_API_TOKEN"),
                        help="Canvas API token (default: $CANVAS_API_TOKEN)")
    parser.add_argument("--workers", type=int, default=4, help="Parallel attachment downloads")
    parser.add_argument("--timeout", type=float, default=60.0, help="Per-request timeout (seconds)")
    parser.add_argument("--rate-limit", type=int, default=0, help="Delay between requests (ms)")
    parser.add_argument("--max-retries", type=int, default=5, help="Attempts per request")
    parser.add_argument("--log", type=str, help="Log file path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.token:
        parser.error("Must specify --token (or set CANVAS_API_TOKEN)")
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    if args.max_retries < 1:
        parser.error("--max-retries must be at least 1")

    setup_logging(Path(args.log) if args.log else None, args.verbose)

    config = MirrorConfig(
        base_url=args.url,
        api_token=args.token,
        output_dir=args.dir,
        course=args.course,
        max_retries=args.max_retries,
        rate_limit_ms=args.rate_limit,
        timeout=args.timeout,
        workers=args.workers,
    )
    client = CanvasClient(config)

    try:
        mirror_all(client, Path(config.output_dir))
    except (KeyboardInterrupt, MirrorCancelled):
        client.cancel()
        log.warning("Mirror cancelled")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
