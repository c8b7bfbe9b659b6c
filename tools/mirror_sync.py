"""
Incremental mirror primitives.

The local file's modification time is the only sync state: an artifact whose
mtime equals the remote record's timestamp is current, anything else is
fetched again. Paths are built from independently sanitized segments so the
same remote location always maps to the same local file.
"""

import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Hashable, Iterable, Sequence, TypeVar

log = logging.getLogger('canvas_downloader')

T = TypeVar('T')

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MAX_NAME_LENGTH = 255

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r'\s')
_WINDOWS_RESERVED = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


# ============ PATH RESOLUTION ============

def sanitize_name(name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Make a single path segment safe for any common filesystem.

    Reserved characters, control characters and whitespace each become '_'.
    The result never contains a path separator.
    """
    sanitized = _RESERVED_CHARS.sub('_', name)
    sanitized = _WHITESPACE.sub('_', sanitized)

    if sanitized in (".", ".."):
        return sanitized + "_"
    # Windows silently drops trailing dots
    if sanitized.endswith("."):
        sanitized = sanitized[:-1] + "_"
    head, dot, tail = sanitized.partition(".")
    if head.upper() in _WINDOWS_RESERVED:
        sanitized = head + "_" + dot + tail

    if len(sanitized) > max_length:
        stem, dot, suffix = sanitized.rpartition(".")
        if dot and 0 < len(suffix) < 16:
            sanitized = stem[:max_length - len(suffix) - 1] + "." + suffix
        else:
            sanitized = sanitized[:max_length]

    return sanitized if sanitized else "unnamed"


def split_remote_path(remote_path: str) -> list[str]:
    """Split a Canvas hierarchical path ('course files/Unit 1') into segments."""
    return [part for part in remote_path.split("/") if part]


def resolve_path(root, segments: Sequence[str], filename: str) -> Path:
    """Map root + remote segments + filename to an absolute local path.

    Each segment is sanitized on its own; no filesystem access.
    """
    base = Path(os.path.abspath(root))
    for segment in segments:
        base = base / sanitize_name(segment)
    return base / sanitize_name(filename)


# ============ DEDUPLICATION ============

def deduplicate(records: Iterable[T], key: Callable[[T], Hashable],
                modified: Callable[[T], datetime] = lambda r: r.modified_at) -> list[T]:
    """Keep the most recently modified record for each destination key.

    Ties keep the record that came first in the listing.
    """
    newest_first = sorted(records, key=modified, reverse=True)
    seen = set()
    unique = []
    for record in newest_first:
        k = key(record)
        if k in seen:
            log.debug(f"Dropping stale duplicate for {k!r}")
            continue
        seen.add(k)
        unique.append(record)
    return unique


# ============ FRESHNESS GATE ============

def to_mtime_ns(moment: datetime) -> int:
    """Exact nanoseconds since the epoch; naive datetimes are treated as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return ((moment - EPOCH) // timedelta(microseconds=1)) * 1000


def is_fresh(dest_path: Path, modified_at: datetime) -> bool:
    try:
        return os.stat(dest_path).st_mtime_ns == to_mtime_ns(modified_at)
    except FileNotFoundError:
        return False


def ensure_fresh(dest_path: Path, modified_at: datetime, produce: Callable[[], None]) -> bool:
    """Fetch dest_path unless it already carries exactly modified_at.

    produce() must leave the content at dest_path; its exceptions propagate
    unchanged. On success the file's atime is set to now and its mtime to
    modified_at. Returns True if produce() ran, False on skip.
    """
    if is_fresh(dest_path, modified_at):
        log.info(f"[SKIP] {dest_path}")
        return False

    produce()
    os.utime(dest_path, ns=(time.time_ns(), to_mtime_ns(modified_at)))
    log.info(f"[WRITE] {dest_path}")
    return True
