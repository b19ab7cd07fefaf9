# Edit Monitor - change ledger
#
# In-memory record of recent filesystem events, one ordered list per
# normalized path. The tracker appends to it; the response detector asks
# which paths were touched within a window around a response time.
#
# Invariant: no path maps to an empty list. Paths whose every event is
# older than the retention horizon are deleted by purge_expired().

import logging
import re
from typing import Dict, Iterable, List, Optional

from .normalizer import FileEvent, LedgerStats

logger = logging.getLogger(__name__)

# Anchored to path segments so "layout.py" is not mistaken for "out/".
DEFAULT_IGNORE_PATTERNS = (
    r"(^|/)node_modules(/|$)",
    r"(^|/)\.git(/|$)",
    r"(^|/)\.vscode(/|$)",
    r"(^|/)\.cursor(/|$)",
    r"(^|/)dist(/|$)",
    r"(^|/)out(/|$)",
    r"(^|/)build(/|$)",
    r"(^|/)\.next(/|$)",
    r"(^|/)coverage(/|$)",
    r"(^|/)__pycache__(/|$)",
    r"(^|/)\.DS_Store$",
    r"(^|/)\.env(\.[^/]*)?$",
    r"(^|/)package-lock\.json$",
    r"(^|/)yarn\.lock$",
    r"\.lock$",
)

DEFAULT_RETENTION_MS = 30_000


def normalize_path(path: str) -> str:
    return path.replace("\\", "/")


class ChangeLedger:
    """
    Append-only-per-path store of FileEvents with age-based eviction.

    All times are epoch milliseconds supplied by the caller, so the ledger
    itself has no clock and no timers.
    """

    def __init__(
        self,
        retention_ms: int = DEFAULT_RETENTION_MS,
        ignore_patterns: Optional[Iterable[str]] = None,
    ):
        self.retention_ms = retention_ms
        patterns = DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns
        self._ignore = [re.compile(p) for p in patterns]
        self._changes: Dict[str, List[FileEvent]] = {}

    def __len__(self) -> int:
        return len(self._changes)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._changes

    def should_ignore(self, path: str) -> bool:
        normalized = normalize_path(path)
        return any(p.search(normalized) for p in self._ignore)

    def record(self, event: FileEvent) -> bool:
        """Append an event. Returns False if its path is ignored."""
        if self.should_ignore(event.path):
            return False

        key = normalize_path(event.path)
        self._changes.setdefault(key, []).append(event)
        logger.debug(f"Recorded {event.kind}: {key} at {event.timestamp}")
        return True

    def purge_expired(self, now: int) -> int:
        """
        Drop events older than now - retention and delete emptied paths.
        Returns the number of paths removed.
        """
        cutoff = now - self.retention_ms
        removed = 0

        for path in list(self._changes):
            events = self._changes[path]
            kept = [e for e in events if e.timestamp >= cutoff]
            if not kept:
                del self._changes[path]
                removed += 1
            elif len(kept) != len(events):
                self._changes[path] = kept

        if removed:
            logger.debug(f"Purged {removed} expired path(s)")
        return removed

    def query(self, center_time: int, radius: int) -> List[str]:
        """
        Paths with at least one event in [center - radius, center + radius],
        in ledger insertion order.
        """
        start = center_time - radius
        end = center_time + radius
        matched = []

        for path, events in self._changes.items():
            for event in events:
                if start <= event.timestamp <= end:
                    matched.append(path)
                    break

        return matched

    def stats(self) -> LedgerStats:
        total = 0
        oldest: Optional[int] = None
        for events in self._changes.values():
            total += len(events)
            for event in events:
                if oldest is None or event.timestamp < oldest:
                    oldest = event.timestamp
        return LedgerStats(
            tracked_path_count=len(self._changes),
            total_event_count=total,
            oldest_event_timestamp=oldest,
        )

    def snapshot(self) -> Dict[str, List[FileEvent]]:
        return {path: list(events) for path, events in self._changes.items()}

    def clear(self):
        self._changes.clear()
