import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List

from noticewatch.models import CacheStats, Item, utcnow

logger = logging.getLogger(__name__)

CACHE_FILENAME = "news_cache.json"
TEMP_FILENAME = "news_cache.tmp"
MARKER_FILENAME = ".first_run_done"


class CacheWriteError(Exception):
    """Raised when a snapshot could not be written; the previous one is intact."""


class ItemCache:
    def __init__(self, cache_dir: str, clock: Callable[[], datetime] = utcnow):
        """
        JSON snapshot of every posting seen so far, keyed by item id.

        Args:
            cache_dir: Directory holding the snapshot and the first-run marker
            clock: Returns the current aware datetime (injected for tests)
        """
        self.cache_dir = Path(cache_dir).resolve()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_file = self.cache_dir / CACHE_FILENAME
        self.temp_file = self.cache_dir / TEMP_FILENAME
        self.marker_file = self.cache_dir / MARKER_FILENAME
        self.clock = clock
        self._lock = threading.Lock()

    def load_snapshot(self) -> Dict[str, Item]:
        """
        Read the persisted snapshot.
        A missing file is an empty cache; a corrupt one is logged and treated the same.
        """
        if not self.cache_file.exists():
            return {}

        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
            return {item_id: Item.from_dict(raw) for item_id, raw in data.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Error loading cache {self.cache_file}: {e}")
            return {}

    def diff_new(self, candidates: Iterable[Item]) -> List[Item]:
        """Candidates whose id is not in the snapshot, in candidate order."""
        known = self.load_snapshot()
        return [item for item in candidates if item.id not in known]

    def persist(self, items: Iterable[Item]):
        """
        Replace the snapshot with exactly `items`.

        The data goes to a temp file in the same directory, is fsynced, then
        renamed over the live file. On failure the temp file is removed and
        CacheWriteError is raised.
        """
        data = {item.id: item.to_dict() for item in items}

        with self._lock:
            try:
                with open(self.temp_file, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, ensure_ascii=False, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(self.temp_file, self.cache_file)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Error saving cache: {e}")
                try:
                    self.temp_file.unlink()
                except FileNotFoundError:
                    pass
                raise CacheWriteError(str(e)) from e

        logger.debug(f"Saved {len(data)} items to {self.cache_file}")

    def merge_and_persist(self, candidates: Iterable[Item]) -> Dict[str, Item]:
        """Persist the snapshot plus candidates; fresh candidates replace stale entries."""
        merged = self.load_snapshot()
        for item in candidates:
            merged[item.id] = item
        self.persist(merged.values())
        return merged

    def cleanup_older_than(self, max_age_days: int = 30) -> int:
        snapshot = self.load_snapshot()
        cutoff = self.clock() - timedelta(days=max_age_days)

        kept = {item_id: item for item_id, item in snapshot.items() if item.crawled_at > cutoff}
        removed = len(snapshot) - len(kept)
        if removed > 0:
            self.persist(kept.values())
            logger.info(f"Cleaned up {removed} old entries")
        return removed

    def is_first_run_after_deployment(self) -> bool:
        """
        True exactly once per marker absence.
        The marker is created with O_EXCL so two callers can never both see True.
        """
        with self._lock:
            try:
                fd = os.open(self.marker_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                return False
            os.close(fd)

        logger.info(f"First run after deployment, created marker {self.marker_file}")
        return True

    def stats(self) -> CacheStats:
        snapshot = self.load_snapshot()
        size = self.cache_file.stat().st_size if self.cache_file.exists() else 0
        if not snapshot:
            return CacheStats(total_items=0, oldest_crawled_at=None, newest_crawled_at=None, size_bytes=size)

        timestamps = [item.crawled_at for item in snapshot.values()]
        return CacheStats(
            total_items=len(snapshot),
            oldest_crawled_at=min(timestamps),
            newest_crawled_at=max(timestamps),
            size_bytes=size,
        )
