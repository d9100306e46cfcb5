"""
In-memory OCR result cache and history.

Two structures share one lock:
- a content-addressed lookup cache (image hash -> OCRResult), FIFO-evicted at capacity
- a most-recent-first history of saved results, truncated at the same capacity
"""

import hashlib
import itertools
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from threading import Lock

from .config import Settings, get_settings
from .errors import CacheMiss, ResultNotFound
from .models import OCRResult, OCRStatistics

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResultCacheStore:
    """Thread-safe cache of OCR results keyed by image content hash."""

    def __init__(
        self,
        settings: Settings | None = None,
        capacity: int | None = None,
        validity_window: timedelta | None = None,
        clock: Clock | None = None,
    ):
        self._settings = settings or get_settings()
        self.capacity = capacity or self._settings.cache_capacity
        self.validity_window = validity_window or timedelta(hours=self._settings.cache_validity_hours)
        self._clock = clock or _utc_now
        self._lock = Lock()
        self._entries: OrderedDict[str, OCRResult] = OrderedDict()  # insertion order = eviction order
        self._history: list[OCRResult] = []  # most recent first
        self._id_counter = itertools.count(1)

    @staticmethod
    def key(image_bytes: bytes) -> str:
        """
        Content hash of the raw image bytes.

        Same bytes = same key, regardless of filename or how often OCR ran.
        """
        return hashlib.sha256(image_bytes).hexdigest()

    # Lookup cache

    def get(self, key: str) -> OCRResult:
        """Get cached result. Raises CacheMiss if absent."""
        with self._lock:
            result = self._entries.get(key)
        if result is None:
            raise CacheMiss(f"no cache entry for key {key[:16]}")
        return result

    def lookup(self, key: str) -> OCRResult | None:
        """Get a cached result only if it exists and is still valid."""
        try:
            result = self.get(key)
        except CacheMiss:
            return None
        return result if self.is_valid(result) else None

    def is_valid(self, result: OCRResult) -> bool:
        return self._clock() < result.processed_at + self.validity_window

    def put(self, key: str, result: OCRResult) -> None:
        """Insert a result, evicting the oldest-inserted entry if at capacity."""
        with self._lock:
            if key in self._entries:
                # Re-insertion counts as the newest entry
                del self._entries[key]
            evicted = 0
            while len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
                evicted += 1
            self._entries[key] = result

        if evicted:
            logger.info(f"Evicted {evicted} cache entries (capacity {self.capacity})")

    # History

    def save(self, result: OCRResult) -> OCRResult:
        """Prepend a result to the history, assigning an id if it has none."""
        if not result.id:
            result = result.model_copy(update={"id": self._new_id()})

        with self._lock:
            self._history.insert(0, result)
            del self._history[self.capacity:]
        return result

    def history(self, limit: int = 50, include_images: bool = False) -> list[OCRResult]:
        with self._lock:
            entries = self._history[:limit]
        if include_images:
            return entries
        return [entry.without_image() for entry in entries]

    def get_by_id(self, result_id: str, include_image: bool = False) -> OCRResult:
        """Get a saved result. Raises ResultNotFound if absent."""
        with self._lock:
            result = next((entry for entry in self._history if entry.id == result_id), None)
        if result is None:
            raise ResultNotFound(f"no saved result with id {result_id}")
        return result if include_image else result.without_image()

    def delete(self, result_id: str) -> bool:
        """Remove a result from history and from any cache entry with the same id."""
        with self._lock:
            before = len(self._history)
            self._history = [entry for entry in self._history if entry.id != result_id]
            removed = before - len(self._history)
            removed += self._drop_cache_ids({result_id})
        return removed > 0

    def cleanup_older_than(self, days: int | None = None) -> int:
        """
        Remove history entries processed more than ``days`` ago.

        Independent of the validity window. Cache entries sharing a removed
        id are dropped as well.

        Returns:
            Number of history entries removed
        """
        if days is None:
            days = self._settings.history_retention_days
        cutoff = self._clock() - timedelta(days=days)

        with self._lock:
            expired_ids = {entry.id for entry in self._history if entry.processed_at < cutoff}
            before = len(self._history)
            self._history = [entry for entry in self._history if entry.processed_at >= cutoff]
            removed = before - len(self._history)
            self._drop_cache_ids(expired_ids)

        if removed:
            logger.info(f"Cleaned up {removed} history entries older than {days} days")
        return removed

    def statistics(self) -> OCRStatistics:
        """Aggregate statistics over the history."""
        with self._lock:
            entries = list(self._history)

        if not entries:
            return OCRStatistics(last_updated=self._clock())

        engine_usage: dict[str, int] = {}
        language_scores: dict[str, list[float]] = {}
        for entry in entries:
            engine = entry.ocr_engine or "unknown"
            engine_usage[engine] = engine_usage.get(engine, 0) + 1
            for fragment in entry.detected_texts:
                if fragment.language_code:
                    language_scores.setdefault(fragment.language_code, []).append(fragment.confidence)

        timed = [entry.processing_time_ms for entry in entries if entry.processing_time_ms is not None]
        return OCRStatistics(
            total_processed=len(entries),
            average_confidence=sum(entry.confidence for entry in entries) / len(entries),
            average_processing_time_ms=sum(timed) / len(timed) if timed else 0.0,
            engine_usage=engine_usage,
            language_confidence={
                language: sum(scores) / len(scores) for language, scores in language_scores.items()
            },
            last_updated=self._clock(),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._history.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _new_id(self) -> str:
        return f"saved_{int(time.time() * 1000)}_{next(self._id_counter)}"

    def _drop_cache_ids(self, result_ids: set[str | None]) -> int:
        """Remove cache entries whose result id is in ``result_ids``. Caller holds the lock."""
        stale = [key for key, entry in self._entries.items() if entry.id is not None and entry.id in result_ids]
        for key in stale:
            del self._entries[key]
        return len(stale)
