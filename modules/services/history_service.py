"""Generation history tracking."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from modules.core.errors import StorageCapacityExceeded, StorageError
from modules.core.types import ActivityRecord, ImageFilter, ResultItem
from modules.services.local_store import LocalStore, encoded_size, fit

logger = logging.getLogger(__name__)

ACTIVITY_NAMESPACE = "activity_log"


def _serialize(records: Sequence[ActivityRecord]) -> list[dict]:
    return [record.to_dict() for record in records]


def _estimate(records: Sequence[ActivityRecord]) -> int:
    return encoded_size(_serialize(records))


class PersistentActivityStore:
    """Capped, newest-first activity log backed by a :class:`LocalStore`.

    The in-memory view only changes after the matching durable write succeeds.
    Running out of space is never an error for callers: the oldest records are
    evicted until the log fits, and an empty log clears the namespace.
    """

    def __init__(self, store: LocalStore, limit: int = 10, namespace: str = ACTIVITY_NAMESPACE) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1.")
        self.store = store
        self.limit = limit
        self.namespace = namespace
        self._records: List[ActivityRecord] = []

    def load(self) -> List[ActivityRecord]:
        """Read the durable log into memory, dropping entries that cannot be parsed."""
        try:
            raw = self.store.load(self.namespace)
        except StorageError as exc:
            logger.warning("Failed to load activity log, starting empty: %s", exc)
            self._records = []
            return []

        records: List[ActivityRecord] = []
        if isinstance(raw, list):
            for entry in raw:
                try:
                    records.append(ActivityRecord.from_dict(entry))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping unreadable activity record: %s", exc)
        elif raw is not None:
            logger.warning("Activity log has unexpected shape %s, starting empty", type(raw).__name__)
        self._records = records[: self.limit]
        return self.list()

    def list(self) -> List[ActivityRecord]:
        """Return records newest first."""
        return list(self._records)

    def get(self, record_id: str) -> Optional[ActivityRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: ActivityRecord) -> bool:
        """Persist ``record`` as the newest entry.

        Returns True when the record ended up in the durable log.
        """
        candidates = [record] + self._records[: self.limit - 1]
        self._persist(candidates)
        return self.get(record.id) is not None

    def update_results(self, record_id: str, results: Sequence[ResultItem]) -> bool:
        """Replace the results of an existing record (upscale, refine or filter passes)."""
        if self.get(record_id) is None:
            raise KeyError(f"Activity record '{record_id}' not found")
        candidates: List[ActivityRecord] = []
        for record in self._records:
            if record.id == record_id:
                updated = ActivityRecord.from_dict(record.to_dict())
                updated.results = [ResultItem.from_dict(item.to_dict()) for item in results]
                candidates.append(updated)
            else:
                candidates.append(record)
        return self._persist(candidates)

    def apply_filter(self, record_id: str, index: int, image_filter: ImageFilter) -> bool:
        """Record a cosmetic filter on one result item."""
        record = self.get(record_id)
        if record is None:
            raise KeyError(f"Activity record '{record_id}' not found")
        if not 0 <= index < len(record.results):
            raise IndexError(f"Record '{record_id}' has no result #{index}")
        results = [ResultItem.from_dict(item.to_dict()) for item in record.results]
        results[index].applied_filter = None if image_filter is ImageFilter.NONE else image_filter
        return self.update_results(record_id, results)

    def remove(self, record_ids: Iterable[str]) -> bool:
        doomed = set(record_ids)
        candidates = [record for record in self._records if record.id not in doomed]
        if len(candidates) == len(self._records):
            return True
        return self._persist(candidates)

    def evict_oldest(self) -> bool:
        """Drop the oldest record to free local storage for other state."""
        if not self._records:
            return False
        evicted = self._records[-1]
        if not self._persist(self._records[:-1]):
            return False
        logger.info("Evicted activity record %s to free storage", evicted.id)
        return True

    def clear(self) -> bool:
        try:
            self.store.remove(self.namespace)
        except StorageError as exc:
            logger.error("Failed to clear activity log: %s", exc)
            return False
        self._records = []
        return True

    # Internal helpers ---------------------------------------------------------
    def _persist(self, candidates: Sequence[ActivityRecord]) -> bool:
        """Write ``candidates`` wholesale, evicting oldest entries on capacity errors."""
        budget = self.store.available_bytes(self.namespace)
        fitted = fit(candidates, _estimate, budget)
        if len(fitted) < len(candidates):
            logger.info(
                "Activity log over budget (%d bytes), pre-evicting %d record(s)",
                budget,
                len(candidates) - len(fitted),
            )

        while fitted:
            try:
                self.store.save(self.namespace, _serialize(fitted))
            except StorageCapacityExceeded:
                evicted = fitted.pop()
                logger.info("Storage full, evicted activity record %s", evicted.id)
                continue
            except StorageError as exc:
                logger.error("Failed to save activity log: %s", exc)
                return False
            self._records = list(fitted)
            return True

        if candidates:
            logger.warning("Activity log could not fit any record, clearing it")
        return self.clear()
