"""Daily allowance for metered (video) operations."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Dict, Mapping, Optional

from modules.core.errors import StorageCapacityExceeded, StorageError
from modules.core.types import QuotaRecord
from modules.services.local_store import LocalStore

logger = logging.getLogger(__name__)

QUOTA_NAMESPACE = "video_quota"
DAILY_FREE_QUOTA = 3
# room for {"remaining":N,"reset_date":"YYYY-MM-DD"} with a generous balance
QUOTA_RESERVE_BYTES = 96

REDEMPTION_CODES: Dict[str, int] = {
    "VEO-FAST": 5,
    "GEMINI-VIDEO": 10,
    "VXDL-PRO": 20,
    "DEMO-123": 3,
}


class QuotaManager:
    """Track the renewable daily allowance and redemption top-ups.

    The durable record is re-read on every access, so several managers sharing
    one store observe the same balance. The daily reset happens on the first
    access of a new local date and is written back immediately.
    """

    def __init__(
        self,
        store: LocalStore,
        daily_allowance: int = DAILY_FREE_QUOTA,
        codes: Optional[Mapping[str, int]] = None,
        today: Callable[[], date] = date.today,
        namespace: str = QUOTA_NAMESPACE,
        make_room: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.store = store
        self.daily_allowance = daily_allowance
        self.codes = {key.upper(): value for key, value in (codes or REDEMPTION_CODES).items()}
        self._today = today
        self.namespace = namespace
        self._make_room = make_room
        store.reserve(namespace, QUOTA_RESERVE_BYTES)

    def peek(self) -> int:
        """Return the units left today."""
        return self._current().remaining

    def consume(self) -> bool:
        """Deduct one unit before a metered operation starts."""
        record = self._current()
        if record.remaining <= 0:
            return False
        self._save(QuotaRecord(remaining=record.remaining - 1, reset_date=record.reset_date))
        return True

    def redeem(self, code: str) -> bool:
        """Top up the allowance with a static redemption code."""
        bonus = self.codes.get((code or "").strip().upper())
        if not bonus:
            logger.info("Rejected redemption code")
            return False
        record = self._current()
        self._save(QuotaRecord(remaining=record.remaining + bonus, reset_date=record.reset_date))
        return True

    # Internal helpers ---------------------------------------------------------
    def _current(self) -> QuotaRecord:
        today = self._today().isoformat()
        record: Optional[QuotaRecord] = None
        try:
            raw = self.store.load(self.namespace)
            if isinstance(raw, dict):
                record = QuotaRecord.from_dict(raw)
        except StorageError as exc:
            logger.warning("Quota record unreadable, resetting: %s", exc)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Quota record malformed, resetting: %s", exc)

        if record is None or record.reset_date != today:
            record = QuotaRecord(remaining=self.daily_allowance, reset_date=today)
            self._save(record)
            logger.info("Video quota reset to %d for %s", self.daily_allowance, today)
        return record

    def _save(self, record: QuotaRecord) -> None:
        while True:
            try:
                self.store.save(self.namespace, record.to_dict())
                return
            except StorageCapacityExceeded:
                if self._make_room is None or not self._make_room():
                    logger.error("No space left for the video quota record")
                    raise
                logger.info("Freed local storage for the video quota record")
            except StorageError:
                logger.error("Failed to persist video quota")
                raise
