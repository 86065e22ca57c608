"""Size-constrained JSON key/value store for activity and quota state."""

from __future__ import annotations

import errno
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from modules.core.errors import StorageCapacityExceeded, StorageError

T = TypeVar("T")

_CAPACITY_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def fit(records: Sequence[T], estimate_size: Callable[[Sequence[T]], int], budget: int) -> List[T]:
    """Drop the oldest records (tail of a newest-first list) until the estimate fits.

    Returns an empty list when even a single record exceeds ``budget``.
    """
    fitted = list(records)
    while fitted and estimate_size(fitted) > budget:
        fitted.pop()
    return fitted


def encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def encoded_size(value: Any) -> int:
    return len(encode(value).encode("utf-8"))


class LocalStore:
    """One JSON document per namespace, sharing a total byte budget.

    Each ``save`` replaces the namespace file atomically so a failed write never
    leaves a partially written document behind.
    """

    def __init__(self, root: Path, capacity_bytes: int = 5 * 1024 * 1024) -> None:
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes
        self._reserved: Dict[str, int] = {}

    def init(self) -> None:
        """Create the backing directory."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create local store at {self.root}: {exc}") from exc

    def _path(self, namespace: str) -> Path:
        return self.root / f"{namespace}.json"

    def reserve(self, namespace: str, size: int) -> None:
        """Hold back ``size`` bytes of the budget for ``namespace`` even before it is written."""
        self._reserved[namespace] = max(size, self._reserved.get(namespace, 0))

    def usage_bytes(self, exclude: Optional[str] = None) -> int:
        """Return bytes used or reserved by every namespace except ``exclude``."""
        sizes: Dict[str, int] = {}
        if self.root.exists():
            for path in self.root.glob("*.json"):
                try:
                    sizes[path.stem] = path.stat().st_size
                except OSError:
                    continue
        for namespace, size in self._reserved.items():
            sizes[namespace] = max(size, sizes.get(namespace, 0))
        return sum(size for namespace, size in sizes.items() if namespace != exclude)

    def available_bytes(self, namespace: str) -> int:
        """Bytes a new document for ``namespace`` may occupy."""
        return max(0, self.capacity_bytes - self.usage_bytes(exclude=namespace))

    def load(self, namespace: str) -> Optional[Any]:
        """Return the stored document, or ``None`` when nothing is stored."""
        path = self._path(namespace)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fp:
                return json.load(fp)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Stored '{namespace}' document is corrupt: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot read '{namespace}': {exc}") from exc

    def save(self, namespace: str, value: Any) -> None:
        """Replace the namespace document.

        Raises:
            StorageCapacityExceeded: the document does not fit the budget or the
                disk is full.
            StorageError: any other failure; the previous document is kept.
        """
        try:
            data = encode(value).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Cannot serialize '{namespace}': {exc}") from exc

        available = self.available_bytes(namespace)
        if len(data) > available:
            raise StorageCapacityExceeded(
                f"'{namespace}' needs {len(data)} bytes but only {available} are available."
            )

        self.init()
        fd, tmp_name = tempfile.mkstemp(prefix=f".{namespace}.", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
            os.replace(tmp_name, self._path(namespace))
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            if exc.errno in _CAPACITY_ERRNOS:
                raise StorageCapacityExceeded(f"Disk full while writing '{namespace}': {exc}") from exc
            raise StorageError(f"Cannot write '{namespace}': {exc}") from exc

    def remove(self, namespace: str) -> None:
        """Delete the namespace document if present."""
        try:
            self._path(namespace).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot remove '{namespace}': {exc}") from exc

