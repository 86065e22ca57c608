"""API key pool used as the credential-selection collaborator."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from modules.core.errors import StudioError

logger = logging.getLogger(__name__)


class CredentialPool:
    """Ordered API keys; reselection moves to the next one not yet tried."""

    def __init__(self, keys: Sequence[str]) -> None:
        self._keys: List[str] = [key for key in keys if key]
        self._index = 0

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> Optional[str]:
        if not self._keys:
            return None
        return self._keys[self._index]

    def require_current(self) -> str:
        key = self.current()
        if key is None:
            raise StudioError("API key is not set. Please configure GEMINI_API_KEY or GEMINI_API_KEYS.")
        return key

    async def select_next(self) -> bool:
        """Switch to the next key; False once every configured key was tried."""
        if self._index + 1 >= len(self._keys):
            logger.warning("No further API key available for reselection")
            return False
        self._index += 1
        logger.info("Switched to API key #%d of %d", self._index + 1, len(self._keys))
        return True
