"""Remote call wrapper with one credential-reselection retry."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from modules.core.errors import classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

CredentialSelector = Callable[[], Awaitable[bool]]


class RetryingAPIClient:
    """Run remote thunks, reselecting the credential once on auth/availability errors.

    At most two thunk invocations and one selector invocation happen per
    :meth:`execute` call. Failures always surface as classified
    :class:`StudioError` instances.
    """

    def __init__(self, credential_selector: Optional[CredentialSelector] = None) -> None:
        self.credential_selector = credential_selector

    async def execute(self, thunk: Callable[[], Awaitable[T]]) -> T:
        try:
            return await thunk()
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)

        if not error.reauth_eligible or self.credential_selector is None:
            raise error

        logger.warning("Remote call failed with %s, requesting a new credential", error.kind.value)
        if not await self._reselect():
            raise error

        try:
            return await thunk()
        except Exception as exc:  # noqa: BLE001
            retry_error = classify_error(exc)
            if retry_error is exc:
                raise
            raise retry_error from exc

    async def _reselect(self) -> bool:
        assert self.credential_selector is not None
        try:
            accepted = await self.credential_selector()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Credential selection failed: %s", exc)
            return False
        if not accepted:
            logger.info("Credential selection declined")
        return bool(accepted)

