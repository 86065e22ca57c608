"""Cancellable poll loop for jobs that finish out of band (video rendering)."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from modules.core.errors import JobCancelled, classify_error
from modules.core.types import Artifact
from modules.services.api_client import RetryingAPIClient
from modules.services.genai_service import JobStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 20.0
DEFAULT_PROGRESS_PHASES: tuple[str, ...] = (
    "Initializing video job...",
    "Job accepted, waiting for the renderer...",
    "Analyzing scene dynamics...",
    "Generating motion vectors...",
    "Rendering frames (this may take a moment)...",
    "Synthesizing audio track...",
    "Finalizing video output...",
)
FINALIZING_MESSAGE = "Finalizing video..."

ProgressCallback = Callable[[str], None]
SleepFn = Callable[[float], Awaitable[Any]]


class JobBackend(Protocol):
    async def submit_job(self, request: Any) -> Any: ...

    async def poll_job(self, handle: Any) -> JobStatus: ...

    async def fetch_job(self, handle: Any) -> Artifact: ...


class JobState(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Flag shared between the caller and a running job."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class LongRunningJobPoller:
    """Submit a job once, poll it on a fixed interval, then fetch the artifact.

    Every remote call goes through the shared :class:`RetryingAPIClient`, so each
    poll gets its own one-shot credential reselection; the job itself is never
    re-submitted.
    """

    def __init__(
        self,
        backend: JobBackend,
        client: RetryingAPIClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        sleep: SleepFn = asyncio.sleep,
        phases: Sequence[str] = DEFAULT_PROGRESS_PHASES,
    ) -> None:
        self.backend = backend
        self.client = client
        self.interval = interval
        self._sleep = sleep
        self.phases = tuple(phases) or DEFAULT_PROGRESS_PHASES
        self.state = JobState.IDLE

    async def start(
        self,
        job_request: Any,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        phases: Optional[Sequence[str]] = None,
    ) -> Artifact:
        messages = tuple(phases) if phases else self.phases
        token = cancel or CancellationToken()

        def emit(index: int) -> None:
            if on_progress is not None:
                on_progress(messages[index % len(messages)])

        try:
            emit(0)
            handle = await self.client.execute(lambda: self.backend.submit_job(job_request))
            self._transition(JobState.SUBMITTED)
            emit(1)
            self._transition(JobState.POLLING)

            counter = 2
            while True:
                self._check_cancelled(token)
                await self._sleep(self.interval)
                self._check_cancelled(token)
                current = handle
                status = await self.client.execute(lambda: self.backend.poll_job(current))
                handle = status.handle
                if status.done:
                    break
                emit(counter)
                counter += 1

            self._check_cancelled(token)
            if on_progress is not None:
                on_progress(FINALIZING_MESSAGE)
            finished = handle
            artifact = await self.client.execute(lambda: self.backend.fetch_job(finished))
        except JobCancelled:
            self._transition(JobState.CANCELLED)
            raise
        except Exception as exc:  # noqa: BLE001
            self._transition(JobState.FAILED)
            error = classify_error(exc)
            if error is exc:
                raise
            raise error from exc

        self._transition(JobState.COMPLETED)
        return artifact

    def _check_cancelled(self, token: CancellationToken) -> None:
        if token.cancelled:
            raise JobCancelled()

    def _transition(self, state: JobState) -> None:
        logger.info("Video job %s -> %s", self.state.value, state.value)
        self.state = state

