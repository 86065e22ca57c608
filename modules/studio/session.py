"""Studio session wiring routing, remote calls, history and quota together."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from config.settings import AppConfig
from modules.core.errors import (
    ErrorKind,
    QuotaExceeded,
    StorageCapacityExceeded,
    StorageError,
    StudioError,
    classify_error,
    describe_error,
)
from modules.core.types import (
    ActivityRecord,
    Artifact,
    EditingSnapshot,
    ImageFilter,
    OperationKind,
    OperationSettings,
    ResultItem,
    UpscaleResolution,
)
from modules.pipelines.video_poller import CancellationToken, LongRunningJobPoller, ProgressCallback, SleepFn
from modules.routing.request_router import CombinePolicy, EditingState, OperationPlan, route
from modules.services.api_client import RetryingAPIClient
from modules.services.credentials import CredentialPool
from modules.services.genai_service import GeminiBackend, VideoJobRequest
from modules.services.history_service import PersistentActivityStore
from modules.services.local_store import LocalStore
from modules.services.quota_service import QuotaManager
from modules.services.storage_service import StorageService
from modules.session.history_stack import SessionHistoryStack
from modules.utils.image_utils import generate_thumbnail, split_data_url

logger = logging.getLogger(__name__)

INPAINT_ENHANCE_INSTRUCTION = (
    "Refine this image editing instruction for an AI inpainting model. The goal is to "
    'modify the masked area seamlessly. User instruction: "{prompt}"'
)
QUOTA_EXHAUSTED_MESSAGE = "Daily video quota exceeded. Please add tokens."
STORYBOARD_NO_IMAGE_MESSAGE = "Please upload an image to start the storyboard."

_DERIVED_KINDS = frozenset(
    {OperationKind.UPSCALE, OperationKind.REFINE, OperationKind.REFRAME, OperationKind.INPAINT}
)


@dataclass(slots=True)
class ActionResult:
    """Outcome of one user action: a result or a single readable message."""

    ok: bool
    message: str
    kind: Optional[OperationKind] = None
    artifact: Optional[Artifact] = None
    record: Optional[ActivityRecord] = None
    error_kind: Optional[ErrorKind] = None
    prompts: List[str] = field(default_factory=list)
    frames: List[Artifact] = field(default_factory=list)


def _artifact_for(item: ResultItem) -> Artifact:
    media_type, _ = split_data_url(item.payload)
    return Artifact(payload=item.payload, media_type=media_type)


def _record_instruction(plan: OperationPlan) -> str:
    if plan.kind is OperationKind.UPSCALE:
        resolution = plan.settings.resolution or UpscaleResolution.X2
        return f"Upscale {resolution.value}"
    if plan.kind in (OperationKind.REFINE, OperationKind.REFRAME):
        label = plan.kind.value.capitalize()
        return f"{label}: {plan.instruction}" if plan.instruction.strip() else label
    return plan.instruction


class StudioSession:
    """State of the open document plus the services acting on it.

    Mutating calls must be awaited one at a time per session.
    """

    def __init__(
        self,
        backend: Any,
        client: RetryingAPIClient,
        history: SessionHistoryStack,
        activity: PersistentActivityStore,
        quota: QuotaManager,
        poller: LongRunningJobPoller,
        storage: Optional[StorageService] = None,
        policy: Optional[CombinePolicy] = None,
    ) -> None:
        self.backend = backend
        self.client = client
        self.history = history
        self.activity = activity
        self.quota = quota
        self.poller = poller
        self.storage = storage
        self.policy = policy or CombinePolicy()

        self.artifact: Optional[Artifact] = None
        self.instruction = ""
        self.staged_images: List[Artifact] = []
        self.mask: Optional[Artifact] = None
        self.mask_active = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        backend: Any = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> "StudioSession":
        """Build a session with every collaborator constructed from ``config``."""
        store = LocalStore(config.data_dir, capacity_bytes=config.storage_capacity_bytes)
        store.init()
        credentials = CredentialPool(config.api_keys)
        backend = backend or GeminiBackend(config, credentials)
        client = RetryingAPIClient(credentials.select_next)
        activity = PersistentActivityStore(store, limit=config.history_limit)
        activity.load()
        return cls(
            backend=backend,
            client=client,
            history=SessionHistoryStack(capacity=config.undo_limit),
            activity=activity,
            quota=QuotaManager(store, daily_allowance=config.daily_video_quota, make_room=activity.evict_oldest),
            poller=LongRunningJobPoller(backend, client, interval=config.poll_interval_seconds, sleep=sleep),
            storage=StorageService(config.output_dir),
            policy=CombinePolicy.from_config(config),
        )

    # Document state -----------------------------------------------------------
    def load_artifact(self, artifact: Optional[Artifact], instruction: str = "") -> None:
        """Make ``artifact`` current; any pending mask is dropped."""
        self._set_current(artifact, instruction)
        self.history.push(EditingSnapshot(artifact=artifact, instruction=instruction))

    def stage_images(self, artifacts: Sequence[Artifact]) -> int:
        """Add images to the combine tray; returns the tray size after capping."""
        self.staged_images = (self.staged_images + list(artifacts))[: self.policy.max_images]
        return len(self.staged_images)

    def clear_staged(self) -> None:
        self.staged_images = []

    def set_mask(self, mask: Optional[Artifact]) -> None:
        self.mask = mask
        self.mask_active = True

    def clear_mask(self) -> None:
        self.mask = None
        self.mask_active = False

    def editing_state(
        self,
        instruction: str,
        tool: Optional[OperationKind] = None,
        settings: Optional[OperationSettings] = None,
    ) -> EditingState:
        return EditingState(
            instruction=instruction,
            artifact=self.artifact,
            staged_images=tuple(self.staged_images),
            mask_active=self.mask_active,
            mask=self.mask,
            tool=tool,
            settings=settings or OperationSettings(),
        )

    def undo(self) -> Optional[EditingSnapshot]:
        if not self.history.can_undo():
            return None
        snapshot = self.history.undo()
        self._restore(snapshot)
        return snapshot

    def redo(self) -> Optional[EditingSnapshot]:
        if not self.history.can_redo():
            return None
        snapshot = self.history.redo()
        self._restore(snapshot)
        return snapshot

    def select_record(self, record_id: str, index: int = 0) -> Optional[Artifact]:
        """Reload a past result as the current document."""
        record = self.activity.get(record_id)
        if record is None or not 0 <= index < len(record.results):
            return None
        artifact = _artifact_for(record.results[index])
        self.clear_staged()
        self.load_artifact(artifact, record.instruction)
        return artifact

    # Actions ------------------------------------------------------------------
    async def perform(
        self,
        instruction: str,
        tool: Optional[OperationKind] = None,
        settings: Optional[OperationSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ActionResult:
        """Route and run one action, committing its result on success."""
        plan = route(self.editing_state(instruction, tool, settings), self.policy)
        missing = plan.missing_inputs()
        if missing:
            return ActionResult(ok=False, message=missing, kind=plan.kind)

        if plan.kind.is_metered:
            try:
                charged = self.quota.consume()
            except (StorageCapacityExceeded, StorageError) as exc:
                return ActionResult(ok=False, message=describe_error(exc), kind=plan.kind, error_kind=exc.kind)
            if not charged:
                refused = QuotaExceeded(QUOTA_EXHAUSTED_MESSAGE)
                return ActionResult(ok=False, message=describe_error(refused), kind=plan.kind, error_kind=refused.kind)

        try:
            if plan.kind is OperationKind.ANIMATE:
                artifact, record = await self._animate(plan, on_progress, cancel)
            else:
                artifact, record = await self._generate(plan)
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            logger.warning("%s failed (%s): %s", plan.kind.value, error.kind.value, error.message)
            return ActionResult(ok=False, message=describe_error(error), kind=plan.kind, error_kind=error.kind)

        if plan.kind is not OperationKind.ANIMATE:
            if plan.kind is OperationKind.COMBINE:
                self.clear_staged()
            self.load_artifact(artifact, instruction)
        if not self.activity.append(record):
            logger.warning("Result of %s was not kept in the activity log", plan.kind.value)
        return ActionResult(
            ok=True,
            message=f"{plan.kind.value.capitalize()} completed.",
            kind=plan.kind,
            artifact=artifact,
            record=record,
        )

    async def rework_result(
        self,
        record_id: str,
        index: int,
        tool: OperationKind,
        instruction: str = "",
        resolution: Optional[UpscaleResolution] = None,
    ) -> ActionResult:
        """Upscale or refine one stored result and record the pass on that same item."""
        if tool not in (OperationKind.UPSCALE, OperationKind.REFINE):
            raise ValueError("Only upscale and refine can rework a stored result.")
        record = self.activity.get(record_id)
        if record is None or not 0 <= index < len(record.results):
            return ActionResult(ok=False, message="Cannot rework result: it is no longer in the history.", kind=tool)

        plan = OperationPlan(
            kind=tool,
            instruction=instruction,
            images=(_artifact_for(record.results[index]),),
            settings=dataclasses.replace(record.parameters, resolution=resolution),
        )
        missing = plan.missing_inputs()
        if missing:
            return ActionResult(ok=False, message=missing, kind=tool)
        try:
            result = await self.client.execute(lambda: self.backend.generate(plan))
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            return ActionResult(ok=False, message=describe_error(error), kind=tool, error_kind=error.kind)

        updated = [ResultItem.from_dict(existing.to_dict()) for existing in record.results]
        updated[index].payload = result.artifacts[0].payload
        if tool is OperationKind.UPSCALE:
            updated[index].applied_upscale = resolution or UpscaleResolution.X2
        else:
            updated[index].is_derived = True
        if not self.activity.update_results(record_id, updated):
            return ActionResult(ok=False, message="Could not save the reworked result.", kind=tool)
        return ActionResult(
            ok=True,
            message=f"{tool.value.capitalize()} completed.",
            kind=tool,
            artifact=result.artifacts[0],
            record=self.activity.get(record_id),
        )

    def apply_filter(self, record_id: str, index: int, image_filter: ImageFilter) -> bool:
        return self.activity.apply_filter(record_id, index, image_filter)

    async def plan_storyboard(self, story_idea: str, frames: int = 4) -> ActionResult:
        """Ask for scene prompts continuing from the current artifact."""
        if self.artifact is None:
            return ActionResult(ok=False, message=STORYBOARD_NO_IMAGE_MESSAGE)
        artifact = self.artifact
        try:
            prompts = await self.client.execute(lambda: self.backend.storyboard_prompts(artifact, story_idea, frames))
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc)
            logger.warning("Storyboard planning failed (%s): %s", error.kind.value, error.message)
            return ActionResult(ok=False, message=describe_error(error), error_kind=error.kind)
        return ActionResult(ok=True, message=f"Planned {len(prompts)} storyboard frame(s).", prompts=list(prompts))

    async def render_storyboard(
        self,
        prompts: Sequence[str],
        seed: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ActionResult:
        """Render one frame per prompt, each edited from the frame before it.

        The first frame starts from the current artifact, which stays loaded.
        Every rendered frame is kept in the activity log. On failure the frames
        rendered so far are still returned.
        """
        if self.artifact is None:
            return ActionResult(ok=False, message=STORYBOARD_NO_IMAGE_MESSAGE, kind=OperationKind.EDIT)
        if not prompts:
            return ActionResult(ok=False, message="Please enter a prompt.", kind=OperationKind.EDIT)

        previous = self.artifact
        frames: List[Artifact] = []
        for number, prompt in enumerate(prompts, start=1):
            if cancel is not None and cancel.cancelled:
                return ActionResult(
                    ok=False,
                    message="Storyboard cancelled.",
                    kind=OperationKind.EDIT,
                    artifact=frames[-1] if frames else None,
                    error_kind=ErrorKind.CANCELLED,
                    prompts=list(prompts),
                    frames=frames,
                )
            if on_progress is not None:
                on_progress(f"Generating frame {number} of {len(prompts)}...")
            plan = OperationPlan(
                kind=OperationKind.EDIT,
                instruction=prompt,
                images=(previous,),
                settings=OperationSettings(seed=seed),
            )
            try:
                missing = plan.missing_inputs()
                if missing:
                    raise StudioError(missing)
                artifact, record = await self._generate(plan)
            except Exception as exc:  # noqa: BLE001
                error = classify_error(exc)
                logger.warning("Storyboard frame %d failed (%s): %s", number, error.kind.value, error.message)
                return ActionResult(
                    ok=False,
                    message=f"Frame {number}: {describe_error(error)}",
                    kind=OperationKind.EDIT,
                    artifact=frames[-1] if frames else None,
                    error_kind=error.kind,
                    prompts=list(prompts),
                    frames=frames,
                )
            record.extra["storyboard_frame"] = number
            if not self.activity.append(record):
                logger.warning("Storyboard frame %d was not kept in the activity log", number)
            frames.append(artifact)
            previous = artifact

        return ActionResult(
            ok=True,
            message=f"Storyboard completed: {len(frames)} frame(s).",
            kind=OperationKind.EDIT,
            artifact=frames[-1],
            prompts=list(prompts),
            frames=frames,
        )


    def remaining_quota(self) -> int:
        return self.quota.peek()

    def redeem(self, code: str) -> bool:
        return self.quota.redeem(code)

    # Internal helpers ---------------------------------------------------------
    def _set_current(self, artifact: Optional[Artifact], instruction: str) -> None:
        self.artifact = artifact
        self.instruction = instruction
        self.clear_mask()

    def _restore(self, snapshot: Optional[EditingSnapshot]) -> None:
        if snapshot is None:
            self._set_current(None, "")
        else:
            self._set_current(snapshot.artifact, snapshot.instruction)

    async def _generate(self, plan: OperationPlan) -> Tuple[Artifact, ActivityRecord]:
        request_plan = plan
        if plan.kind is OperationKind.INPAINT:
            system_instruction = INPAINT_ENHANCE_INSTRUCTION.format(prompt=plan.instruction)
            enhanced = await self.client.execute(
                lambda: self.backend.enhance_prompt(plan.instruction, system_instruction)
            )
            request_plan = dataclasses.replace(plan, instruction=enhanced)

        result = await self.client.execute(lambda: self.backend.generate(request_plan))
        seed = result.seed if result.seed is not None else plan.settings.seed
        upscale = (plan.settings.resolution or UpscaleResolution.X2) if plan.kind is OperationKind.UPSCALE else None
        record = ActivityRecord(
            instruction=_record_instruction(plan),
            parameters=dataclasses.replace(plan.settings, seed=seed),
            results=[
                ResultItem(payload=artifact.payload, applied_upscale=upscale, is_derived=plan.kind in _DERIVED_KINDS)
                for artifact in result.artifacts
            ],
            operation_kind=plan.kind,
            source_artifact=generate_thumbnail(plan.images[0]) if plan.images else None,
        )
        return result.artifacts[0], record

    async def _animate(
        self,
        plan: OperationPlan,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> Tuple[Artifact, ActivityRecord]:
        source = plan.images[0]
        aspect_ratio = "9:16" if plan.settings.aspect_ratio == "9:16" else "16:9"
        video = await self.poller.start(
            VideoJobRequest(prompt=plan.instruction, image=source, aspect_ratio=aspect_ratio),
            on_progress=on_progress,
            cancel=cancel,
        )

        extra: dict[str, Any] = {"video_media_type": video.media_type}
        if self.storage is not None:
            try:
                path = self.storage.save_artifact(video, f"vox_video_{int(time.time() * 1000)}")
                extra["video_path"] = str(path)
            except StorageError as exc:
                logger.error("Generated video could not be saved: %s", exc)

        thumbnail = generate_thumbnail(source)
        record = ActivityRecord(
            instruction=plan.instruction,
            parameters=dataclasses.replace(plan.settings, aspect_ratio=aspect_ratio),
            results=[ResultItem(payload=thumbnail.payload)],
            operation_kind=OperationKind.ANIMATE,
            source_artifact=thumbnail,
            extra=extra,
        )
        return video, record
