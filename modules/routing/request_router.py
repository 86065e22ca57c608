"""Map the editing state onto exactly one remote operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from config.settings import DEFAULT_COMBINE_KEYWORDS, AppConfig
from modules.core.types import Artifact, OperationKind, OperationSettings

MIN_COMBINE_IMAGES = 2
MAX_COMBINE_IMAGES = 6


@dataclass(frozen=True, slots=True)
class CombinePolicy:
    """When staged images should be merged rather than edited one by one."""

    keywords: Tuple[str, ...] = DEFAULT_COMBINE_KEYWORDS
    require_keyword: bool = True
    max_images: int = MAX_COMBINE_IMAGES

    @classmethod
    def from_config(cls, config: AppConfig) -> "CombinePolicy":
        return cls(
            keywords=tuple(config.combine_keywords),
            require_keyword=config.combine_requires_keyword,
            max_images=max(MIN_COMBINE_IMAGES, config.max_combine_images),
        )

    def matches(self, instruction: str, staged_count: int) -> bool:
        if staged_count < MIN_COMBINE_IMAGES:
            return False
        if not self.require_keyword:
            return True
        lowered = (instruction or "").lower()
        return any(keyword in lowered for keyword in self.keywords)


@dataclass(frozen=True, slots=True)
class EditingState:
    """Everything routing looks at; callers build a fresh one per action."""

    instruction: str = ""
    artifact: Optional[Artifact] = None
    staged_images: Tuple[Artifact, ...] = ()
    mask_active: bool = False
    mask: Optional[Artifact] = None
    tool: Optional[OperationKind] = None
    settings: OperationSettings = field(default_factory=OperationSettings)


@dataclass(frozen=True, slots=True)
class OperationPlan:
    """The resolved operation with the inputs it will send."""

    kind: OperationKind
    instruction: str
    images: Tuple[Artifact, ...] = ()
    mask: Optional[Artifact] = None
    settings: OperationSettings = field(default_factory=OperationSettings)

    def missing_inputs(self) -> Optional[str]:
        """Describe what must be supplied before this plan can run, if anything."""
        if self.kind is OperationKind.GENERATE:
            return None if self.instruction.strip() else "Please enter a prompt."
        if self.kind is OperationKind.COMBINE:
            if len(self.images) < MIN_COMBINE_IMAGES:
                return f"Combining requires {MIN_COMBINE_IMAGES} to {MAX_COMBINE_IMAGES} images."
            return None
        if not self.images:
            return "Please upload an image to edit."
        if self.kind is OperationKind.INPAINT and self.mask is None:
            return "Inpainting requires a painted mask."
        if self.kind in (OperationKind.EDIT, OperationKind.INPAINT, OperationKind.REFINE) and not self.instruction.strip():
            return "Please enter a prompt."
        return None


def route(state: EditingState, policy: Optional[CombinePolicy] = None) -> OperationPlan:
    """Resolve the operation for ``state``; never raises.

    An explicit tool wins. Otherwise, in order: merge of staged images, inpaint
    over the loaded artifact, text-to-image when nothing is loaded, and
    image-to-image edit.
    """
    policy = policy or CombinePolicy()
    current: Tuple[Artifact, ...] = (state.artifact,) if state.artifact is not None else ()

    if state.tool is not None and state.tool.is_tool:
        return OperationPlan(kind=state.tool, instruction=state.instruction, images=current, settings=state.settings)

    if policy.matches(state.instruction, len(state.staged_images)):
        return OperationPlan(
            kind=OperationKind.COMBINE,
            instruction=state.instruction,
            images=tuple(state.staged_images[: policy.max_images]),
            settings=state.settings,
        )

    if state.mask_active and state.artifact is not None:
        return OperationPlan(
            kind=OperationKind.INPAINT,
            instruction=state.instruction,
            images=current,
            mask=state.mask,
            settings=state.settings,
        )

    if state.artifact is None:
        return OperationPlan(kind=OperationKind.GENERATE, instruction=state.instruction, settings=state.settings)

    return OperationPlan(kind=OperationKind.EDIT, instruction=state.instruction, images=current, settings=state.settings)
