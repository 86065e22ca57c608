"""Shared data model for editing sessions and the activity log."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class OperationKind(str, Enum):
    """Remote operations a user action can resolve to."""

    GENERATE = "generate"
    EDIT = "edit"
    INPAINT = "inpaint"
    COMBINE = "combine"
    UPSCALE = "upscale"
    REFINE = "refine"
    REFRAME = "reframe"
    ANIMATE = "animate"

    @property
    def is_metered(self) -> bool:
        return self is OperationKind.ANIMATE

    @property
    def is_tool(self) -> bool:
        return self in TOOL_KINDS


TOOL_KINDS = frozenset(
    {OperationKind.UPSCALE, OperationKind.REFINE, OperationKind.REFRAME, OperationKind.ANIMATE}
)


class UpscaleResolution(str, Enum):
    X2 = "2x"
    X4 = "4x"


class ImageFilter(str, Enum):
    """Cosmetic filters stored alongside a result item."""

    NONE = "None"
    GRAYSCALE = "Grayscale"
    SEPIA = "Sepia"
    INVERT = "Invert"
    BLUR = "Blur"


@dataclass(frozen=True, slots=True)
class Artifact:
    """Media payload encoded as a data URL."""

    payload: str
    media_type: str

    def to_dict(self) -> Dict[str, str]:
        return {"payload": self.payload, "media_type": self.media_type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(payload=str(data["payload"]), media_type=str(data.get("media_type") or ""))


@dataclass(frozen=True, slots=True)
class EditingSnapshot:
    """One point of the undo/redo timeline."""

    artifact: Optional[Artifact]
    instruction: str = ""


@dataclass(slots=True)
class OperationSettings:
    """Per-operation settings forwarded to the remote service."""

    aspect_ratio: str = "1:1"
    model: str = "vx-0"
    number_of_images: int = 1
    seed: Optional[int] = None
    resolution: Optional[UpscaleResolution] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aspect_ratio": self.aspect_ratio,
            "model": self.model,
            "number_of_images": self.number_of_images,
            "seed": self.seed,
            "resolution": self.resolution.value if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationSettings":
        resolution = data.get("resolution")
        return cls(
            aspect_ratio=str(data.get("aspect_ratio") or "1:1"),
            model=str(data.get("model") or "vx-0"),
            number_of_images=int(data.get("number_of_images") or 1),
            seed=data.get("seed"),
            resolution=UpscaleResolution(resolution) if resolution else None,
        )


@dataclass(slots=True)
class ResultItem:
    """A single output of an activity record."""

    payload: str
    applied_upscale: Optional[UpscaleResolution] = None
    is_derived: bool = False
    applied_filter: Optional[ImageFilter] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "applied_upscale": self.applied_upscale.value if self.applied_upscale else None,
            "is_derived": self.is_derived,
            "applied_filter": self.applied_filter.value if self.applied_filter else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultItem":
        upscale = data.get("applied_upscale")
        image_filter = data.get("applied_filter")
        return cls(
            payload=str(data["payload"]),
            applied_upscale=UpscaleResolution(upscale) if upscale else None,
            is_derived=bool(data.get("is_derived", False)),
            applied_filter=ImageFilter(image_filter) if image_filter else None,
        )


def new_record_id(now: Optional[datetime] = None) -> str:
    """Return a time-derived identifier that stays unique within a millisecond."""
    moment = now or datetime.now(timezone.utc)
    return f"{moment.isoformat(timespec='milliseconds')}-{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class ActivityRecord:
    """Durable log entry describing one completed remote operation."""

    instruction: str
    parameters: OperationSettings
    results: List[ResultItem]
    operation_kind: OperationKind
    id: str = field(default_factory=new_record_id)
    created_at: float = field(default_factory=time.time)
    source_artifact: Optional[Artifact] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instruction": self.instruction,
            "parameters": self.parameters.to_dict(),
            "results": [item.to_dict() for item in self.results],
            "created_at": self.created_at,
            "operation_kind": self.operation_kind.value,
            "source_artifact": self.source_artifact.to_dict() if self.source_artifact else None,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityRecord":
        source = data.get("source_artifact")
        return cls(
            id=str(data["id"]),
            instruction=str(data.get("instruction") or ""),
            parameters=OperationSettings.from_dict(data.get("parameters") or {}),
            results=[ResultItem.from_dict(item) for item in data.get("results") or []],
            created_at=float(data.get("created_at") or 0.0),
            operation_kind=OperationKind(data["operation_kind"]),
            source_artifact=Artifact.from_dict(source) if source else None,
            extra=dict(data.get("extra") or {}),
        )


@dataclass(slots=True)
class QuotaRecord:
    """Renewable daily allowance for metered operations."""

    remaining: int
    reset_date: str

    def to_dict(self) -> Dict[str, Any]:
        return {"remaining": self.remaining, "reset_date": self.reset_date}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaRecord":
        return cls(remaining=max(0, int(data["remaining"])), reset_date=str(data["reset_date"]))
