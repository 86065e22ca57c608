"""Google Gemini / Veo adapter implementing the remote generation service.

Each public coroutine performs exactly one remote call so that callers can
wrap it in :class:`~modules.services.api_client.RetryingAPIClient`. The client
is resolved from the credential pool on every call, which lets a retry after
credential reselection pick up the new key.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

import requests
from google import genai
from google.genai import types
from pydantic import BaseModel, ConfigDict, ValidationError

from config.settings import AppConfig
from modules.core.errors import ErrorKind, MalformedModelOutput, ModelRefusal, StudioError
from modules.core.types import Artifact, OperationKind
from modules.routing.request_router import MAX_COMBINE_IMAGES, MIN_COMBINE_IMAGES, OperationPlan
from modules.services.credentials import CredentialPool
from modules.utils.image_utils import artifact_from_bytes, decode_artifact, prepare_image, split_data_url

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_SEED = 2147483647
DEFAULT_ASPECT_RATIO_TEMPLATE = " Aspect ratio: {ratio}."

DEFAULT_INSTRUCTIONS: Dict[OperationKind, str] = {
    OperationKind.UPSCALE: (
        "Upscale this image to {resolution} its resolution. Preserve every detail, "
        "sharpen edges and remove compression artifacts without changing the content."
    ),
    OperationKind.REFRAME: "Expand the image canvas naturally, maintaining the scene continuity.",
    OperationKind.ANIMATE: "Animate this scene with subtle, natural motion.",
}

_IMAGE_ONLY_KINDS = frozenset({OperationKind.UPSCALE, OperationKind.REFINE})
_SEEDED_KINDS = frozenset({OperationKind.GENERATE, OperationKind.EDIT})
_UNRESIZED_KINDS = frozenset({OperationKind.UPSCALE, OperationKind.INPAINT})

_EMPTY_RESULT_MESSAGES: Dict[OperationKind, str] = {
    OperationKind.GENERATE: "The model did not return an image. This might be due to safety policies.",
    OperationKind.EDIT: (
        "The model did not return an edited image. It may have refused the request "
        "due to safety policies or an unclear prompt."
    ),
    OperationKind.INPAINT: "The model did not return an inpainted image. It may have refused the request.",
    OperationKind.COMBINE: (
        "The model did not return a combined image. It may have refused the request "
        "due to safety policies or an unclear prompt."
    ),
    OperationKind.UPSCALE: "The model did not return an upscaled image. This may be due to safety policies.",
    OperationKind.REFINE: "The model did not return a refined image. This may be due to safety policies.",
    OperationKind.REFRAME: "The model did not return a reframed image. It may have refused the request.",
}


@dataclass(slots=True)
class GenerationResult:
    """Images returned by one generation call."""

    artifacts: List[Artifact]
    seed: Optional[int] = None


@dataclass(slots=True)
class VideoJobRequest:
    prompt: str
    image: Optional[Artifact] = None
    aspect_ratio: str = "16:9"


@dataclass(slots=True)
class JobStatus:
    done: bool
    handle: Any


class StoryboardPrompts(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompts: List[str]


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json fence from model output."""
    cleaned = (text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def parse_structured_output(text: str, schema: Type[ModelT]) -> ModelT:
    """Validate model JSON against ``schema`` or raise :class:`MalformedModelOutput`."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise MalformedModelOutput("The model returned an empty structured response.")
    try:
        return schema.model_validate_json(cleaned)
    except ValidationError as exc:
        raise MalformedModelOutput(f"The model returned malformed output: {exc.error_count()} error(s)") from exc


def collect_outputs(response: Any) -> Tuple[List[Artifact], Optional[str]]:
    """Split a generate_content response into image artifacts and free text."""
    artifacts: List[Artifact] = []
    texts: List[str] = []
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline is not None else None
        if data:
            mime_type = getattr(inline, "mime_type", None) or "image/png"
            if isinstance(data, str):
                artifacts.append(Artifact(payload=f"data:{mime_type};base64,{data}", media_type=mime_type))
            else:
                artifacts.append(artifact_from_bytes(data, mime_type))
            continue
        text = getattr(part, "text", None)
        if text:
            texts.append(text)
    refusal = "".join(texts) or None
    return artifacts, refusal


def require_images(response: Any, kind: OperationKind) -> List[Artifact]:
    """Return produced images or raise the matching refusal/empty-result error."""
    artifacts, refusal = collect_outputs(response)
    if artifacts:
        return artifacts
    if refusal:
        raise ModelRefusal(refusal)
    feedback = getattr(response, "prompt_feedback", None)
    if getattr(feedback, "block_reason", None):
        raise StudioError(
            f"Request blocked by safety policies ({feedback.block_reason}).",
            kind=ErrorKind.SAFETY_REFUSAL,
        )
    raise StudioError(_EMPTY_RESULT_MESSAGES.get(kind, "The model did not return any image."))


def _image_part(artifact: Artifact, resize: bool) -> types.Part:
    prepared = prepare_image(artifact) if resize else artifact
    mime_type, _ = split_data_url(prepared.payload)
    return types.Part.from_bytes(data=decode_artifact(prepared), mime_type=mime_type)


class GeminiBackend:
    """Facade around the google-genai async client."""

    def __init__(
        self,
        config: AppConfig,
        credentials: CredentialPool,
        client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))
        self._clients: Dict[str, Any] = {}

    def _client(self) -> Any:
        api_key = self.credentials.require_current()
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
        return self._clients[api_key]

    def _instruction_for(self, plan: OperationPlan) -> str:
        instruction = plan.instruction.strip()
        if plan.kind is OperationKind.UPSCALE or (not instruction and plan.kind in DEFAULT_INSTRUCTIONS):
            resolution = plan.settings.resolution.value if plan.settings.resolution else "2x"
            instruction = DEFAULT_INSTRUCTIONS[plan.kind].format(resolution=resolution)
        if plan.kind is OperationKind.GENERATE:
            template = self.config.metadata.get("aspect_ratio_template", DEFAULT_ASPECT_RATIO_TEMPLATE)
            instruction += template.replace("{ratio}", plan.settings.aspect_ratio)
        return instruction

    def _contents_for(self, plan: OperationPlan) -> List[types.Part]:
        if plan.kind is OperationKind.COMBINE and not MIN_COMBINE_IMAGES <= len(plan.images) <= MAX_COMBINE_IMAGES:
            raise StudioError(f"Combining requires {MIN_COMBINE_IMAGES} to {MAX_COMBINE_IMAGES} images.")
        resize = plan.kind not in _UNRESIZED_KINDS
        parts = [_image_part(image, resize) for image in plan.images]
        if plan.kind is OperationKind.INPAINT:
            if plan.mask is None:
                raise StudioError("Inpainting requires a painted mask.")
            parts.append(types.Part.from_bytes(data=decode_artifact(plan.mask), mime_type="image/png"))
        parts.append(types.Part.from_text(text=self._instruction_for(plan)))
        return parts

    async def generate(self, plan: OperationPlan, system_instruction: Optional[str] = None) -> GenerationResult:
        """Run one image operation (every kind except ``animate``)."""
        if plan.kind is OperationKind.ANIMATE:
            raise ValueError("Video operations go through the job poller.")

        seed: Optional[int] = None
        config_kwargs: Dict[str, Any] = {
            "response_modalities": ["IMAGE"] if plan.kind in _IMAGE_ONLY_KINDS else ["IMAGE", "TEXT"],
        }
        if plan.kind in _SEEDED_KINDS:
            seed = plan.settings.seed if plan.settings.seed is not None else random.randrange(MAX_SEED)
            config_kwargs["seed"] = seed
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction

        response = await self._client().aio.models.generate_content(
            model=self.config.image_model,
            contents=self._contents_for(plan),
            config=types.GenerateContentConfig(**config_kwargs),
        )
        artifacts = require_images(response, plan.kind)
        if plan.kind in _IMAGE_ONLY_KINDS or plan.kind is OperationKind.GENERATE:
            artifacts = artifacts[:1]
        logger.info("%s returned %d image(s)", plan.kind.value, len(artifacts))
        return GenerationResult(artifacts=artifacts, seed=seed)

    async def enhance_prompt(self, prompt: str, system_instruction: str) -> str:
        """Rewrite ``prompt`` with the text model."""
        if not prompt.strip():
            raise StudioError("Prompt cannot be empty.")
        response = await self._client().aio.models.generate_content(
            model=self.config.text_model,
            contents=prompt,
            config=types.GenerateContentConfig(system_instruction=system_instruction),
        )
        text = (getattr(response, "text", None) or "").strip()
        for prefix in ("enhanced prompt:", "prompt:"):
            if text.lower().startswith(prefix):
                text = text[len(prefix) :].strip()
        if not text:
            raise StudioError("The model could not enhance the prompt.")
        return text

    async def storyboard_prompts(self, artifact: Artifact, story_idea: str, frames: int) -> List[str]:
        """Ask for ``frames`` connected scene descriptions starting from ``artifact``."""
        instruction = (
            f'Analyze the provided starting image and the user\'s story idea: "{story_idea}". '
            f"Generate a sequence of exactly {frames} distinct but connected scene descriptions "
            "for a visual storyboard. The first scene must describe the provided image; each "
            "following one describes the next frame and states what changed. "
            f'Output a JSON object with a single key "prompts" holding {frames} strings.'
        )
        response = await self._client().aio.models.generate_content(
            model=self.config.text_model,
            contents=[_image_part(artifact, resize=True), types.Part.from_text(text=instruction)],
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=StoryboardPrompts,
            ),
        )
        parsed = parse_structured_output(getattr(response, "text", None) or "", StoryboardPrompts)
        if len(parsed.prompts) != frames:
            raise MalformedModelOutput("The model did not return the expected number of prompts.")
        return parsed.prompts

    # Video jobs ---------------------------------------------------------------
    async def submit_job(self, request: VideoJobRequest) -> Any:
        kwargs: Dict[str, Any] = {
            "model": self.config.video_model,
            "prompt": request.prompt or DEFAULT_INSTRUCTIONS[OperationKind.ANIMATE],
            "config": types.GenerateVideosConfig(number_of_videos=1, aspect_ratio=request.aspect_ratio),
        }
        if request.image is not None:
            prepared = prepare_image(request.image)
            mime_type, _ = split_data_url(prepared.payload)
            kwargs["image"] = types.Image(image_bytes=decode_artifact(prepared), mime_type=mime_type)
        operation = await self._client().aio.models.generate_videos(**kwargs)
        logger.info("Submitted video job %s", getattr(operation, "name", "<unnamed>"))
        return operation

    async def poll_job(self, handle: Any) -> JobStatus:
        operation = await self._client().aio.operations.get(handle)
        if not getattr(operation, "done", False):
            return JobStatus(done=False, handle=operation)
        error = getattr(operation, "error", None)
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise StudioError(f"Video generation failed: {message}")
        return JobStatus(done=True, handle=operation)

    async def fetch_job(self, handle: Any) -> Artifact:
        result = getattr(handle, "response", None) or getattr(handle, "result", None)
        videos: Sequence[Any] = getattr(result, "generated_videos", None) or []
        video = getattr(videos[0], "video", None) if videos else None
        uri = getattr(video, "uri", None)
        if not uri:
            raise StudioError("Video generation completed, but no download link was found.")
        api_key = self.credentials.require_current()
        response = await asyncio.to_thread(
            requests.get, uri, headers={"x-goog-api-key": api_key}, timeout=300
        )
        response.raise_for_status()
        mime_type = getattr(video, "mime_type", None) or response.headers.get("Content-Type") or "video/mp4"
        return artifact_from_bytes(response.content, mime_type.split(";")[0])
