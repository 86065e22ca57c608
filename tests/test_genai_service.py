"""Gemini adapter and error taxonomy tests."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any, List

import httpx
import pytest
import requests
from google.genai import errors as genai_errors

from config.settings import AppConfig
from modules.core.errors import (
    ErrorKind,
    MalformedModelOutput,
    ModelRefusal,
    NetworkError,
    NotFound,
    PermissionDenied,
    StudioError,
    classify_error,
    describe_error,
)
from modules.core.types import OperationKind, OperationSettings, UpscaleResolution
from modules.routing.request_router import OperationPlan
from modules.services import genai_service
from modules.services.credentials import CredentialPool
from modules.services.genai_service import (
    GeminiBackend,
    StoryboardPrompts,
    VideoJobRequest,
    collect_outputs,
    parse_structured_output,
    require_images,
)


class FakeModels:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[dict] = []

    async def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        return self.responses.pop(0)

    async def generate_videos(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(name="operations/video-1", done=False)


class FakeOperations:
    def __init__(self, operation: Any) -> None:
        self.operation = operation

    async def get(self, handle):
        return self.operation


class FakeClient:
    def __init__(self, api_key: str, responses: List[Any], operation: Any = None) -> None:
        self.api_key = api_key
        self.models = FakeModels(responses)
        self.aio = SimpleNamespace(models=self.models, operations=FakeOperations(operation))


def build_backend(responses: List[Any], operation: Any = None, keys=("key-a",)):
    created: List[FakeClient] = []

    def factory(api_key: str) -> FakeClient:
        client = FakeClient(api_key, responses, operation)
        created.append(client)
        return client

    backend = GeminiBackend(AppConfig(), CredentialPool(list(keys)), client_factory=factory)
    return backend, created


def last_text(call: dict) -> str:
    return call["contents"][-1].text


# Response parsing -----------------------------------------------------------
def test_collect_outputs_splits_images_and_text(make_response):
    artifacts, refusal = collect_outputs(make_response(b"\x89PNG", text="here you go"))

    assert len(artifacts) == 1
    assert artifacts[0].media_type == "image/png"
    assert artifacts[0].payload.startswith("data:image/png;base64,")
    assert refusal == "here you go"


def test_require_images_raises_model_refusal(make_response):
    with pytest.raises(ModelRefusal) as excinfo:
        require_images(make_response(text="I can't draw that."), OperationKind.EDIT)

    assert excinfo.value.refusal_text == "I can't draw that."
    assert describe_error(excinfo.value) == "Model refusal: I can't draw that."


def test_require_images_block_reason(make_response):
    with pytest.raises(StudioError) as excinfo:
        require_images(make_response(block_reason="SAFETY"), OperationKind.GENERATE)

    assert excinfo.value.kind is ErrorKind.SAFETY_REFUSAL


def test_require_images_empty_result(make_response):
    with pytest.raises(StudioError, match="did not return an upscaled image"):
        require_images(make_response(), OperationKind.UPSCALE)


def test_parse_structured_output_accepts_fenced_json():
    text = "```json\n" + json.dumps({"prompts": ["one", "two"]}) + "\n```"

    assert parse_structured_output(text, StoryboardPrompts).prompts == ["one", "two"]


@pytest.mark.parametrize("text", ["", "not json", json.dumps({"prompts": "one"})])
def test_parse_structured_output_rejects_malformed(text):
    with pytest.raises(MalformedModelOutput):
        parse_structured_output(text, StoryboardPrompts)


# Error taxonomy ---------------------------------------------------------------
def test_classify_api_errors():
    denied = genai_errors.ClientError(
        403, {"error": {"code": 403, "message": "The caller does not have permission", "status": "PERMISSION_DENIED"}}
    )
    missing = genai_errors.ClientError(
        404, {"error": {"code": 404, "message": "Requested entity was not found.", "status": "NOT_FOUND"}}
    )

    assert isinstance(classify_error(denied), PermissionDenied)
    assert isinstance(classify_error(missing), NotFound)
    assert classify_error(denied).__cause__ is denied


def test_classify_transport_errors():
    assert isinstance(classify_error(httpx.ConnectError("refused")), NetworkError)
    assert isinstance(classify_error(requests.exceptions.ConnectionError("reset")), NetworkError)
    assert isinstance(classify_error(TimeoutError()), NetworkError)


def test_classify_keeps_studio_errors():
    error = MalformedModelOutput("bad json")

    assert classify_error(error) is error


def test_describe_error_messages():
    assert describe_error(RuntimeError("boom")) == "An unexpected API error occurred: boom"
    assert describe_error(RuntimeError("Quota exceeded for project")).startswith("API quota exceeded")
    assert describe_error(RuntimeError("API key not valid")).startswith("The provided API key is invalid")
    assert describe_error(RuntimeError("content blocked by safety filter")).startswith("Your request was blocked")
    assert describe_error(StudioError("Please upload an image to edit.")) == "Please upload an image to edit."
    assert describe_error(NetworkError("Failed to fetch")).startswith("A network connection error occurred")


# GeminiBackend ------------------------------------------------------------------
def test_generate_sends_seed_and_aspect_ratio(make_response):
    backend, created = build_backend([make_response(b"img-1", b"img-2")])
    plan = OperationPlan(
        kind=OperationKind.GENERATE,
        instruction="a lighthouse",
        settings=OperationSettings(aspect_ratio="16:9", seed=7),
    )

    result = asyncio.run(backend.generate(plan))

    call = created[0].models.calls[0]
    assert result.seed == 7
    assert len(result.artifacts) == 1
    assert call["model"] == AppConfig().image_model
    assert call["config"].seed == 7
    assert last_text(call) == "a lighthouse Aspect ratio: 16:9."


def test_edit_draws_random_seed_and_keeps_all_images(make_png, make_response):
    backend, created = build_backend([make_response(b"one", b"two")])
    plan = OperationPlan(kind=OperationKind.EDIT, instruction="make it night", images=(make_png(),))

    result = asyncio.run(backend.generate(plan))

    assert result.seed is not None
    assert len(result.artifacts) == 2
    assert len(created[0].models.calls[0]["contents"]) == 2


def test_upscale_uses_resolution_template(make_png, make_response):
    backend, created = build_backend([make_response(b"big")])
    plan = OperationPlan(
        kind=OperationKind.UPSCALE,
        instruction="ignored",
        images=(make_png(),),
        settings=OperationSettings(resolution=UpscaleResolution.X4),
    )

    result = asyncio.run(backend.generate(plan))

    call = created[0].models.calls[0]
    assert result.seed is None
    assert "4x" in last_text(call)
    assert call["config"].response_modalities == ["IMAGE"]


def test_inpaint_appends_mask(make_png, make_response):
    backend, created = build_backend([make_response(b"patched")])
    plan = OperationPlan(kind=OperationKind.INPAINT, instruction="add a hat", images=(make_png(),), mask=make_png())

    asyncio.run(backend.generate(plan))

    contents = created[0].models.calls[0]["contents"]
    assert len(contents) == 3
    assert last_text(created[0].models.calls[0]) == "add a hat"


def test_combine_rejects_single_image(make_png, make_response):
    backend, _ = build_backend([make_response(b"never")])
    plan = OperationPlan(kind=OperationKind.COMBINE, instruction="merge", images=(make_png(),))

    with pytest.raises(StudioError, match="2 to 6"):
        asyncio.run(backend.generate(plan))


def test_generate_rejects_animate():
    backend, _ = build_backend([])

    with pytest.raises(ValueError):
        asyncio.run(backend.generate(OperationPlan(kind=OperationKind.ANIMATE, instruction="move")))


def test_client_follows_current_key(make_response):
    backend, created = build_backend([make_response(b"a"), make_response(b"b")], keys=("key-a", "key-b"))
    plan = OperationPlan(kind=OperationKind.GENERATE, instruction="cat")

    asyncio.run(backend.generate(plan))
    asyncio.run(backend.credentials.select_next())
    asyncio.run(backend.generate(plan))

    assert [client.api_key for client in created] == ["key-a", "key-b"]


def test_enhance_prompt_strips_prefix():
    backend, _ = build_backend([SimpleNamespace(text="Enhanced prompt: a tall red hat")])

    assert asyncio.run(backend.enhance_prompt("hat", "be precise")) == "a tall red hat"


def test_storyboard_prompts_validates_count(make_png):
    payload = json.dumps({"prompts": ["scene one", "scene two"]})
    backend, _ = build_backend([SimpleNamespace(text=payload), SimpleNamespace(text=payload)])

    assert asyncio.run(backend.storyboard_prompts(make_png(), "a journey", 2)) == ["scene one", "scene two"]
    with pytest.raises(MalformedModelOutput):
        asyncio.run(backend.storyboard_prompts(make_png(), "a journey", 3))


def test_submit_job_passes_aspect_ratio(make_png):
    backend, created = build_backend([])

    operation = asyncio.run(
        backend.submit_job(VideoJobRequest(prompt="", image=make_png(), aspect_ratio="9:16"))
    )

    call = created[0].models.calls[0]
    assert operation.name == "operations/video-1"
    assert call["model"] == AppConfig().video_model
    assert call["config"].aspect_ratio == "9:16"
    assert call["prompt"] == genai_service.DEFAULT_INSTRUCTIONS[OperationKind.ANIMATE]


def test_poll_job_reports_operation_error():
    failed = SimpleNamespace(done=True, error={"message": "renderer crashed"})
    backend, _ = build_backend([], operation=failed)

    with pytest.raises(StudioError, match="Video generation failed: renderer crashed"):
        asyncio.run(backend.poll_job("operations/video-1"))


def test_poll_job_pending():
    pending = SimpleNamespace(done=False, error=None)
    backend, _ = build_backend([], operation=pending)

    status = asyncio.run(backend.poll_job("operations/video-1"))

    assert status.done is False
    assert status.handle is pending


def test_fetch_job_without_uri():
    backend, _ = build_backend([])
    finished = SimpleNamespace(response=SimpleNamespace(generated_videos=[]))

    with pytest.raises(StudioError, match="no download link"):
        asyncio.run(backend.fetch_job(finished))


def test_fetch_job_downloads_with_key(monkeypatch):
    backend, _ = build_backend([])
    seen = {}

    def fake_get(url, headers=None, timeout=None):
        seen.update(url=url, headers=headers, timeout=timeout)
        return SimpleNamespace(content=b"mp4", headers={"Content-Type": "video/mp4"}, raise_for_status=lambda: None)

    monkeypatch.setattr(genai_service.requests, "get", fake_get)
    video = SimpleNamespace(uri="https://example.invalid/video.mp4", mime_type=None)
    finished = SimpleNamespace(response=SimpleNamespace(generated_videos=[SimpleNamespace(video=video)]))

    artifact = asyncio.run(backend.fetch_job(finished))

    assert artifact.media_type == "video/mp4"
    assert seen["headers"] == {"x-goog-api-key": "key-a"}
    assert seen["url"] == "https://example.invalid/video.mp4"


@pytest.mark.integration
def test_live_generate_call():
    """Hit the real Gemini API with a tiny text-to-image request."""
    from config.settings import load_config

    config = load_config()
    if not config.api_keys:
        pytest.skip("GEMINI_API_KEY not configured, skipping live call.")

    backend = GeminiBackend(config, CredentialPool(config.api_keys))
    plan = OperationPlan(kind=OperationKind.GENERATE, instruction="A single red apple on a white table")
    result = asyncio.run(backend.generate(plan))

    assert result.artifacts
    assert result.artifacts[0].payload.startswith("data:image/")
