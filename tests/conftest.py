"""Shared pytest fixtures."""

from __future__ import annotations

import io
from types import SimpleNamespace

import pytest
from PIL import Image

from modules.utils.image_utils import artifact_from_bytes


@pytest.fixture
def make_png():
    """Return a factory producing small PNG artifacts."""

    def factory(size=(8, 8), color="red"):
        buffer = io.BytesIO()
        Image.new("RGB", size, color).save(buffer, format="PNG")
        return artifact_from_bytes(buffer.getvalue(), "image/png")

    return factory


def image_response(*payloads: bytes, text: str | None = None, block_reason: str | None = None):
    """Build an object shaped like a google-genai generate_content response."""
    parts = [SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type="image/png"), text=None) for data in payloads]
    if text:
        parts.append(SimpleNamespace(inline_data=None, text=text))
    return SimpleNamespace(
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))],
        prompt_feedback=SimpleNamespace(block_reason=block_reason),
        text=text,
    )


@pytest.fixture
def make_response():
    return image_response
