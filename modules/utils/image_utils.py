"""Utility helpers for image preprocessing and postprocessing."""

from __future__ import annotations

import base64
import binascii
import io
import mimetypes
from pathlib import Path
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from modules.core.types import Artifact

DEFAULT_MIME_TYPE = "image/png"


def split_data_url(payload: str) -> Tuple[str, str]:
    """Return ``(mime_type, base64_data)`` for a data URL or bare base64 string."""
    if payload.startswith("data:") and "," in payload:
        header, data = payload.split(",", 1)
        mime_type = header[len("data:") :].split(";", 1)[0] or DEFAULT_MIME_TYPE
        return mime_type, data
    return DEFAULT_MIME_TYPE, payload


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def artifact_from_bytes(data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> Artifact:
    return Artifact(payload=to_data_url(data, mime_type), media_type=mime_type)


def artifact_from_file(path: Path) -> Artifact:
    """Load a local image as an artifact."""
    mime_type = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE
    return artifact_from_bytes(Path(path).read_bytes(), mime_type)


def decode_artifact(artifact: Artifact) -> bytes:
    _, data = split_data_url(artifact.payload)
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Artifact payload is not valid base64: {exc}") from exc


def _encode_image(image: Image.Image, mime_type: str) -> Artifact:
    buffer = io.BytesIO()
    if mime_type == "image/jpeg":
        image.convert("RGB").save(buffer, format="JPEG", quality=90)
    elif mime_type == "image/webp":
        image.save(buffer, format="WEBP", quality=90)
    else:
        mime_type = "image/png"
        image.save(buffer, format="PNG")
    return artifact_from_bytes(buffer.getvalue(), mime_type)


def prepare_image(artifact: Artifact, target_size: Tuple[int, int] = (1024, 1024)) -> Artifact:
    """Shrink the image to fit ``target_size`` keeping its aspect ratio.

    Artifacts that already fit, or that Pillow cannot decode, are returned as-is.
    """
    mime_type, _ = split_data_url(artifact.payload)
    try:
        with Image.open(io.BytesIO(decode_artifact(artifact))) as image:
            if image.width <= target_size[0] and image.height <= target_size[1]:
                return artifact
            image.load()
            resized = image.copy()
    except (UnidentifiedImageError, ValueError, OSError):
        return artifact
    resized.thumbnail(target_size, Image.Resampling.LANCZOS)
    return _encode_image(resized, mime_type)


def generate_thumbnail(artifact: Artifact, max_size: Tuple[int, int] = (256, 256)) -> Artifact:
    """Create a JPEG thumbnail suitable for history previews."""
    try:
        with Image.open(io.BytesIO(decode_artifact(artifact))) as image:
            image.load()
            thumbnail = image.copy()
    except (UnidentifiedImageError, ValueError, OSError):
        return artifact
    thumbnail.thumbnail(max_size, Image.Resampling.LANCZOS)
    return _encode_image(thumbnail, "image/jpeg")
