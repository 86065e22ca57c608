"""File storage helpers."""

from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path

from modules.core.errors import StorageError
from modules.core.types import Artifact
from modules.utils.image_utils import decode_artifact

logger = logging.getLogger(__name__)

_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "video/mp4": ".mp4"}


def _safe_stem(stem: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", stem).strip("._")
    return cleaned or "artifact"


class StorageService:
    """Handle saving generated assets."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def save_artifact(self, artifact: Artifact, stem: str) -> Path:
        """Persist an artifact and return the file path."""
        extension = _EXTENSIONS.get(artifact.media_type) or mimetypes.guess_extension(artifact.media_type) or ".bin"
        path = self.output_dir / f"{_safe_stem(stem)}{extension}"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(decode_artifact(artifact))
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot save artifact to {path}: {exc}") from exc
        logger.info("Saved %s to %s", artifact.media_type, path)
        return path

