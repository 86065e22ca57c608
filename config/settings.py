"""Configuration helpers for the Vox Studio project."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

DEFAULT_COMBINE_KEYWORDS: tuple[str, ...] = ("combine", "merge", "blend", "fuse", "mix")


@dataclass(slots=True)
class AppConfig:
    """Centralized application configuration."""

    data_dir: Path = Path("data")
    output_dir: Path = Path("outputs")
    log_dir: Path = Path("logs")
    api_keys: list[str] = field(default_factory=list)
    image_model: str = "gemini-3-pro-image-preview"
    text_model: str = "gemini-3-pro-preview"
    video_model: str = "veo-3.1-fast-generate-preview"
    history_limit: int = 10
    undo_limit: int = 50
    daily_video_quota: int = 3
    storage_capacity_bytes: int = 5 * 1024 * 1024
    poll_interval_seconds: float = 20.0
    combine_keywords: tuple[str, ...] = DEFAULT_COMBINE_KEYWORDS
    combine_requires_keyword: bool = True
    max_combine_images: int = 6
    metadata: dict[str, Any] = field(default_factory=dict)


def _load_env_file(path: Path) -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not path.exists():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ[key.strip()] = value.strip()


def _parse_api_keys() -> list[str]:
    """Collect API keys in preference order, dropping duplicates."""
    ordered: list[str] = []
    pooled = os.getenv("GEMINI_API_KEYS", "")
    candidates = [item.strip() for item in pooled.replace(";", ",").split(",")]
    candidates.append((os.getenv("GEMINI_API_KEY") or "").strip())
    candidates.append((os.getenv("GOOGLE_API_KEY") or "").strip())
    for key in candidates:
        if key and key not in ordered:
            ordered.append(key)
    return ordered


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Return an AppConfig instance with environment-aware settings."""
    env_path = Path(config_path) if config_path else Path(".env")
    _load_env_file(env_path)

    defaults = AppConfig()
    data_dir = Path(os.getenv("VOX_DATA_DIR", str(defaults.data_dir))).expanduser()
    output_dir = Path(os.getenv("VOX_OUTPUT_DIR", str(defaults.output_dir))).expanduser()
    log_dir = Path(os.getenv("VOX_LOG_DIR", str(defaults.log_dir))).expanduser()

    keywords_env = os.getenv("VOX_COMBINE_KEYWORDS")
    combine_keywords = defaults.combine_keywords
    if keywords_env:
        parsed = tuple(item.strip().lower() for item in keywords_env.split(",") if item.strip())
        combine_keywords = parsed or defaults.combine_keywords

    image_model = os.getenv("IMAGE_MODEL") or defaults.image_model
    text_model = os.getenv("TEXT_MODEL") or defaults.text_model
    video_model = os.getenv("VIDEO_MODEL") or defaults.video_model

    metadata: dict[str, Any] = {
        "image_model": image_model,
        "text_model": text_model,
        "video_model": video_model,
    }
    aspect_template = os.getenv("VOX_ASPECT_RATIO_TEMPLATE")
    if aspect_template:
        metadata["aspect_ratio_template"] = aspect_template

    return AppConfig(
        data_dir=data_dir,
        output_dir=output_dir,
        log_dir=log_dir,
        api_keys=_parse_api_keys(),
        image_model=image_model,
        text_model=text_model,
        video_model=video_model,
        history_limit=_env_int("VOX_HISTORY_LIMIT", defaults.history_limit, minimum=1),
        undo_limit=_env_int("VOX_UNDO_LIMIT", defaults.undo_limit, minimum=1),
        daily_video_quota=_env_int("VOX_DAILY_VIDEO_QUOTA", defaults.daily_video_quota),
        storage_capacity_bytes=_env_int(
            "VOX_STORAGE_CAPACITY_BYTES", defaults.storage_capacity_bytes, minimum=1
        ),
        poll_interval_seconds=_env_float("VOX_POLL_INTERVAL", defaults.poll_interval_seconds),
        combine_keywords=combine_keywords,
        combine_requires_keyword=_env_bool(
            "VOX_COMBINE_REQUIRES_KEYWORD", defaults.combine_requires_keyword
        ),
        metadata=metadata,
    )
