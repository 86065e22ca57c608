"""Logging setup shared by the CLI and long-running sessions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from config.settings import AppConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "google_genai")


def setup_logging(config: AppConfig, level: int = logging.INFO, log_file: str = "vox_studio.log") -> logging.Logger:
    """Send records to stderr and ``<log_dir>/<log_file>``.

    Calling it again once the root logger has handlers changes nothing but levels.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_dir = Path(config.log_dir)
    file_error = None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / log_file, encoding="utf-8"))
    except OSError as exc:
        file_error = exc

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("vox_studio")
    logger.setLevel(level)
    if file_error is not None:
        logger.warning("Logging to stderr only, cannot open %s: %s", log_dir / log_file, file_error)
    logger.debug(
        "Models: image=%s text=%s video=%s; %d API key(s) configured",
        config.image_model,
        config.text_model,
        config.video_model,
        len(config.api_keys),
    )
    return logger
