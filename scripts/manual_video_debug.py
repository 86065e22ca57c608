"""One-off script for debugging a live Veo animation job.

Consumes one unit of the local daily video quota.
"""

import asyncio
from pathlib import Path

from config.settings import load_config
from modules.core.types import OperationKind, OperationSettings
from modules.studio.session import StudioSession
from modules.utils.image_utils import artifact_from_file
from modules.utils.logging import setup_logging


async def run() -> None:
    config = load_config()
    setup_logging(config)
    session = StudioSession.from_config(config)

    # replace with any local still image
    source_path = Path("tests/assets/debug_input.png")
    if not source_path.exists():
        raise FileNotFoundError(f"Missing source image: {source_path}")
    session.load_artifact(artifact_from_file(source_path))
    print("quota before:", session.remaining_quota())

    result = await session.perform(
        "Gentle waves and drifting clouds",
        tool=OperationKind.ANIMATE,
        settings=OperationSettings(aspect_ratio="16:9"),
        on_progress=print,
    )
    print("status:", result.message)
    if result.ok and result.record is not None:
        print("video:", result.record.extra.get("video_path", "<not saved>"))
    print("quota after:", session.remaining_quota())


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
