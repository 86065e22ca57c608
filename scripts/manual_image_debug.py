"""One-off script for debugging live image generation, editing and storyboards."""

import asyncio
from pathlib import Path

from config.settings import load_config
from modules.studio.session import StudioSession
from modules.utils.image_utils import decode_artifact
from modules.utils.logging import setup_logging


async def run() -> None:
    # 1. real configuration; needs GEMINI_API_KEY(S) in the env or .env
    config = load_config()
    setup_logging(config)
    session = StudioSession.from_config(config)

    # 2. text-to-image
    generated = await session.perform("A lighthouse on a cliff at sunset, oil painting")
    print("generate:", generated.message)
    if not generated.ok:
        return
    out_path = Path("debug_generate_output.png")
    out_path.write_bytes(decode_artifact(generated.artifact))
    print("saved:", out_path.resolve())

    # 3. edit the result that is now loaded
    edited = await session.perform("Add a small sailing boat in the foreground")
    print("edit:", edited.message)

    # 4. plan and render a short storyboard from the current image
    planned = await session.plan_storyboard("A storm rolls in over the sea", frames=2)
    print("storyboard:", planned.message)
    for prompt in planned.prompts:
        print("  -", prompt)
    if planned.ok:
        rendered = await session.render_storyboard(planned.prompts, on_progress=print)
        print("render:", rendered.message)
        for index, frame in enumerate(rendered.frames, start=1):
            frame_path = Path(f"debug_storyboard_frame_{index}.png")
            frame_path.write_bytes(decode_artifact(frame))
            print("saved:", frame_path.resolve())


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
