"""Command line entry point for Vox Studio."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from config.settings import AppConfig, load_config
from modules.core.errors import StudioError, describe_error
from modules.core.types import OperationKind, OperationSettings, UpscaleResolution
from modules.studio.session import StudioSession
from modules.utils.image_utils import artifact_from_file, decode_artifact
from modules.utils.logging import setup_logging

logger = logging.getLogger("vox_studio")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vox-studio", description="Generate and edit images and videos.")
    parser.add_argument("--config", default=None, help="Path to a .env file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Run one generation or edit.")
    generate.add_argument("prompt", nargs="?", default="")
    generate.add_argument("--image", action="append", default=[], type=Path, help="Input image; repeat to combine.")
    generate.add_argument("--mask", type=Path, default=None, help="Mask image for inpainting.")
    generate.add_argument("--tool", choices=[kind.value for kind in OperationKind if kind.is_tool], default=None)
    generate.add_argument("--aspect-ratio", default="1:1")
    generate.add_argument("--seed", type=int, default=None)
    generate.add_argument("--resolution", choices=[item.value for item in UpscaleResolution], default=None)
    generate.add_argument("--output", type=Path, default=None, help="Where to write the result.")

    storyboard = commands.add_parser("storyboard", help="Plan, and optionally render, frames continuing an image.")
    storyboard.add_argument("image", type=Path)
    storyboard.add_argument("idea")
    storyboard.add_argument("--frames", type=int, default=4)
    storyboard.add_argument("--render", action="store_true", help="Also render every frame from the previous one.")
    storyboard.add_argument("--seed", type=int, default=None)

    history = commands.add_parser("history", help="List or edit the activity log.")
    history.add_argument("--clear", action="store_true")
    history.add_argument("--remove", nargs="+", default=[], metavar="ID")

    commands.add_parser("quota", help="Show the remaining video quota.")

    redeem = commands.add_parser("redeem", help="Redeem a quota code.")
    redeem.add_argument("code")
    return parser


def _load_inputs(session: StudioSession, args: argparse.Namespace) -> None:
    images = [artifact_from_file(path) for path in args.image]
    if len(images) > 1:
        session.stage_images(images)
    elif images:
        session.load_artifact(images[0])
    if args.mask is not None:
        session.set_mask(artifact_from_file(args.mask))


async def _generate(session: StudioSession, args: argparse.Namespace) -> int:
    _load_inputs(session, args)
    settings = OperationSettings(
        aspect_ratio=args.aspect_ratio,
        seed=args.seed,
        resolution=UpscaleResolution(args.resolution) if args.resolution else None,
    )
    tool = OperationKind(args.tool) if args.tool else None
    result = await session.perform(args.prompt, tool=tool, settings=settings, on_progress=print)
    if not result.ok:
        print(result.message, file=sys.stderr)
        return 1

    print(result.message)
    if result.record is not None and "video_path" in result.record.extra:
        print(f"Video saved to {result.record.extra['video_path']}")
    elif args.output is not None and result.artifact is not None:
        args.output.write_bytes(decode_artifact(result.artifact))
        print(f"Saved to {args.output}")
    elif result.artifact is not None and session.storage is not None:
        print(f"Saved to {session.storage.save_artifact(result.artifact, result.record.id if result.record else 'result')}")
    return 0


async def _storyboard(session: StudioSession, args: argparse.Namespace) -> int:
    session.load_artifact(artifact_from_file(args.image))
    planned = await session.plan_storyboard(args.idea, frames=args.frames)
    if not planned.ok:
        print(planned.message, file=sys.stderr)
        return 1
    for index, prompt in enumerate(planned.prompts, start=1):
        print(f"{index}. {prompt}")
    if not args.render:
        return 0

    rendered = await session.render_storyboard(planned.prompts, seed=args.seed, on_progress=print)
    if session.storage is not None:
        stem = args.image.stem
        for index, frame in enumerate(rendered.frames, start=1):
            print(f"Frame {index} saved to {session.storage.save_artifact(frame, f'{stem}_frame_{index}')}")
    if not rendered.ok:
        print(rendered.message, file=sys.stderr)
        return 1
    print(rendered.message)
    return 0


def _history(session: StudioSession, args: argparse.Namespace) -> int:
    if args.clear:
        return 0 if session.activity.clear() else 1
    if args.remove:
        return 0 if session.activity.remove(args.remove) else 1
    for record in session.activity.list():
        print(f"{record.id}  {record.operation_kind.value:<8} {record.instruction}")
    return 0


async def run(config: AppConfig, args: argparse.Namespace) -> int:
    session = StudioSession.from_config(config)
    if args.command == "generate":
        return await _generate(session, args)
    if args.command == "storyboard":
        return await _storyboard(session, args)
    if args.command == "history":
        return _history(session, args)
    if args.command == "quota":
        print(f"Remaining video generations today: {session.remaining_quota()}")
        return 0
    if args.command == "redeem":
        if session.redeem(args.code):
            print(f"Code accepted. Remaining: {session.remaining_quota()}")
            return 0
        print("Invalid redemption code.", file=sys.stderr)
        return 1
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load configuration and run the requested command."""
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    config = load_config(args.config)
    setup_logging(config, level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return asyncio.run(run(config, args))
    except StudioError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(describe_error(exc), file=sys.stderr)
        return 1
    except OSError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"Cannot read or write file: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
