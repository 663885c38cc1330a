from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import config
from .codec import to_blob
from .errors import DecodeError, ValidationError
from .generation import GenerationClient
from .models import Blob, GenerationRequest, Identity, Mode, parse_modalities
from .pipeline import NO_RESULT_MESSAGE, Orchestrator, PipelineEvent
from .quota import JsonFileQuotaStore, QuotaTracker

MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def load_local_env(env_file: str) -> None:
    env_path = Path(env_file)
    if not env_path.is_absolute():
        env_path = Path.cwd() / env_path
    if env_path.exists():
        load_dotenv(env_path, override=False)


def read_source_image(path: Path, mime_type: str | None) -> Blob:
    raw = path.read_bytes()
    if path.suffix.lower() in {".b64", ".txt"}:
        return to_blob(raw.decode("ascii", errors="ignore"), mime_type or "image/png")
    return Blob(raw, mime_type or MIME_BY_SUFFIX.get(path.suffix.lower(), "image/png"))


def build_tracker() -> QuotaTracker:
    return QuotaTracker(
        JsonFileQuotaStore(config.get_anonymous_quota_state_path()),
        anonymous_limit=config.get_anonymous_generation_limit(),
        daily_limit=config.get_daily_generation_limit(),
    )


def print_event(event: PipelineEvent) -> None:
    suffix = f" ({event.failure_kind})" if event.failure_kind else ""
    print(f"[state] {event.state.value}{suffix}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="image-studio",
        description="Generate or edit images with Gemini using the local anonymous quota.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file to load before reading configuration.",
    )
    parser.add_argument(
        "--device-id",
        default="cli",
        help="Anonymous device id used for quota accounting (default: cli).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Generate an image from a text prompt.")
    generate.add_argument("prompt", help="Text prompt.")
    generate.add_argument("--output", "-o", default="generated.png", help="Where to write the image.")
    generate.add_argument(
        "--modalities",
        default="TEXT,IMAGE",
        help="Comma-separated response modalities (default: TEXT,IMAGE).",
    )

    edit = subparsers.add_parser("edit", help="Edit an existing image with a text prompt.")
    edit.add_argument("prompt", help="Edit instruction.")
    edit.add_argument("--image", "-i", required=True, help="Source image file (or a .b64 text file).")
    edit.add_argument("--mime-type", default=None, help="Override the source image MIME type.")
    edit.add_argument("--output", "-o", default="edited.png", help="Where to write the image.")

    subparsers.add_parser("quota", help="Show usage for the device.")
    subparsers.add_parser("reset-quota", help="Reset usage for the device.")
    return parser.parse_args(argv)


async def run_pipeline(args: argparse.Namespace, tracker: QuotaTracker) -> int:
    identity = Identity.anonymous(args.device_id)
    if args.command == "edit":
        try:
            source = read_source_image(Path(args.image), args.mime_type)
        except (OSError, DecodeError) as exc:
            print(f"[error] Could not read source image: {exc}")
            return 2
        request = GenerationRequest(prompt_text=args.prompt, mode=Mode.EDIT, source_image=source)
    else:
        try:
            modalities = parse_modalities([token for token in args.modalities.split(",") if token.strip()])
        except ValidationError as exc:
            print(f"[error] {exc}")
            return 2
        request = GenerationRequest(prompt_text=args.prompt, mode=Mode.GENERATE, response_modalities=modalities)

    orchestrator = Orchestrator(
        GenerationClient(),
        tracker,
        timeout_seconds=config.get_pipeline_timeout_seconds(),
        max_source_bytes=config.get_max_source_image_bytes(),
    )
    orchestrator.subscribe(print_event)
    outcome = await orchestrator.run(request, identity)

    if outcome.error is not None:
        print(f"[error] {outcome.error.kind}: {outcome.error.message}")
        return 1
    if outcome.result is None:
        print(f"[info] {NO_RESULT_MESSAGE}")
        return 3

    output = Path(args.output)
    output.write_bytes(outcome.result.image_bytes)
    print(f"[ok] wrote {len(outcome.result.image_bytes)} bytes ({outcome.result.mime_type}) to {output}")
    if outcome.result.caption:
        print(f"[text] {outcome.result.caption}")
    if outcome.quota is not None:
        print(f"[quota] used={outcome.quota.used_count} limit={outcome.quota.limit}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_local_env(args.env_file)
    tracker = build_tracker()
    identity = Identity.anonymous(args.device_id)

    if args.command == "quota":
        state = asyncio.run(tracker.state(identity))
        print(f"[quota] device={identity.id} used={state.used_count} limit={state.limit} remaining={state.remaining}")
        return 0
    if args.command == "reset-quota":
        tracker.reset(identity)
        print(f"[quota] device={identity.id} reset")
        return 0
    return asyncio.run(run_pipeline(args, tracker))


if __name__ == "__main__":
    sys.exit(main())
