"""Cinema Pipeline — Command Line.

Usage:
    # Generate an image (key from env / stored keys) and persist it
    python main.py generate --provider "gpt image" --prompt "A foggy harbor at dawn" --caller demo

    # Generate a video from a still
    python main.py generate --kind video --provider runway --prompt "Slow push in" \\
        --attachment still.png --caller demo

    # Break a screenplay page into shots
    python main.py shots --screenplay page_12.txt --provider claude --page 12

    # Run structured output recovery over a saved model response
    python main.py recover --input raw_response.txt
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import mimetypes
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from pipeline.credentials import CredentialResolver
from pipeline.errors import ParseFailure
from pipeline.orchestrator import GenerationPipeline
from pipeline.persistence import LocalBlobStore
from pipeline.recovery import recover_shot_records
from pipeline.storage import SqliteSystemConfigStore, SqliteUserKeyStore, init_db
from schemas.generation import Dimensions, GenerateMediaPayload
from schemas.shot_list import ShotListPayload, ShotRecord

console = Console()


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _build_pipeline() -> GenerationPipeline:
    cfg = config.load_config()
    init_db()
    return GenerationPipeline(
        cfg,
        CredentialResolver(cfg, SqliteSystemConfigStore(), SqliteUserKeyStore()),
        LocalBlobStore.from_config(cfg),
    )


def _read_text(path_str: str) -> str:
    path = Path(path_str)
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)
    return path.read_text(encoding="utf-8")


def print_shots(shots: list[ShotRecord]):
    table = Table(title=f"Shot List ({len(shots)} shots)")
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("Angle")
    table.add_column("Movement")
    table.add_column("Description")
    for shot in shots:
        table.add_row(
            str(shot.shot_number),
            shot.shot_type,
            shot.camera_angle,
            shot.movement,
            shot.description[:60],
        )
    console.print(table)


def run_generate(args: argparse.Namespace) -> int:
    attachment_b64 = None
    attachment_mime = None
    if args.attachment:
        path = Path(args.attachment)
        if not path.exists():
            console.print(f"[red]Attachment not found: {path}[/red]")
            return 1
        attachment_b64 = base64.b64encode(path.read_bytes()).decode("ascii")
        attachment_mime = mimetypes.guess_type(path.name)[0]

    payload = GenerateMediaPayload(
        prompt=args.prompt,
        provider=args.provider,
        model=args.model,
        credential=args.key or "use_env_vars",
        caller_id=args.caller,
        persist_requested=not args.no_persist,
        dimensions=Dimensions(width=args.width, height=args.height),
        attachment_base64=attachment_b64,
        attachment_mime=attachment_mime,
        kind=args.kind,
        duration_seconds=args.duration,
    )
    response, status = _build_pipeline().generate(payload)
    if not response.success:
        console.print(f"[red]HTTP {status}: {response.error}[/red]")
        return 1
    body = response.text if response.text is not None else response.media
    console.print(Panel(str(body), title=f"{response.provider} ({'persisted' if response.persisted else 'original'})"))
    return 0


def run_shots(args: argparse.Namespace) -> int:
    payload = ShotListPayload(
        screenplay=_read_text(args.screenplay),
        page_number=args.page,
        provider=args.provider,
        model=args.model,
        credential=args.key or "use_env_vars",
        caller_id=args.caller,
    )
    response, status = _build_pipeline().generate_shot_list(payload)
    if not response.success:
        console.print(f"[red]HTTP {status}: {response.error}[/red]")
        if response.details:
            console.print(Panel(response.details, title="Raw response (excerpt)", border_style="red"))
        return 1
    print_shots(response.shots)
    if args.output:
        Path(args.output).write_text(response.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[green]Saved to {args.output}[/green]")
    return 0


def run_recover(args: argparse.Namespace) -> int:
    raw = sys.stdin.read() if args.input == "-" else _read_text(args.input)
    try:
        shots = recover_shot_records(raw)
    except ParseFailure as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    if args.json:
        console.print_json(json.dumps([shot.model_dump(exclude_none=True) for shot in shots]))
    else:
        print_shots(shots)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Cinema Pipeline — generation and shot-list tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # -- generate command --
    gen = subparsers.add_parser("generate", help="Generate an image, video or image analysis")
    gen.add_argument("--prompt", "-p", required=True, help="Generation prompt")
    gen.add_argument("--provider", required=True, help="Provider label (e.g. 'dall-e 3', openart, runway, kling)")
    gen.add_argument("--kind", choices=["image", "video", "vision"], default="image")
    gen.add_argument("--model", help="Model label")
    gen.add_argument("--key", help="Explicit API key (default: stored or environment key)")
    gen.add_argument("--caller", default="local", help="Caller id for stored keys and storage prefix")
    gen.add_argument("--attachment", help="Path to an image/video attachment")
    gen.add_argument("--width", type=int, default=config.DEFAULT_WIDTH)
    gen.add_argument("--height", type=int, default=config.DEFAULT_HEIGHT)
    gen.add_argument("--duration", type=int, help="Video duration in seconds (5 or 10)")
    gen.add_argument("--no-persist", action="store_true", help="Return the provider reference as-is")

    # -- shots command --
    shots = subparsers.add_parser("shots", help="Break a screenplay page into a shot list")
    shots.add_argument("--screenplay", "-s", required=True, help="Path to screenplay text")
    shots.add_argument("--page", type=int, help="Screenplay page number")
    shots.add_argument("--provider", default="openai", help="Text service (openai, claude, gemini)")
    shots.add_argument("--model", help="Model override")
    shots.add_argument("--key", help="Explicit API key")
    shots.add_argument("--caller", help="Caller id for stored keys")
    shots.add_argument("--output", "-o", help="Write the shot list JSON here")

    # -- recover command --
    rec = subparsers.add_parser("recover", help="Recover shot records from a raw model response")
    rec.add_argument("--input", "-i", required=True, help="Path to raw response text ('-' for stdin)")
    rec.add_argument("--json", action="store_true", help="Print records as JSON")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()

    if args.command == "generate":
        sys.exit(run_generate(args))
    elif args.command == "shots":
        sys.exit(run_shots(args))
    elif args.command == "recover":
        sys.exit(run_recover(args))


if __name__ == "__main__":
    main()
