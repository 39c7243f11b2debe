"""Cinematic Sketch — Entry Point.

Usage:
    # Show which providers are configured
    python main.py check

    # Turn a sketch into three scene ideas
    python main.py analyze sketch.png

    # Render a scene from a prompt (optionally with a reference image)
    python main.py generate "A fox in a misty forest" --model gemini-2.5-flash-image --size 2K --out scene.png

    # Speak a line of dialogue and save it as WAV
    python main.py speak "Where did everyone go?" --voice Kore --out line.wav

    # Describe a scene's ambience and synthesize it
    python main.py ambience scene.png --out ambience.wav
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from config import ProviderSettings
from pipeline.audio import pcm_base64_to_wav_base64
from pipeline.errors import CinematicError
from pipeline.orchestrator import DEFAULT_EDIT_MODEL, CinematicOrchestrator
from schemas.cinematic import DEFAULT_VOICE, VOICE_OPTIONS

console = Console()


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _mask(key: str) -> str:
    if not key:
        return "[dim]not set[/dim]"
    return f"{key[:6]}…" if len(key) > 6 else "set"


def _read_image(path: str) -> str:
    image_path = Path(path)
    if not image_path.exists():
        console.print(f"[red]File not found: {image_path}[/red]")
        sys.exit(1)
    return base64.b64encode(image_path.read_bytes()).decode("ascii")


def _save_data_url(image_url: str, out: str) -> Path | None:
    """Write a ``data:image/...;base64,`` URL to disk. Remote URLs are only printed."""
    if not image_url.startswith("data:"):
        return None
    _, _, encoded = image_url.partition(",")
    path = Path(out)
    path.write_bytes(base64.b64decode(encoded))
    return path


def _print_usage(usage) -> None:
    console.print(
        f"  [dim]tokens in/out/total: {usage.input_tokens}/{usage.output_tokens}/{usage.total_tokens}"
        f"  cost: {usage.estimated_cost}[/dim]"
    )


def run_check() -> int:
    settings = ProviderSettings.from_config()
    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Configured")
    table.add_column("Key")
    table.add_column("Model(s)")
    rows = [
        ("Gemini", settings.gemini_configured, config.GEMINI_API_KEY,
         f"{settings.analyze_model}, {settings.image_model_default}, {settings.speech_model}"),
        ("Doubao chat", settings.doubao_chat_configured, config.DOUBAO_API_KEY, settings.doubao_chat_model),
        ("Doubao image", settings.doubao_image_configured, config.DOUBAO_API_KEY, settings.doubao_image_model),
        ("OpenAI", settings.openai_configured, config.OPENAI_API_KEY, settings.openai_vision_model),
    ]
    for name, ok, key, models in rows:
        table.add_row(name, "[green]yes[/green]" if ok else "[red]no[/red]", _mask(key), models)
    console.print(table)
    return 0 if settings.gemini_configured else 1


async def run_analyze(orchestrator: CinematicOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.analyze_sketch(_read_image(args.sketch))
    console.print(f"[green]Ideas from {result.provider}/{result.model}[/green]")
    for idea in result.ideas:
        console.print(
            Panel(
                f"[bold]{idea.title}[/bold]\n{idea.description}\n\n[dim]{idea.technical_prompt}[/dim]",
                title=idea.id,
                border_style="bright_blue",
            )
        )
    _print_usage(result.usage)
    return 0


async def run_generate(orchestrator: CinematicOrchestrator, args: argparse.Namespace) -> int:
    reference = _read_image(args.reference) if args.reference else None
    result = await orchestrator.generate_scene(
        args.prompt, model=args.model, size=args.size, reference_image=reference,
    )
    saved = _save_data_url(result.image_url, args.out)
    if saved:
        console.print(f"  [green]Image saved:[/green] {saved}")
    else:
        console.print(f"  [green]Image URL:[/green] {result.image_url}")
    _print_usage(result.usage)
    return 0


async def run_speak(orchestrator: CinematicOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.synthesize_speech(args.text, args.voice)
    Path(args.out).write_bytes(base64.b64decode(pcm_base64_to_wav_base64(result.audio_data)))
    console.print(f"  [green]Audio saved:[/green] {args.out}")
    _print_usage(result.usage)
    return 0


async def run_ambience(orchestrator: CinematicOrchestrator, args: argparse.Namespace) -> int:
    described = await orchestrator.describe_ambience(_read_image(args.scene))
    console.print(f"  [cyan]Ambience:[/cyan] {described.description}")
    audio = await orchestrator.synthesize_ambience_audio(described.description)
    Path(args.out).write_bytes(base64.b64decode(pcm_base64_to_wav_base64(audio.audio_data)))
    console.print(f"  [green]Audio saved:[/green] {args.out}")
    return 0


COMMANDS = {
    "analyze": run_analyze,
    "generate": run_generate,
    "speak": run_speak,
    "ambience": run_ambience,
}


def main():
    parser = argparse.ArgumentParser(
        description="Cinematic Sketch — sketch to scene",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("check", help="Show which providers are configured")

    an = subparsers.add_parser("analyze", help="Analyze a sketch into three scene ideas")
    an.add_argument("sketch", help="Path to the sketch image")

    gen = subparsers.add_parser("generate", help="Render a scene image from a prompt")
    gen.add_argument("prompt", help="Scene prompt")
    gen.add_argument("--model", default=DEFAULT_EDIT_MODEL, help="Image model id, or 'doubao'")
    gen.add_argument("--size", default="2K", choices=["1K", "2K", "4K"])
    gen.add_argument("--reference", help="Optional reference image path")
    gen.add_argument("--out", "-o", default="scene.png", help="Where to save the image")

    sp = subparsers.add_parser("speak", help="Synthesize a line of dialogue to WAV")
    sp.add_argument("text", help="Dialogue text")
    sp.add_argument("--voice", default=DEFAULT_VOICE, choices=sorted(VOICE_OPTIONS))
    sp.add_argument("--out", "-o", default="speech.wav")

    amb = subparsers.add_parser("ambience", help="Describe and synthesize a scene's ambience")
    amb.add_argument("scene", help="Path to the scene image")
    amb.add_argument("--out", "-o", default="ambience.wav")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()

    console.print(
        Panel(
            "[bold]CINEMATIC SKETCH[/bold]\n"
            "Sketch → Scene → Sound",
            border_style="bright_magenta",
        )
    )

    if args.command == "check":
        sys.exit(run_check())

    try:
        code = asyncio.run(COMMANDS[args.command](CinematicOrchestrator(), args))
    except CinematicError as exc:
        console.print(f"[red]{exc.kind}: {exc.message}[/red]")
        if exc.retryable:
            console.print("[yellow]The provider looks temporarily unavailable; try again shortly.[/yellow]")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
