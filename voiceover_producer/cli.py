"""CLI interface: serve the HTTP API or run the pipeline against local storage."""

import argparse
import asyncio
import logging
import os
import shutil
import sys

from voiceover_producer.config import Settings
from voiceover_producer.constants import OUTPUT_DIR, VERSION
from voiceover_producer.errors import VoiceoverError, user_message
from voiceover_producer.models import VoiceoverRequest
from voiceover_producer.pipeline import VoiceoverPipeline
from voiceover_producer.progress import ProgressChannel
from voiceover_producer.storage import LocalStorage

logger = logging.getLogger(__name__)


def _check_ffmpeg():
    """Warn when ffmpeg is missing: repetition removal needs it."""
    if not shutil.which("ffmpeg"):
        print("Warning: ffmpeg not found, repeated speech will not be removed.", file=sys.stderr)


def _settings(args) -> Settings:
    settings = Settings.from_env()
    return settings.with_overrides(
        segment_count=getattr(args, "segments", None),
        max_concurrent_segments=getattr(args, "concurrency", None),
        remove_repetitions=False if getattr(args, "no_repetitions", False) else None,
    )


def _local_pipeline(args) -> VoiceoverPipeline:
    settings = _settings(args)
    if not settings.runpod_api_key:
        print("Error: RUNPOD_API_KEY is not set.", file=sys.stderr)
        raise SystemExit(1)
    return VoiceoverPipeline.from_settings(settings, storage=LocalStorage(args.output_dir))


def _read_text(path: str) -> str:
    if not os.path.exists(path):
        print(f"Error: File not found: {path}", file=sys.stderr)
        raise SystemExit(1)
    with open(path) as f:
        text = f.read()
    if not text.strip():
        print(f"Error: File is empty: {path}", file=sys.stderr)
        raise SystemExit(1)
    return text


async def _with_progress(pipeline_call, channel: ProgressChannel):
    """Print progress events while ``pipeline_call`` runs; return its result."""
    task = asyncio.ensure_future(pipeline_call)
    async for event in channel.events():
        if event.type == "progress":
            print(f"  [{event.percent:3d}%] {event.message}")
    return await task


def _run(coro):
    try:
        return asyncio.run(coro)
    except VoiceoverError as e:
        print(f"Error: {user_message(e)}", file=sys.stderr)
        raise SystemExit(1)


def _print_result(result) -> None:
    print(f"Done: {result.audio_url}")
    print(f"Duration: {result.duration:.1f}s, {result.size} bytes")
    if result.failed_segments:
        print(f"Failed segments: {', '.join(str(i) for i in result.failed_segments)}")
    if result.repetitions:
        print(f"Removed {len(result.repetitions)} repeated span(s)")


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn

    from voiceover_producer.api import create_app

    _check_ffmpeg()
    try:
        app = create_app(settings=_settings(args))
    except VoiceoverError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def cmd_generate(args):
    """Generate a voice-over from a script file into the output directory."""
    _check_ffmpeg()
    script = _read_text(args.file)
    pipeline = _local_pipeline(args)

    request = VoiceoverRequest(script, args.voice, args.group, args.speed)
    channel = ProgressChannel()
    print(f"Generating voice-over for {args.file}...")
    result = _run(_with_progress(pipeline.generate(request, channel), channel))
    _print_result(result)


def cmd_regenerate(args):
    """Re-synthesize one segment of an existing voice-over."""
    text = _read_text(args.file) if args.file else args.text
    if not text or not text.strip():
        print("Error: 'regenerate' requires --text or --file", file=sys.stderr)
        raise SystemExit(1)
    pipeline = _local_pipeline(args)

    segment = _run(pipeline.regenerate_segment(text, args.index, args.group, args.voice))
    print(f"Updated segment {segment.index}: {segment.audio_url} ({segment.duration:.1f}s)")


def cmd_recombine(args):
    """Rebuild the combined file from stored segments."""
    _check_ffmpeg()
    pipeline = _local_pipeline(args)

    indices = args.indices
    if not indices:
        group_dir = os.path.join(args.output_dir, args.group)
        if not os.path.isdir(group_dir):
            print(f"Error: No segments found for '{args.group}'.", file=sys.stderr)
            raise SystemExit(1)
        indices = sorted(
            int(name[len("segment-"):-len(".wav")])
            for name in os.listdir(group_dir)
            if name.startswith("segment-") and name.endswith(".wav")
        )

    channel = ProgressChannel()
    call = pipeline.recombine(args.group, [(i, 0) for i in indices], args.speed, channel)
    result = _run(_with_progress(call, channel))
    _print_result(result)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="voiceover-producer",
        description="Voice-over Producer: turn long scripts into one narrated WAV",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    serve_parser.set_defaults(func=cmd_serve)

    def add_local_options(p):
        p.add_argument("--output-dir", default=OUTPUT_DIR, help="Local storage directory")
        p.add_argument("--voice", help="HTTPS URL of a reference voice sample")
        p.add_argument("--segments", type=int, help="Number of parallel segments")
        p.add_argument("--concurrency", type=int, help="Segments synthesized at once")
        p.add_argument("--no-repetitions", action="store_true", help="Skip repeated-speech removal")

    # generate
    gen_parser = subparsers.add_parser("generate", help="Generate a voice-over from a script file")
    gen_parser.add_argument("file", help="Path to the script text file")
    gen_parser.add_argument("--group", help="Asset group id (default: random)")
    gen_parser.add_argument("--speed", type=float, default=1.0, help="Playback speed, 0.5-2.0")
    add_local_options(gen_parser)
    gen_parser.set_defaults(func=cmd_generate)

    # regenerate
    regen_parser = subparsers.add_parser("regenerate", help="Re-synthesize one segment")
    regen_parser.add_argument("group", help="Asset group id")
    regen_parser.add_argument("index", type=int, help="Segment index (1-based)")
    regen_parser.add_argument("--text", help="Segment text")
    regen_parser.add_argument("--file", help="Read segment text from a file")
    add_local_options(regen_parser)
    regen_parser.set_defaults(func=cmd_regenerate)

    # recombine
    recombine_parser = subparsers.add_parser("recombine", help="Rebuild the combined voice-over")
    recombine_parser.add_argument("group", help="Asset group id")
    recombine_parser.add_argument("indices", type=int, nargs="*", help="Segment indices (default: all stored)")
    recombine_parser.add_argument("--speed", type=float, default=1.0, help="Playback speed, 0.5-2.0")
    add_local_options(recombine_parser)
    recombine_parser.set_defaults(func=cmd_recombine)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    level = "DEBUG" if args.verbose else Settings.from_env().log_level
    args.log_level = level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args.func(args)
