"""Command-line entry point.

    python -m mediacompose template.json --config project.json --output-dir out
"""

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from mediacompose.compiler import compile_template, load_descriptor, load_project_config
from mediacompose.config import get_settings
from mediacompose.render.events import CancellationToken, CompileEvent, CompileEventChannel, CompileEventType

logger = logging.getLogger("mediacompose")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="mediacompose", description="Compile a media template with ffmpeg")
    parser.add_argument("descriptor", help="Template descriptor JSON file")
    parser.add_argument("--config", help="Project configuration JSON file")
    parser.add_argument("--output-dir", help="Directory receiving output.mp4")
    parser.add_argument("--workers", type=int, help="Maximum segments built at once")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    return parser.parse_args(argv)


def _print_event(event: CompileEvent) -> None:
    if event.type is CompileEventType.PROGRESS:
        print(f"progress {round((event.progress or 0) * 100)}%", file=sys.stderr)
    elif event.type is CompileEventType.FAILED:
        print(f"failed: {event.error}", file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    try:
        descriptor = load_descriptor(args.descriptor)
        config = load_project_config(args.config)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"[CLI] Invalid input: {e}")
        return EXIT_FAILED

    if args.output_dir:
        config = config.model_copy(update={"output_dir": args.output_dir})

    token = CancellationToken()
    events = CompileEventChannel()
    events.subscribe(_print_event)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        signal.signal(signal.SIGINT, lambda *_: token.cancel())

    project = await compile_template(
        config,
        descriptor,
        events=events,
        cancel_token=token,
        max_concurrent_segments=args.workers,
    )

    if project is None:
        return EXIT_CANCELLED if token.cancelled else EXIT_FAILED

    print(project.final_video)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
