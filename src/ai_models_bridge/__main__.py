"""Entry point for the AI Models Bridge command line.

This module provides the main entry point for AI Models Bridge.
It handles:
- Configuration loading
- Logging setup with secret sanitization
- Backend instantiation through the dispatcher
- Thread management actions (list, new, load, delete)
- Streaming an answer to stdout
"""

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import TextIO

import structlog

from ai_models_bridge._version import __version__
from ai_models_bridge.errors import AIModelError
from ai_models_bridge.models.chat import ImageAttachment
from ai_models_bridge.models.events import StatusEvent, TitleUpdate, UpdateAnswer

log = structlog.get_logger()


def setup_logging(
    debug: bool = False,
    log_format: str = "console",
    file_path: Path | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging with secret sanitization.

    Args:
        debug: Enable debug logging if True
        log_format: Output format ("json" or "console")
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging
    """
    from ai_models_bridge.utils.logging import LogFormat, LogLevel, configure_logging

    level = LogLevel.DEBUG if debug else LogLevel.WARNING
    fmt = LogFormat(log_format.lower()) if isinstance(log_format, str) else log_format

    configure_logging(
        level=level,
        log_format=fmt,
        file_path=file_path,
        file_enabled=file_enabled,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    parser = argparse.ArgumentParser(
        prog="ai-models-bridge",
        description="AI Models Bridge - One conversation API over many chat backends",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: environment and .env only)",
    )

    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and validate without contacting any backend",
    )

    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log output format (default: console)",
    )

    parser.add_argument(
        "-m",
        "--model",
        choices=["deepseek", "copilot", "gemini", "claude", "perplexity", "openrouter"],
        default=None,
        help="Backend to talk to (default: models.default from config)",
    )

    parser.add_argument(
        "--thread",
        default=None,
        help="Continue the stored thread with this id",
    )

    parser.add_argument(
        "--new-thread",
        action="store_true",
        help="Start a fresh thread before sending",
    )

    parser.add_argument(
        "--list-threads",
        action="store_true",
        help="List the backend's stored threads and exit",
    )

    parser.add_argument(
        "--delete-thread",
        metavar="THREAD_ID",
        default=None,
        help="Delete a stored thread and exit",
    )

    parser.add_argument(
        "--mode",
        default=None,
        help="Backend specific answer mode (e.g. Copilot 'reasoning')",
    )

    parser.add_argument(
        "--image",
        type=Path,
        action="append",
        default=[],
        help="Attach an image file (repeatable)",
    )

    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Prompt to send; read from stdin when omitted",
    )

    return parser.parse_args(argv)


class AnswerPrinter:
    """Writes cumulative answer updates to a stream as they grow."""

    def __init__(self, out: TextIO) -> None:
        self._out = out
        self._printed = ""

    def __call__(self, event: StatusEvent) -> None:
        if isinstance(event, UpdateAnswer):
            text = event.text
            if text.startswith(self._printed):
                self._out.write(text[len(self._printed) :])
            else:
                # Backend rewrote earlier text
                self._out.write("\n" + text)
            self._printed = text
            self._out.flush()
        elif isinstance(event, TitleUpdate):
            log.info("thread_title", title=event.title, thread_id=event.thread_id)

    def finish(self) -> None:
        if self._printed and not self._printed.endswith("\n"):
            self._out.write("\n")
            self._out.flush()


def load_images(paths: list[Path]) -> list[ImageAttachment]:
    """Read image files into attachments."""
    images = []
    for path in paths:
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        images.append(
            ImageAttachment(
                filename=path.name,
                content=path.read_bytes(),
                content_type=content_type,
            )
        )
    return images


async def run_bridge(args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Run one bridge action.

    Args:
        args: Parsed command line arguments
        out: Stream the answer and listings are written to

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    log.info(
        "starting_ai_models_bridge",
        version=__version__,
        config_path=str(args.config) if args.config else None,
    )

    try:
        # Load configuration
        from ai_models_bridge.config.loader import load_config

        config = load_config(args.config)
        log.info("configuration_loaded")

        # Reconfigure logging from config file settings
        if args.config is not None:
            from ai_models_bridge.utils.logging import configure_logging

            configure_logging(
                level="DEBUG" if args.debug else config.logging.level,
                log_format=config.logging.format,
                file_path=config.logging.file.path if config.logging.file.enabled else None,
                file_enabled=config.logging.file.enabled,
            )

        if args.dry_run:
            log.info("dry_run_mode_config_valid")
            return 0

        from ai_models_bridge.core.dispatcher import create_dispatcher
        from ai_models_bridge.utils.logging import bind_context

        backend = args.model or config.models.default
        bind_context(backend=backend)
        async with await create_dispatcher(config, [backend]) as dispatcher:
            await dispatcher.initialize()

            if args.list_threads:
                for thread in await dispatcher.list_threads():
                    out.write(f"{thread.id}\t{thread.title}\t{len(thread.messages)} messages\n")
                return 0

            if args.delete_thread:
                await dispatcher.delete_thread(
                    args.delete_thread, create_new_thread_after_delete=False
                )
                log.info("thread_deleted", thread_id=args.delete_thread)
                return 0

            if args.thread:
                await dispatcher.load_thread(args.thread)
            elif args.new_thread:
                await dispatcher.new_thread()

            prompt = args.prompt if args.prompt is not None else sys.stdin.read()
            if not prompt.strip():
                log.error("empty_prompt")
                return 2

            printer = AnswerPrinter(out)
            await dispatcher.send(
                prompt,
                on_event=printer,
                images=load_images(args.image),
                mode=args.mode,
            )
            printer.finish()

        return 0

    except AIModelError as e:
        log.error("request_failed", kind=e.kind.value, error=str(e))
        return 1
    except FileNotFoundError as e:
        log.error("file_not_found", error=str(e))
        return 1
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return 1
    except KeyboardInterrupt:
        log.info("keyboard_interrupt_received")
        return 0
    except Exception as e:
        log.exception("fatal_error", error=str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Setup logging with CLI options
    setup_logging(
        debug=args.debug,
        log_format=args.format,
    )

    try:
        return asyncio.run(run_bridge(args))
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return 0


if __name__ == "__main__":
    sys.exit(main())
