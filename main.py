"""
Main Application Entry Point

Command line front end for the Velar pipeline: capture and analyze the
screen, analyze an audio clip, chat, test the configured backend or list
its models.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from velar import APP_NAME, APP_VERSION, EventTypes
from velar.controllers.pipeline_controller import PipelineController
from velar.models.pipeline_models import PipelineError, QueueKind, mime_type_for
from velar.models.settings_manager import BackendType, PipelineSettings
from velar.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="velar",
        description=f"{APP_NAME} v{APP_VERSION} - screen capture to AI analysis"
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: VELAR_LOG_LEVEL or INFO)"
    )
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--backend", choices=[b.value for b in BackendType], help="Model backend to use")
    parser.add_argument("--model", help="Model id; bypasses automatic model selection")
    parser.add_argument("--keep-files", action="store_true", help="Keep capture files on exit")

    commands = parser.add_subparsers(dest="command", required=True)

    capture = commands.add_parser("capture", help="Capture the screen and analyze it")
    capture.add_argument("--debug-captures", type=int, default=0, metavar="N",
                         help="Take N extra captures after the analysis and run a debug pass")

    audio = commands.add_parser("audio", help="Analyze an audio clip")
    audio.add_argument("path", type=Path)

    chat = commands.add_parser("chat", help="Ask a question")
    chat.add_argument("message")
    chat.add_argument("--with-capture", action="store_true", help="Attach a fresh screen capture")

    commands.add_parser("test-connection", help="Validate the configured backend")

    models = commands.add_parser("models", help="List available models")
    models.add_argument("--refresh", action="store_true", help="Fetch the live catalog first")

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> PipelineSettings:
    settings = PipelineSettings.from_env()
    if args.backend:
        settings.backend = BackendType(args.backend)
    if args.model:
        if settings.backend == BackendType.LOCAL:
            settings.local.model = args.model
        else:
            settings.cloud.model = args.model
    if args.debug:
        settings.log_level = "DEBUG"
    elif args.log_level:
        settings.log_level = args.log_level
    return settings


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def run_command(controller: PipelineController, args: argparse.Namespace) -> int:
    """Execute one subcommand; returns the exit code."""
    if args.command == "capture":
        await controller.capture_now()
        artifact = await controller.process_primary()
        if artifact is None:
            return 1
        _print_json(artifact.to_dict())

        if args.debug_captures > 0:
            for _ in range(args.debug_captures):
                await controller.capture_now()
            solution = await controller.process_secondary()
            if solution is None:
                return 1
            _print_json(solution.to_dict())
        return 0

    if args.command == "audio":
        data = await asyncio.get_running_loop().run_in_executor(None, args.path.read_bytes)
        await controller.import_audio(data, mime_type_for(str(args.path)))
        artifact = await controller.process_primary()
        if artifact is None:
            return 1
        _print_json(artifact.to_dict())
        return 0

    if args.command == "chat":
        if args.with_capture:
            await controller.capture_now()
        result = await controller.chat(args.message, include_screenshots=args.with_capture)
        print(result.text)
        return 0

    if args.command == "test-connection":
        result = await controller.test_connection()
        _print_json(result.to_dict())
        return 0 if result.success else 1

    if args.command == "models":
        if args.refresh:
            refresh = await controller.refresh_catalog()
            if refresh.warning:
                print(f"Warning: {refresh.warning}", file=sys.stderr)
        _print_json([model.to_dict() for model in await controller.list_models()])
        return 0

    return 2


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Main application entry point.

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    try:
        settings = build_settings(args)
        setup_logging(
            log_dir=args.log_dir or settings.log_dir,
            log_level=settings.log_level,
            enable_console=args.debug,
            enable_json=True
        )
        logger.info("Starting %s v%s", APP_NAME, APP_VERSION)
        controller = PipelineController(settings)
    except PipelineError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 1

    async def report_failure(event) -> None:
        print(f"Error: {event.data['error']}", file=sys.stderr)

    async def report_no_input(event) -> None:
        print(f"Nothing to process in the {event.data['kind']} queue", file=sys.stderr)

    await controller.event_bus.subscribe(EventTypes.PROCESSING_FAILED, report_failure)
    await controller.event_bus.subscribe(EventTypes.PROCESSING_NO_INPUT, report_no_input)

    try:
        return await run_command(controller, args)
    except PipelineError as e:
        logger.error("Command failed: %s", e.message)
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        await controller.event_bus.wait_idle()
        if args.keep_files:
            await controller.orchestrator.cancel()
            for kind in QueueKind:
                logger.info("Kept %d %s captures in %s", len(controller.get_queue(kind)), kind.value,
                            controller.queue_manager.directory_for(kind))
        else:
            await controller.shutdown()
        logging.shutdown()


def run_app() -> int:
    """Synchronous entry point for the console script."""
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(run_app())
