"""
VOICETUTOR Application Entry Point

Runs a voice conversation with the tutor backend from the terminal.
Handles command-line arguments, configuration loading, signal handling,
and the interactive command loop.

Usage:
    voicetutor                          # Run with default config
    voicetutor --config /path/to/config.yaml
    voicetutor --log-level DEBUG
    voicetutor --dry-run                # Validate config without starting
    voicetutor --auto-listen --export session.txt

Commands (type and press Enter while running):
    <empty line>    tap the microphone (start listening)
    t <text>        send a typed prompt
    x               export the transcript so far
    q               stop the conversation and exit

Entry Points:
    - CLI: `voicetutor` command (via pyproject.toml)
    - Direct: `python -m voicetutor.main`
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from voicetutor import __version__
from voicetutor.config import VoiceTutorConfig, load_config
from voicetutor.exceptions import ConfigurationError, ResourceError, VoiceTutorError
from voicetutor.logging_config import get_logger, setup_logging
from voicetutor.orchestrator import (
    ConversationOrchestrator,
    EventType,
    OrchestratorEvent,
    create_orchestrator,
)
from voicetutor.storage import JsonSessionStore
from voicetutor.types import Role

if TYPE_CHECKING:
    from types import FrameType

__all__ = ["main", "async_main", "create_parser"]

logger = get_logger("main")


# =============================================================================
# Argument Parser
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="voicetutor",
        description="VOICETUTOR voice conversation with an AI tutor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Configuration
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        metavar="PATH",
        help="Path to configuration file (default: auto-discover)",
    )

    # Logging
    parser.add_argument(
        "-l",
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set logging level (overrides config file)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        metavar="PATH",
        help="Path to log file (default: stdout only)",
    )

    # Operation modes
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without opening audio devices",
    )
    parser.add_argument(
        "--url",
        type=str,
        metavar="URL",
        help="Dialogue backend URL (overrides config file)",
    )
    parser.add_argument(
        "--auto-listen",
        action="store_true",
        help="Start listening as soon as the session starts",
    )
    parser.add_argument(
        "--export",
        type=str,
        metavar="PATH",
        help="Write the transcript to PATH when the session ends",
    )

    return parser


# =============================================================================
# Signal Handlers
# =============================================================================


class GracefulShutdown:
    """Manages graceful shutdown on signals.

    Handles SIGINT (Ctrl+C) and SIGTERM so the conversation is stopped
    cleanly and the microphone and speaker are released.
    """

    def __init__(self) -> None:
        self._shutdown_requested = False
        self._shutdown_event: asyncio.Event | None = None
        self._original_handlers: dict[int, signal.Handlers] = {}

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def install_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        self._original_handlers[signal.SIGINT] = signal.signal(
            signal.SIGINT, self._handle_signal
        )
        self._original_handlers[signal.SIGTERM] = signal.signal(
            signal.SIGTERM, self._handle_signal
        )
        logger.debug("Signal handlers installed for graceful shutdown")

    def restore_handlers(self) -> None:
        """Restore original signal handlers."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
        logger.debug("Original signal handlers restored")

    def request_shutdown(self) -> None:
        self._shutdown_requested = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Handle shutdown signal.

        Args:
            signum: Signal number received
            frame: Current stack frame (unused)
        """
        signal_name = signal.Signals(signum).name
        if self._shutdown_requested:
            logger.warning(f"Received {signal_name} again - forcing immediate exit")
            sys.exit(1)

        logger.info(f"Received {signal_name} - stopping conversation...")
        self.request_shutdown()

    def get_shutdown_event(self) -> asyncio.Event:
        """Get or create async shutdown event."""
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event


_shutdown_handler = GracefulShutdown()


def get_shutdown_handler() -> GracefulShutdown:
    """Get the global shutdown handler instance."""
    return _shutdown_handler


# =============================================================================
# Console Output
# =============================================================================


def print_banner(config: VoiceTutorConfig) -> None:
    """Print startup banner with configuration summary."""
    listen_mode = "auto" if config.conversation.auto_listen else "tap (Enter)"
    banner = f"""
==========================================================
  VOICETUTOR v{__version__}
----------------------------------------------------------
  Backend:   {config.dialogue.url}
  Whisper:   {config.recognizer.model} ({config.recognizer.device})
  Listening: {listen_mode}
  Restart:   {config.conversation.restart_delay:.1f}s after each reply
----------------------------------------------------------
  Enter = speak | t <text> = type | x = export | q = quit
==========================================================
"""
    print(banner)


def _print_event(event: OrchestratorEvent) -> None:
    if event.event_type is EventType.PHASE_CHANGED:
        print(f"[{event.data['to'].value}]")
    elif event.event_type is EventType.TURN_APPENDED:
        turn = event.data["turn"]
        label = "You" if turn.role is Role.USER else "Tutor"
        print(f"{label}: {turn.text}")
        for link in turn.links:
            print(f"    {link}")
    elif event.event_type is EventType.ERROR:
        print(f"! {event.message}")


def attach_console(orchestrator: ConversationOrchestrator) -> None:
    for event_type in (EventType.PHASE_CHANGED, EventType.TURN_APPENDED, EventType.ERROR):
        orchestrator.subscribe(event_type, _print_event)


# =============================================================================
# Command Loop
# =============================================================================


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    """Feed stdin lines into ``lines`` from a daemon thread (None on EOF)."""

    def _reader() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=_reader, name="stdin-reader", daemon=True).start()


def handle_command(
    line: str,
    orchestrator: ConversationOrchestrator,
    store: JsonSessionStore,
) -> bool:
    """Apply one console command.

    Returns:
        False when the user asked to quit
    """
    command = line.strip()
    if command == "":
        orchestrator.start_listening()
    elif command in ("q", "quit", "exit"):
        return False
    elif command == "x":
        text = orchestrator.export_transcript()
        if text:
            path = store.write_transcript(text)
            print(f"Transcript written to {path}")
        else:
            print("Nothing to export yet")
    elif command.startswith("t "):
        orchestrator.submit_text(command[2:])
    else:
        print("Commands: Enter = speak, t <text> = type, x = export, q = quit")
    return True


async def run_conversation(
    orchestrator: ConversationOrchestrator,
    store: JsonSessionStore,
    shutdown_event: asyncio.Event,
) -> None:
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    _start_stdin_reader(loop, lines)

    shutdown_wait = asyncio.ensure_future(shutdown_event.wait())
    try:
        while True:
            next_line = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait(
                {next_line, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if shutdown_wait in done:
                next_line.cancel()
                return
            line = next_line.result()
            if line is None or not handle_command(line, orchestrator, store):
                return
    finally:
        shutdown_wait.cancel()


# =============================================================================
# Main Entry Points
# =============================================================================


async def async_main(args: argparse.Namespace, config: VoiceTutorConfig) -> int:
    """Async main function for running a conversation.

    Args:
        args: Parsed command-line arguments
        config: Validated configuration

    Returns:
        Exit code (0 for success)
    """
    shutdown = get_shutdown_handler()
    shutdown_event = shutdown.get_shutdown_event()

    store = JsonSessionStore(config.storage.sessions_dir, config.storage.transcripts_dir)
    orchestrator = create_orchestrator(config, on_session_complete=store.save)
    attach_console(orchestrator)

    try:
        try:
            await orchestrator.start()
        except ResourceError as e:
            logger.error(f"Cannot start conversation: {e}")
            return 1

        logger.info("Conversation running. Press Ctrl+C or type q to stop.")
        await run_conversation(orchestrator, store, shutdown_event)

        transcript = orchestrator.export_transcript()
        summary = await orchestrator.stop()
        if summary is not None:
            logger.info(f"Session complete: {summary.title!r} ({len(summary.turns)} turns)")
            print(f"Metrics: {orchestrator.get_metrics()}")

        if args.export and transcript:
            _write_export(Path(args.export).expanduser(), transcript)
        return 0

    except Exception as e:
        logger.exception(f"Fatal error in conversation loop: {e}")
        try:
            await orchestrator.stop()
        except Exception as stop_error:
            logger.warning(f"Error stopping conversation: {stop_error}")
        return 1
    finally:
        close = getattr(orchestrator.dialogue_client, "close", None)
        if close is not None:
            await close()


def _write_export(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text + "\n", encoding="utf-8")
    logger.info(f"Transcript exported: {path}")


def apply_overrides(args: argparse.Namespace, config: VoiceTutorConfig) -> None:
    """Apply command-line overrides to the loaded configuration."""
    if args.url:
        config.dialogue.url = args.url
        logger.info(f"Dialogue backend: {args.url}")
    if args.auto_listen:
        config.conversation.auto_listen = True
    if args.log_file:
        config.log_file = args.log_file


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the VOICETUTOR application.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # Basic setup before config is loaded
    setup_logging(log_level=args.log_level or "INFO")

    logger.info(f"VOICETUTOR v{__version__} starting...")

    try:
        logger.debug(f"Loading configuration from: {args.config or 'auto-discover'}")
        config = load_config(args.config)
        logger.info("Configuration loaded successfully")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    apply_overrides(args, config)
    setup_logging(log_level=args.log_level or config.log_level, log_file=config.log_file)

    print_banner(config)

    if args.dry_run:
        logger.info("Dry run mode - configuration valid, exiting")
        print("\nConfiguration is valid")
        return 0

    shutdown = get_shutdown_handler()
    shutdown.install_handlers()

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except VoiceTutorError as e:
        logger.error(f"VOICETUTOR error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    finally:
        shutdown.restore_handlers()
        logger.info("VOICETUTOR shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
