"""Terminal client for peer-to-peer calls with live captions.

Joins a room on the relay, negotiates the call with whoever else joins, and
prints remote captions as they arrive. Remote media is consumed by a
blackhole sink so the peer connection keeps draining it.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from aiortc.contrib.media import MediaBlackhole
from dotenv import load_dotenv

from src.peercall.config import SUPPORTED_LANGUAGES, CallConfig
from src.peercall.controller import CallController, CallObserver, ConnectionStatus
from src.peercall.errors import CallError, ErrorKind
from src.peercall.transport.protocol import CaptionEvent
from src.peercall.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /mute        - Mute microphone
  /unmute      - Unmute microphone
  /video on    - Enable camera
  /video off   - Disable camera
  /export      - Save transcript to a JSON file
  /status      - Show call status
  /quit        - Leave the call
  /help        - Show this help
"""


class ConsoleObserver(CallObserver):
    """Renders call notifications on stdout."""

    def __init__(self, self_speaker: str = "You") -> None:
        self.self_speaker = self_speaker
        self.sink: Any = None

    def on_connected(self) -> None:
        print("\n🔗 Connected")

    def on_disconnected(self) -> None:
        print("\n✓ Disconnected")

    def on_caption(self, event: CaptionEvent) -> None:
        if event.speaker == self.self_speaker:
            print(f"\n  {event.speaker}: {event.text}")
            return
        print(f"\n  {event.speaker}: {event.translation or event.text}")
        if event.translation and event.translation != event.text:
            print(f"    ({event.text})")

    def on_remote_track(self, kind: str, track: Any) -> None:
        if self.sink is None:
            self.sink = MediaBlackhole()
        self.sink.addTrack(track)
        logger.debug("Remote track attached to sink", extra={"kind": kind})

    def on_error(self, kind: ErrorKind, message: str) -> None:
        print(f"\n❌ Error ({kind.value}): {message}")

    async def start_sink(self) -> None:
        if self.sink is not None:
            await self.sink.start()

    async def stop_sink(self) -> None:
        if self.sink is not None:
            await self.sink.stop()
            self.sink = None


class CLIClient:
    """Interactive call client."""

    def __init__(self, config: CallConfig, room_id: str) -> None:
        """Initialize CLI client.

        Args:
            config: Call configuration
            room_id: Room to join
        """
        self.config = config
        self.room_id = room_id
        self.running = True
        self.observer = ConsoleObserver(config.captions.self_speaker)
        self.controller = CallController(config, self.observer)
        self._sink_started = False

    async def handle_command(self, line: str) -> None:
        """Execute one slash command."""
        command, _, argument = line[1:].strip().lower().partition(" ")
        argument = argument.strip()

        if command == "quit":
            self.running = False
            print("\nGoodbye!")

        elif command == "help":
            print(HELP_TEXT)

        elif command == "mute":
            self.controller.toggle_audio(False)
            print("Microphone muted")

        elif command == "unmute":
            self.controller.toggle_audio(True)
            print("Microphone unmuted")

        elif command == "video" and argument in ("on", "off"):
            self.controller.toggle_video(argument == "on")
            print(f"Camera {argument}")

        elif command == "export":
            if not len(self.controller.captions):
                print("No captions yet")
                return
            path = self.controller.captions.save(self.config.captions.export_dir, self.room_id)
            print(f"Transcript saved to {path}")

        elif command == "status":
            state = self.controller.negotiation_state
            print(
                f"Room: {self.room_id}  status: {self.controller.status.value}  "
                f"negotiation: {state.value if state else '-'}  "
                f"captions: {len(self.controller.captions)}"
            )

        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Read commands from stdin until /quit, EOF or the call ends."""
        print("\n" + "=" * 60)
        print(f"Room {self.room_id}")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running and self.controller.is_active:
            try:
                line = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                self.running = False
                break

            line = line.strip()
            if not line:
                continue
            if not line.startswith("/"):
                print("Commands start with /, type /help")
                continue

            try:
                await self.handle_command(line)
            except OSError as e:
                logger.error("Command failed", extra={"command": line, "error": str(e)})
                print(f"Command failed: {e}")

    async def watch_sink(self) -> None:
        """Start the remote media sink once the call connects."""
        while self.running and self.controller.is_active:
            if not self._sink_started and self.controller.status == ConnectionStatus.CONNECTED:
                await self.observer.start_sink()
                self._sink_started = True
            await asyncio.sleep(0.5)

    async def run(self) -> int:
        """Run the client. Returns the process exit code."""
        try:
            await self.controller.start(self.room_id)
        except CallError as e:
            logger.error("Could not join room", extra={"room_id": self.room_id, "error": str(e)})
            return 1
        except ConnectionError as e:
            logger.error("Relay unreachable", extra={"room_id": self.room_id, "error": str(e)})
            return 1

        def signal_handler() -> None:
            self.running = False

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        input_task = asyncio.create_task(self.input_loop())
        sink_task = asyncio.create_task(self.watch_sink())
        try:
            while self.running and self.controller.is_active:
                await asyncio.sleep(0.2)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            sink_task.cancel()
            try:
                await sink_task
            except asyncio.CancelledError:
                pass
            await self.observer.stop_sink()

            if len(self.controller.captions):
                path = self.controller.captions.save(self.config.captions.export_dir, self.room_id)
                print(f"\nTranscript saved to {path}")
            await self.controller.end()
            # input() blocks its executor thread until the next line
            input_task.cancel()

        return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Peer-to-peer video call client with translated captions"
    )
    parser.add_argument("--room", type=str, required=True, help="Room identifier to join")
    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        help="Relay websocket URL (default: from config, ws://localhost:8000)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to call configuration YAML file",
    )
    parser.add_argument(
        "--language",
        type=str,
        choices=sorted(SUPPORTED_LANGUAGES),
        default=None,
        help="Caption translation language",
    )
    parser.add_argument("--no-video", action="store_true", help="Join with audio only")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CallConfig:
    """Load configuration and apply command-line overrides."""
    config = CallConfig.from_yaml_with_defaults(args.config)

    updates: dict[str, Any] = {}
    if args.backend:
        updates["relay"] = config.relay.model_validate(
            {**config.relay.model_dump(), "backend_url": args.backend}
        )
    if args.no_video:
        updates["media"] = config.media.model_copy(update={"video": False})
    if args.language:
        updates["captions"] = config.captions.model_copy(update={"target_language": args.language})
    if args.verbose:
        updates["log_level"] = "DEBUG"

    return config.model_copy(update=updates) if updates else config


def main(argv: list[str] | None = None) -> None:
    """Main entry point for CLI client."""
    load_dotenv()
    args = parse_args(argv)

    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.log_level, json_format=args.json_logs)

    client = CLIClient(config, args.room)
    try:
        exit_code = asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
