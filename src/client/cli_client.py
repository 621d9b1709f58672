"""Terminal client for MAGUS live conversations.

Loads configuration, starts a conversation with the local microphone and
speakers, and accepts typed turns and commands from stdin.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from src.magus_live.auth import StaticCredentialProvider
from src.magus_live.config import MagusConfig
from src.magus_live.factory import build_orchestrator
from src.magus_live.orchestrator import SessionOrchestrator, SessionStatus
from src.magus_live.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /start  - Start the conversation
  /end    - End the conversation
  /mute   - Toggle reply audio
  /stop   - Stop the reply being spoken
  /status - Show session status
  /quit   - Exit client
  /help   - Show this help
"""


def format_status(status: SessionStatus) -> str:
    """Render a status snapshot as a single line."""
    parts = [f"[{status.state.value}]"]
    if status.muted:
        parts.append("muted")
    if status.responding:
        parts.append("responding")
    if status.last_error:
        parts.append(f"error: {status.last_error}")
    return " ".join(parts)


class CLIClient:
    """Interactive stdin client driving a SessionOrchestrator."""

    def __init__(self, orchestrator: SessionOrchestrator, knowledge_context: str | None = None):
        self.orchestrator = orchestrator
        self.knowledge_context = knowledge_context
        self.running = True
        self._last_text = ""
        orchestrator.on_status = self.on_status

    def on_status(self, status: SessionStatus) -> None:
        if status.last_text and status.last_text != self._last_text and not status.responding:
            print(f"\nMAGUS: {status.last_text}")
        self._last_text = status.last_text
        logger.debug("Status changed", extra={"status": format_status(status)})

    async def start(self) -> None:
        result = await self.orchestrator.start_conversation(self.knowledge_context)
        if result.already_active:
            print("Conversation already active")
        elif result.error is not None:
            print(f"Could not start: {result.error}")

    async def handle_line(self, line: str) -> None:
        """Dispatch one line of user input.

        Lines starting with ``/`` are commands; anything else is sent as a
        typed turn.

        Args:
            line: Raw input line
        """
        text = line.strip()
        if not text:
            return

        if not text.startswith("/"):
            if not await self.orchestrator.send_text(text):
                print("Message not sent (conversation not active)")
            return

        command = text[1:].lower()
        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command == "start":
            await self.start()
        elif command == "end":
            await self.orchestrator.stop_conversation()
        elif command == "mute":
            muted = self.orchestrator.toggle_mute()
            print("Muted" if muted else "Unmuted")
        elif command == "stop":
            self.orchestrator.stop_speaking()
        elif command == "status":
            print(format_status(self.orchestrator.status))
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                line = await loop.run_in_executor(None, input, "You: ")
            except EOFError:
                break
            await self.handle_line(line)

    async def run(self) -> None:
        """Run the client until /quit, EOF or a termination signal."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.start()
            await self.input_loop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.orchestrator.stop_conversation()


async def run_client(
    config: MagusConfig, token: str | None, knowledge_context: str | None = None
) -> None:
    """Build an orchestrator from configuration and run the client.

    Args:
        config: Session configuration
        token: Caller access token for the edge functions
        knowledge_context: Optional reference text for the assistant
    """
    orchestrator = build_orchestrator(config, StaticCredentialProvider.from_token(token))
    await CLIClient(orchestrator, knowledge_context).run()


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Terminal client for MAGUS live conversations")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (defaults plus environment overrides if omitted)",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=os.getenv("MAGUS_ACCESS_TOKEN"),
        help="Caller access token (default: $MAGUS_ACCESS_TOKEN)",
    )
    parser.add_argument(
        "--context-file",
        type=Path,
        default=None,
        help="Text file with knowledge context for the assistant",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    try:
        config = MagusConfig.from_yaml_with_defaults(args.config)
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)

    setup_logging("DEBUG" if args.verbose else config.log_level)

    knowledge_context = None
    if args.context_file is not None:
        knowledge_context = args.context_file.read_text(encoding="utf-8")

    try:
        asyncio.run(run_client(config, args.token, knowledge_context))
    except ValueError as e:
        # Unresolvable endpoint (e.g. live mode without an API key)
        print(f"Invalid configuration: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nExiting...")


if __name__ == "__main__":
    main()
