"""Inbound command listeners.

A listener turns some external input (email reply, chat message, dropped
file) into ``{"sessionId": ..., "command": ...}`` and hands it to the relay.
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Callable, Optional

from .errors import ListenerError

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict], object]


def _is_command(data) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("sessionId"), str) and bool(data["sessionId"])
        and isinstance(data.get("command"), str) and bool(data["command"])
    )


class CommandListener:
    """Interface the relay service expects from an inbound source."""

    def __init__(self):
        self._command_handler: Optional[CommandHandler] = None

    def set_command_handler(self, handler: CommandHandler):
        """Set the callback invoked with each inbound command dict."""
        self._command_handler = handler

    def _dispatch(self, command_data: dict):
        if not self._command_handler:
            logger.warning("Command received but no handler is registered")
            return
        self._command_handler(command_data)

    async def start(self):
        """Connect to the source. Raise ListenerError if that is impossible."""

    async def stop(self):
        """Disconnect from the source."""


class SpoolListener(CommandListener):
    """
    Picks up command files dropped into a spool directory.

    Each ``*.json`` file holds one ``{"sessionId": ..., "command": ...}``
    object. Accepted files move to ``processed/``, unreadable ones to
    ``rejected/``; files are handled in name order.
    """

    def __init__(self, spool_dir: str, poll_interval: float = 2.0):
        super().__init__()
        self.spool_dir = Path(spool_dir).expanduser()
        self.processed_dir = self.spool_dir / "processed"
        self.rejected_dir = self.spool_dir / "rejected"
        self.poll_interval = poll_interval
        self._poll_task: Optional[asyncio.Task] = None

    async def start(self):
        try:
            for directory in (self.spool_dir, self.processed_dir, self.rejected_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ListenerError(f"Cannot use spool directory {self.spool_dir}: {e}") from e

        self._poll_task = asyncio.create_task(self._poll_loop(), name="spool-listener")
        logger.info(f"Spool listener watching {self.spool_dir}")

    async def stop(self):
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        logger.info("Spool listener stopped")

    async def _poll_loop(self):
        while True:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Spool poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    def poll_once(self) -> int:
        """Consume every pending spool file. Returns the number accepted."""
        accepted = 0
        for path in sorted(self.spool_dir.glob("*.json")):
            try:
                with open(path) as f:
                    data = json.load(f)
                if not _is_command(data):
                    raise ValueError("expected an object with string sessionId and command")
            except (OSError, ValueError) as e:
                logger.warning(f"Rejected spool file {path.name}: {e}")
                self._move(path, self.rejected_dir)
                continue

            # Move first so a crash in the handler cannot replay the command
            processed = self._move(path, self.processed_dir)
            try:
                self._dispatch({"sessionId": data["sessionId"], "command": data["command"]})
            except ValueError as e:
                logger.warning(f"Command in {path.name} refused: {e}")
                self._move(processed or path, self.rejected_dir)
                continue
            accepted += 1
        return accepted

    def _move(self, path: Path, directory: Path) -> Optional[Path]:
        destination = directory / path.name
        try:
            shutil.move(str(path), str(destination))
            return destination
        except OSError as e:
            logger.error(f"Failed to move {path.name} to {directory.name}: {e}")
            return None
