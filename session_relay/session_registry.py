"""Read-only view of the session map written by the session launcher."""

import json
import logging
from pathlib import Path
from typing import Optional

from .models import SessionRef

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps a logical session name to its transport.

    The file is owned by whatever launches sessions; it is re-read on every
    lookup so sessions registered after startup are seen without a restart.

    File format::

        {"my-session": {"transportKind": "multiplexer", "address": "claude-code"},
         "other":      {"transportKind": "pty", "address": "/dev/ttys004"}}
    """

    def __init__(self, session_map_path: str):
        self.session_map_path = Path(session_map_path).expanduser()

    def _load(self) -> dict:
        if not self.session_map_path.exists():
            return {}
        try:
            with open(self.session_map_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read session map {self.session_map_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Session map {self.session_map_path} is not a JSON object")
            return {}
        return data

    def get(self, name: str) -> Optional[SessionRef]:
        """Look up a session by name. Returns None if unknown or malformed."""
        entry = self._load().get(name)
        if not isinstance(entry, dict):
            return None
        try:
            return SessionRef.from_dict(name, entry)
        except ValueError as e:
            logger.warning(f"Invalid session map entry for {name}: {e}")
            return None

    def list_names(self) -> list[str]:
        return list(self._load().keys())
