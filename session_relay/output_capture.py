"""Capture tmux session output and turn it into conversation content."""

import logging
import re
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .conversation_extractor import (
    clean_execution_trace,
    extract_conversation,
    filter_from_last_user_input,
)
from .models import CapturedConversation
from .tmux_controller import TmuxController
from .trackers import InputTimestampTracker

logger = logging.getLogger(__name__)

# Regex to match ANSI escape codes (comprehensive)
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences (including private modes like ?2026h)
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[PX^_].*?\x1b\\|'      # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>]|'                 # Keypad modes
    r'\x1b[78]|'                 # Save/restore cursor
    r'\x1b[DMEHc]|'              # Various single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from text."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Remove any remaining escape sequences we might have missed
    return re.sub(r'\x1b[^a-zA-Z]*[a-zA-Z]', '', text)


def _tail_lines(path: Path, count: int) -> str:
    with open(path, "r", errors="ignore") as f:
        return "".join(deque(f, maxlen=count))


class SessionOutputCapture:
    """Per-session capture logs written by tmux pipe-pane."""

    def __init__(
        self,
        tmux: TmuxController,
        capture_dir: str = "~/.local/share/session-relay/tmux-captures",
        input_tracker: Optional[InputTimestampTracker] = None,
        config: Optional[dict] = None,
    ):
        self.tmux = tmux
        self.capture_dir = Path(capture_dir).expanduser()
        self.capture_dir.mkdir(parents=True, exist_ok=True)
        self.input_tracker = input_tracker

        capture_config = (config or {}).get("capture", {})
        self.line_window = capture_config.get("line_window", 200)
        self.trace_lines = capture_config.get("trace_lines", 1000)
        self.days_to_keep = capture_config.get("days_to_keep", 7)

        self._capturing: set[str] = set()

    def capture_file(self, session_name: str) -> Path:
        safe_name = session_name.replace("/", "_").replace(":", "_")
        return self.capture_dir / f"{safe_name}.log"

    def is_capturing(self, session_name: str) -> bool:
        return session_name in self._capturing

    def start_capture(self, session_name: str) -> Optional[Path]:
        """Begin appending the session's pane output to its capture log."""
        capture_file = self.capture_file(session_name)
        if session_name in self._capturing:
            logger.debug(f"Already capturing {session_name}")
            return capture_file

        if not self.tmux.pipe_pane(session_name, capture_file):
            return None
        self._capturing.add(session_name)
        logger.info(f"Started capture for {session_name} -> {capture_file}")
        return capture_file

    def stop_capture(self, session_name: str) -> bool:
        stopped = self.tmux.stop_pipe_pane(session_name)
        self._capturing.discard(session_name)
        return stopped

    def _read_recent(self, session_name: str, lines: int) -> Optional[str]:
        capture_file = self.capture_file(session_name)
        if capture_file.exists():
            return _tail_lines(capture_file, lines)
        return self.tmux.capture_pane(session_name, lines)

    def get_recent_conversation(self, session_name: str, line_window: Optional[int] = None) -> CapturedConversation:
        """
        Latest turn for a session, from the capture log or a pane snapshot.

        Never raises; returns the extractor's sentinel result on failure.
        """
        line_window = line_window or self.line_window
        try:
            text = self._read_recent(session_name, line_window)
        except OSError as e:
            logger.error(f"Failed to read capture for {session_name}: {e}")
            return CapturedConversation()

        if text is None:
            logger.warning(f"No output available for {session_name}")
            return CapturedConversation()

        on_user_input = None
        if self.input_tracker:
            tracker = self.input_tracker
            on_user_input = lambda: tracker.record_user_input(session_name)  # noqa: E731

        return extract_conversation(strip_ansi(text), on_user_input=on_user_input)

    def get_full_execution_trace(self, session_name: str, lines: Optional[int] = None) -> str:
        """Everything the session printed while working on the last input."""
        lines = lines or self.trace_lines
        try:
            capture_file = self.capture_file(session_name)
            if capture_file.exists():
                content = capture_file.read_text(errors="ignore")
            else:
                content = self.tmux.capture_pane(session_name, lines) or ""
        except OSError as e:
            logger.error(f"Failed to get trace for {session_name}: {e}")
            return ""
        return clean_execution_trace(filter_from_last_user_input(strip_ansi(content)))

    def cleanup_old_captures(self, days_to_keep: Optional[int] = None) -> int:
        """Delete capture files not modified within the window."""
        days_to_keep = days_to_keep if days_to_keep is not None else self.days_to_keep
        cutoff = datetime.now() - timedelta(days=days_to_keep)
        removed = 0
        try:
            for path in self.capture_dir.iterdir():
                if not path.is_file():
                    continue
                if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
                    path.unlink()
                    removed += 1
                    logger.info(f"Cleaned up old capture file: {path.name}")
        except OSError as e:
            logger.error(f"Failed to cleanup captures: {e}")
        return removed
