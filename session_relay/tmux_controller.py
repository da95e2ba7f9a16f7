"""tmux operations for injecting into and capturing from live sessions."""

import asyncio
import shlex
import subprocess
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TmuxController:
    """Sends keystrokes to and reads output from tmux panes."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_timeout_seconds = tmux_timeouts.get("send_keys_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.3)

    def _run_tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.command_timeout_seconds,
        )

    def session_exists(self, target: str) -> bool:
        """Check if a tmux session/pane target exists."""
        try:
            result = self._run_tmux("has-session", "-t", target, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"tmux unavailable while checking {target}: {e}")
            return False
        return result.returncode == 0

    async def _send_keys(self, target: str, *keys: str) -> bool:
        proc = await asyncio.create_subprocess_exec(
            'tmux', 'send-keys', '-t', target, *keys,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.send_keys_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            raise
        if proc.returncode != 0:
            logger.error(f"tmux send-keys to {target} failed: {stderr.decode().strip()}")
            return False
        return True

    async def send_input_async(self, target: str, text: str) -> bool:
        """
        Type text into a pane, then press Enter as a separate keystroke.

        Args:
            target: tmux session or pane target
            text: Literal text to type (Enter is added)

        Returns:
            True if both send-keys calls succeeded
        """
        if not self.session_exists(target):
            logger.error(f"Session {target} does not exist")
            return False

        try:
            # "--" stops tmux from parsing text that begins with "-" as flags
            if not await self._send_keys(target, '--', text):
                return False

            # A burst of characters followed immediately by \r is treated as a
            # paste by the TUI, and the \r becomes a literal newline. Let paste
            # mode end before Enter arrives as its own event.
            await asyncio.sleep(self.send_keys_settle_seconds)

            if not await self._send_keys(target, 'Enter'):
                return False

            logger.info(f"Sent input to {target}: {text[:50]}...")
            return True

        except asyncio.TimeoutError:
            logger.error(f"Timeout sending input to {target}")
            return False
        except OSError as e:
            logger.error(f"Failed to send input to {target}: {e}")
            return False

    def capture_pane(self, target: str, lines: int = 200) -> Optional[str]:
        """
        Snapshot recent scrollback from a pane.

        Args:
            target: Session to capture from
            lines: Number of scrollback lines to include

        Returns:
            Captured text or None on error
        """
        if not self.session_exists(target):
            return None

        try:
            result = self._run_tmux(
                "capture-pane",
                "-t", target,
                "-p",  # Print to stdout
                "-S", f"-{lines}",  # Start from N lines back
            )
            return result.stdout

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to capture pane: {e.stderr}")
            return None
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout capturing pane {target}")
            return None

    def pipe_pane(self, target: str, log_file: Path) -> bool:
        """
        Start appending a pane's output to a file.

        Uses -o so an already-piped pane is left alone.
        """
        try:
            self._run_tmux(
                "pipe-pane",
                "-o",
                "-t", target,
                f"cat >> {shlex.quote(str(log_file))}",
            )
            logger.info(f"Piping {target} output to {log_file}")
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to pipe pane {target}: {e.stderr}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to pipe pane {target}: {e}")
            return False

    def stop_pipe_pane(self, target: str) -> bool:
        """Stop piping a pane's output (pipe-pane with no command closes it)."""
        try:
            self._run_tmux("pipe-pane", "-t", target)
            logger.info(f"Stopped piping {target}")
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to stop pipe for {target}: {e.stderr}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to stop pipe for {target}: {e}")
            return False
