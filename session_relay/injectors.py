"""Ordered delivery strategies for pushing a command into a live session."""

import asyncio
import logging
import os
import shlex
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from .automation import AutomationBackend, default_target_apps
from .errors import AutomationDenied, RelayError, SessionNotFound
from .models import SessionRef, TransportKind
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY_ORDER = ["multiplexer", "pty", "clipboard", "active_window", "notification"]


class InjectionStrategy:
    """
    One way of delivering text into a session.

    Subclasses implement _inject() and may raise any RelayError (or OSError);
    attempt() turns every failure into False.
    """

    name = "base"

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        raise NotImplementedError

    async def attempt(self, command: str, session: Optional[SessionRef]) -> bool:
        try:
            return bool(await self._inject(command, session))
        except SessionNotFound as e:
            logger.info(f"{self.name}: session not found ({e})")
        except AutomationDenied as e:
            logger.warning(f"{self.name}: automation permission denied ({e})")
        except (RelayError, OSError) as e:
            logger.warning(f"{self.name}: {e}")
        except Exception as e:
            logger.error(f"{self.name}: unexpected error: {e}", exc_info=True)
        return False


class SessionMultiplexerInjector(InjectionStrategy):
    """tmux send-keys: text first, Enter as a separate keystroke."""

    name = "multiplexer"

    def __init__(self, tmux: TmuxController):
        self.tmux = tmux

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        if not session or session.transport_kind != TransportKind.MULTIPLEXER:
            return False
        target = session.address or session.name
        if not self.tmux.session_exists(target):
            raise SessionNotFound(f"tmux session '{target}' not found")
        return await self.tmux.send_input_async(target, command)


class PtyFileInjector(InjectionStrategy):
    """Write the command straight into the registered pseudo-terminal."""

    name = "pty"

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        if not session or session.transport_kind != TransportKind.PTY:
            return False
        if not session.address:
            raise SessionNotFound(f"PTY session '{session.name}' has no address")
        pty_path = Path(session.address)
        if not pty_path.exists():
            raise SessionNotFound(f"PTY {pty_path} for '{session.name}' not found")

        with open(pty_path, "w") as f:
            f.write(command + "\n")
        logger.info(f"Command injected to PTY session '{session.name}'")
        return True


class ClipboardKeystrokeInjector(InjectionStrategy):
    """Clipboard + focus a known terminal/editor app + paste + Enter."""

    name = "clipboard"

    def __init__(
        self,
        backend: AutomationBackend,
        target_apps: Optional[Sequence[str]] = None,
        focus_settle_seconds: float = 0.5,
    ):
        self.backend = backend
        self.target_apps = list(target_apps) if target_apps else default_target_apps(backend)
        self.focus_settle_seconds = focus_settle_seconds

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        if not self.backend.is_supported() or not self.target_apps:
            return False
        await self.backend.copy_to_clipboard(command)
        app = await self.backend.focus_application(self.target_apps)
        await asyncio.sleep(self.focus_settle_seconds)
        await self.backend.paste_and_submit()
        logger.info(f"Command pasted into {app}")
        return True


class ActiveWindowInjector(InjectionStrategy):
    """Paste into whatever window has focus. Cannot verify the target."""

    name = "active_window"

    def __init__(self, backend: AutomationBackend):
        self.backend = backend

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        if not self.backend.is_supported():
            return False
        await self.backend.copy_to_clipboard(command)
        receiver = await self.backend.paste_and_submit()
        logger.info(f"Command pasted into active window ({receiver or 'unknown'})")
        return True


class NotificationFallbackInjector(InjectionStrategy):
    """
    Last resort: put the command on the clipboard and nag the user.

    Success means the user was made aware, not that the command ran. The
    first reminder is sent before returning; later ones are scheduled and
    can be cancelled with cancel_pending().
    """

    name = "notification"

    def __init__(
        self,
        backend: AutomationBackend,
        reminder_delays_seconds: Optional[Sequence[float]] = None,
        artifact_dir: Optional[str] = None,
        title: str = "Session Relay",
    ):
        self.backend = backend
        self.reminder_delays_seconds = list(reminder_delays_seconds) if reminder_delays_seconds else [0, 3, 8]
        self.artifact_dir = Path(artifact_dir).expanduser() if artifact_dir else None
        self.title = title
        self._pending: set[asyncio.Task] = set()

    def _reminder_text(self, index: int, artifact: Optional[Path]) -> tuple[str, Optional[str]]:
        if index == 0:
            message = "Command copied to clipboard. Paste it into your session now."
            if artifact:
                message += f" Run {artifact.name} to copy it again."
            return message, "Basso"
        if index == len(self.reminder_delays_seconds) - 1:
            return "Last reminder: paste the relayed command into your session.", "Purr"
        return "Reminder: the relayed command is still on your clipboard.", "Ping"

    def write_recopy_artifact(self, command: str) -> Optional[Path]:
        """Drop a small executable that puts the command back on the clipboard."""
        if not self.artifact_dir:
            return None
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        path = self.artifact_dir / f"relay-command-{stamp}.command"
        copy_tool = "pbcopy" if self.backend.name == "macos" else "xclip -selection clipboard"
        path.write_text(
            "#!/bin/sh\n"
            f"printf '%s' {shlex.quote(command)} | {copy_tool}\n"
            "echo 'Command copied to clipboard again.'\n"
        )
        os.chmod(path, 0o755)
        logger.info(f"Wrote re-copy artifact {path}")
        return path

    async def _send_reminder(self, index: int, delay: float, subtitle: str, artifact: Optional[Path]):
        if delay > 0:
            await asyncio.sleep(delay)
        message, sound = self._reminder_text(index, artifact)
        total = len(self.reminder_delays_seconds)
        try:
            await self.backend.notify(
                f"{self.title} ({index + 1}/{total})",
                message,
                subtitle=subtitle,
                sound=sound,
            )
        except RelayError as e:
            logger.warning(f"Reminder {index + 1}/{total} not shown: {e}")

    async def _inject(self, command: str, session: Optional[SessionRef]) -> bool:
        await self.backend.copy_to_clipboard(command)

        artifact = None
        try:
            artifact = self.write_recopy_artifact(command)
        except OSError as e:
            logger.warning(f"Could not write re-copy artifact: {e}")

        subtitle = command if len(command) <= 30 else command[:30] + "..."
        for index, delay in enumerate(self.reminder_delays_seconds):
            if index == 0 and delay <= 0:
                await self._send_reminder(index, 0, subtitle, artifact)
                continue
            task = asyncio.create_task(
                self._send_reminder(index, delay, subtitle, artifact),
                name=f"relay-reminder-{index + 1}",
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.info(f"Notification sequence dispatched ({len(self.reminder_delays_seconds)} reminders)")
        return True

    async def cancel_pending(self):
        for task in list(self._pending):
            task.cancel()
        for task in list(self._pending):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pending.clear()


class InjectionChain:
    """Try each strategy in order until one reports success."""

    def __init__(self, strategies: Sequence[InjectionStrategy]):
        self.strategies = list(strategies)
        self.last_strategy: Optional[str] = None

    async def attempt(self, command: str, session: Optional[SessionRef]) -> bool:
        self.last_strategy = None
        target = session.name if session else "unknown session"
        for index, strategy in enumerate(self.strategies, start=1):
            logger.info(f"Attempting delivery to {target} via {strategy.name} ({index}/{len(self.strategies)})")
            if await strategy.attempt(command, session):
                self.last_strategy = strategy.name
                logger.info(f"Delivered to {target} via {strategy.name}")
                return True
        logger.error(f"All {len(self.strategies)} delivery strategies failed for {target}")
        return False

    async def close(self):
        for strategy in self.strategies:
            if isinstance(strategy, NotificationFallbackInjector):
                await strategy.cancel_pending()


def build_injection_chain(
    tmux: TmuxController,
    backend: AutomationBackend,
    config: Optional[dict] = None,
) -> InjectionChain:
    """Build the chain from the ``injection`` config section."""
    config = config or {}
    injection_config = config.get("injection", {})
    order = injection_config.get("strategies", DEFAULT_STRATEGY_ORDER)

    factories = {
        "multiplexer": lambda: SessionMultiplexerInjector(tmux),
        "pty": lambda: PtyFileInjector(),
        "clipboard": lambda: ClipboardKeystrokeInjector(
            backend,
            target_apps=injection_config.get("target_apps"),
            focus_settle_seconds=injection_config.get("focus_settle_seconds", 0.5),
        ),
        "active_window": lambda: ActiveWindowInjector(backend),
        "notification": lambda: NotificationFallbackInjector(
            backend,
            reminder_delays_seconds=injection_config.get("reminder_delays_seconds"),
            artifact_dir=injection_config.get("recopy_artifact_dir"),
        ),
    }

    strategies = []
    for name in order:
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"Unknown injection strategy '{name}' in config, skipping")
            continue
        strategies.append(factory())
    logger.info(f"Injection chain: {' -> '.join(s.name for s in strategies)}")
    return InjectionChain(strategies)
