"""Platform desktop automation: clipboard, window focus, keystrokes, notifications."""

import asyncio
import logging
import shutil
import sys
from typing import Optional, Sequence

from .errors import AutomationDenied, AutomationFailure

logger = logging.getLogger(__name__)

# Ordered: the first running match is focused
DEFAULT_MACOS_TARGET_APPS = [
    "Claude Code",
    "Claude",
    "Terminal",
    "iTerm2",
    "iTerm",
    "Visual Studio Code",
    "Code",
    "Cursor",
]

DEFAULT_LINUX_TARGET_APPS = [
    "gnome-terminal",
    "konsole",
    "kitty",
    "alacritty",
    "xterm",
    "code",
]

# osascript error fragments that mean accessibility/automation was refused
_DENIED_MARKERS = (
    "(-1743)",
    "(-25211)",
    "(1002)",
    "not allowed assistive access",
    "not allowed to send keystrokes",
    "not authorized to send apple events",
)


class AutomationBackend:
    """Interface implemented once per platform."""

    name = "base"

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        timeouts = self.config.get("timeouts", {}).get("automation", {})
        self.command_timeout_seconds = timeouts.get("command_timeout_seconds", 10)
        self.keystroke_settle_seconds = timeouts.get("keystroke_settle_seconds", 0.3)

    async def _run(self, *args: str, stdin_text: Optional[str] = None) -> tuple[int, str, str]:
        """Run an external tool, returning (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise AutomationFailure(f"{args[0]} not found")
        except OSError as e:
            raise AutomationFailure(f"Failed to run {args[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin_text.encode() if stdin_text is not None else None),
                timeout=self.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            proc.kill()
            raise AutomationFailure(f"{args[0]} timed out after {self.command_timeout_seconds}s")

        return proc.returncode, stdout.decode(errors="ignore").strip(), stderr.decode(errors="ignore").strip()

    def is_supported(self) -> bool:
        return False

    async def copy_to_clipboard(self, text: str) -> None:
        raise AutomationFailure(f"Clipboard not supported on {sys.platform}")

    async def frontmost_application(self) -> Optional[str]:
        return None

    async def focus_application(self, candidates: Sequence[str]) -> str:
        """Bring the first running candidate to the front and return its name."""
        raise AutomationFailure(f"Window focus not supported on {sys.platform}")

    async def paste_and_submit(self) -> Optional[str]:
        """Paste clipboard into the focused window and press Enter.

        Returns the name of the window/app that received the paste, if known.
        """
        raise AutomationFailure(f"Keystroke automation not supported on {sys.platform}")

    async def notify(self, title: str, message: str, subtitle: str = "", sound: Optional[str] = None) -> None:
        raise AutomationFailure(f"Desktop notifications not supported on {sys.platform}")


class MacOSAutomation(AutomationBackend):
    """pbcopy + osascript (System Events)."""

    name = "macos"

    def is_supported(self) -> bool:
        return shutil.which("osascript") is not None

    async def _osascript(self, script: str, *argv: str) -> str:
        # Values go through argv, never interpolated into the script source
        returncode, stdout, stderr = await self._run("osascript", "-e", script, *argv)
        if returncode != 0:
            lowered = stderr.lower()
            if any(marker in lowered for marker in _DENIED_MARKERS):
                raise AutomationDenied(stderr)
            raise AutomationFailure(stderr or f"osascript exited {returncode}")
        return stdout

    async def copy_to_clipboard(self, text: str) -> None:
        returncode, _, stderr = await self._run("pbcopy", stdin_text=text)
        if returncode != 0:
            raise AutomationFailure(f"pbcopy failed: {stderr}")
        logger.debug("Text copied to clipboard")

    async def frontmost_application(self) -> Optional[str]:
        script = (
            'tell application "System Events" to '
            'return name of first application process whose frontmost is true'
        )
        return await self._osascript(script) or None

    async def focus_application(self, candidates: Sequence[str]) -> str:
        frontmost = await self.frontmost_application()
        if frontmost and frontmost in candidates:
            return frontmost

        script = """
on run argv
    tell application "System Events"
        repeat with appName in argv
            try
                if application process appName exists then
                    set frontmost of application process appName to true
                    return appName as text
                end if
            end try
        end repeat
    end tell
    return "no_target"
end run
"""
        result = await self._osascript(script, *candidates)
        if result == "no_target" or not result:
            raise AutomationFailure("No known target application is running")
        return result

    async def paste_and_submit(self) -> Optional[str]:
        script = f"""
tell application "System Events"
    set activeApp to name of first application process whose frontmost is true
    keystroke "v" using command down
    delay {self.keystroke_settle_seconds}
    keystroke return
    return activeApp
end tell
"""
        return await self._osascript(script) or None

    async def notify(self, title: str, message: str, subtitle: str = "", sound: Optional[str] = None) -> None:
        script = """
on run argv
    set theMessage to item 1 of argv
    set theTitle to item 2 of argv
    set theSubtitle to item 3 of argv
    set theSound to item 4 of argv
    if theSound is "" then
        display notification theMessage with title theTitle subtitle theSubtitle
    else
        display notification theMessage with title theTitle subtitle theSubtitle sound name theSound
    end if
end run
"""
        await self._osascript(script, message, title, subtitle, sound or "")


class LinuxAutomation(AutomationBackend):
    """xclip/xsel + xdotool + notify-send (X11)."""

    name = "linux"

    def is_supported(self) -> bool:
        return shutil.which("xdotool") is not None

    async def copy_to_clipboard(self, text: str) -> None:
        attempts = [
            ("xclip", "-selection", "clipboard"),
            ("xsel", "--clipboard", "--input"),
        ]
        errors = []
        for cmd in attempts:
            try:
                returncode, _, stderr = await self._run(*cmd, stdin_text=text)
            except AutomationFailure as e:
                errors.append(str(e))
                continue
            if returncode == 0:
                logger.debug(f"Text copied to clipboard via {cmd[0]}")
                return
            errors.append(f"{cmd[0]}: {stderr}")
        raise AutomationFailure(f"Failed to copy to clipboard ({'; '.join(errors)})")

    async def _xdotool(self, *args: str) -> str:
        returncode, stdout, stderr = await self._run("xdotool", *args)
        if returncode != 0:
            if "cannot open display" in stderr.lower():
                raise AutomationDenied(stderr)
            raise AutomationFailure(stderr or f"xdotool exited {returncode}")
        return stdout

    async def frontmost_application(self) -> Optional[str]:
        return await self._xdotool("getactivewindow", "getwindowclassname") or None

    async def focus_application(self, candidates: Sequence[str]) -> str:
        frontmost = await self.frontmost_application()
        if frontmost and frontmost.lower() in (c.lower() for c in candidates):
            return frontmost

        for app in candidates:
            returncode, stdout, _ = await self._run("xdotool", "search", "--onlyvisible", "--class", app)
            window_ids = stdout.split()
            if returncode == 0 and window_ids:
                await self._xdotool("windowactivate", "--sync", window_ids[0])
                return app
        raise AutomationFailure("No known target application is running")

    async def paste_and_submit(self) -> Optional[str]:
        active = await self.frontmost_application()
        # Terminals paste with ctrl+shift+v; ctrl+v would send a literal ^V
        await self._xdotool("key", "--clearmodifiers", "ctrl+shift+v")
        await asyncio.sleep(self.keystroke_settle_seconds)
        await self._xdotool("key", "--clearmodifiers", "Return")
        return active

    async def notify(self, title: str, message: str, subtitle: str = "", sound: Optional[str] = None) -> None:
        body = f"{subtitle}\n{message}" if subtitle else message
        returncode, _, stderr = await self._run("notify-send", "--urgency=critical", title, body)
        if returncode != 0:
            raise AutomationFailure(f"notify-send failed: {stderr}")


class UnsupportedAutomation(AutomationBackend):
    """Every operation raises AutomationFailure."""

    name = "unsupported"


def default_target_apps(backend: AutomationBackend) -> list[str]:
    if isinstance(backend, MacOSAutomation):
        return list(DEFAULT_MACOS_TARGET_APPS)
    if isinstance(backend, LinuxAutomation):
        return list(DEFAULT_LINUX_TARGET_APPS)
    return []


def select_backend(config: Optional[dict] = None, platform: Optional[str] = None) -> AutomationBackend:
    """Pick the automation backend for this platform (once, at startup)."""
    platform = platform or sys.platform
    if platform == "darwin":
        backend: AutomationBackend = MacOSAutomation(config)
    elif platform.startswith("linux"):
        backend = LinuxAutomation(config)
    else:
        backend = UnsupportedAutomation(config)
    logger.info(f"Using {backend.name} automation backend")
    return backend
