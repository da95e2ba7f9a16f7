"""Tests for platform automation backends (external tools are mocked)."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from session_relay.automation import (
    LinuxAutomation,
    MacOSAutomation,
    UnsupportedAutomation,
    default_target_apps,
    select_backend,
)
from session_relay.errors import AutomationDenied, AutomationFailure


def test_select_backend_by_platform():
    assert isinstance(select_backend({}, platform="darwin"), MacOSAutomation)
    assert isinstance(select_backend({}, platform="linux"), LinuxAutomation)
    assert isinstance(select_backend({}, platform="win32"), UnsupportedAutomation)


def test_default_target_apps():
    assert "Terminal" in default_target_apps(MacOSAutomation())
    assert "gnome-terminal" in default_target_apps(LinuxAutomation())
    assert default_target_apps(UnsupportedAutomation()) == []


@pytest.mark.asyncio
async def test_unsupported_backend_raises():
    backend = UnsupportedAutomation()
    assert not backend.is_supported()
    with pytest.raises(AutomationFailure):
        await backend.copy_to_clipboard("x")
    with pytest.raises(AutomationFailure):
        await backend.notify("t", "m")


class TestMacOSAutomation:
    @pytest.mark.asyncio
    async def test_clipboard_uses_stdin(self):
        backend = MacOSAutomation()
        with patch.object(backend, "_run", new=AsyncMock(return_value=(0, "", ""))) as run:
            await backend.copy_to_clipboard("echo 'hi'")
        run.assert_awaited_once_with("pbcopy", stdin_text="echo 'hi'")

    @pytest.mark.asyncio
    async def test_focus_keeps_allowed_frontmost_app(self):
        backend = MacOSAutomation()
        with patch.object(backend, "_run", new=AsyncMock(return_value=(0, "iTerm2", ""))) as run:
            assert await backend.focus_application(["Terminal", "iTerm2"]) == "iTerm2"
        assert run.await_count == 1

    @pytest.mark.asyncio
    async def test_focus_passes_candidates_as_arguments(self):
        backend = MacOSAutomation()
        run = AsyncMock(side_effect=[(0, "Safari", ""), (0, "Terminal", "")])
        with patch.object(backend, "_run", new=run):
            assert await backend.focus_application(["Terminal", "iTerm2"]) == "Terminal"
        args = run.call_args_list[1].args
        assert args[0] == "osascript"
        assert args[-2:] == ("Terminal", "iTerm2")

    @pytest.mark.asyncio
    async def test_no_target_running(self):
        backend = MacOSAutomation()
        run = AsyncMock(side_effect=[(0, "Safari", ""), (0, "no_target", "")])
        with patch.object(backend, "_run", new=run):
            with pytest.raises(AutomationFailure):
                await backend.focus_application(["Terminal"])

    @pytest.mark.asyncio
    async def test_permission_denied_is_classified(self):
        backend = MacOSAutomation()
        stderr = "execution error: osascript is not allowed assistive access. (-1719)"
        with patch.object(backend, "_run", new=AsyncMock(return_value=(1, "", stderr))):
            with pytest.raises(AutomationDenied):
                await backend.paste_and_submit()

    @pytest.mark.asyncio
    async def test_notify_sends_values_as_argv(self):
        backend = MacOSAutomation()
        with patch.object(backend, "_run", new=AsyncMock(return_value=(0, "", ""))) as run:
            await backend.notify('Title "quoted"', "Body", subtitle="sub", sound="Ping")
        assert run.call_args.args[-4:] == ("Body", 'Title "quoted"', "sub", "Ping")


class TestLinuxAutomation:
    @pytest.mark.asyncio
    async def test_clipboard_falls_back_to_xsel(self):
        backend = LinuxAutomation()
        run = AsyncMock(side_effect=[AutomationFailure("xclip not found"), (0, "", "")])
        with patch.object(backend, "_run", new=run):
            await backend.copy_to_clipboard("ls")
        assert run.call_args_list[1].args[0] == "xsel"

    @pytest.mark.asyncio
    async def test_clipboard_all_tools_fail(self):
        backend = LinuxAutomation()
        run = AsyncMock(side_effect=[AutomationFailure("xclip not found"), (1, "", "no display")])
        with patch.object(backend, "_run", new=run):
            with pytest.raises(AutomationFailure):
                await backend.copy_to_clipboard("ls")

    @pytest.mark.asyncio
    async def test_focus_activates_first_matching_window(self):
        backend = LinuxAutomation()
        run = AsyncMock(side_effect=[
            (0, "firefox", ""),        # getactivewindow
            (1, "", ""),               # search kitty
            (0, "4194307\n", ""),      # search xterm
            (0, "", ""),               # windowactivate
        ])
        with patch.object(backend, "_run", new=run):
            assert await backend.focus_application(["kitty", "xterm"]) == "xterm"
        assert run.call_args_list[3].args == ("xdotool", "windowactivate", "--sync", "4194307")

    @pytest.mark.asyncio
    async def test_paste_uses_terminal_shortcut(self):
        backend = LinuxAutomation({"timeouts": {"automation": {"keystroke_settle_seconds": 0}}})
        run = AsyncMock(return_value=(0, "kitty", ""))
        with patch.object(backend, "_run", new=run):
            assert await backend.paste_and_submit() == "kitty"
        keys = [c.args[-1] for c in run.call_args_list[1:]]
        assert keys == ["ctrl+shift+v", "Return"]

    @pytest.mark.asyncio
    async def test_missing_tool_is_failure(self):
        backend = LinuxAutomation()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(AutomationFailure):
                await backend.notify("t", "m")

    @pytest.mark.asyncio
    async def test_run_passes_stdin(self):
        backend = LinuxAutomation()
        proc = MagicMock()
        proc.returncode = 0
        proc.communicate = AsyncMock(return_value=(b"out\n", b""))
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)):
            assert await backend._run("xclip", stdin_text="hello") == (0, "out", "")
        proc.communicate.assert_awaited_once_with(b"hello")
