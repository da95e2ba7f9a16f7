"""Tests for the injection strategies and the strategy chain."""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_relay.errors import AutomationDenied, AutomationFailure
from session_relay.injectors import (
    ActiveWindowInjector,
    ClipboardKeystrokeInjector,
    InjectionChain,
    InjectionStrategy,
    NotificationFallbackInjector,
    PtyFileInjector,
    SessionMultiplexerInjector,
    build_injection_chain,
)
from session_relay.models import SessionRef, TransportKind


class StubStrategy(InjectionStrategy):
    def __init__(self, name, result=False, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    async def _inject(self, command, session):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class TestInjectionChain:
    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, tmux_session):
        first = StubStrategy("first", result=False)
        second = StubStrategy("second", result=True)
        third = StubStrategy("third", result=True)
        chain = InjectionChain([first, second, third])

        assert await chain.attempt("ls", tmux_session) is True
        assert (first.calls, second.calls, third.calls) == (1, 1, 0)
        assert chain.last_strategy == "second"

    @pytest.mark.asyncio
    async def test_all_fail(self, tmux_session):
        strategies = [StubStrategy("a"), StubStrategy("b")]
        chain = InjectionChain(strategies)

        assert await chain.attempt("ls", tmux_session) is False
        assert [s.calls for s in strategies] == [1, 1]
        assert chain.last_strategy is None

    @pytest.mark.asyncio
    async def test_exceptions_become_failures(self, tmux_session):
        chain = InjectionChain([
            StubStrategy("denied", error=AutomationDenied("not allowed assistive access")),
            StubStrategy("broken", error=RuntimeError("bug")),
            StubStrategy("io", error=OSError("EIO")),
            StubStrategy("works", result=True),
        ])
        assert await chain.attempt("ls", tmux_session) is True
        assert chain.last_strategy == "works"

    @pytest.mark.asyncio
    async def test_close_cancels_pending_reminders(self, mock_backend):
        notification = NotificationFallbackInjector(mock_backend, reminder_delays_seconds=[0, 60])
        chain = InjectionChain([notification])
        await chain.attempt("ls", None)
        assert len(notification._pending) == 1

        await chain.close()

        assert notification._pending == set()
        assert mock_backend.notify.await_count == 1


class TestSessionMultiplexerInjector:
    @pytest.mark.asyncio
    async def test_sends_to_address(self, mock_tmux, tmux_session):
        injector = SessionMultiplexerInjector(mock_tmux)
        assert await injector.attempt("run tests", tmux_session) is True
        mock_tmux.send_input_async.assert_awaited_once_with("claude-code", "run tests")

    @pytest.mark.asyncio
    async def test_missing_session_fails(self, mock_tmux, tmux_session):
        mock_tmux.session_exists.return_value = False
        injector = SessionMultiplexerInjector(mock_tmux)
        assert await injector.attempt("run tests", tmux_session) is False
        mock_tmux.send_input_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_applicable_to_other_transports(self, mock_tmux):
        injector = SessionMultiplexerInjector(mock_tmux)
        pty = SessionRef(name="p", transport_kind=TransportKind.PTY, address="/dev/null")
        assert await injector.attempt("ls", pty) is False
        assert await injector.attempt("ls", None) is False
        mock_tmux.session_exists.assert_not_called()


class TestPtyFileInjector:
    @pytest.mark.asyncio
    async def test_writes_command_and_newline(self, tmp_path):
        pty = tmp_path / "ttys004"
        pty.write_text("")
        session = SessionRef(name="p", transport_kind=TransportKind.PTY, address=str(pty))

        assert await PtyFileInjector().attempt("echo hi", session) is True
        assert pty.read_text() == "echo hi\n"

    @pytest.mark.asyncio
    async def test_missing_device_fails(self, tmp_path):
        session = SessionRef(name="p", transport_kind=TransportKind.PTY, address=str(tmp_path / "gone"))
        assert await PtyFileInjector().attempt("echo hi", session) is False

    @pytest.mark.asyncio
    async def test_multiplexer_session_is_skipped(self, tmux_session):
        assert await PtyFileInjector().attempt("echo hi", tmux_session) is False


class TestClipboardKeystrokeInjector:
    @pytest.mark.asyncio
    async def test_copies_focuses_and_pastes(self, mock_backend):
        injector = ClipboardKeystrokeInjector(mock_backend, target_apps=["Terminal"], focus_settle_seconds=0)

        assert await injector.attempt("ls", None) is True
        mock_backend.copy_to_clipboard.assert_awaited_once_with("ls")
        mock_backend.focus_application.assert_awaited_once_with(["Terminal"])
        mock_backend.paste_and_submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_target_app_fails_before_paste(self, mock_backend):
        mock_backend.focus_application.side_effect = AutomationFailure("No known target application is running")
        injector = ClipboardKeystrokeInjector(mock_backend, target_apps=["Terminal"], focus_settle_seconds=0)

        assert await injector.attempt("ls", None) is False
        mock_backend.paste_and_submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_backend(self, mock_backend):
        mock_backend.is_supported.return_value = False
        injector = ClipboardKeystrokeInjector(mock_backend, target_apps=["Terminal"])
        assert await injector.attempt("ls", None) is False
        mock_backend.copy_to_clipboard.assert_not_awaited()


class TestActiveWindowInjector:
    @pytest.mark.asyncio
    async def test_pastes_into_focused_window(self, mock_backend):
        assert await ActiveWindowInjector(mock_backend).attempt("ls", None) is True
        mock_backend.copy_to_clipboard.assert_awaited_once_with("ls")
        mock_backend.paste_and_submit.assert_awaited_once()
        mock_backend.focus_application.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_denied(self, mock_backend):
        mock_backend.paste_and_submit.side_effect = AutomationDenied("(-1743)")
        assert await ActiveWindowInjector(mock_backend).attempt("ls", None) is False


class TestNotificationFallbackInjector:
    @pytest.mark.asyncio
    async def test_first_reminder_is_sent_before_returning(self, mock_backend):
        injector = NotificationFallbackInjector(mock_backend, reminder_delays_seconds=[0, 60, 120])

        assert await injector.attempt("deploy now", None) is True

        mock_backend.copy_to_clipboard.assert_awaited_once_with("deploy now")
        assert mock_backend.notify.await_count == 1
        title = mock_backend.notify.call_args.args[0]
        assert "(1/3)" in title
        assert mock_backend.notify.call_args.kwargs["subtitle"] == "deploy now"
        assert len(injector._pending) == 2
        await injector.cancel_pending()

    @pytest.mark.asyncio
    async def test_later_reminders_fire(self, mock_backend):
        injector = NotificationFallbackInjector(mock_backend, reminder_delays_seconds=[0, 0.01, 0.02])
        await injector.attempt("ls", None)
        await asyncio.sleep(0.1)
        assert mock_backend.notify.await_count == 3
        assert injector._pending == set()

    @pytest.mark.asyncio
    async def test_notification_error_does_not_fail_delivery(self, mock_backend):
        mock_backend.notify.side_effect = AutomationFailure("notify-send missing")
        injector = NotificationFallbackInjector(mock_backend, reminder_delays_seconds=[0])
        assert await injector.attempt("ls", None) is True

    @pytest.mark.asyncio
    async def test_clipboard_failure_fails_strategy(self, mock_backend):
        mock_backend.copy_to_clipboard.side_effect = AutomationFailure("pbcopy failed")
        injector = NotificationFallbackInjector(mock_backend, reminder_delays_seconds=[0])
        assert await injector.attempt("ls", None) is False
        mock_backend.notify.assert_not_awaited()

    def test_recopy_artifact_is_executable(self, mock_backend, tmp_path):
        injector = NotificationFallbackInjector(mock_backend, artifact_dir=str(tmp_path))
        path = injector.write_recopy_artifact("echo 'quoted'")

        assert path.parent == tmp_path
        assert path.suffix == ".command"
        assert os.access(path, os.X_OK)
        content = path.read_text()
        assert "pbcopy" in content
        assert "echo" in content


class TestBuildInjectionChain:
    def test_default_order(self, mock_tmux, mock_backend):
        chain = build_injection_chain(mock_tmux, mock_backend, {})
        assert [s.name for s in chain.strategies] == [
            "multiplexer", "pty", "clipboard", "active_window", "notification",
        ]

    def test_configured_order_skips_unknown(self, mock_tmux, mock_backend):
        config = {"injection": {"strategies": ["pty", "bogus", "notification"], "reminder_delays_seconds": [0, 5]}}
        chain = build_injection_chain(mock_tmux, mock_backend, config)
        assert [s.name for s in chain.strategies] == ["pty", "notification"]
        assert chain.strategies[1].reminder_delays_seconds == [0, 5]

    def test_clipboard_uses_configured_apps(self, mock_tmux, mock_backend):
        config = {"injection": {"strategies": ["clipboard"], "target_apps": ["iTerm2"]}}
        chain = build_injection_chain(mock_tmux, mock_backend, config)
        assert chain.strategies[0].target_apps == ["iTerm2"]
