"""Shared pytest fixtures for session relay tests."""

import json
from pathlib import Path
from unittest.mock import MagicMock, AsyncMock

import pytest

from session_relay.automation import AutomationBackend
from session_relay.models import SessionRef, TransportKind
from session_relay.session_registry import SessionRegistry
from session_relay.tmux_controller import TmuxController


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_exists.return_value = True
    mock.send_input_async = AsyncMock(return_value=True)
    mock.capture_pane.return_value = "Mock tmux output"
    mock.pipe_pane.return_value = True
    mock.stop_pipe_pane.return_value = True
    return mock


@pytest.fixture
def mock_backend() -> MagicMock:
    """Automation backend that records calls and never touches the desktop."""
    mock = MagicMock(spec=AutomationBackend)
    mock.name = "macos"
    mock.is_supported.return_value = True
    mock.copy_to_clipboard = AsyncMock(return_value=None)
    mock.frontmost_application = AsyncMock(return_value="Terminal")
    mock.focus_application = AsyncMock(return_value="Terminal")
    mock.paste_and_submit = AsyncMock(return_value="Terminal")
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def session_map_file(tmp_path) -> Path:
    """Session map with one tmux session and one PTY session."""
    path = tmp_path / "session-map.json"
    path.write_text(json.dumps({
        "claude-main": {"transportKind": "multiplexer", "address": "claude-code"},
        "claude-pty": {"transportKind": "pty", "address": str(tmp_path / "ttys004")},
    }))
    return path


@pytest.fixture
def registry(session_map_file) -> SessionRegistry:
    return SessionRegistry(str(session_map_file))


@pytest.fixture
def tmux_session() -> SessionRef:
    return SessionRef(name="claude-main", transport_kind=TransportKind.MULTIPLEXER, address="claude-code")


@pytest.fixture
def sample_terminal_output() -> str:
    """Two turns of rendered Claude Code output, the second still on screen."""
    return "\n".join([
        "╭──────────────────────────╮",
        "│ ✻ Welcome to Claude Code │",
        "╰──────────────────────────╯",
        "",
        "> first question",
        "",
        "⏺ First answer.",
        "",
        "> summarize the failing tests",
        "",
        "⏺ Two tests fail:",
        "  - test_retry",
        "  - test_cleanup",
        "",
        "╭──────────────────────────╮",
        "│ >                        │",
        "╰──────────────────────────╯",
        "  ? for shortcuts",
    ])
