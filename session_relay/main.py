"""Main entry point - wires the relay components together."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from .automation import select_backend
from .command_relay import CommandRelayService
from .injectors import build_injection_chain
from .listener import SpoolListener
from .models import TransportKind
from .notifier import Notifier
from .output_capture import SessionOutputCapture
from .session_registry import SessionRegistry
from .tmux_controller import TmuxController
from .trackers import ConversationTracker, InputTimestampTracker, SubagentTracker

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.local/share/session-relay"


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class RelayApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        paths = config.get("paths", {})
        data_dir = Path(paths.get("data_dir", DEFAULT_DATA_DIR)).expanduser()
        self.state_file = paths.get("state_file", str(data_dir / "relay-state.json"))
        self.session_map = paths.get("session_map", str(data_dir / "session-map.json"))
        self.capture_dir = paths.get("capture_dir", str(data_dir / "tmux-captures"))
        self.spool_dir = paths.get("spool_dir", str(data_dir / "inbox"))

        tracker_config = config.get("trackers", {})
        self.tracker_cleanup_interval = tracker_config.get("cleanup_interval_seconds", 3600)

        self.registry = SessionRegistry(self.session_map)
        self.tmux = TmuxController(config)
        self.backend = select_backend(config)
        self.chain = build_injection_chain(self.tmux, self.backend, config)

        self.input_tracker = InputTimestampTracker(
            tracker_config.get("input_timestamps_file", str(data_dir / "input-timestamps.json"))
        )
        self.subagent_tracker = SubagentTracker(
            tracker_config.get("subagent_activities_file", str(data_dir / "subagent-activities.json"))
        )
        self.conversation_tracker = ConversationTracker(
            tracker_config.get("conversations_file", str(data_dir / "session-conversations.json"))
        )

        self.capture = SessionOutputCapture(
            self.tmux,
            capture_dir=self.capture_dir,
            input_tracker=self.input_tracker,
            config=config,
        )
        self.notifier = Notifier(
            self.backend,
            capture=self.capture,
            subagent_tracker=self.subagent_tracker,
            conversation_tracker=self.conversation_tracker,
            config=config,
        )

        listener_config = config.get("listener", {})
        self.listener: Optional[SpoolListener] = None
        if listener_config.get("enabled", True):
            self.listener = SpoolListener(
                self.spool_dir,
                poll_interval=listener_config.get("poll_interval_seconds", 2.0),
            )

        self.relay = CommandRelayService(
            self.chain,
            self.registry,
            state_file=self.state_file,
            listener=self.listener,
            config=config,
        )
        self.relay.add_event_handler(self.notifier.handle_event)

        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def start_captures(self) -> int:
        """Start pipe-pane capture for every registered multiplexer session."""
        started = 0
        for name in self.registry.list_names():
            session = self.registry.get(name)
            if not session or session.transport_kind != TransportKind.MULTIPLEXER:
                continue
            target = session.address or session.name
            if not self.tmux.session_exists(target):
                continue
            if self.capture.start_capture(target):
                started += 1
        return started

    def run_cleanup(self):
        """Prune tracker entries and old capture logs."""
        for tracker in (self.input_tracker, self.subagent_tracker, self.conversation_tracker):
            try:
                tracker.cleanup()
            except Exception as e:
                logger.error(f"Tracker cleanup failed for {tracker.path.name}: {e}")
        self.capture.cleanup_old_captures()

    async def _cleanup_loop(self):
        while True:
            self.run_cleanup()
            await asyncio.sleep(self.tracker_cleanup_interval)

    async def start(self):
        """Start all components."""
        logger.info("Starting session relay...")
        self._stop_event = asyncio.Event()

        started = self.start_captures()
        if started:
            logger.info(f"Capturing output for {started} session(s)")

        await self.relay.start()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="tracker-cleanup")
        logger.info("Session relay started")

    async def wait_closed(self):
        if self._stop_event:
            await self._stop_event.wait()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping session relay...")

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.relay.stop()

        if self._stop_event:
            self._stop_event.set()
        logger.info("Shutdown complete")


def setup_signal_handlers(app: RelayApp):
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals):
        logger.info(f"Received signal {sig.name}, shutting down...")
        if app._shutdown_task is None:
            app._shutdown_task = asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)


async def main(config_path: Optional[str] = None):
    """Main entry point."""
    config = load_config(config_path or "config.yaml")

    log_level = config.get("logging", {}).get("level", "INFO")
    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = RelayApp(config)
    setup_signal_handlers(app)

    try:
        await app.start()
    except Exception as e:
        logger.error(f"Failed to start session relay: {e}")
        await app.stop()
        raise
    await app.wait_closed()


def run():
    """Entry point for console script."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(main(config_path))


if __name__ == "__main__":
    run()
