"""Durable command queue that drives delivery into live sessions."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .errors import PersistenceError
from .injectors import InjectionChain
from .listener import CommandListener
from .models import (
    CommandQueueItem,
    CommandStatus,
    RelayEvent,
    RelayEventType,
    RelayStatus,
    SessionRef,
)
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

EventHandler = Callable[[RelayEvent], Awaitable[None]]


class CommandRelayService:
    """
    Queues inbound commands and delivers them through the injection chain.

    Key behaviour:
    - Every mutation rewrites the whole queue file
    - One scan at a time; items within a scan are delivered sequentially
      because clipboard and window focus are shared by the whole desktop
    - Failed deliveries retry with linear backoff (retries x base) until
      max_retries, then the item is failed for good
    """

    def __init__(
        self,
        chain: InjectionChain,
        registry: SessionRegistry,
        state_file: str = "~/.local/share/session-relay/relay-state.json",
        listener: Optional[CommandListener] = None,
        config: Optional[dict] = None,
    ):
        """
        Initialize the relay service.

        Args:
            chain: Ordered delivery strategies
            registry: Session name -> transport lookup
            state_file: Path of the persisted queue
            listener: Inbound command source (optional for embedding/tests)
            config: Full config dict; reads the ``relay`` section
        """
        self.chain = chain
        self.registry = registry
        self.listener = listener
        self.state_file = Path(state_file).expanduser()
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        relay_config = (config or {}).get("relay", {})
        self.scan_interval = relay_config.get("scan_interval_seconds", 5)
        self.max_retries = relay_config.get("max_retries", 3)
        self.retry_backoff_seconds = relay_config.get("retry_backoff_seconds", 60)
        self.completed_retention_hours = relay_config.get("completed_retention_hours", 24)
        self.cleanup_interval = relay_config.get("cleanup_interval_seconds", 3600)

        self.command_queue: list[CommandQueueItem] = []
        self.is_running = False
        self._processing = False
        self._scan_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._event_handlers: list[EventHandler] = []
        self._background: set[asyncio.Task] = set()

        self._load_state()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load_state(self) -> bool:
        """
        Load the queue from disk.

        A missing or unreadable file leaves an empty queue; it never stops
        the service from starting.
        """
        if not self.state_file.exists():
            self.command_queue = []
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            self.command_queue = [CommandQueueItem.from_dict(d) for d in data.get("commandQueue", [])]
            # A delivery interrupted by a crash is picked up again on the next scan
            for item in self.command_queue:
                if item.status == CommandStatus.EXECUTING:
                    logger.warning(f"Command {item.id} was interrupted mid-delivery, requeueing")
                    item.status = CommandStatus.QUEUED
                    item.retry_at = None
            logger.info(f"Loaded {len(self.command_queue)} queued command(s) from {self.state_file}")
            return True
        except Exception as e:
            logger.warning(f"Failed to load relay state from {self.state_file}: {e}")
            self.command_queue = []
            return False

    def _write_state(self):
        data = {
            "commandQueue": [item.to_dict() for item in self.command_queue],
            "lastSaved": datetime.now().isoformat(),
        }
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.rename(self.state_file)
        except OSError as e:
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            raise PersistenceError(f"Failed to save relay state to {self.state_file}: {e}") from e

    def _save_state(self) -> bool:
        """Persist the queue. Failure is logged; the in-memory change stands."""
        try:
            self._write_state()
            return True
        except PersistenceError as e:
            logger.error(f"CRITICAL: {e}")
            logger.error("Relay queue NOT persisted! Commands may be lost on restart.")
            return False

    # =========================================================================
    # Events
    # =========================================================================

    def add_event_handler(self, handler: EventHandler):
        """Register an async callback for lifecycle events."""
        self._event_handlers.append(handler)

    async def _emit_event(self, event: RelayEvent):
        for handler in self._event_handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.event_type.value}: {e}")

    def _emit_soon(self, event: RelayEvent):
        """Emit from sync code: schedule on the running loop if there is one."""
        if not self._event_handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._emit_event(event))
            return
        task = loop.create_task(self._emit_event(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Subscribe to inbound commands and start the scan loop."""
        if self.is_running:
            logger.warning("Command relay service already running")
            return

        if self.listener:
            self.listener.set_command_handler(self.enqueue)
            try:
                await self.listener.start()
            except Exception as e:
                logger.error(f"Failed to start command listener: {e}")
                raise

        self.is_running = True
        self._scan_task = asyncio.create_task(self._scan_loop(), name="relay-scan")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="relay-cleanup")
        logger.info("Command relay service started")
        await self._emit_event(RelayEvent(RelayEventType.STARTED))

    async def stop(self):
        """Stop scanning and listening. The queue is kept."""
        if not self.is_running:
            return
        self.is_running = False

        for task in (self._scan_task, self._cleanup_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._scan_task = None
        self._cleanup_task = None

        if self.listener:
            await self.listener.stop()

        await self.chain.close()

        self._save_state()
        logger.info("Command relay service stopped")
        await self._emit_event(RelayEvent(RelayEventType.STOPPED))

        # Let queued event deliveries finish
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _scan_loop(self):
        """Periodic scan; the first pass runs immediately."""
        while True:
            try:
                await self.process_pending()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Relay scan failed: {e}", exc_info=True)
            await asyncio.sleep(self.scan_interval)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_completed_commands()
            except Exception as e:
                logger.error(f"Relay cleanup failed: {e}")

    # =========================================================================
    # Queue operations
    # =========================================================================

    def enqueue(self, command_data: dict) -> CommandQueueItem:
        """
        Add an inbound command to the queue and persist it.

        Args:
            command_data: {"sessionId": str, "command": str}

        Returns:
            The queued item
        """
        session_id = command_data.get("sessionId")
        command = command_data.get("command")
        if not isinstance(session_id, str) or not session_id or not isinstance(command, str) or not command:
            raise ValueError("command data requires non-empty 'sessionId' and 'command'")

        item = CommandQueueItem(
            session_id=session_id,
            command=command,
            max_retries=self.max_retries,
        )
        self.command_queue.append(item)
        self._save_state()

        logger.info(f"Command queued: id={item.id} session={item.session_id} command={item.preview()}")
        self._emit_soon(RelayEvent(RelayEventType.COMMAND_QUEUED, item=item))
        return item

    def get_item(self, item_id: str) -> Optional[CommandQueueItem]:
        for item in self.command_queue:
            if item.id == item_id:
                return item
        return None

    def _due_items(self, now: datetime) -> list[CommandQueueItem]:
        return [item for item in self.command_queue if item.is_due(now)]

    async def process_pending(self) -> int:
        """
        Deliver every due queued item, one at a time.

        Returns:
            Number of items attempted (0 if a scan is already running or
            nothing is due)
        """
        if self._processing:
            logger.debug("Scan already in progress, skipping")
            return 0
        due = self._due_items(datetime.now())
        if not due:
            return 0

        self._processing = True
        try:
            for item in due:
                # Re-check: stop() or cleanup may have run between awaits
                if item.status != CommandStatus.QUEUED:
                    continue
                await self._execute(item)
            return len(due)
        finally:
            self._processing = False

    async def _execute(self, item: CommandQueueItem):
        logger.info(f"Executing command {item.id} for session {item.session_id}: {item.preview()}")
        item.status = CommandStatus.EXECUTING
        item.executed_at = datetime.now()

        session = self._resolve_session(item.session_id)
        try:
            success = await self.chain.attempt(item.command, session)
        except Exception as e:
            # attempt() should never raise; treat it as a failed delivery
            logger.error(f"Injection chain raised for {item.id}: {e}")
            success = False

        if success:
            item.status = CommandStatus.COMPLETED
            item.completed_at = datetime.now()
            item.retry_at = None
            item.error = None
            item.delivered_via = self.chain.last_strategy
            self._save_state()
            logger.info(f"Command {item.id} executed successfully via {item.delivered_via}")
            await self._emit_event(RelayEvent(RelayEventType.COMMAND_EXECUTED, item=item))
        else:
            await self._handle_failure(item, "All delivery strategies failed")

    def _resolve_session(self, session_id: str) -> SessionRef:
        session = self.registry.get(session_id)
        if session is None:
            logger.info(f"Session {session_id} not in registry; only desktop strategies can apply")
            return SessionRef(name=session_id)
        return session

    async def _handle_failure(self, item: CommandQueueItem, error: str):
        item.retries += 1
        item.error = error

        if item.retries < item.max_retries:
            item.status = CommandStatus.QUEUED
            item.retry_at = datetime.now() + timedelta(seconds=item.retries * self.retry_backoff_seconds)
            self._save_state()
            logger.info(
                f"Command {item.id} will be retried at {item.retry_at.isoformat()} "
                f"(attempt {item.retries + 1}/{item.max_retries})"
            )
        else:
            item.status = CommandStatus.FAILED
            item.failed_at = datetime.now()
            item.retry_at = None
            self._save_state()
            logger.error(f"Command {item.id} failed after {item.retries} attempt(s): {error}")
            await self._emit_event(RelayEvent(RelayEventType.COMMAND_FAILED, item=item, error=error))

    def cleanup_completed_commands(self, max_age_hours: Optional[float] = None) -> int:
        """Drop completed items older than the retention window."""
        max_age_hours = max_age_hours if max_age_hours is not None else self.completed_retention_hours
        cutoff = datetime.now() - timedelta(hours=max_age_hours)
        before = len(self.command_queue)
        self.command_queue = [
            item for item in self.command_queue
            if item.status != CommandStatus.COMPLETED
            or (item.completed_at is not None and item.completed_at > cutoff)
        ]
        removed = before - len(self.command_queue)
        if removed:
            logger.info(f"Cleaned up {removed} completed command(s)")
            self._save_state()
        return removed

    def get_status(self) -> RelayStatus:
        counts = {status.value: 0 for status in CommandStatus}
        for item in self.command_queue:
            counts[item.status.value] += 1
        return RelayStatus(
            is_running=self.is_running,
            queue_length=len(self.command_queue),
            processing=self._processing,
            counts=counts,
            recent_commands=[
                {
                    "id": item.id,
                    "status": item.status.value,
                    "queuedAt": item.queued_at.isoformat(),
                    "command": item.preview(),
                }
                for item in self.command_queue[-5:]
            ],
        )
