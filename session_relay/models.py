"""Data models for the command relay."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Any
import time
import uuid


NO_USER_INPUT = "No user input"
NO_CLAUDE_RESPONSE = "No Claude response"


class CommandStatus(Enum):
    """Command queue item lifecycle status."""
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"  # Terminal
    FAILED = "failed"        # Terminal


class TransportKind(Enum):
    """How a session can be reached."""
    MULTIPLEXER = "multiplexer"  # tmux pane
    PTY = "pty"                  # pseudo-terminal device path


class RelayEventType(Enum):
    """Lifecycle events emitted by the relay service."""
    STARTED = "started"
    STOPPED = "stopped"
    COMMAND_QUEUED = "commandQueued"
    COMMAND_EXECUTED = "commandExecuted"
    COMMAND_FAILED = "commandFailed"


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def generate_command_id() -> str:
    """Time-prefixed unique id, sortable by creation time."""
    return f"{_base36(int(time.time() * 1000))}{uuid.uuid4().hex[:8]}"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Tolerate the "Z" suffix written by other tools
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _fmt_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class CommandQueueItem:
    """A command waiting to be (or already) delivered into a session."""
    session_id: str
    command: str
    id: str = field(default_factory=generate_command_id)
    queued_at: datetime = field(default_factory=datetime.now)
    status: CommandStatus = CommandStatus.QUEUED
    retries: int = 0
    max_retries: int = 3
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    error: Optional[str] = None
    delivered_via: Optional[str] = None  # Name of the strategy that reported success

    @property
    def is_terminal(self) -> bool:
        return self.status in (CommandStatus.COMPLETED, CommandStatus.FAILED)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True if queued and past its retry time (if any)."""
        if self.status != CommandStatus.QUEUED:
            return False
        if self.retry_at is None:
            return True
        return self.retry_at <= (now or datetime.now())

    def preview(self, length: int = 50) -> str:
        if len(self.command) <= length:
            return self.command
        return self.command[:length] + "..."

    def to_dict(self) -> dict:
        """Convert to the on-disk (camelCase) representation."""
        data = {
            "id": self.id,
            "sessionId": self.session_id,
            "command": self.command,
            "queuedAt": _fmt_dt(self.queued_at),
            "executedAt": _fmt_dt(self.executed_at),
            "completedAt": _fmt_dt(self.completed_at),
            "failedAt": _fmt_dt(self.failed_at),
            "status": self.status.value,
            "retries": self.retries,
            "maxRetries": self.max_retries,
            "retryAt": _fmt_dt(self.retry_at),
            "error": self.error,
            "deliveredVia": self.delivered_via,
        }
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CommandQueueItem":
        """Create from the on-disk representation."""
        return cls(
            id=data["id"],
            session_id=data.get("sessionId", ""),
            command=data.get("command", ""),
            queued_at=_parse_dt(data.get("queuedAt")) or datetime.now(),
            executed_at=_parse_dt(data.get("executedAt")),
            completed_at=_parse_dt(data.get("completedAt")),
            failed_at=_parse_dt(data.get("failedAt")),
            status=CommandStatus(data.get("status", "queued")),
            retries=int(data.get("retries", 0)),
            max_retries=int(data.get("maxRetries", 3)),
            retry_at=_parse_dt(data.get("retryAt")),
            error=data.get("error"),
            delivered_via=data.get("deliveredVia"),
        )


@dataclass
class SessionRef:
    """Where a named session lives. Owned by the session registry."""
    name: str
    transport_kind: Optional[TransportKind] = None
    address: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "SessionRef":
        raw_kind = data.get("transportKind")
        return cls(
            name=name,
            transport_kind=TransportKind(raw_kind) if raw_kind else None,
            address=data.get("address"),
        )

    def to_dict(self) -> dict:
        return {
            "transportKind": self.transport_kind.value if self.transport_kind else None,
            "address": self.address,
        }


@dataclass
class CapturedConversation:
    """Most recent turn reconstructed from terminal output."""
    user_question: str = NO_USER_INPUT
    claude_response: str = NO_CLAUDE_RESPONSE

    @property
    def has_content(self) -> bool:
        return self.user_question != NO_USER_INPUT or self.claude_response != NO_CLAUDE_RESPONSE

    def to_dict(self) -> dict:
        return {
            "userQuestion": self.user_question,
            "claudeResponse": self.claude_response,
        }


@dataclass
class RelayEvent:
    """Lifecycle event surfaced to notifiers."""
    event_type: RelayEventType
    item: Optional[CommandQueueItem] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class InputTimestamp:
    """A moment a user input line was observed in a session."""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": int(self.timestamp.timestamp() * 1000),
            "date": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InputTimestamp":
        return cls(timestamp=datetime.fromtimestamp(data["timestamp"] / 1000))


@dataclass
class SubagentActivity:
    """One piece of subagent work reported for a session."""
    type: str = "subagent"
    description: str = "Subagent activity"
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "description": self.description,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SubagentActivity":
        return cls(
            type=data.get("type") or "subagent",
            description=data.get("description") or "Subagent activity",
            details=data.get("details") or {},
            timestamp=_parse_dt(data.get("timestamp")) or datetime.now(),
        )


@dataclass
class ConversationRecord:
    """A user message or Claude response recorded for a session."""
    type: str  # "user" or "claude"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationRecord":
        return cls(
            type=data.get("type", "user"),
            content=data.get("content", ""),
            timestamp=_parse_dt(data.get("timestamp")) or datetime.now(),
        )


@dataclass
class RelayStatus:
    """Snapshot returned by CommandRelayService.get_status()."""
    is_running: bool
    queue_length: int
    processing: bool
    counts: dict[str, int]
    recent_commands: List[dict]

    def to_dict(self) -> dict:
        return {
            "isRunning": self.is_running,
            "queueLength": self.queue_length,
            "processing": self.processing,
            "counts": self.counts,
            "recentCommands": self.recent_commands,
        }
