"""Per-session append-only stores feeding notification content.

Each tracker owns one JSON file mapping session id to its entries and
prunes by age in cleanup().
"""

import html
import json
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generic, Optional, TypeVar, Union

from .models import (
    CapturedConversation,
    ConversationRecord,
    InputTimestamp,
    SubagentActivity,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", InputTimestamp, SubagentActivity, ConversationRecord)

# Subagent output that only shows the spinner, not real work
_PLACEHOLDER_RESPONSES = ("Initializing...", "Concocting...")


class SessionStore(Generic[T]):
    """
    JSON-backed map of session id -> list of timestamped entries.

    Subclasses set ``entry_key`` (the list's key inside each session record),
    ``retention`` and optionally ``max_entries``.
    """

    entry_key = "entries"
    retention = timedelta(days=7)
    max_entries: Optional[int] = None

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _entry_from_dict(self, data: dict) -> T:
        raise NotImplementedError

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {self.path}: {e}")
            return {}

    def _save(self, data: dict) -> bool:
        temp_file = self.path.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.rename(self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to save {self.path}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False

    def record(self, session_id: str, entry: T) -> None:
        data = self._load()
        session = data.setdefault(session_id, {"created": datetime.now().isoformat(), self.entry_key: []})
        entries = session.setdefault(self.entry_key, [])
        entries.append(entry.to_dict())
        if self.max_entries is not None and len(entries) > self.max_entries:
            session[self.entry_key] = entries[-self.max_entries:]
        self._save(data)

    def get(self, session_id: str) -> list[T]:
        session = self._load().get(session_id)
        if not session:
            return []
        entries = []
        for raw in session.get(self.entry_key, []):
            try:
                entries.append(self._entry_from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed entry in {self.path}: {e}")
        return entries

    def clear(self, session_id: str) -> None:
        data = self._load()
        if data.pop(session_id, None) is not None:
            self._save(data)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop entries older than the retention window; returns entries removed."""
        cutoff = (now or datetime.now()) - self.retention
        data = self._load()
        removed = 0
        cleaned = {}
        for session_id, session in data.items():
            kept = []
            for raw in session.get(self.entry_key, []):
                try:
                    entry = self._entry_from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    removed += 1
                    continue
                if entry.timestamp > cutoff:
                    kept.append(raw)
                else:
                    removed += 1
            if kept:
                session[self.entry_key] = kept
                cleaned[session_id] = session
        if removed or len(cleaned) != len(data):
            self._save(cleaned)
            logger.info(f"Cleaned up {removed} expired entries from {self.path.name}")
        return removed


class InputTimestampTracker(SessionStore[InputTimestamp]):
    """When did the user last type into each session."""

    entry_key = "inputs"
    retention = timedelta(days=7)
    max_entries = 10

    def _entry_from_dict(self, data: dict) -> InputTimestamp:
        return InputTimestamp.from_dict(data)

    def record_user_input(self, session_name: str, timestamp: Optional[datetime] = None):
        self.record(session_name, InputTimestamp(timestamp=timestamp or datetime.now()))

    def get_last_user_input_time(self, session_name: str) -> Optional[datetime]:
        inputs = self.get(session_name)
        return inputs[-1].timestamp if inputs else None


class SubagentTracker(SessionStore[SubagentActivity]):
    """Subagent work per session, summarized into completion notifications."""

    entry_key = "activities"
    retention = timedelta(hours=24)

    def _entry_from_dict(self, data: dict) -> SubagentActivity:
        return SubagentActivity.from_dict(data)

    def add_activity(
        self,
        session_id: str,
        activity_type: str = "subagent",
        description: str = "Subagent activity",
        details: Optional[dict] = None,
    ):
        self.record(
            session_id,
            SubagentActivity(type=activity_type, description=description, details=details or {}),
        )

    def get_activities(self, session_id: str) -> list[SubagentActivity]:
        return self.get(session_id)

    def clear_activities(self, session_id: str):
        self.clear(session_id)

    def _grouped(self, session_id: str) -> "OrderedDict[str, list[SubagentActivity]]":
        grouped: OrderedDict[str, list[SubagentActivity]] = OrderedDict()
        for activity in self.get(session_id):
            grouped.setdefault(activity.type, []).append(activity)
        return grouped

    def format_activities_text(self, session_id: str) -> str:
        grouped = self._grouped(session_id)
        if not grouped:
            return ""
        lines = ["Subagent Activities Summary", ""]
        for activity_type, items in grouped.items():
            lines.append(f"{activity_type} ({len(items)} activities)")
            for index, item in enumerate(items, start=1):
                lines.append(f"  {index}. [{item.timestamp.strftime('%H:%M:%S')}] {item.description}")
                response = item.details.get("claudeResponse")
                if response:
                    lines.append(f"     {response}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def format_activities_html(self, session_id: str) -> str:
        grouped = self._grouped(session_id)
        if not grouped:
            return ""
        parts = ['<div class="subagent-activities">', "<h3>Subagent Activities Summary</h3>"]
        for activity_type, items in grouped.items():
            parts.append(f"<h4>{html.escape(activity_type)} ({len(items)} activities)</h4>")
            parts.append("<ul>")
            for item in items:
                time_str = item.timestamp.strftime("%H:%M:%S")
                parts.append(
                    f"<li><span class=\"time\">[{time_str}]</span> "
                    f"<strong>{html.escape(item.description)}</strong>"
                )
                question = item.details.get("userQuestion")
                if question and question != item.description:
                    parts.append(f"<div class=\"question\">Question: {html.escape(question)}</div>")
                response = item.details.get("claudeResponse")
                if response:
                    if any(marker in response for marker in _PLACEHOLDER_RESPONSES):
                        parts.append(
                            "<div class=\"pending\">Subagent was still processing "
                            "(full output is in the tmux session)</div>"
                        )
                    else:
                        parts.append(f"<pre class=\"response\">{html.escape(response)}</pre>")
                parts.append("</li>")
            parts.append("</ul>")
        parts.append("</div>")
        return "\n".join(parts)


class ConversationTracker(SessionStore[ConversationRecord]):
    """Recorded user messages and Claude responses, newest last."""

    entry_key = "messages"
    retention = timedelta(days=7)

    def _entry_from_dict(self, data: dict) -> ConversationRecord:
        return ConversationRecord.from_dict(data)

    def record_user_message(self, session_id: str, message: str):
        self.record(session_id, ConversationRecord(type="user", content=message))

    def record_claude_response(self, session_id: str, response: str):
        self.record(session_id, ConversationRecord(type="claude", content=response))

    def get_recent_conversation(self, session_id: str, limit: int = 2) -> CapturedConversation:
        messages = self.get(session_id)[-limit * 2:]
        user_question = ""
        claude_response = ""
        for msg in reversed(messages):
            if msg.type == "claude" and not claude_response:
                claude_response = msg.content
            elif msg.type == "user" and not user_question:
                user_question = msg.content
            if user_question and claude_response:
                break
        return CapturedConversation(
            user_question=user_question or "Unrecorded user question",
            claude_response=claude_response or "Unrecorded Claude response",
        )
