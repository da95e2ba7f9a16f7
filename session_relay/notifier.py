"""Routes relay events to desktop notifications."""

import logging
from typing import Optional

from .automation import AutomationBackend
from .errors import RelayError
from .models import NO_CLAUDE_RESPONSE, CapturedConversation, RelayEvent, RelayEventType
from .output_capture import SessionOutputCapture
from .trackers import ConversationTracker, SubagentTracker

logger = logging.getLogger(__name__)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


class Notifier:
    """Turns relay events into short desktop notifications."""

    def __init__(
        self,
        backend: AutomationBackend,
        capture: Optional[SessionOutputCapture] = None,
        subagent_tracker: Optional[SubagentTracker] = None,
        conversation_tracker: Optional[ConversationTracker] = None,
        config: Optional[dict] = None,
    ):
        self.backend = backend
        self.capture = capture
        self.subagent_tracker = subagent_tracker
        self.conversation_tracker = conversation_tracker

        notify_config = (config or {}).get("notifications", {})
        self.enabled = notify_config.get("enabled", True)
        self.title = notify_config.get("title", "Session Relay")
        self.notify_on_queued = notify_config.get("on_queued", False)
        self.max_message_chars = notify_config.get("max_message_chars", 200)

    async def handle_event(self, event: RelayEvent) -> bool:
        """
        Relay event handler; register with CommandRelayService.add_event_handler.

        Returns:
            True if a notification was shown
        """
        if event.event_type == RelayEventType.COMMAND_EXECUTED and event.item is not None:
            self._record("record_user_message", event.item.session_id, event.item.command)
        if not self.enabled or event.item is None:
            return False
        if event.event_type == RelayEventType.COMMAND_QUEUED and not self.notify_on_queued:
            return False
        if event.event_type not in (
            RelayEventType.COMMAND_QUEUED,
            RelayEventType.COMMAND_EXECUTED,
            RelayEventType.COMMAND_FAILED,
        ):
            return False

        subtitle, message = self._format_message(event)
        return await self._send(subtitle, message)

    async def notify_completion(self, session_name: str) -> bool:
        """Report that a session finished a turn, with its latest exchange."""
        if not self.enabled:
            return False
        lines = []
        conversation = self._latest_conversation(session_name)
        if conversation:
            lines.append(f"Q: {_truncate(conversation.user_question, 80)}")
            lines.append(_truncate(conversation.claude_response, self.max_message_chars))
        lines.extend(self._subagent_summary(session_name))
        if not lines:
            lines.append("Claude finished and is waiting for input.")
        return await self._send(f"{session_name}: completed", "\n".join(lines))

    def _latest_conversation(self, session_name: str) -> Optional[CapturedConversation]:
        """
        Captured terminal output first, then the recorded conversation.

        A captured response is recorded so later completions without a live
        capture still have something to show.
        """
        if self.capture:
            conversation = self.capture.get_recent_conversation(session_name)
            if conversation.has_content:
                if conversation.claude_response != NO_CLAUDE_RESPONSE:
                    self._record(
                        "record_claude_response",
                        session_name,
                        conversation.claude_response,
                    )
                return conversation
        if self.conversation_tracker and self.conversation_tracker.get(session_name):
            return self.conversation_tracker.get_recent_conversation(session_name)
        return None

    def _record(self, method: str, session_name: str, text: str):
        if not self.conversation_tracker:
            return
        try:
            getattr(self.conversation_tracker, method)(session_name, text)
        except Exception as e:
            logger.error(f"Failed to record conversation for {session_name}: {e}")

    def _subagent_summary(self, session_name: str) -> list[str]:
        if not self.subagent_tracker:
            return []
        activities = self.subagent_tracker.get_activities(session_name)
        if not activities:
            return []
        return [f"{len(activities)} subagent activit{'y' if len(activities) == 1 else 'ies'}"]

    def _format_message(self, event: RelayEvent) -> tuple[str, str]:
        item = event.item
        session = item.session_id
        command = item.preview()

        if event.event_type == RelayEventType.COMMAND_QUEUED:
            return f"{session}: queued", f"Command queued: {command}"

        if event.event_type == RelayEventType.COMMAND_FAILED:
            lines = [
                f"Could not deliver after {item.retries} attempt(s): {command}",
                f"Error: {event.error or item.error or 'unknown'}",
            ]
            return f"{session}: delivery failed", "\n".join(lines)

        lines = [f"Delivered via {item.delivered_via or 'unknown'}: {command}"]
        if self.capture and self.capture.is_capturing(session):
            conversation = self.capture.get_recent_conversation(session)
            if conversation.has_content:
                lines.append(_truncate(conversation.claude_response, self.max_message_chars))
        lines.extend(self._subagent_summary(session))
        return f"{session}: delivered", "\n".join(lines)

    async def _send(self, subtitle: str, message: str) -> bool:
        try:
            await self.backend.notify(self.title, message, subtitle=subtitle)
            return True
        except RelayError as e:
            logger.warning(f"Notification not shown: {e}")
        except Exception as e:
            logger.error(f"Unexpected notification failure: {e}")
        return False
