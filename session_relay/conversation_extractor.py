"""Reconstruct the latest (question, response) turn from raw terminal text.

Claude Code renders the echoed user input as a line starting with ``"> "``
and each assistant block with a leading ``"⏺ "``. Everything else is box
chrome, tool output or the input prompt. There is no structured source to
check against, so this is a heuristic tied to that rendering:

- only the most recent turn in the text is returned;
- a response line that itself starts with ``"> "`` is read as a new turn.
"""

import logging
import re
from typing import Callable, Optional

from .models import CapturedConversation, NO_CLAUDE_RESPONSE, NO_USER_INPUT

logger = logging.getLogger(__name__)

USER_PREFIX = "> "
RESPONSE_PREFIX = "⏺ "
RESPONSE_GLYPH = "⏺"
BORDER_CHARS = ("╭", "│", "╰")
FOOTER_HINT = "for shortcuts"
# Input box top edge or its prompt row; other box lines inside a response are skipped
RESPONSE_END_PREFIXES = ("╭", "│ > ")

_BOX_GLYPHS_RE = re.compile(r"[╭╰│]")
_BORDER_PREFIX_RE = re.compile(r"^\s*│\s*", re.MULTILINE)


def _is_user_line(line: str) -> bool:
    return line.startswith(USER_PREFIX) and len(line) > len(USER_PREFIX)


def _is_border(line: str) -> bool:
    return line.startswith(BORDER_CHARS)


def extract_conversation(
    text: Optional[str],
    on_user_input: Optional[Callable[[], None]] = None,
) -> CapturedConversation:
    """
    Extract the most recent user question and Claude response.

    Args:
        text: Captured terminal text (may be None or empty)
        on_user_input: Called once for every user input line seen

    Returns:
        CapturedConversation, with sentinel strings for anything not found
    """
    try:
        return _extract(text or "", on_user_input)
    except Exception as e:
        logger.error(f"Conversation extraction failed: {e}")
        return CapturedConversation()


def _extract(text: str, on_user_input: Optional[Callable[[], None]]) -> CapturedConversation:
    raw_lines = text.replace("\r", "").split("\n")

    user_question = ""
    question_lines: list[str] = []
    in_user_input = False
    response_lines: list[str] = []
    in_response = False

    for raw in raw_lines:
        line = raw.strip()

        if _is_user_line(line):
            question_lines = [line[len(USER_PREFIX):].strip()]
            in_user_input = True
            in_response = False
            response_lines = []
            if on_user_input:
                try:
                    on_user_input()
                except Exception as e:
                    logger.warning(f"User input callback failed: {e}")
            continue

        if in_user_input:
            # Wrapped input continues until a blank line, chrome or a response
            if line and not line.startswith(RESPONSE_GLYPH) and not _is_border(line):
                question_lines.append(line)
                continue
            in_user_input = False
            user_question = " ".join(question_lines)

        if line.startswith(RESPONSE_PREFIX):
            in_response = True
            response_lines = [line[len(RESPONSE_PREFIX):].strip()]
            continue

        if in_response:
            if line.startswith(RESPONSE_END_PREFIXES) or FOOTER_HINT in line:
                in_response = False
            elif line and not _is_border(line):
                # Keep indentation so code blocks survive
                response_lines.append(raw.rstrip())

    if in_user_input:
        user_question = " ".join(question_lines)

    claude_response = "\n".join(response_lines).strip()
    claude_response = _BOX_GLYPHS_RE.sub("", claude_response)
    claude_response = _BORDER_PREFIX_RE.sub("", claude_response).strip()

    if not user_question:
        for raw in reversed(raw_lines):
            line = raw.strip()
            if _is_user_line(line):
                user_question = line[len(USER_PREFIX):].strip()
                break

    return CapturedConversation(
        user_question=user_question or NO_USER_INPUT,
        claude_response=claude_response or NO_CLAUDE_RESPONSE,
    )


def filter_from_last_user_input(content: str, fallback_lines: int = 100) -> str:
    """Return content from the last user input line on (or the last N lines)."""
    lines = content.split("\n")
    for index in range(len(lines) - 1, -1, -1):
        if _is_user_line(lines[index]):
            return "\n".join(lines[index:])
    return "\n".join(lines[-fallback_lines:])


def clean_execution_trace(trace: str) -> str:
    """
    Keep only the work between the user's input and the final response.

    Drops the echoed input (including wrapped continuation lines), the last
    response block and everything after it, and stops at the input box.
    """
    lines = trace.split("\n")
    last_response_start = -1
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].startswith(RESPONSE_PREFIX):
            last_response_start = index
            break

    cleaned: list[str] = []
    in_user_input = False
    for index, line in enumerate(lines):
        if last_response_start != -1 and index >= last_response_start:
            break

        if line.startswith(USER_PREFIX):
            in_user_input = True
            continue

        if in_user_input:
            if line.strip() == "":
                in_user_input = False
                continue
            if line.startswith(RESPONSE_GLYPH):
                in_user_input = False
            else:
                continue

        if "╭─" in line and "─╮" in line:
            break
        if re.match(r"^│\s*>\s*│$", line):
            break

        cleaned.append(line)

    while cleaned and not cleaned[0].strip():
        cleaned.pop(0)
    while cleaned and not cleaned[-1].strip():
        cleaned.pop()
    return "\n".join(cleaned)
