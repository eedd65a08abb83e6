"""qrforce/history.py

Rolling conversation window and history formatting.

Selects the most recent conversation rounds from the host's chat records,
filters their text through the configured tag rules and renders the
``$7`` history block. Also owns the prior-turn plot artifacts stored on chat
records: lookup of the latest one and retention pruning.
"""

from __future__ import annotations

# Standard Library
import html
import logging
import re
from collections.abc import Sequence

# Local Modules
from qrforce.models import ChatTurn, Message, Role

logger = logging.getLogger(__name__)

HISTORY_PREAMBLE: str = (
    "The following is the prior conversation and story progression, "
    "for your reference:\n "
)

_HTML_TAG_PATTERN: re.Pattern[str] = re.compile(r"<[^>]+>")


def parse_tag_list(raw: str) -> list[str]:
    """Split a comma-separated tag setting into clean tag names."""
    return [tag.strip().strip("<>/") for tag in raw.split(",") if tag.strip().strip("<>/")]


def _tag_block_pattern(tag: str) -> re.Pattern[str]:
    name = re.escape(tag)
    return re.compile(rf"<{name}(?:\s[^>]*)?>([\s\S]*?)</{name}\s*>", re.IGNORECASE)


def exclude_tag_blocks(text: str, tags: Sequence[str]) -> str:
    """Remove every ``<tag>...</tag>`` block for the given tag names."""
    for tag in tags:
        text = _tag_block_pattern(tag).sub("", text)
    return text.strip()


def extract_tag_contents(text: str, tags: Sequence[str]) -> str:
    """Keep only the inner text of the given tags.

    Returns:
        The inner texts joined by blank lines, or ``text`` unchanged when none
        of the tags occur.
    """
    found: list[str] = []
    for tag in tags:
        found.extend(m.group(1).strip() for m in _tag_block_pattern(tag).finditer(text))
    found = [part for part in found if part]
    return "\n\n".join(found) if found else text


def find_tag_block(text: str, tag: str) -> re.Match[str] | None:
    """Return the first ``<tag>...</tag>`` block in ``text``, if any."""
    return _tag_block_pattern(tag).search(text)


def replace_tag_content(text: str, tag: str, content: str) -> str:
    """Swap the inner text of the first ``tag`` block, keeping its tags."""
    match = find_tag_block(text, tag)
    if match is None:
        return text
    start, end = match.span(1)
    return f"{text[:start]}{content}{text[end:]}"


def html_to_text(text: str) -> str:
    """Reduce an HTML fragment to its text content."""
    return html.unescape(_HTML_TAG_PATTERN.sub("", text))


class ContextWindow:
    """Rolling window over the host's chat records.

    A round is one user turn plus one assistant turn, so the window keeps the
    last ``2 * max_rounds`` non-system records.
    """

    def __init__(
        self,
        max_rounds: int = 3,
        *,
        extract_tags: str = "",
        exclude_tags: str = "",
    ) -> None:
        """Initialize the window.

        Args:
            max_rounds: Conversation rounds to keep. Zero or less keeps none.
            extract_tags: Comma-separated tags whose inner text replaces the
                record text when present.
            exclude_tags: Comma-separated tags whose blocks are removed
                before extraction.
        """
        self.max_rounds = max_rounds
        self.extract_tags = parse_tag_list(extract_tags)
        self.exclude_tags = parse_tag_list(exclude_tags)

    def select(self, turns: Sequence[ChatTurn]) -> list[ChatTurn]:
        """Return the most recent records that fit in the window."""
        if self.max_rounds <= 0:
            return []
        core = [turn for turn in turns if not turn.is_system and turn.text.strip()]
        return core[-(self.max_rounds * 2):]

    def filter_text(self, text: str) -> str:
        """Apply the exclude rules, then the extract rules, to one record."""
        if self.exclude_tags:
            text = exclude_tag_blocks(text, self.exclude_tags)
        if self.extract_tags:
            text = extract_tag_contents(text, self.extract_tags)
        return text.strip()

    def build_messages(self, turns: Sequence[ChatTurn]) -> list[Message]:
        """Convert the windowed records into user/assistant messages."""
        messages: list[Message] = []
        for turn in self.select(turns):
            content = self.filter_text(turn.text)
            if content:
                messages.append(Message(role=turn.role, content=content))
        return messages


def append_pending_message(
    messages: Sequence[Message],
    turns: Sequence[ChatTurn],
    user_message: str,
) -> list[Message]:
    """Add the pending user message after the windowed history.

    The host may or may not have stored the pending turn before generation
    starts. When the newest non-system record is already this user message it
    is not repeated.
    """
    history = list(messages)
    pending = user_message.strip()
    if not pending:
        return history
    recorded = [turn for turn in turns if not turn.is_system and turn.text.strip()]
    if recorded and recorded[-1].is_user and recorded[-1].text.strip() == pending:
        return history
    history.append(Message(role=Role.USER, content=pending))
    return history


def format_history(messages: Sequence[Message]) -> str:
    """Render messages as the ``$7`` history injection.

    Returns:
        The preamble followed by ``role: "text"`` lines, or an empty string
        when there is no history.
    """
    lines = [f'{msg.role.value}: "{html_to_text(msg.content)}"' for msg in messages]
    formatted = " \n ".join(lines)
    return f"{HISTORY_PREAMBLE}{formatted}" if formatted else ""


def latest_plot(turns: Sequence[ChatTurn]) -> str:
    """Return the newest stored plot artifact.

    User records are searched first; assistant records are the fallback for
    chats saved before plots moved onto user turns.
    """
    for wants_user in (True, False):
        for turn in reversed(turns):
            if turn.is_user == wants_user and turn.plot:
                return turn.plot
    return ""


def prune_plot_history(turns: Sequence[ChatTurn], keep_latest: int) -> int:
    """Clear all but the newest ``keep_latest`` plot artifacts.

    Args:
        turns: Chat records, oldest first. Modified in place.
        keep_latest: Plots to keep. Zero or less disables pruning.

    Returns:
        Number of plots removed.
    """
    if keep_latest <= 0:
        return 0
    indexes = [i for i, turn in enumerate(turns) if turn.plot is not None]
    if len(indexes) <= keep_latest:
        return 0
    doomed = indexes[: len(indexes) - keep_latest]
    for index in doomed:
        turns[index].plot = None
    logger.info("[history] Pruned %d stored plot(s), kept %d", len(doomed), keep_latest)
    return len(doomed)
