"""qrforce/lore.py

Knowledge activation resolver.

Decides which knowledge-base entries are in scope for the current turn and
renders them into one text block:

  1. Constant entries are always active.
  2. Conditional entries activate when one of their keywords occurs in the
     scan corpus. The corpus is the recent chat text plus the content of
     every active entry that does not prevent recursion, so one activation
     can chain into the next. Entries flagged ``exclude_recursion`` only ever
     match against the chat text.
  3. Activation runs as a worklist until a pass adds nothing. The entry set
     is finite and only grows, so it terminates within ``len(entries)``
     passes.
  4. Active entries are ordered by position (before, at depth, after, other)
     and joined, then strip patterns and the character limit are applied.

Resolution is best-effort: any failure yields an empty block so knowledge
lookup never blocks generation.
"""

from __future__ import annotations

# Standard Library
import logging
import re
from collections.abc import Iterable, Sequence

# Local Modules
from qrforce.config import GenerationSettings, WorldbookSource
from qrforce.host import KnowledgeStore
from qrforce.models import ChatTurn, KnowledgeEntry, Position

logger = logging.getLogger(__name__)

ENTRY_SEPARATOR: str = "\n\n---\n\n"

_REGEX_LITERAL: re.Pattern[str] = re.compile(r"^/([\s\S]+)/([a-z]*)$", re.IGNORECASE)

# JavaScript regex flags that have a Python counterpart; ``g`` is implied.
_JS_FLAGS: dict[str, re.RegexFlag] = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


# ---------------------------------------------------------------------------
# Strip patterns
# ---------------------------------------------------------------------------


def parse_strip_pattern(line: str) -> re.Pattern[str] | None:
    """Compile one strip-pattern setting line.

    Args:
        line: Either a ``/pattern/flags`` literal or a bare pattern.

    Returns:
        The compiled pattern, or ``None`` for blank or invalid lines.
    """
    text = line.strip()
    if not text:
        return None
    literal = _REGEX_LITERAL.match(text)
    flags = 0
    if literal:
        text = literal.group(1)
        for flag in literal.group(2).lower():
            flags |= _JS_FLAGS.get(flag, 0)
    try:
        return re.compile(text, flags)
    except re.error as exc:
        logger.warning("[lore] Invalid strip pattern %r: %s", line, exc)
        return None


def strip_content(text: str, patterns: Iterable[str]) -> str:
    """Remove every match of the strip patterns and collapse blank lines."""
    if not text:
        return ""
    for line in patterns:
        pattern = parse_strip_pattern(line)
        if pattern is not None:
            text = pattern.sub("\n", text)
    text = text.replace("\r\n", "\n")
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def truncate(text: str, limit: int) -> str:
    """Keep the first ``limit`` characters. ``0`` or less disables the limit."""
    if limit > 0 and len(text) > limit:
        logger.info("[lore] Knowledge block (%d chars) exceeds limit (%d chars), truncating", len(text), limit)
        return text[:limit]
    return text


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def _normalize_names(names: Iterable[str | None]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        clean = str(name or "").strip()
        if clean:
            seen.setdefault(clean, None)
    return list(seen)


def build_scan_text(turns: Sequence[ChatTurn], user_message: str = "") -> str:
    """Join every chat record plus the pending user message, case-folded.

    The pending message may not be in the host's chat store yet when the
    generation is triggered, so it is appended explicitly.
    """
    parts = [turn.text for turn in turns if turn.text]
    if user_message:
        parts.append(user_message)
    return "\n".join(parts).lower()


def activate(entries: Sequence[KnowledgeEntry], recent_text: str) -> list[KnowledgeEntry]:
    """Run the constant + recursive keyword activation to a fixed point.

    Args:
        entries: Candidate entries, already filtered to enabled ones.
        recent_text: Case-folded chat window.

    Returns:
        Active entries in activation order, each exactly once.
    """
    active: dict[tuple[str, int], KnowledgeEntry] = {}
    pending: list[KnowledgeEntry] = []
    seen: set[tuple[str, int]] = set()
    for entry in entries:
        if entry.key in seen:
            continue
        seen.add(entry.key)
        if entry.is_constant:
            active[entry.key] = entry
        else:
            pending.append(entry)

    keywords = {entry.key: [kw.lower() for kw in entry.keywords] for entry in pending}

    passes = 0
    while pending:
        passes += 1
        recursion_source = "\n".join(
            entry.content for entry in active.values() if not entry.prevent_recursion
        ).lower()
        full_text = f"{recent_text}\n{recursion_source}"

        still_pending: list[KnowledgeEntry] = []
        for entry in pending:
            corpus = recent_text if entry.exclude_recursion else full_text
            if any(kw in corpus for kw in keywords[entry.key]):
                active[entry.key] = entry
            else:
                still_pending.append(entry)

        if len(still_pending) == len(pending):
            break
        pending = still_pending

    logger.debug("[lore] %d entr(ies) active after %d pass(es)", len(active), passes)
    return list(active.values())


def order_entries(entries: Iterable[KnowledgeEntry]) -> list[KnowledgeEntry]:
    """Order active entries for rendering.

    ``before`` entries come first sorted by ``(order, id)``; ``at_depth``
    entries follow, bucketed by ``(depth, role)`` with deeper buckets first
    and ties broken by role name; then ``after`` entries, then any other
    position.
    """
    groups: dict[Position, list[KnowledgeEntry]] = {position: [] for position in Position}
    for entry in entries:
        groups[entry.position].append(entry)

    def by_order(entry: KnowledgeEntry) -> tuple[int, int]:
        return (entry.order, entry.id)

    ordered = sorted(groups[Position.BEFORE], key=by_order)
    ordered.extend(
        sorted(
            groups[Position.AT_DEPTH],
            key=lambda e: (-e.depth, e.role.value, e.order, e.id),
        )
    )
    ordered.extend(sorted(groups[Position.AFTER], key=by_order))
    ordered.extend(sorted(groups[Position.OTHER], key=by_order))
    return ordered


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class KnowledgeResolver:
    """Select, activate, order and render knowledge entries for one turn."""

    def __init__(self, settings: GenerationSettings) -> None:
        self.settings = settings

    @property
    def strip_patterns(self) -> list[str]:
        if not self.settings.worldbook_strip_enabled:
            return []
        return self.settings.worldbook_strip_patterns.split("\n")

    async def select_books(self, store: KnowledgeStore) -> list[str]:
        """Resolve the book names to scan from the configured source."""
        source = self.settings.worldbook_source
        if source is WorldbookSource.MANUAL:
            return _normalize_names(self.settings.selected_worldbooks)

        bound = await store.character_books()
        names: list[str | None] = [bound.primary, *bound.additional]
        if source is WorldbookSource.BOTH:
            names.extend(self.settings.additional_worldbooks)
        return _normalize_names(names)

    async def collect(self, store: KnowledgeStore, books: Sequence[str]) -> list[KnowledgeEntry]:
        """Load the entries of every book, dropping disabled ones."""
        disabled = self.settings.disabled_worldbook_entries
        collected: list[KnowledgeEntry] = []
        for book in books:
            blocked = set(disabled.get(book, []))
            for entry in await store.entries(book):
                if entry.enabled and entry.id not in blocked:
                    collected.append(entry)
        return collected

    def render(self, entries: Iterable[KnowledgeEntry]) -> str:
        """Join entry contents, apply strip patterns and the character limit."""
        contents = [entry.content.strip() for entry in entries]
        combined = ENTRY_SEPARATOR.join(content for content in contents if content)
        if not combined:
            return ""
        stripped = strip_content(combined, self.strip_patterns)
        return truncate(stripped, self.settings.worldbook_char_limit)

    def resolve(self, entries: Sequence[KnowledgeEntry], recent_text: str) -> str:
        """Activate, order and render a set of enabled entries.

        Returns:
            The rendered block, or an empty string on any failure.
        """
        try:
            if not entries:
                return ""
            return self.render(order_entries(activate(entries, recent_text)))
        except Exception as exc:
            logger.error("[lore] Knowledge resolution failed: %s", exc, exc_info=True)
            return ""

    async def resolve_for_turn(
        self,
        store: KnowledgeStore | None,
        turns: Sequence[ChatTurn],
        user_message: str = "",
    ) -> str:
        """Full best-effort resolution for the pending turn.

        Args:
            store: Host knowledge store; ``None`` disables knowledge.
            turns: Conversation records used as the scan window.
            user_message: The pending user message.

        Returns:
            The rendered knowledge block, or an empty string when knowledge is
            disabled, no books are selected, nothing activates, or anything
            fails.
        """
        if not self.settings.worldbook_enabled or store is None:
            return ""
        try:
            books = await self.select_books(store)
            if not books:
                return ""
            entries = await self.collect(store, books)
            block = self.resolve(entries, build_scan_text(turns, user_message))
            logger.info("[lore] books=%s entries=%d block=%d chars", books, len(entries), len(block))
            return block
        except Exception as exc:
            logger.error("[lore] Knowledge lookup failed: %s", exc, exc_info=True)
            return ""
