"""tests/test_lore.py

Unit tests for knowledge activation (qrforce/lore.py).
Covers recursion to a fixed point, ordering, strip patterns, the character
limit and book selection.
"""

from __future__ import annotations

# Standard Library
import asyncio
import re

# Third-Party Libraries
import pytest

# Local Modules
from conftest import FakeKnowledgeStore, make_entry
from qrforce.config import WorldbookSource
from qrforce.host import CharacterBooks
from qrforce.lore import (
    ENTRY_SEPARATOR,
    KnowledgeResolver,
    activate,
    build_scan_text,
    order_entries,
    parse_strip_pattern,
    strip_content,
    truncate,
)
from qrforce.models import ChatTurn, Position, Role


class TestActivate:
    """Test suite for the activation fixed point."""

    def test_constant_entries_always_active(self) -> None:
        """Test constants activate with no keyword match."""
        entries = [make_entry(1, "always", constant=True), make_entry(2, "never", ("zzz",))]
        assert [e.id for e in activate(entries, "hello")] == [1]

    def test_keyword_match_is_case_folded(self) -> None:
        """Test keywords match the case-folded chat window."""
        entries = [make_entry(1, "harbor lore", ("Harbor",))]
        scan = build_scan_text([ChatTurn(text="The HARBOR at night")])
        assert [e.id for e in activate(entries, scan)] == [1]

    def test_recursive_chain(self) -> None:
        """Test an active entry's content can activate the next entry."""
        entries = [
            make_entry(3, "the end", ("lantern",)),
            make_entry(2, "it holds a lantern", ("keeper",)),
            make_entry(1, "the keeper lives here", ("lighthouse",)),
        ]
        active = activate(entries, "we see the lighthouse")
        assert {e.id for e in active} == {1, 2, 3}

    def test_prevent_recursion_content_not_scanned(self) -> None:
        """Test an entry flagged prevent_recursion does not feed the corpus."""
        entries = [
            make_entry(1, "mentions dragon", ("castle",), prevent_recursion=True),
            make_entry(2, "dragon lore", ("dragon",)),
        ]
        assert [e.id for e in activate(entries, "a castle")] == [1]

    def test_exclude_recursion_matches_chat_only(self) -> None:
        """Test an exclude_recursion entry ignores other entries' content."""
        entries = [
            make_entry(1, "mentions dragon", constant=True),
            make_entry(2, "dragon lore", ("dragon",), exclude_recursion=True),
        ]
        assert [e.id for e in activate(entries, "quiet day")] == [1]
        assert {e.id for e in activate(entries, "a dragon appears")} == {1, 2}

    def test_mutual_recursion_terminates_without_duplicates(self) -> None:
        """Test a keyword cycle terminates and activates each entry once."""
        entries = [
            make_entry(1, "see beta", ("alpha",)),
            make_entry(2, "see alpha", ("beta",)),
            make_entry(1, "see beta", ("alpha",)),
        ]
        active = activate(entries, "alpha")
        assert sorted(e.id for e in active) == [1, 2]

    def test_same_id_in_different_books_are_distinct(self) -> None:
        """Test identity is the (book, id) pair."""
        entries = [make_entry(1, "a", constant=True, book="x"), make_entry(1, "b", constant=True, book="y")]
        assert len(activate(entries, "")) == 2

    def test_long_chain_terminates(self) -> None:
        """Test a chain of n entries terminates within n passes."""
        n = 50
        entries = [make_entry(i, f"key{i + 1}", (f"key{i}",)) for i in range(n)]
        active = activate(entries, "key0")
        assert len(active) == n
        assert len({e.key for e in active}) == n


class TestOrderEntries:
    """Test suite for position ordering."""

    def test_before_at_depth_after(self) -> None:
        """Test before precedes at-depth which precedes after."""
        entries = [
            make_entry(1, "after", position=Position.AFTER, order=1),
            make_entry(2, "depth", position=Position.AT_DEPTH, order=1),
            make_entry(3, "before", position=Position.BEFORE, order=50),
            make_entry(4, "other", position=Position.OTHER),
        ]
        assert [e.content for e in order_entries(entries)] == ["before", "depth", "after", "other"]

    def test_before_sorted_by_order_then_id(self) -> None:
        entries = [
            make_entry(9, "c", order=20),
            make_entry(2, "b", order=10),
            make_entry(1, "a", order=10),
        ]
        assert [e.content for e in order_entries(entries)] == ["a", "b", "c"]

    def test_depth_buckets_deeper_first(self) -> None:
        """Test at-depth buckets are ordered by descending depth, then role."""
        entries = [
            make_entry(1, "shallow", position=Position.AT_DEPTH, depth=1),
            make_entry(2, "deep-user", position=Position.AT_DEPTH, depth=6, role=Role.USER),
            make_entry(3, "deep-assistant", position=Position.AT_DEPTH, depth=6, role=Role.ASSISTANT),
        ]
        assert [e.content for e in order_entries(entries)] == ["deep-assistant", "deep-user", "shallow"]

    def test_rendered_block_respects_ordering(self) -> None:
        """Test before content precedes at-depth content which precedes after content."""
        entries = [
            make_entry(1, "AFTER", constant=True, position=Position.AFTER),
            make_entry(2, "DEPTH", constant=True, position=Position.AT_DEPTH),
            make_entry(3, "BEFORE", constant=True),
        ]
        block = ENTRY_SEPARATOR.join(e.content for e in order_entries(activate(entries, "")))
        assert block.index("BEFORE") < block.index("DEPTH") < block.index("AFTER")


class TestStripPatterns:
    """Test suite for strip-pattern parsing and application."""

    def test_literal_with_flags(self) -> None:
        pattern = parse_strip_pattern("/<Secret>.*?<\\/Secret>/gis")
        assert pattern is not None
        assert pattern.flags & re.IGNORECASE
        assert pattern.flags & re.DOTALL

    def test_bare_pattern(self) -> None:
        pattern = parse_strip_pattern("foo+")
        assert pattern is not None and pattern.search("fooo")

    def test_invalid_pattern_is_skipped(self) -> None:
        """Test an invalid pattern is ignored rather than raising."""
        assert parse_strip_pattern("/([/g") is None
        assert strip_content("keep (this)", ["/([/g"]) == "keep (this)"

    def test_blank_line_is_skipped(self) -> None:
        assert parse_strip_pattern("   ") is None

    def test_strip_collapses_blank_lines(self) -> None:
        """Test removed blocks leave at most one blank line."""
        text = "a\r\n<x>hidden</x>\n\n\nb"
        assert strip_content(text, ["/<x>[\\s\\S]*?<\\/x>/g"]) == "a\n\nb"

    def test_default_patterns_remove_outline_index(self, make_settings) -> None:
        """Test the default patterns remove the outline index block."""
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=True))
        text = "lore\n<plot_outline_index>\nA1: x\n</plot_outline_index>\nmore"
        assert strip_content(text, resolver.strip_patterns) == "lore\n\nmore"

    def test_strip_disabled(self, make_settings) -> None:
        resolver = KnowledgeResolver(make_settings(worldbook_strip_enabled=False))
        assert resolver.strip_patterns == []


class TestTruncate:
    """Test suite for the character limit."""

    def test_keeps_head(self) -> None:
        assert truncate("abcdef", 3) == "abc"

    def test_non_positive_limit_disables(self) -> None:
        assert truncate("abcdef", 0) == "abcdef"

    def test_under_limit_unchanged(self) -> None:
        assert truncate("abc", 10) == "abc"


class TestKnowledgeResolver:
    """Test suite for KnowledgeResolver over a knowledge store."""

    def test_character_books_selected(self, make_settings) -> None:
        """Test character mode uses the primary and additional bound books."""
        store = FakeKnowledgeStore({}, CharacterBooks(primary=" main ", additional=("extra", "main")))
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=True))
        assert asyncio.run(resolver.select_books(store)) == ["main", "extra"]

    def test_manual_books_selected(self, make_settings) -> None:
        store = FakeKnowledgeStore({}, CharacterBooks(primary="main"))
        settings = make_settings(
            worldbook_source=WorldbookSource.MANUAL, selected_worldbooks=["a", "", "b", "a"]
        )
        assert asyncio.run(KnowledgeResolver(settings).select_books(store)) == ["a", "b"]

    def test_both_merges_books(self, make_settings) -> None:
        store = FakeKnowledgeStore({}, CharacterBooks(primary="main"))
        settings = make_settings(worldbook_source=WorldbookSource.BOTH, additional_worldbooks=["side"])
        assert asyncio.run(KnowledgeResolver(settings).select_books(store)) == ["main", "side"]

    def test_resolve_for_turn_renders_active_entries(self, make_settings) -> None:
        """Test the full path from store to rendered block."""
        store = FakeKnowledgeStore(
            {
                "main": [
                    make_entry(1, "Constant fact.", constant=True, book="main"),
                    make_entry(2, "Keeper fact.", ("keeper",), book="main"),
                    make_entry(3, "Disabled fact.", constant=True, book="main", enabled=False),
                    make_entry(4, "Blocked fact.", constant=True, book="main"),
                ]
            },
            CharacterBooks(primary="main"),
        )
        settings = make_settings(worldbook_enabled=True, disabled_worldbook_entries={"main": [4]})
        block = asyncio.run(
            KnowledgeResolver(settings).resolve_for_turn(store, [], "where is the Keeper?")
        )
        assert block == f"Constant fact.{ENTRY_SEPARATOR}Keeper fact."

    def test_pending_message_is_scanned(self, make_settings) -> None:
        """Test the pending message activates entries before it is stored."""
        store = FakeKnowledgeStore(
            {"main": [make_entry(1, "Fog fact.", ("fog",), book="main")]},
            CharacterBooks(primary="main"),
        )
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=True))
        turns = [ChatTurn(text="nothing here", is_user=True)]
        assert asyncio.run(resolver.resolve_for_turn(store, turns, "")) == ""
        assert asyncio.run(resolver.resolve_for_turn(store, turns, "the fog")) == "Fog fact."

    def test_char_limit_applied(self, make_settings) -> None:
        store = FakeKnowledgeStore(
            {"main": [make_entry(1, "x" * 100, constant=True, book="main")]},
            CharacterBooks(primary="main"),
        )
        settings = make_settings(worldbook_enabled=True, worldbook_char_limit=10)
        assert asyncio.run(KnowledgeResolver(settings).resolve_for_turn(store, [], "")) == "x" * 10

    def test_disabled_knowledge_returns_empty(self, make_settings) -> None:
        store = FakeKnowledgeStore(
            {"main": [make_entry(1, "fact", constant=True, book="main")]},
            CharacterBooks(primary="main"),
        )
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=False))
        assert asyncio.run(resolver.resolve_for_turn(store, [], "")) == ""

    def test_no_books_returns_empty(self, make_settings) -> None:
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=True))
        assert asyncio.run(resolver.resolve_for_turn(FakeKnowledgeStore({}), [], "")) == ""

    def test_store_failure_returns_empty(self, make_settings) -> None:
        """Test a failing store never blocks generation."""

        class BrokenStore(FakeKnowledgeStore):
            async def entries(self, book_name: str):
                raise RuntimeError("store offline")

        store = BrokenStore({}, CharacterBooks(primary="main"))
        resolver = KnowledgeResolver(make_settings(worldbook_enabled=True))
        assert asyncio.run(resolver.resolve_for_turn(store, [], "")) == ""


@pytest.mark.parametrize(
    ("flags", "expected"),
    [("i", re.IGNORECASE), ("m", re.MULTILINE), ("s", re.DOTALL)],
)
def test_flag_mapping(flags: str, expected: re.RegexFlag) -> None:
    """Test each supported flag letter maps to its Python flag."""
    pattern = parse_strip_pattern(f"/abc/{flags}")
    assert pattern is not None and pattern.flags & expected
