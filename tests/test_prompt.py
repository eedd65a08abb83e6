"""tests/test_prompt.py

Unit tests for prompt assembly (qrforce/prompt.py).
"""

from __future__ import annotations

# Third-Party Libraries
import pytest

# Local Modules
from qrforce.config import JailbreakPrompt, PromptMode
from qrforce.errors import EmptyPromptError
from qrforce.models import Message, Role
from qrforce.placeholders import PlaceholderResolver, Substitutions
from qrforce.prompt import CORE_PROMPTS_TOKEN, PromptAssembler, assemble_prompt


def _assembler(**values: str) -> PromptAssembler:
    return PromptAssembler(PlaceholderResolver(Substitutions(**values)))


def _jb(content: str, role: Role = Role.SYSTEM, enabled: bool = True) -> JailbreakPrompt:
    return JailbreakPrompt(name="jb", role=role, content=content, enabled=enabled)


class TestCoreMessages:
    """Test suite for the core prompt pair."""

    def test_main_is_system_and_system_is_user(self) -> None:
        """Test the main template leads as system and the system template follows as user."""
        messages = _assembler().core_messages("main", "sys")
        assert messages == [
            Message(role=Role.SYSTEM, content="main"),
            Message(role=Role.USER, content="sys"),
        ]

    def test_history_injected_when_not_referenced(self) -> None:
        """Test history becomes its own system message when no template uses $7."""
        messages = _assembler(history="HISTORY").core_messages("main", "sys")
        assert [m.content for m in messages] == ["main", "HISTORY", "sys"]
        assert messages[1].role is Role.SYSTEM

    def test_history_not_duplicated_when_referenced(self) -> None:
        """Test history is only substituted in place when a template uses $7."""
        messages = _assembler(history="HISTORY").core_messages("main", "ctx: $7")
        assert [m.content for m in messages] == ["main", "ctx: HISTORY"]

    def test_blank_templates_are_dropped(self) -> None:
        """Test templates that resolve to whitespace produce no message."""
        assert _assembler().core_messages("  $1 ", "") == []


class TestAssemble:
    """Test suite for PromptAssembler.assemble."""

    def test_classic_without_sentinel_appends_core(self) -> None:
        """Test core prompts go after the jailbreak entries when no sentinel exists."""
        messages = _assembler().assemble("main", "sys", [_jb("pre")], PromptMode.CLASSIC)
        assert [m.content for m in messages] == ["pre", "main", "sys"]

    def test_classic_sentinel_positions_core(self) -> None:
        """Test the sentinel entry marks where the core prompts are inserted."""
        sequence = [_jb("before"), _jb(f"  {CORE_PROMPTS_TOKEN}  "), _jb("after", Role.ASSISTANT)]
        messages = _assembler().assemble("main", "sys", sequence)
        assert [m.content for m in messages] == ["before", "main", "sys", "after"]
        assert messages[-1].role is Role.ASSISTANT

    def test_jailbreak_mode_drops_core(self) -> None:
        """Test jailbreak mode uses the sequence alone and skips the sentinel."""
        sequence = [_jb("one"), _jb(CORE_PROMPTS_TOKEN), _jb("two")]
        messages = _assembler().assemble("main", "sys", sequence, PromptMode.JAILBREAK)
        assert [m.content for m in messages] == ["one", "two"]

    def test_disabled_and_blank_entries_skipped(self) -> None:
        """Test disabled entries and entries resolving to blank text are dropped."""
        sequence = [_jb("off", enabled=False), _jb("$6"), _jb("on")]
        messages = _assembler().assemble("", "", sequence)
        assert [m.content for m in messages] == ["on"]

    def test_disabled_sentinel_appends_core(self) -> None:
        """Test a disabled sentinel does not position the core prompts."""
        sequence = [_jb(CORE_PROMPTS_TOKEN, enabled=False), _jb("tail")]
        messages = _assembler().assemble("main", "", sequence)
        assert [m.content for m in messages] == ["tail", "main"]

    def test_jailbreak_entries_resolve_placeholders(self) -> None:
        """Test placeholders are substituted inside jailbreak entries."""
        messages = _assembler(persona="Ann").assemble("", "", [_jb("I am $U")])
        assert messages[0].content == "I am Ann"

    def test_empty_configuration_raises(self) -> None:
        """Test an empty assembly raises EmptyPromptError."""
        with pytest.raises(EmptyPromptError):
            _assembler().assemble("", "", [])

    def test_jailbreak_mode_with_only_sentinel_raises(self) -> None:
        """Test jailbreak mode with nothing but the sentinel is empty."""
        with pytest.raises(EmptyPromptError):
            _assembler().assemble("main", "sys", [_jb(CORE_PROMPTS_TOKEN)], PromptMode.JAILBREAK)


class TestAssemblePrompt:
    """Test suite for assemble_prompt over a settings snapshot."""

    def test_uses_settings_templates(self, make_settings) -> None:
        """Test templates and the knowledge switch come from settings."""
        settings = make_settings(main_prompt="M $1", system_prompt="S $U", worldbook_enabled=False)
        messages = assemble_prompt(settings, Substitutions(worldbook="lore", persona="Ann"))
        assert [m.content for m in messages] == ["M ", "S Ann"]

    def test_default_templates_embed_knowledge(self, make_settings) -> None:
        """Test the default main template carries the knowledge block."""
        settings = make_settings(worldbook_enabled=True)
        messages = assemble_prompt(settings, Substitutions(worldbook="The keeper lies."))
        assert "<worldbook_context>\nThe keeper lies.\n</worldbook_context>" in messages[0].content
        assert messages[0].role is Role.SYSTEM
        assert messages[-1].role is Role.USER
