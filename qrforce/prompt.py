"""qrforce/prompt.py

Prompt assembly: core prompts plus the jailbreak sequence.

Core prompts are built from two templates. The "main" template becomes a
system message and the "system" template becomes a user message.

Two assembly modes:
  classic    jailbreak entries surround the core prompts; the entry whose
             content is exactly ``$CORE_PROMPTS`` marks where they go, and
             without such an entry they are appended at the end.
  jailbreak  jailbreak entries are used alone; the sentinel is skipped and
             the core prompts are dropped.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import Sequence

# Local Modules
from qrforce.config import GenerationSettings, JailbreakPrompt, PromptMode
from qrforce.errors import EmptyPromptError
from qrforce.models import Message, Role
from qrforce.placeholders import PlaceholderResolver, Substitutions, uses_history_placeholder

logger = logging.getLogger(__name__)

CORE_PROMPTS_TOKEN: str = "$CORE_PROMPTS"


class PromptAssembler:
    """Build the ordered message list sent to a model."""

    def __init__(self, resolver: PlaceholderResolver, *, core_token: str = CORE_PROMPTS_TOKEN) -> None:
        self.resolver = resolver
        self.core_token = core_token

    def _is_sentinel(self, prompt: JailbreakPrompt) -> bool:
        return prompt.content.strip() == self.core_token

    def _jailbreak_message(self, prompt: JailbreakPrompt) -> Message | None:
        content = self.resolver.resolve(prompt.content)
        if not content.strip():
            return None
        return Message(role=prompt.role, content=content)

    def core_messages(self, main_prompt: str, system_prompt: str) -> list[Message]:
        """Build the core prompt messages.

        When neither template uses ``$7`` the formatted history is injected as
        its own system message after the main prompt.
        """
        messages: list[Message] = []

        main = self.resolver.resolve(main_prompt)
        if main.strip():
            messages.append(Message(role=Role.SYSTEM, content=main))

        history = self.resolver.substitutions.history
        if history and not (
            uses_history_placeholder(main_prompt) or uses_history_placeholder(system_prompt)
        ):
            messages.append(Message(role=Role.SYSTEM, content=history))

        system = self.resolver.resolve(system_prompt)
        if system.strip():
            messages.append(Message(role=Role.USER, content=system))

        return messages

    def assemble(
        self,
        main_prompt: str,
        system_prompt: str,
        jailbreak_prompts: Sequence[JailbreakPrompt] = (),
        mode: PromptMode = PromptMode.CLASSIC,
    ) -> list[Message]:
        """Assemble the final message list.

        Args:
            main_prompt: Template for the leading system message.
            system_prompt: Template for the trailing user message.
            jailbreak_prompts: Ordered jailbreak sequence; disabled entries are
                skipped and entries that resolve to blank text are dropped.
            mode: Classic or jailbreak-only assembly.

        Returns:
            The ordered, non-empty message list.

        Raises:
            EmptyPromptError: Nothing survived assembly.
        """
        enabled = [prompt for prompt in jailbreak_prompts if prompt.enabled]
        messages: list[Message] = []

        if mode is PromptMode.JAILBREAK:
            for prompt in enabled:
                if self._is_sentinel(prompt):
                    continue
                message = self._jailbreak_message(prompt)
                if message is not None:
                    messages.append(message)
        else:
            core = self.core_messages(main_prompt, system_prompt)
            inserted = False
            for prompt in enabled:
                if self._is_sentinel(prompt):
                    messages.extend(core)
                    inserted = True
                    continue
                message = self._jailbreak_message(prompt)
                if message is not None:
                    messages.append(message)
            if not inserted:
                messages.extend(core)

        if not messages:
            raise EmptyPromptError(
                "Prompt configuration is empty or every prompt was filtered out."
            )
        logger.debug("[prompt] Assembled %d message(s) in %s mode", len(messages), mode.value)
        return messages


def assemble_prompt(settings: GenerationSettings, substitutions: Substitutions) -> list[Message]:
    """Assemble the prompt described by a settings snapshot."""
    resolver = PlaceholderResolver(substitutions, worldbook_enabled=settings.worldbook_enabled)
    return PromptAssembler(resolver).assemble(
        settings.main_prompt,
        settings.system_prompt,
        settings.jailbreak_prompts,
        settings.prompt_mode,
    )
