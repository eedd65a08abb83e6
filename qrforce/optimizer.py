"""qrforce/optimizer.py

Content optimization pass over a finished assistant reply.

The block inside the configured target tag of the newest assistant record is
sent back to the provider together with the recent dialogue. The provider's
reply replaces the inner text of that block; when the reply carries no usable
target tag the original text is kept.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import Sequence

# Local Modules
from qrforce.config import GenerationSettings
from qrforce.history import find_tag_block, replace_tag_content
from qrforce.models import ChatTurn, Message, Role
from qrforce.placeholders import PlaceholderResolver, Substitutions

logger = logging.getLogger(__name__)

DEFAULT_TARGET_TAG: str = "div"
DEFAULT_USER_NAME: str = "User"
DEFAULT_CHARACTER_NAME: str = "Character"
CONTEXT_HEADER: str = "[Context reference]:\n"
CORE_HEADER: str = "[Content to process]:\n"


def target_tag(settings: GenerationSettings) -> str:
    return settings.optimization_target_tag.strip().strip("<>/") or DEFAULT_TARGET_TAG


def extract_target_block(text: str, tag: str) -> str:
    """Return the full target block, or an empty string when it is missing or blank."""
    match = find_tag_block(text, tag)
    if match is None or not match.group(1).strip():
        return ""
    return match.group(0)


def merge_optimized(original: str, reply: str, tag: str) -> str:
    """Put the inner text of the reply's target block into ``original``.

    Returns:
        The rewritten text, or ``original`` when the reply has no non-empty
        target block.
    """
    match = find_tag_block(reply, tag)
    if match is None or not match.group(1).strip():
        logger.warning("[optimize] Reply has no usable <%s> block; keeping the original", tag)
        return original
    return replace_tag_content(original, tag, match.group(1))


def build_optimization_messages(
    settings: GenerationSettings,
    message: ChatTurn,
    context: Sequence[ChatTurn],
    block: str,
    *,
    persona: str = "",
    character: str = "",
) -> list[Message]:
    """Assemble the optimization request.

    Args:
        settings: Supplies the main and system templates.
        message: Assistant record being optimized.
        context: Surrounding chat records, oldest first.
        block: Full target block extracted from ``message``.
        persona: Persona description for ``$U``.
        character: Character description for ``$C``.

    Returns:
        Both templates as system messages, then the dialogue context and the
        core content as user messages.
    """
    resolver = PlaceholderResolver(Substitutions(persona=persona, character=character))
    messages: list[Message] = []
    for template in (settings.main_prompt, settings.system_prompt):
        content = resolver.resolve(template).strip()
        if content:
            messages.append(Message(role=Role.SYSTEM, content=content))

    users = [turn for turn in context if turn.is_user and not turn.is_system]
    last_user = users[-1] if users else None
    user_name = (last_user.name if last_user else "") or DEFAULT_USER_NAME
    char_name = message.name or DEFAULT_CHARACTER_NAME

    lines = [
        f"{user_name if turn.is_user else char_name}: {turn.text.strip()}"
        for turn in context
        if not turn.is_system and turn.text.strip()
    ]
    if lines:
        messages.append(Message(role=Role.USER, content=CONTEXT_HEADER + "\n".join(lines)))

    core = f"{char_name}: {block}"
    if last_user is not None:
        core = f"{user_name}: {last_user.text}\n{core}"
    messages.append(Message(role=Role.USER, content=CORE_HEADER + core))
    return messages
