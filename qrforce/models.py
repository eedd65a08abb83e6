"""qrforce/models.py

Shared value types: chat messages, host chat records and knowledge entries.
"""

from __future__ import annotations

# Standard Library
import dataclasses
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Chat message role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Any, default: "Role | None" = None) -> "Role":
        """Map a role name or world-info role index onto a Role.

        World-info files store the injection role as ``0`` (system),
        ``1`` (user) or ``2`` (assistant).
        """
        if isinstance(value, Role):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return _ROLE_INDEX.get(value, default or cls.SYSTEM)
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.SYSTEM


_ROLE_INDEX: dict[int, Role] = {0: Role.SYSTEM, 1: Role.USER, 2: Role.ASSISTANT}


class Activation(str, Enum):
    """How a knowledge entry becomes active."""

    CONSTANT = "constant"
    CONDITIONAL = "conditional"


class Position(str, Enum):
    """Where an activated entry is rendered relative to the conversation."""

    BEFORE = "before"
    AT_DEPTH = "at_depth"
    AFTER = "after"
    OTHER = "other"


@dataclasses.dataclass(frozen=True, slots=True)
class Message:
    """One message of the prompt sent to a model. Never mutated."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclasses.dataclass(slots=True)
class ChatTurn:
    """A conversation record as stored by the host chat platform.

    Attributes:
        text: Message body, possibly containing HTML.
        is_user: True for user turns, False for assistant turns.
        name: Display name of the speaker.
        is_system: Host-generated notices that never reach the model.
        plot: Prior-turn planning artifact stored alongside the record.
    """

    text: str
    is_user: bool = False
    name: str = ""
    is_system: bool = False
    plot: str | None = None

    @property
    def role(self) -> Role:
        return Role.USER if self.is_user else Role.ASSISTANT


@dataclasses.dataclass(frozen=True, slots=True)
class KnowledgeEntry:
    """A single trigger-gated snippet from a knowledge book.

    Read-only to the resolver; two entries are the same entry when they share
    ``book_name`` and ``id``.
    """

    id: int
    book_name: str
    content: str
    keywords: frozenset[str] = frozenset()
    activation: Activation = Activation.CONDITIONAL
    position: Position = Position.BEFORE
    depth: int = 4
    role: Role = Role.SYSTEM
    order: int = 100
    prevent_recursion: bool = False
    exclude_recursion: bool = False
    enabled: bool = True

    @property
    def key(self) -> tuple[str, int]:
        return (self.book_name, self.id)

    @property
    def is_constant(self) -> bool:
        return self.activation is Activation.CONSTANT
