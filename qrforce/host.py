"""qrforce/host.py

Interfaces of the host chat platform consumed by the pipeline.

The host owns the conversation store, the knowledge books, persona text and
the managed connection profiles; the pipeline only reads them (the profile
switch is the one exception, see ``transports.profile_lease``). ``FileHost``
implements the read-only collaborators over a single JSON document so the
CLI and the tests can run without a live host.
"""

from __future__ import annotations

# Standard Library
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

# Third-Party Libraries
from pydantic import BaseModel, ConfigDict, Field

# Local Modules
from qrforce.models import Activation, ChatTurn, KnowledgeEntry, Position, Role

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True, slots=True)
class CharacterBooks:
    """Knowledge books bound to the active character."""

    primary: str | None = None
    additional: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """An opaque host-owned provider/model/credential bundle."""

    id: str
    name: str
    api: str = ""
    preset: str = ""


@runtime_checkable
class HistoryProvider(Protocol):
    def turns(self) -> list[ChatTurn]:
        """Return the conversation records, oldest first."""
        ...


@runtime_checkable
class PersonaProvider(Protocol):
    def persona_description(self) -> str: ...

    def character_description(self) -> str: ...


@runtime_checkable
class KnowledgeStore(Protocol):
    async def character_books(self) -> CharacterBooks:
        """Return the books bound to the active character."""
        ...

    async def entries(self, book_name: str) -> list[KnowledgeEntry]:
        """Return every entry of a book, enabled or not."""
        ...


@runtime_checkable
class ProfileService(Protocol):
    """The host's managed connection-profile service.

    The active profile is global host state shared with other consumers.
    """

    async def get_active_profile(self) -> str: ...

    async def set_active_profile(self, name: str) -> None:
        """Switch the active profile and wait until the switch completes."""
        ...

    def find_profile(self, profile_id: str) -> ConnectionProfile | None: ...

    async def send_request(
        self,
        profile_id: str,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
    ) -> Any: ...


# ---------------------------------------------------------------------------
# World-info entry parsing
# ---------------------------------------------------------------------------

_POSITION_INDEX: dict[int, Position] = {
    0: Position.BEFORE,
    1: Position.AFTER,
    4: Position.AT_DEPTH,
}


def _parse_position(raw: Any) -> tuple[Position, Role | None]:
    """Map a world-info position onto a Position and an optional depth role.

    Accepts the numeric form (``0`` before, ``1`` after, ``4`` at depth) and
    the named form (``before_character_definition``, ``at_depth_as_user``...).
    """
    if isinstance(raw, int) and not isinstance(raw, bool):
        return _POSITION_INDEX.get(raw, Position.OTHER), None
    name = str(raw or "").strip().lower()
    if name.startswith("before"):
        return Position.BEFORE, None
    if name.startswith("after"):
        return Position.AFTER, None
    if name.startswith("at_depth"):
        suffix = name.removeprefix("at_depth").removeprefix("_as_")
        return Position.AT_DEPTH, Role.parse(suffix) if suffix else None
    return Position.OTHER, None


def _keywords(raw: dict[str, Any]) -> frozenset[str]:
    words: list[str] = []
    for field in ("key", "keys"):
        value = raw.get(field) or []
        if isinstance(value, str):
            value = value.split(",")
        words.extend(str(word).strip() for word in value)
    return frozenset(word for word in words if word)


def parse_entry(book_name: str, raw: dict[str, Any]) -> KnowledgeEntry:
    """Build a KnowledgeEntry from a world-info style dict.

    Args:
        book_name: Name of the book the entry belongs to.
        raw: Entry dict in either the world-info file shape (``uid``,
            ``constant``, ``disable``, ``preventRecursion``...) or the
            scripting-API shape (``type``, ``enabled``, ``prevent_recursion``...).

    Returns:
        The parsed entry.
    """
    constant = bool(raw.get("constant")) or raw.get("type") == "constant"
    position, depth_role = _parse_position(raw.get("position", 0))
    if "enabled" in raw:
        enabled = bool(raw["enabled"])
    else:
        enabled = not bool(raw.get("disable", False))

    return KnowledgeEntry(
        id=int(raw.get("uid", raw.get("id", 0))),
        book_name=book_name,
        content=str(raw.get("content") or ""),
        keywords=_keywords(raw),
        activation=Activation.CONSTANT if constant else Activation.CONDITIONAL,
        position=position,
        depth=int(raw.get("depth", 4) or 0),
        role=depth_role or Role.parse(raw.get("role", 0)),
        order=int(raw.get("order", 100) or 0),
        prevent_recursion=bool(raw.get("preventRecursion", raw.get("prevent_recursion", False))),
        exclude_recursion=bool(raw.get("excludeRecursion", raw.get("exclude_recursion", False))),
        enabled=enabled,
    )


def parse_book(book_name: str, raw: Any) -> list[KnowledgeEntry]:
    """Parse a whole book: ``{"entries": {uid: entry}}`` or a list of entries."""
    if isinstance(raw, dict):
        raw = raw.get("entries", raw)
    if isinstance(raw, dict):
        raw = list(raw.values())
    return [parse_entry(book_name, item) for item in raw or [] if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# JSON-file host
# ---------------------------------------------------------------------------


class ChatRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field("", alias="mes")
    name: str = ""
    is_user: bool = False
    is_system: bool = False
    plot: str | None = Field(None, alias="qrf_plot")


class BookBinding(BaseModel):
    primary: str | None = None
    additional: list[str] = Field(default_factory=list)


class HostDocument(BaseModel):
    """Schema of the JSON file read by FileHost."""

    persona: str = ""
    character: str = ""
    chat: list[ChatRecord] = Field(default_factory=list)
    character_books: BookBinding = Field(default_factory=BookBinding)
    books: dict[str, Any] = Field(default_factory=dict)


class FileHost:
    """Read-only host collaborators backed by one JSON document."""

    def __init__(self, document: HostDocument) -> None:
        self.document = document
        self._turns: list[ChatTurn] = [
            ChatTurn(
                text=record.text,
                is_user=record.is_user,
                name=record.name,
                is_system=record.is_system,
                plot=record.plot,
            )
            for record in document.chat
        ]
        self._books: dict[str, list[KnowledgeEntry]] = {
            name: parse_book(name, raw) for name, raw in document.books.items()
        }

    @classmethod
    def from_file(cls, path: str | Path) -> "FileHost":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        host = cls(HostDocument.model_validate(data))
        logger.info(
            "[host] Loaded %s: %d chat record(s), %d book(s)",
            path,
            len(host._turns),
            len(host._books),
        )
        return host

    def turns(self) -> list[ChatTurn]:
        return self._turns

    def add_turn(self, turn: ChatTurn) -> None:
        self._turns.append(turn)

    def persona_description(self) -> str:
        return self.document.persona.strip()

    def character_description(self) -> str:
        return self.document.character.strip()

    async def character_books(self) -> CharacterBooks:
        binding = self.document.character_books
        return CharacterBooks(primary=binding.primary, additional=tuple(binding.additional))

    async def entries(self, book_name: str) -> list[KnowledgeEntry]:
        return list(self._books.get(book_name, []))
