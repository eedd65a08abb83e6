"""tests/conftest.py

Pytest configuration and shared fixtures for the qrforce test suite.
"""

from __future__ import annotations

# Standard Library
import json
from collections.abc import Callable
from typing import Any

# Third-Party Libraries
import httpx
import pytest

# Local Modules
from qrforce.config import GenerationSettings
from qrforce.errors import NoticeKind
from qrforce.host import CharacterBooks, ConnectionProfile
from qrforce.models import Activation, ChatTurn, KnowledgeEntry


class RecordingNotifier:
    """Notifier that keeps every notice for assertions."""

    def __init__(self) -> None:
        self.notices: list[tuple[NoticeKind, str, str]] = []

    def notify(self, kind: NoticeKind, message: str, title: str = "") -> None:
        self.notices.append((kind, message, title))

    def kinds(self) -> list[NoticeKind]:
        return [kind for kind, _, _ in self.notices]


class FakeProfileService:
    """In-memory managed connection-profile service.

    Records every ``set_active_profile`` call so tests can assert the restore.
    """

    def __init__(
        self,
        active: str = "Default",
        profiles: list[ConnectionProfile] | None = None,
        response: Any = None,
        error: Exception | None = None,
    ) -> None:
        self.active = active
        self.profiles = {p.id: p for p in profiles or []}
        self.response = response if response is not None else {"choices": [{"message": {"content": "ok"}}]}
        self.error = error
        self.set_calls: list[str] = []
        self.requests: list[tuple[str, list[dict[str, str]], int | None]] = []
        self.active_during_request: str | None = None

    async def get_active_profile(self) -> str:
        return self.active

    async def set_active_profile(self, name: str) -> None:
        self.set_calls.append(name)
        self.active = name

    def find_profile(self, profile_id: str) -> ConnectionProfile | None:
        return self.profiles.get(profile_id)

    async def send_request(
        self,
        profile_id: str,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
    ) -> Any:
        self.requests.append((profile_id, messages, max_tokens))
        self.active_during_request = self.active
        if self.error is not None:
            raise self.error
        return self.response


class FakeKnowledgeStore:
    def __init__(
        self,
        books: dict[str, list[KnowledgeEntry]],
        bound: CharacterBooks | None = None,
    ) -> None:
        self.books = books
        self.bound = bound or CharacterBooks()

    async def character_books(self) -> CharacterBooks:
        return self.bound

    async def entries(self, book_name: str) -> list[KnowledgeEntry]:
        return list(self.books.get(book_name, []))


class FakeHistory:
    def __init__(self, turns: list[ChatTurn] | None = None) -> None:
        self._turns = turns or []

    def turns(self) -> list[ChatTurn]:
        return self._turns


def make_entry(
    entry_id: int,
    content: str,
    keywords: tuple[str, ...] = (),
    *,
    book: str = "lore",
    constant: bool = False,
    **fields: Any,
) -> KnowledgeEntry:
    """Build a KnowledgeEntry with test-friendly defaults."""
    return KnowledgeEntry(
        id=entry_id,
        book_name=book,
        content=content,
        keywords=frozenset(keywords),
        activation=Activation.CONSTANT if constant else Activation.CONDITIONAL,
        **fields,
    )


def sse_body(*payloads: dict[str, Any] | str) -> bytes:
    """Encode payloads as an SSE body terminated by ``[DONE]``."""
    lines = [p if isinstance(p, str) else json.dumps(p) for p in payloads]
    return "".join(f"data: {line}\n\n" for line in [*lines, "[DONE]"]).encode("utf-8")


def delta(text: str) -> dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


@pytest.fixture
def settings() -> GenerationSettings:
    """Create a frontend settings snapshot with no environment influence.

    Returns:
        Non-streaming frontend settings pointed at a fake provider.
    """
    return GenerationSettings(
        _env_file=None,
        api_url="https://llm.example.com/v1",
        api_key="sk-test",
        model="test-model",
        use_streaming=False,
        worldbook_enabled=False,
    )


@pytest.fixture
def make_settings() -> Callable[..., GenerationSettings]:
    """Factory for settings snapshots that ignores ``.env`` files."""

    def factory(**overrides: Any) -> GenerationSettings:
        values: dict[str, Any] = {
            "api_url": "https://llm.example.com/v1",
            "api_key": "sk-test",
            "model": "test-model",
            "use_streaming": False,
            "worldbook_enabled": False,
        }
        values.update(overrides)
        return GenerationSettings(_env_file=None, **values)

    return factory


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sample_turns() -> list[ChatTurn]:
    """Create a short conversation.

    Returns:
        Four alternating records with one system notice in between.
    """
    return [
        ChatTurn(text="We reach the old harbor.", is_user=True, name="User"),
        ChatTurn(text="The fog rolls over the <b>docks</b>.", name="Narrator"),
        ChatTurn(text="[system notice]", is_system=True),
        ChatTurn(text="I look for the lighthouse keeper.", is_user=True, name="User", plot="<plot>a1</plot>"),
        ChatTurn(text="A lantern flickers in the tower.", name="Narrator"),
    ]


@pytest.fixture
def tavern_profile() -> ConnectionProfile:
    return ConnectionProfile(id="p-1", name="Planner", api="openai", preset="Default")


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory

