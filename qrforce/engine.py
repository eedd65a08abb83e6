"""qrforce/engine.py

Generation engine: the externally visible entry point of the pipeline.

One ``generate`` call resolves knowledge once, assembles the prompt once and
then hands a single-attempt coroutine to the retry loop. Every terminal
outcome is reported through the Notifier with its own notice kind; the
caller receives the content string or ``None``.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import Sequence
from typing import Any

# Third-Party Libraries
import httpx

# Local Modules
from qrforce.config import ApiMode, GenerationSettings
from qrforce.errors import (
    EmptyContentError,
    GenerationError,
    NoticeKind,
    RetryExhaustedError,
    TransportError,
    ValidationError,
)
from qrforce.history import (
    ContextWindow,
    append_pending_message,
    format_history,
    latest_plot,
    prune_plot_history,
)
from qrforce.host import HistoryProvider, KnowledgeStore, PersonaProvider, ProfileService
from qrforce.lore import KnowledgeResolver
from qrforce.models import ChatTurn, Message, Role
from qrforce.notify import LogNotifier, Notifier
from qrforce.optimizer import (
    build_optimization_messages,
    extract_target_block,
    merge_optimized,
    target_tag,
)
from qrforce.placeholders import Substitutions
from qrforce.prompt import assemble_prompt
from qrforce.retry import RetryLoop
from qrforce.transports import PROBE_TIMEOUT_SECONDS, Transport, build_transport

logger = logging.getLogger(__name__)

PROBE_MESSAGES: tuple[Message, ...] = (Message(role=Role.USER, content='Say "Hi"'),)
PROBE_MAX_TOKENS: int = 5
GOOGLE_PROBE_TEMPERATURE: float = 0.1

_TITLES: dict[NoticeKind, str] = {
    NoticeKind.CONFIGURATION: "Configuration error",
    NoticeKind.TIMEOUT: "Request timed out",
    NoticeKind.VALIDATION: "Validation failed",
    NoticeKind.FAILURE: "Generation failed",
}


def _client_timeout() -> httpx.Timeout:
    # Total and liveness timeouts are enforced by the pipeline itself.
    return httpx.Timeout(None, connect=10.0)


class GenerationEngine:
    """Wire the host collaborators, the transport and the retry loop together.

    Attributes:
        settings: Configuration snapshot used for every call.
        transport: Strategy selected by ``settings.api_mode``.
        retry_loop: Attempt orchestration.
    """

    def __init__(
        self,
        settings: GenerationSettings,
        history: HistoryProvider,
        *,
        knowledge: KnowledgeStore | None = None,
        persona: PersonaProvider | None = None,
        profiles: ProfileService | None = None,
        notifier: Notifier | None = None,
        client: httpx.AsyncClient | None = None,
        transport: Transport | None = None,
        retry_loop: RetryLoop | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Frozen configuration snapshot.
            history: Conversation records of the active chat.
            knowledge: Knowledge books; ``None`` disables knowledge lookup.
            persona: Persona and character descriptions for ``$U``/``$C``.
            profiles: Managed connection-profile service (tavern/perfect).
            notifier: Receives user-visible notices. Defaults to logging.
            client: Shared HTTP client. When omitted the engine owns one and
                closes it in ``aclose``.
            transport: Overrides the transport built from ``api_mode``.
            retry_loop: Overrides the default retry loop.
        """
        self.settings = settings
        self.history = history
        self.knowledge = knowledge
        self.persona = persona
        self.notifier: Notifier = notifier or LogNotifier()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=_client_timeout())
        self.transport = transport or build_transport(settings.api_mode, self.client, profiles)
        self.retry_loop = retry_loop or RetryLoop(on_attempt_failed=self._on_attempt_failed)
        self.resolver = KnowledgeResolver(settings)

        logger.info(
            "[engine] Initialized: mode=%s, streaming=%s, max_retries=%d",
            settings.api_mode.value,
            settings.use_streaming,
            settings.max_retries,
        )

    async def __aenter__(self) -> "GenerationEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    def _notify_error(self, exc: BaseException) -> None:
        kind = exc.notice if isinstance(exc, GenerationError) else NoticeKind.FAILURE
        message = str(exc)
        if isinstance(exc, RetryExhaustedError) and exc.last_error is not None:
            message = f"{exc}. Last error: {exc.last_error}"
        self.notifier.notify(kind, message, _TITLES.get(kind, "Generation failed"))

    def _on_attempt_failed(self, attempt: int, error: GenerationError) -> None:
        if isinstance(error, ValidationError) and attempt < self.settings.max_retries:
            self.notifier.notify(
                NoticeKind.WARNING,
                f"Attempt {attempt} {error}; retrying",
                "Keyword check failed",
            )

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    async def build_substitutions(self, user_message: str = "", *, table_data: str = "") -> Substitutions:
        """Gather every placeholder value for the pending turn."""
        settings = self.settings
        turns = self.history.turns()
        worldbook = await self.resolver.resolve_for_turn(self.knowledge, turns, user_message)
        window = ContextWindow(
            settings.context_turn_count,
            extract_tags=settings.extract_tags,
            exclude_tags=settings.exclude_tags,
        )
        return Substitutions(
            worldbook=worldbook,
            table_data=table_data,
            prior_plot=latest_plot(turns),
            history=format_history(
                append_pending_message(window.build_messages(turns), turns, user_message)
            ),
            persona=self.persona.persona_description() if self.persona else "",
            character=self.persona.character_description() if self.persona else "",
        )

    async def build_prompt(self, user_message: str = "", *, table_data: str = "") -> list[Message]:
        """Resolve placeholders and assemble the message list.

        Raises:
            EmptyPromptError: Nothing survived assembly.
        """
        substitutions = await self.build_substitutions(user_message, table_data=table_data)
        return assemble_prompt(self.settings, substitutions)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate(self, user_message: str = "", *, table_data: str = "") -> str | None:
        """Run the full pipeline for the pending user message.

        Args:
            user_message: Pending user input. It is scanned for knowledge
                keywords and closes the history unless already recorded.
            table_data: Outline/table text substituted for ``$5``.

        Returns:
            The validated content, or ``None`` after a notified failure.
        """
        settings = self.settings
        try:
            settings.ensure_dispatchable()
            messages = await self.build_prompt(user_message, table_data=table_data)
        except GenerationError as exc:
            logger.error("[engine] Generation aborted before dispatch: %s", exc)
            self._notify_error(exc)
            return None
        except Exception as exc:
            logger.error("[engine] Building the prompt failed: %s", exc, exc_info=True)
            self._notify_error(exc)
            return None

        async def attempt(number: int) -> str | None:
            logger.info("[engine] Attempt %d/%d via %s", number, settings.max_retries, settings.api_mode.value)
            result = await self.transport.dispatch(messages, settings)
            if result.error:
                raise TransportError(result.error_message)
            if not result.content:
                raise EmptyContentError("provider returned no content")
            return result.content

        try:
            outcome = await self.retry_loop.execute(
                attempt, settings.required_keyword_list, settings.max_retries
            )
        except GenerationError as exc:
            self._notify_error(exc)
            return None

        if outcome.recovered:
            self.notifier.notify(
                NoticeKind.SUCCESS,
                f"Generated valid content on attempt {outcome.attempts}",
                "Recovered",
            )
        prune_plot_history(self.history.turns(), settings.plot_retention)
        return outcome.content

    async def fetch_models(self) -> list[dict[str, Any]] | None:
        """List the provider's models sorted by id.

        Returns:
            The model list, ``[]`` for managed-profile modes, or ``None``
            after a notified failure.
        """
        if self.settings.uses_profile:
            self.notifier.notify(
                NoticeKind.INFO, "The connection profile selects the model.", "Models"
            )
            return []
        try:
            self.settings.ensure_dispatchable()
            models = await self.transport.list_models(self.settings)
        except (GenerationError, httpx.HTTPError) as exc:
            logger.error("[engine] Model listing failed: %s", exc)
            self.notifier.notify(NoticeKind.FAILURE, str(exc), "Model listing failed")
            return None
        self.notifier.notify(NoticeKind.SUCCESS, f"Loaded {len(models)} model(s)", "Models")
        return models

    async def test_connection(self) -> bool:
        """Send a tiny non-streaming probe through the configured transport."""
        settings = self.settings
        temperature = GOOGLE_PROBE_TEMPERATURE if settings.api_mode is ApiMode.GOOGLE else None
        try:
            settings.ensure_dispatchable()
            probe = settings.model_copy(update={"use_streaming": False})
            result = await self.transport.dispatch(
                PROBE_MESSAGES,
                probe,
                max_tokens=PROBE_MAX_TOKENS,
                temperature=temperature,
                timeout=PROBE_TIMEOUT_SECONDS,
            )
            if result.error:
                raise TransportError(result.error_message)
            if not result.content:
                raise EmptyContentError("probe returned no content")
        except (GenerationError, httpx.HTTPError) as exc:
            logger.error("[engine] Connection test failed: %s", exc)
            self._notify_error(exc)
            return False

        self.notifier.notify(NoticeKind.SUCCESS, f"Reply: {result.content[:50]}", "Connection OK")
        return True

    async def optimize(self, message: ChatTurn, context: Sequence[ChatTurn] = ()) -> str | None:
        """Rewrite the target-tag block of a finished assistant reply.

        The request always streams and goes through the configured transport.

        Args:
            message: Assistant record to optimize.
            context: Surrounding chat records, oldest first.

        Returns:
            The optimized text, ``message.text`` unchanged when the reply has
            no usable target block, or ``None`` when the pass is disabled,
            skipped or failed.
        """
        settings = self.settings
        if not settings.optimization_enabled:
            return None
        tag = target_tag(settings)
        try:
            settings.ensure_dispatchable()
            block = extract_target_block(message.text, tag)
            if not block:
                logger.warning("[optimize] Target tag <%s> missing or empty; skipping", tag)
                return None
            messages = build_optimization_messages(
                settings,
                message,
                context,
                block,
                persona=self.persona.persona_description() if self.persona else "",
                character=self.persona.character_description() if self.persona else "",
            )
            streaming = settings.model_copy(update={"use_streaming": True})
            result = await self.transport.dispatch(messages, streaming)
            if result.error:
                raise TransportError(result.error_message)
            if not result.content:
                raise EmptyContentError("optimization returned no content")
        except GenerationError as exc:
            logger.error("[optimize] Optimization failed: %s", exc)
            self._notify_error(exc)
            return None
        except Exception as exc:
            logger.error("[optimize] Optimization failed: %s", exc, exc_info=True)
            self._notify_error(exc)
            return None

        logger.info("[optimize] Received %d chars for <%s>", len(result.content), tag)
        return merge_optimized(message.text, result.content, tag)
