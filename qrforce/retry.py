"""qrforce/retry.py

Retry/validation loop around one generation attempt.

Per attempt: Attempt -> Invoke -> NoContent | KeywordFailed | Success.
A failed attempt with budget remaining waits a constant backoff and tries
again. ConfigurationError and EmptyPromptError abort immediately because
retrying cannot change a static configuration problem.
"""

from __future__ import annotations

# Standard Library
import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence

# Local Modules
from qrforce.errors import (
    EmptyContentError,
    GenerationError,
    RetryExhaustedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS: float = 1.0


@dataclasses.dataclass(frozen=True, slots=True)
class AttemptResult:
    content: str | None
    validated: bool


@dataclasses.dataclass(frozen=True, slots=True)
class RetryOutcome:
    """Validated content plus the attempt that produced it."""

    content: str
    attempts: int

    @property
    def recovered(self) -> bool:
        """True when the first attempt failed and a later one succeeded."""
        return self.attempts > 1


def missing_keywords(content: str, keywords: Sequence[str]) -> list[str]:
    """Return the required keywords absent from ``content``.

    Matching is an exact, case-sensitive substring test. A keyword that only
    matches case-insensitively is still missing; it is logged as a hint.
    """
    missing = [kw for kw in keywords if kw not in content]
    if missing:
        folded = content.lower()
        near = [kw for kw in missing if kw.lower() in folded]
        if near:
            logger.warning(
                "[retry] Keyword(s) %s present with different casing; matching is case-sensitive",
                near,
            )
    return missing


def validate_keywords(content: str, keywords: Sequence[str]) -> bool:
    """Conjunctive keyword check; an empty keyword list always passes."""
    return not missing_keywords(content, keywords)


class RetryLoop:
    """Run attempts until one returns content containing every keyword."""

    def __init__(
        self,
        *,
        backoff: float = RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_attempt_failed: Callable[[int, GenerationError], None] | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            backoff: Fixed delay between attempts, in seconds.
            sleep: Coroutine used for the delay.
            on_attempt_failed: Called with the attempt number and the error
                of every failed attempt.
        """
        self.backoff = backoff
        self.sleep = sleep
        self.on_attempt_failed = on_attempt_failed

    async def _attempt(
        self,
        attempt: int,
        build_attempt: Callable[[int], Awaitable[str | None]],
        keywords: Sequence[str],
    ) -> AttemptResult:
        content = await build_attempt(attempt)
        if not content or not content.strip():
            raise EmptyContentError("attempt returned no content")
        missing = missing_keywords(content, keywords)
        if missing:
            raise ValidationError(missing)
        return AttemptResult(content=content, validated=True)

    async def execute(
        self,
        build_attempt: Callable[[int], Awaitable[str | None]],
        required_keywords: Sequence[str],
        max_retries: int,
    ) -> RetryOutcome:
        """Run up to ``max_retries`` attempts.

        Args:
            build_attempt: Coroutine function called with the 1-based attempt
                number; returns the generated content or ``None``.
            required_keywords: Keywords every accepted reply must contain.
            max_retries: Attempt budget, at least 1.

        Returns:
            The validated content and the number of attempts used.

        Raises:
            ConfigurationError: Raised by an attempt; not retried.
            EmptyPromptError: Raised by an attempt; not retried.
            RetryExhaustedError: Every attempt failed.
        """
        budget = max(1, max_retries)
        last_error: GenerationError | None = None

        for attempt in range(1, budget + 1):
            try:
                result = await self._attempt(attempt, build_attempt, required_keywords)
                logger.info("[retry] Attempt %d/%d succeeded", attempt, budget)
                return RetryOutcome(content=result.content or "", attempts=attempt)
            except GenerationError as exc:
                if not exc.retryable:
                    logger.error("[retry] Attempt %d/%d aborted: %s", attempt, budget, exc)
                    raise
                last_error = exc
            except Exception as exc:
                logger.error("[retry] Attempt %d/%d raised unexpectedly: %s", attempt, budget, exc, exc_info=True)
                last_error = GenerationError(str(exc))

            logger.warning("[retry] Attempt %d/%d failed: %s", attempt, budget, last_error)
            if self.on_attempt_failed is not None:
                self.on_attempt_failed(attempt, last_error)
            if attempt < budget:
                await self.sleep(self.backoff)

        raise RetryExhaustedError(budget, last_error)
