"""qrforce/streaming.py

Server-Sent-Events reader with an inactivity watchdog.

States: Idle -> Reading -> Done | TimedOut | Errored.

The watchdog bounds liveness, not duration: it cancels the read when no chunk
has arrived for ``chunk_timeout`` seconds, checked every ``poll_interval``
seconds. A stream that keeps delivering chunks is read for as long as it
lasts. The underlying response is released on every exit path.
"""

from __future__ import annotations

# Standard Library
import asyncio
import codecs
import dataclasses
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

# Local Modules
from qrforce.errors import EmptyContentError, StreamTimeoutError

logger = logging.getLogger(__name__)

CHUNK_TIMEOUT_SECONDS: float = 25.0
WATCHDOG_INTERVAL_SECONDS: float = 1.0

SSE_DATA_PREFIX: str = "data:"
SSE_DONE_MARKER: str = "[DONE]"


class ProviderFamily(str, Enum):
    """Streaming delta shape."""

    DELTA = "delta"  # choices[0].delta.content
    CANDIDATE = "candidate"  # candidates[0].content.parts[0].text


class StreamPhase(str, Enum):
    IDLE = "idle"
    READING = "reading"
    DONE = "done"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


@dataclasses.dataclass(slots=True)
class StreamState:
    """Transient per-request state.

    Attributes:
        last_chunk_time: Clock reading when the latest chunk arrived.
        buffer: Trailing partial line carried across reads.
        parts: Extracted text increments, in arrival order.
    """

    last_chunk_time: float
    phase: StreamPhase = StreamPhase.IDLE
    buffer: str = ""
    parts: list[str] = dataclasses.field(default_factory=list)
    decoder: codecs.IncrementalDecoder = dataclasses.field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def text(self) -> str:
        return "".join(self.parts)


def extract_delta(payload: Any, family: ProviderFamily) -> str | None:
    """Pull the incremental text out of one parsed SSE payload."""
    try:
        if family is ProviderFamily.CANDIDATE:
            value = payload["candidates"][0]["content"]["parts"][0]["text"]
        else:
            value = payload["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return value if isinstance(value, str) and value else None


class StreamReader:
    """Accumulate the text of one SSE response body."""

    def __init__(
        self,
        family: ProviderFamily = ProviderFamily.DELTA,
        *,
        chunk_timeout: float = CHUNK_TIMEOUT_SECONDS,
        poll_interval: float = WATCHDOG_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.family = family
        self.chunk_timeout = chunk_timeout
        self.poll_interval = poll_interval
        self.clock = clock

    def _handle_line(self, line: str, state: StreamState) -> None:
        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return
        data = line[len(SSE_DATA_PREFIX):].strip()
        if not data or data == SSE_DONE_MARKER:
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("[stream] Skipping unparseable data line: %r", data[:200])
            return
        delta = extract_delta(payload, self.family)
        if delta:
            state.parts.append(delta)

    def feed(self, chunk: bytes, state: StreamState) -> None:
        """Decode one chunk and process every complete line in the buffer."""
        state.buffer += state.decoder.decode(chunk)
        *lines, state.buffer = state.buffer.split("\n")
        for line in lines:
            self._handle_line(line, state)

    def finish(self, state: StreamState) -> None:
        """Flush the decoder and process a final unterminated line."""
        state.buffer += state.decoder.decode(b"", final=True)
        if state.buffer:
            self._handle_line(state.buffer, state)
            state.buffer = ""

    async def _consume(self, body: AsyncIterator[bytes], state: StreamState) -> None:
        async for chunk in body:
            state.last_chunk_time = self.clock()
            if chunk:
                self.feed(chunk, state)
        self.finish(state)

    async def _watch(self, state: StreamState, reader: asyncio.Task[None]) -> None:
        while not reader.done():
            await asyncio.sleep(self.poll_interval)
            if self.clock() - state.last_chunk_time > self.chunk_timeout:
                state.phase = StreamPhase.TIMED_OUT
                reader.cancel()
                return

    async def read(
        self,
        body: AsyncIterator[bytes],
        release: Callable[[], Awaitable[Any]] | None = None,
    ) -> str:
        """Read the whole stream and return the trimmed accumulated text.

        Args:
            body: Async iterator over raw response bytes.
            release: Coroutine function that frees the underlying response;
                awaited on every exit path.

        Returns:
            The accumulated text, stripped.

        Raises:
            StreamTimeoutError: No chunk arrived within the liveness window.
            EmptyContentError: The stream ended without any text.
        """
        state = StreamState(last_chunk_time=self.clock(), phase=StreamPhase.READING)
        reader = asyncio.ensure_future(self._consume(body, state))
        watchdog = asyncio.ensure_future(self._watch(state, reader))
        try:
            try:
                await reader
            except asyncio.CancelledError:
                if state.phase is StreamPhase.TIMED_OUT:
                    raise StreamTimeoutError(
                        f"Stream timed out: no data chunk received within {self.chunk_timeout:g} seconds"
                    ) from None
                raise
            except Exception:
                state.phase = StreamPhase.ERRORED
                raise
        finally:
            watchdog.cancel()
            if not reader.done():
                reader.cancel()
            if release is not None:
                await release()

        state.phase = StreamPhase.DONE
        text = state.text.strip()
        if not text:
            raise EmptyContentError("Stream completed without returning any content")
        logger.info("[stream] Accumulated %d chars", len(text))
        return text
