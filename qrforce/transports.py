"""qrforce/transports.py

Transport adapters: one strategy per backend family behind one contract.

  frontend  generic chat-completion provider, called directly
  google    candidate/parts provider family (role/parts request schema)
  backend   the host's local proxy endpoint, always non-streaming
  tavern    a managed connection profile, switched in and restored around
            the request
  perfect   a managed connection profile addressed by id, no switching

Every ``dispatch`` returns a CompletionResult holding either ``content`` or
``error``. Non-2xx responses raise TransportError; a non-streaming request
that loses the race against its total timeout raises RequestTimeoutError.
"""

from __future__ import annotations

# Standard Library
import abc
import asyncio
import dataclasses
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, ClassVar, TypeVar

# Third-Party Libraries
import httpx

# Local Modules
from qrforce.config import ApiMode, GenerationSettings
from qrforce.errors import ConfigurationError, RequestTimeoutError, TransportError
from qrforce.host import ConnectionProfile, ProfileService
from qrforce.models import Message, Role
from qrforce.streaming import ProviderFamily, StreamReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOTAL_TIMEOUT_SECONDS: float = 60.0
PROBE_TIMEOUT_SECONDS: float = 30.0

COMPLETIONS_SUFFIX: str = "/chat/completions"
MODELS_SUFFIX: str = "/models"
GOOGLE_API_VERSION: str = "v1beta"
VERTEX_HOST_MARKER: str = "aiplatform.googleapis.com"
PROXY_GENERATE_PATH: str = "/api/backends/chat-completions/generate"
PROXY_STATUS_PATH: str = "/api/backends/chat-completions/status"


# ---------------------------------------------------------------------------
# Normalized results
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True, slots=True)
class CompletionResult:
    """Either ``content`` or ``error`` from one dispatch."""

    content: str | None = None
    error: dict[str, Any] | None = None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or json.dumps(self.error, ensure_ascii=False))


def normalize_response(data: Any) -> CompletionResult:
    """Collapse the provider response shapes into a CompletionResult.

    Handles JSON text, nested ``data.data`` envelopes from the host proxy,
    ``choices[0].message.content``, a direct ``content`` field and an
    ``error`` field.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError:
            logger.error("[transport] Response is not valid JSON")
            return CompletionResult(error={"message": "Invalid JSON response"})

    if isinstance(data, dict):
        inner = data.get("data")
        if isinstance(inner, dict) and "data" in inner:
            data = inner

        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] if isinstance(choices[0], dict) else {}
            content = (first.get("message") or {}).get("content")
            return CompletionResult(content=content.strip() if isinstance(content, str) else None)

        content = data.get("content")
        if isinstance(content, str) and content:
            return CompletionResult(content=content.strip())

        error = data.get("error")
        if error:
            return CompletionResult(error=error if isinstance(error, dict) else {"message": str(error)})

    return CompletionResult(error={"message": "Unrecognized response shape"})


def normalize_models(data: Any) -> list[dict[str, Any]]:
    """Extract a model list sorted by id.

    Raises:
        TransportError: The response holds an error or no model array.
    """
    models: Any = None
    if isinstance(data, list):
        models = data
    elif isinstance(data, dict):
        inner = data.get("data")
        if isinstance(inner, dict):
            inner = inner.get("data")
        if isinstance(inner, list):
            models = inner
        elif isinstance(data.get("models"), list):
            models = data["models"]
        elif data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise TransportError(message or "Model listing failed")
    if models is None:
        raise TransportError("API did not return a valid model list")

    items = [item if isinstance(item, dict) else {"id": str(item)} for item in models]
    return sorted(items, key=lambda item: str(item.get("id") or item.get("model") or ""))


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: str) -> T:
    """Race ``awaitable`` against a timer; the loser is cancelled.

    Raises:
        RequestTimeoutError: The timer won.
    """
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except asyncio.TimeoutError:
        raise RequestTimeoutError(message) from None


def _decode_body(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        return response.json()
    text = response.text
    try:
        return json.loads(text)
    except ValueError:
        return text


# ---------------------------------------------------------------------------
# Google-family adapter
# ---------------------------------------------------------------------------


def build_google_request(
    messages: Sequence[Message],
    settings: GenerationSettings,
    *,
    max_tokens: int | None = None,
    temperature: float | None = None,
) -> dict[str, Any]:
    """Convert chat messages into a role/parts request body.

    System messages become ``systemInstruction``; assistant messages use the
    ``model`` role and consecutive messages of one role share a content
    block. A prompt made only of system messages is sent as user content.
    """
    system_parts = [{"text": m.content} for m in messages if m.role is Role.SYSTEM]
    contents: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            continue
        role = "model" if message.role is Role.ASSISTANT else "user"
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append({"text": message.content})
        else:
            contents.append({"role": role, "parts": [{"text": message.content}]})

    body: dict[str, Any] = {}
    if contents:
        body["contents"] = contents
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
    else:
        body["contents"] = [{"role": "user", "parts": system_parts}]

    body["generationConfig"] = {
        "maxOutputTokens": max_tokens if max_tokens is not None else settings.max_tokens,
        "temperature": temperature if temperature is not None else settings.temperature,
        "topP": settings.top_p,
    }
    return body


def parse_google_response(data: Any) -> Any:
    """Turn a candidate/parts response into a ``content`` or ``error`` dict."""
    if not isinstance(data, dict):
        return data
    if data.get("error"):
        return {"error": data["error"]}
    candidates = data.get("candidates") or []
    if candidates:
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        text = "".join(
            part.get("text", "")
            for part in parts
            if isinstance(part, dict) and not part.get("thought")
        )
        return {"content": text}
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        return {"error": {"message": f"Prompt blocked by provider: {block_reason}"}}
    return {"error": {"message": "Response contained no candidates"}}


# ---------------------------------------------------------------------------
# Managed-profile lease
# ---------------------------------------------------------------------------


@asynccontextmanager
async def profile_lease(service: ProfileService, profile_name: str) -> AsyncIterator[str]:
    """Hold the host's active connection profile on ``profile_name``.

    The originally active profile is restored on every exit path, including
    failures inside the block.

    Yields:
        The name of the profile that was active before the lease.
    """
    original = await service.get_active_profile()
    try:
        if original != profile_name:
            await service.set_active_profile(profile_name)
        yield original
    finally:
        current = await service.get_active_profile()
        if original and current != original:
            await service.set_active_profile(original)
            logger.info('[transport:tavern] Restored connection profile "%s"', original)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class Transport(abc.ABC):
    """Strategy for one backend family."""

    mode: ClassVar[ApiMode]

    def __init__(
        self,
        client: httpx.AsyncClient,
        profiles: ProfileService | None = None,
        *,
        reader_factory: Callable[[ProviderFamily], StreamReader] = StreamReader,
    ) -> None:
        self.client = client
        self.profiles = profiles
        self.reader_factory = reader_factory

    @abc.abstractmethod
    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        """Send the messages and return the normalized result.

        Args:
            messages: Assembled prompt.
            settings: Configuration snapshot for this call.
            max_tokens: Overrides ``settings.max_tokens``.
            temperature: Overrides ``settings.temperature``.
            timeout: Total timeout for non-streaming requests.

        Raises:
            ConfigurationError: The transport is missing required settings.
            TransportError: Non-2xx HTTP response.
            RequestTimeoutError: The total timeout elapsed.
            StreamTimeoutError: A streaming response stalled.
            EmptyContentError: A streaming response carried no text.
        """

    async def list_models(self, settings: GenerationSettings) -> list[dict[str, Any]]:
        """Return the provider's models sorted by id."""
        return []

    @property
    def tag(self) -> str:
        return f"[transport:{self.mode.value}]"

    async def _post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout: float,
        timeout_message: str,
    ) -> Any:
        async def request() -> Any:
            response = await self.client.post(url, json=body, headers=headers, params=params)
            if not response.is_success:
                raise TransportError.from_status(
                    response.status_code, response.reason_phrase, response.text
                )
            return _decode_body(response)

        return await with_timeout(request(), timeout, timeout_message)

    async def _stream(
        self,
        url: str,
        body: dict[str, Any],
        family: ProviderFamily,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> str:
        logger.info("%s Opening stream to %s", self.tag, url)
        async with self.client.stream("POST", url, json=body, headers=headers, params=params) as response:
            if not response.is_success:
                await response.aread()
                raise TransportError.from_status(
                    response.status_code, response.reason_phrase, response.text
                )
            reader = self.reader_factory(family)
            return await reader.read(response.aiter_bytes(), release=response.aclose)

    async def _get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        response = await self.client.get(url, headers=headers, params=params)
        if not response.is_success:
            raise TransportError.from_status(response.status_code, response.reason_phrase, response.text)
        return _decode_body(response)


def completions_url(api_url: str) -> str:
    """Normalize a provider URL to end with the chat-completion path."""
    url = api_url.strip().rstrip("/")
    return url if url.endswith(COMPLETIONS_SUFFIX) else url + COMPLETIONS_SUFFIX


def models_url(api_url: str) -> str:
    """Derive the model-listing URL from a provider URL."""
    url = api_url.strip().rstrip("/")
    if url.endswith(COMPLETIONS_SUFFIX):
        return url[: -len(COMPLETIONS_SUFFIX)] + MODELS_SUFFIX
    return url if url.endswith(MODELS_SUFFIX) else url + MODELS_SUFFIX


def chat_completion_body(
    messages: Sequence[Message],
    settings: GenerationSettings,
    *,
    max_tokens: int | None = None,
    temperature: float | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    """Build the standard chat-completion request body."""
    return {
        "messages": [message.to_dict() for message in messages],
        "model": settings.model,
        "max_tokens": max_tokens if max_tokens is not None else settings.max_tokens,
        "temperature": temperature if temperature is not None else settings.temperature,
        "top_p": settings.top_p,
        "presence_penalty": settings.presence_penalty,
        "frequency_penalty": settings.frequency_penalty,
        "stream": stream,
    }


class FrontendTransport(Transport):
    """Direct chat-completion call with a bearer token."""

    mode = ApiMode.FRONTEND

    def _headers(self, settings: GenerationSettings) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.api_key}",
        }

    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        if not settings.api_url.strip():
            raise ConfigurationError("API URL is not configured.")
        url = completions_url(settings.api_url)
        body = chat_completion_body(
            messages,
            settings,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=settings.use_streaming,
        )
        logger.info(
            "%s Sending %s request to %s",
            self.tag,
            "streaming" if settings.use_streaming else "non-streaming",
            url,
        )
        if settings.use_streaming:
            content = await self._stream(url, body, ProviderFamily.DELTA, headers=self._headers(settings))
            return CompletionResult(content=content)

        data = await self._post_json(
            url,
            body,
            headers=self._headers(settings),
            timeout=timeout,
            timeout_message=f"Direct request timed out ({timeout:g} seconds)",
        )
        return normalize_response(data)

    async def list_models(self, settings: GenerationSettings) -> list[dict[str, Any]]:
        data = await self._get_json(
            models_url(settings.api_url),
            headers={"Authorization": f"Bearer {settings.api_key}"},
        )
        return normalize_models(data.get("data", []) if isinstance(data, dict) else data)


class GoogleTransport(Transport):
    """Candidate/parts provider family addressed by model path."""

    mode = ApiMode.GOOGLE

    @staticmethod
    def _is_vertex(settings: GenerationSettings) -> bool:
        return VERTEX_HOST_MARKER in settings.api_url

    def _request_target(
        self, settings: GenerationSettings, *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, str]]:
        base = settings.api_url.strip().rstrip("/")
        method = "streamGenerateContent" if stream else "generateContent"
        url = f"{base}/{GOOGLE_API_VERSION}/models/{settings.model}:{method}"
        params: dict[str, str] = {"alt": "sse"} if stream else {}
        headers = {"Content-Type": "application/json"}
        if self._is_vertex(settings):
            params["access_token"] = settings.api_key
            headers["Authorization"] = f"Bearer {settings.api_key}"
        else:
            params["key"] = settings.api_key
        return url, params, headers

    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        if not settings.api_url.strip():
            raise ConfigurationError("API URL is not configured.")
        url, params, headers = self._request_target(settings, stream=settings.use_streaming)
        body = build_google_request(messages, settings, max_tokens=max_tokens, temperature=temperature)
        logger.info("%s Sending request to %s", self.tag, url)

        if settings.use_streaming:
            content = await self._stream(url, body, ProviderFamily.CANDIDATE, headers=headers, params=params)
            return CompletionResult(content=content)

        data = await self._post_json(
            url,
            body,
            headers=headers,
            params=params,
            timeout=timeout,
            timeout_message=f"Google request timed out ({timeout:g} seconds)",
        )
        return normalize_response(parse_google_response(data))

    async def list_models(self, settings: GenerationSettings) -> list[dict[str, Any]]:
        base = settings.api_url.strip().rstrip("/")
        data = await self._get_json(
            f"{base}/{GOOGLE_API_VERSION}/models", params={"key": settings.api_key}
        )
        models = data.get("models") or [] if isinstance(data, dict) else []
        return normalize_models(
            [
                {"id": str(model.get("name", "")).replace("models/", "", 1)}
                for model in models
                if "generateContent" in (model.get("supportedGenerationMethods") or [])
            ]
        )


class BackendTransport(Transport):
    """Chat completion relayed through the host's local proxy."""

    mode = ApiMode.BACKEND

    def _headers(self, settings: GenerationSettings) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.api_key}",
        }

    def _envelope(self, settings: GenerationSettings) -> dict[str, Any]:
        return {
            "chat_completion_source": "custom",
            "custom_url": settings.api_url,
            "api_key": settings.api_key,
        }

    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        if not settings.api_url.strip():
            raise ConfigurationError("API URL is not configured.")
        body = chat_completion_body(
            messages, settings, max_tokens=max_tokens, temperature=temperature, stream=False
        )
        body.update(self._envelope(settings))
        url = settings.host_url.rstrip("/") + PROXY_GENERATE_PATH
        logger.info("%s Sending request through host proxy %s", self.tag, url)
        data = await self._post_json(
            url,
            body,
            headers=self._headers(settings),
            timeout=timeout,
            timeout_message=f"Backend proxy request timed out ({timeout:g} seconds)",
        )
        return normalize_response(data)

    async def list_models(self, settings: GenerationSettings) -> list[dict[str, Any]]:
        data = await self._post_json(
            settings.host_url.rstrip("/") + PROXY_STATUS_PATH,
            self._envelope(settings),
            headers=self._headers(settings),
            timeout=TOTAL_TIMEOUT_SECONDS,
            timeout_message="Backend proxy model listing timed out",
        )
        return normalize_models(data)


class PerfectTransport(Transport):
    """Managed connection profile addressed by id."""

    mode = ApiMode.PERFECT

    def _service(self) -> ProfileService:
        if self.profiles is None:
            raise ConfigurationError("No connection-profile service is available.")
        return self.profiles

    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        profile_id = settings.tavern_profile.strip()
        if not profile_id:
            raise ConfigurationError("No managed connection profile selected.")
        service = self._service()
        logger.info("%s Sending request through profile %s", self.tag, profile_id)
        raw = await with_timeout(
            service.send_request(
                profile_id,
                [message.to_dict() for message in messages],
                max_tokens if max_tokens is not None else settings.max_tokens,
            ),
            timeout,
            f"Profile request timed out ({timeout:g} seconds)",
        )
        return normalize_response(raw)


class TavernTransport(PerfectTransport):
    """Managed connection profile made active for the duration of the request."""

    mode = ApiMode.TAVERN

    def _profile(self, service: ProfileService, profile_id: str) -> ConnectionProfile:
        profile = service.find_profile(profile_id)
        if profile is None:
            raise ConfigurationError(f'No connection profile with id "{profile_id}".')
        label = profile.name or profile.id
        if not profile.api:
            raise ConfigurationError(f'Connection profile "{label}" has no API configured.')
        if not profile.preset:
            raise ConfigurationError(f'Connection profile "{label}" has no preset selected.')
        return profile

    async def dispatch(
        self,
        messages: Sequence[Message],
        settings: GenerationSettings,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float = TOTAL_TIMEOUT_SECONDS,
    ) -> CompletionResult:
        profile_id = settings.tavern_profile.strip()
        if not profile_id:
            raise ConfigurationError("No managed connection profile selected.")
        service = self._service()
        profile = self._profile(service, profile_id)
        payload = [message.to_dict() for message in messages]

        async with profile_lease(service, profile.name):
            logger.info('%s Sending request through profile "%s"', self.tag, profile.name)
            raw = await with_timeout(
                service.send_request(profile.id, payload),
                timeout,
                f"Profile request timed out ({timeout:g} seconds)",
            )
        return normalize_response(raw)


TRANSPORTS: dict[ApiMode, type[Transport]] = {
    ApiMode.FRONTEND: FrontendTransport,
    ApiMode.GOOGLE: GoogleTransport,
    ApiMode.BACKEND: BackendTransport,
    ApiMode.TAVERN: TavernTransport,
    ApiMode.PERFECT: PerfectTransport,
}


def build_transport(
    mode: ApiMode,
    client: httpx.AsyncClient,
    profiles: ProfileService | None = None,
) -> Transport:
    """Instantiate the transport strategy for ``mode``."""
    return TRANSPORTS[mode](client, profiles)
