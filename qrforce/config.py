"""qrforce/config.py

Generation settings snapshot.

Loaded from environment variables (``QRF_*``) and an optional ``.env`` file,
or from a JSON settings file via ``GenerationSettings.from_json``. The model is
frozen: every generation works on one immutable snapshot and the core never
persists settings.
"""

from __future__ import annotations

# Standard Library
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any

# Third-Party Libraries
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Local Modules
from qrforce.errors import ConfigurationError
from qrforce.models import Role

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES: int = 3

DEFAULT_STRIP_PATTERNS: str = (
    "/<latest_data_and_records>[\\s\\S]*?<\\/latest_data_and_records>/g\n"
    "/<plot_outline_index>[\\s\\S]*?<\\/plot_outline_index>/g"
)

DEFAULT_MAIN_PROMPT: str = (
    "Below is background material you may need. Use only the plot-relevant "
    "parts and ignore everything else:\n"
    "<background>\n$1\n</background>\n"
    "==============================================================\n\n"
    "You are a retrieval assistant for a story outline. Using the "
    "<plot_outline_index> section of the background above, decide which "
    "memories the next part of the story needs for detail and output their "
    "index codes.\n"
)

DEFAULT_SYSTEM_PROMPT: str = (
    "[Prior context]\n$7\n\n"
    "[Outline table (with header)]\n$5\n\n"
    "[Previous planning data]\n$6\n\n"
    "Considering the story so far and the user's input for this round, pick "
    "at most twenty of the most relevant memories from <plot_outline_index>. "
    "Never invent index codes. Output only the index codes wrapped in a "
    "<plot></plot> tag, in this format:\n"
    "<plot>\nindexA,indexB,indexC,......\n</plot>"
)


class ApiMode(str, Enum):
    """Transport selected by the user."""

    FRONTEND = "frontend"
    GOOGLE = "google"
    BACKEND = "backend"
    TAVERN = "tavern"
    PERFECT = "perfect"


class WorldbookSource(str, Enum):
    """Which knowledge books are scanned."""

    CHARACTER = "character"
    MANUAL = "manual"
    BOTH = "both"


class PromptMode(str, Enum):
    """How jailbreak prompts combine with the core prompts."""

    CLASSIC = "classic"
    JAILBREAK = "jailbreak"


class JailbreakPrompt(BaseModel):
    """One user-authored prompt fragment of the jailbreak sequence."""

    name: str = ""
    role: Role = Role.SYSTEM
    content: str = ""
    enabled: bool = True


def _load_config(path: str | Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        logger.warning("[config] Ignoring malformed settings file %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


class GenerationSettings(BaseSettings):
    """Immutable per-call configuration snapshot.

    Attributes:
        api_mode: Transport used for dispatch.
        use_streaming: Stream responses (``frontend`` and ``google`` only).
        api_url: Provider base URL or full chat-completion URL.
        api_key: Provider credential.
        model: Model id sent to the provider.
        tavern_profile: Managed connection-profile id (``tavern``/``perfect``).
        host_url: Base URL of the host platform's local proxy.
        context_turn_count: Conversation rounds taken into the prompt.
        required_keywords: Comma-separated keywords every reply must contain.
        max_retries: Attempt budget of the retry loop.
        plot_retention: Stored plot artifacts kept in history; <= 0 keeps all.
        optimization_enabled: Allow the post-generation optimization pass.
        optimization_target_tag: Tag whose block the optimization pass rewrites.
    """

    model_config = SettingsConfigDict(
        env_prefix="QRF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    api_mode: ApiMode = ApiMode.FRONTEND
    use_streaming: bool = True
    api_url: str = ""
    api_key: str = ""
    model: str = "gpt-4-turbo"
    tavern_profile: str = ""
    host_url: str = "http://127.0.0.1:8000"

    max_tokens: int = 20000
    temperature: float = 0.7
    top_p: float = 0.95
    presence_penalty: float = 1.0
    frequency_penalty: float = 1.0

    context_turn_count: int = 3
    extract_tags: str = ""
    exclude_tags: str = ""

    worldbook_enabled: bool = True
    worldbook_source: WorldbookSource = WorldbookSource.CHARACTER
    selected_worldbooks: list[str] = Field(default_factory=list)
    additional_worldbooks: list[str] = Field(default_factory=list)
    disabled_worldbook_entries: dict[str, list[int]] = Field(default_factory=dict)
    worldbook_char_limit: int = 60000
    worldbook_strip_enabled: bool = True
    worldbook_strip_patterns: str = DEFAULT_STRIP_PATTERNS

    required_keywords: str = ""
    max_retries: int = DEFAULT_MAX_RETRIES

    main_prompt: str = DEFAULT_MAIN_PROMPT
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    prompt_mode: PromptMode = PromptMode.CLASSIC
    jailbreak_prompts: list[JailbreakPrompt] = Field(default_factory=list)

    plot_retention: int = 0

    optimization_enabled: bool = False
    optimization_target_tag: str = "div"

    @field_validator("max_retries")
    @classmethod
    def _fallback_retries(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MAX_RETRIES

    @classmethod
    def from_json(cls, path: str | Path, **overrides: Any) -> "GenerationSettings":
        """Load a settings snapshot from a JSON file.

        A missing or malformed file yields the defaults; ``overrides`` win
        over file values.
        """
        data = _load_config(path)
        data.update(overrides)
        return cls(**data)

    @property
    def required_keyword_list(self) -> list[str]:
        return [kw.strip() for kw in self.required_keywords.split(",") if kw.strip()]

    @property
    def uses_profile(self) -> bool:
        return self.api_mode in (ApiMode.TAVERN, ApiMode.PERFECT)

    def ensure_dispatchable(self) -> None:
        """Raise ConfigurationError when the selected transport cannot run.

        Raises:
            ConfigurationError: No endpoint URL for a URL-based transport, or
                no profile id for a managed-profile transport.
        """
        if self.uses_profile:
            if not self.tavern_profile.strip():
                raise ConfigurationError("No managed connection profile selected.")
            return
        if not self.api_url.strip():
            raise ConfigurationError("API URL is not configured.")
