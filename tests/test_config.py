"""tests/test_config.py

Unit tests for GenerationSettings (qrforce/config.py).
"""

from __future__ import annotations

# Standard Library
import json
from pathlib import Path

# Third-Party Libraries
import pydantic
import pytest

# Local Modules
from qrforce.config import ApiMode, GenerationSettings, PromptMode, WorldbookSource
from qrforce.errors import ConfigurationError
from qrforce.models import Role


class TestDefaults:
    """Test suite for default values."""

    def test_defaults(self) -> None:
        settings = GenerationSettings(_env_file=None)
        assert settings.api_mode is ApiMode.FRONTEND
        assert settings.use_streaming is True
        assert settings.max_retries == 3
        assert settings.worldbook_char_limit == 60000
        assert settings.worldbook_source is WorldbookSource.CHARACTER
        assert settings.prompt_mode is PromptMode.CLASSIC
        assert "$1" in settings.main_prompt
        assert "$7" in settings.system_prompt

    @pytest.mark.parametrize("value", [0, -2])
    def test_non_positive_retries_fall_back(self, value: int) -> None:
        assert GenerationSettings(_env_file=None, max_retries=value).max_retries == 3

    def test_snapshot_is_frozen(self) -> None:
        settings = GenerationSettings(_env_file=None)
        with pytest.raises(pydantic.ValidationError):
            settings.api_url = "https://elsewhere"


class TestSources:
    """Test suite for environment and JSON loading."""

    def test_environment_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QRF_API_MODE", "google")
        monkeypatch.setenv("QRF_MAX_TOKENS", "512")
        monkeypatch.setenv("QRF_SELECTED_WORLDBOOKS", '["a", "b"]')
        settings = GenerationSettings(_env_file=None)
        assert settings.api_mode is ApiMode.GOOGLE
        assert settings.max_tokens == 512
        assert settings.selected_worldbooks == ["a", "b"]

    def test_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "api_mode": "tavern",
                    "tavern_profile": "p-1",
                    "jailbreak_prompts": [{"name": "lead", "role": "assistant", "content": "ok"}],
                    "disabled_worldbook_entries": {"main": [1, 2]},
                }
            ),
            encoding="utf-8",
        )
        settings = GenerationSettings.from_json(path, _env_file=None, max_tokens=10)
        assert settings.api_mode is ApiMode.TAVERN
        assert settings.jailbreak_prompts[0].role is Role.ASSISTANT
        assert settings.disabled_worldbook_entries == {"main": [1, 2]}
        assert settings.max_tokens == 10

    def test_from_missing_or_malformed_json(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        assert GenerationSettings.from_json(bad, _env_file=None).api_mode is ApiMode.FRONTEND
        assert GenerationSettings.from_json(tmp_path / "none.json", _env_file=None).max_retries == 3


class TestDerived:
    """Test suite for derived properties and dispatch validation."""

    def test_required_keyword_list(self) -> None:
        settings = GenerationSettings(_env_file=None, required_keywords=" <plot>, ,</plot> ")
        assert settings.required_keyword_list == ["<plot>", "</plot>"]

    def test_url_required_for_url_modes(self) -> None:
        with pytest.raises(ConfigurationError, match="API URL"):
            GenerationSettings(_env_file=None, api_mode=ApiMode.BACKEND).ensure_dispatchable()

    def test_profile_required_for_profile_modes(self) -> None:
        settings = GenerationSettings(_env_file=None, api_mode=ApiMode.PERFECT, api_url="https://x")
        with pytest.raises(ConfigurationError, match="profile"):
            settings.ensure_dispatchable()

    def test_profile_mode_ignores_url(self) -> None:
        settings = GenerationSettings(_env_file=None, api_mode=ApiMode.TAVERN, tavern_profile="p-1")
        settings.ensure_dispatchable()
        assert settings.uses_profile
