"""Tests for Settings persistence, validation and history."""

import json
import logging
from pathlib import Path

import pytest

from apexflow.core.settings import (
    Settings,
    TranscriptionRecord,
    add_history_record,
    clear_history,
    load_history,
)
from apexflow.core.settings.config import MAX_HISTORY_ENTRIES
from apexflow.core.settings.settings import (
    DEFAULT_LOCAL_MODEL,
    LLMProviderSettings,
    get_config_dir,
)


@pytest.fixture
def propagating_logger():
    logger = logging.getLogger("apexflow")
    previous = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = previous


class TestSettings:
    def test_default_values(self):
        """Test Settings defaults."""
        settings = Settings()
        assert settings.sample_rate == 16000
        assert settings.input_device is None
        assert settings.transcription_provider == "local"
        assert settings.transcription_model == DEFAULT_LOCAL_MODEL
        assert settings.streaming_fallback == "fail"
        assert settings.enhancement_mode == "restrictive"
        assert settings.use_clipboard_context is False
        assert settings.prompt_tags[-1] == {"tag": "TRANSCRIPT", "signal": "transcript"}

    def test_save_load_cycle(self, config_dir):
        """Test settings survive a save and load."""
        original = Settings(
            sample_rate=44100,
            input_device="Test Mic",
            transcription_provider="deepgram-live",
            transcription_model="nova-3",
            streaming_fallback="batch",
            vocabulary=["Kubernetes"],
            vocabulary_replacements=[("cube control", "kubectl")],
        )
        original.save()

        assert (config_dir / "settings.json").exists()

        loaded = Settings.load()
        assert loaded.sample_rate == 44100
        assert loaded.input_device == "Test Mic"
        assert loaded.transcription_provider == "deepgram-live"
        assert loaded.transcription_model == "nova-3"
        assert loaded.streaming_fallback == "batch"
        assert loaded.vocabulary == ["Kubernetes"]
        assert loaded.vocabulary_replacements == [("cube control", "kubectl")]

    def test_load_nonexistent_returns_defaults(self, config_dir):
        """Test loading without a file gives defaults."""
        settings = Settings.load()

        assert settings.sample_rate == Settings().sample_rate
        assert settings.enhancements, "default enhancements are filled in"

    def test_load_corrupted_json_returns_defaults(self, config_dir):
        """Test corrupt JSON gives defaults."""
        (config_dir / "settings.json").write_text("{ this is not valid json }")

        settings = Settings.load()
        assert settings.sample_rate == 16000

    def test_unknown_keys_are_ignored(self, config_dir):
        """Test unknown keys in the file are dropped."""
        (config_dir / "settings.json").write_text(
            json.dumps({"sample_rate": 22050, "hotkey": {"key": "space"}})
        )

        settings = Settings.load()
        assert settings.sample_rate == 22050
        assert not hasattr(settings, "hotkey")

    def test_reset_to_defaults(self):
        """Test reset_to_defaults restores every field."""
        settings = Settings(sample_rate=44100, transcription_provider="openai")
        settings.reset_to_defaults()

        assert settings.sample_rate == 16000
        assert settings.transcription_provider == "local"

    def test_snapshot_is_independent(self):
        """Test a snapshot does not change with the live settings."""
        settings = Settings(vocabulary=["one"])
        snapshot = settings.snapshot()

        settings.vocabulary.append("two")
        settings.sample_rate = 48000

        assert snapshot.vocabulary == ["one"]
        assert snapshot.sample_rate == 16000


class TestConfigPaths:
    def test_get_config_dir_returns_path(self):
        """Test the config dir is an existing apexflow path."""
        result = get_config_dir()
        assert isinstance(result, Path)
        assert "apexflow" in str(result)
        assert result.exists()


class TestSettingsValidation:
    @pytest.mark.parametrize("value", [-1000, 999999, 100])
    def test_invalid_sample_rate_resets_to_default(self, config_dir, value):
        """Test an invalid sample rate resets to the default."""
        (config_dir / "settings.json").write_text(json.dumps({"sample_rate": value}))

        assert Settings.load().sample_rate == 16000

    def test_unknown_provider_resets_to_default(self, config_dir):
        """Test an unknown provider resets only that field."""
        (config_dir / "settings.json").write_text(
            json.dumps({"transcription_provider": "carrier-pigeon", "sample_rate": 8000})
        )

        settings = Settings.load()
        assert settings.transcription_provider == "local"
        assert settings.sample_rate == 8000

    def test_invalid_fallback_policy_resets(self, config_dir):
        """Test an unknown fallback policy resets to fail."""
        (config_dir / "settings.json").write_text(json.dumps({"streaming_fallback": "retry"}))

        assert Settings.load().streaming_fallback == "fail"

    def test_streaming_fallback_provider_rejected(self):
        """Test the fallback provider must be a batch provider."""
        with pytest.raises(ValueError, match="batch"):
            Settings(fallback_transcription_provider="deepgram-live")

    def test_streaming_fallback_provider_resets(self, config_dir):
        """Test a stored streaming fallback provider resets to the default."""
        (config_dir / "settings.json").write_text(
            json.dumps({"fallback_transcription_provider": "openai-realtime"})
        )

        assert Settings.load().fallback_transcription_provider == "local"

    def test_invalid_prompt_tags_reset(self, config_dir):
        """Test a template without a transcript tag resets."""
        (config_dir / "settings.json").write_text(
            json.dumps({"prompt_tags": [{"tag": "CLIP", "signal": "clipboard"}]})
        )

        settings = Settings.load()
        assert settings.prompt_tags == Settings().prompt_tags

    def test_malformed_prompt_tag_entry_rejected(self):
        """Test prompt tag entries need tag and signal keys."""
        with pytest.raises(ValueError):
            Settings(prompt_tags=[{"name": "TRANSCRIPT"}])

    def test_non_positive_timeout_rejected(self):
        """Test a zero timeout is rejected."""
        with pytest.raises(ValueError):
            Settings(idle_timeout=0)

    def test_validation_logs_warnings(self, config_dir, caplog, propagating_logger):
        """Test each reset field is logged."""
        (config_dir / "settings.json").write_text(
            json.dumps({"sample_rate": -1000, "enhancement_mode": "chaotic"})
        )

        with caplog.at_level(logging.WARNING, logger="apexflow"):
            Settings.load()

        assert "Invalid sample_rate" in caplog.text
        assert "Invalid enhancement_mode" in caplog.text

    def test_valid_settings_pass_validation(self, config_dir):
        """Test valid stored values are kept."""
        (config_dir / "settings.json").write_text(
            json.dumps(
                {
                    "sample_rate": 44100,
                    "transcription_provider": "groq",
                    "enhancement_mode": "assistant",
                    "use_screen_capture_context": True,
                }
            )
        )

        settings = Settings.load()
        assert settings.sample_rate == 44100
        assert settings.transcription_provider == "groq"
        assert settings.enhancement_mode == "assistant"
        assert settings.use_screen_capture_context is True


class TestEnhancementSettings:
    def test_active_enhancement(self, settings):
        """Test the active enhancement is looked up by id."""
        assert settings.get_active_enhancement() is None

        settings.active_enhancement_id = "clean-up"
        enhancement = settings.get_active_enhancement()
        assert enhancement.title == "Clean Up"
        assert enhancement.prompt == "Fix it."

    def test_missing_active_enhancement(self, settings):
        """Test a stale enhancement id gives None."""
        settings.active_enhancement_id = "gone"
        assert settings.get_active_enhancement() is None


class TestPerProviderSettings:
    def test_get_provider_settings(self):
        """Test per-provider LLM settings are read from the stored dicts."""
        settings = Settings()

        assert settings.get_provider_settings("openai").model == ""

        settings.llm_provider_settings["openai"] = {"model": "gpt-4o", "api_base": None}

        assert settings.get_provider_settings("openai").model == "gpt-4o"

    def test_provider_settings_isolation(self):
        """Test each LLM provider keeps its own model and base URL."""
        settings = Settings(
            llm_provider_settings={
                "openai": {"model": "gpt-4o"},
                "ollama": {"model": "llama3.2", "api_base": "http://localhost:11434"},
            }
        )

        openai = settings.get_provider_settings("openai")
        ollama = settings.get_provider_settings("ollama")

        assert openai.model == "gpt-4o"
        assert openai.api_base is None
        assert ollama.model == "llama3.2"
        assert ollama.api_base == "http://localhost:11434"

    def test_old_api_key_field_is_ignored(self):
        """Test a legacy stored api_key is dropped on load."""
        provider = LLMProviderSettings.model_validate({"model": "gpt-4o", "api_key": "sk-old"})
        assert not hasattr(provider, "api_key")

    def test_per_provider_save_load_cycle(self, config_dir):
        """Test per-provider LLM settings survive a save and load."""
        settings = Settings()
        settings.llm_provider = "ollama"
        settings.llm_provider_settings["ollama"] = LLMProviderSettings(
            model="llama3.2", api_base="http://localhost:11434"
        ).model_dump()
        settings.save()

        loaded = Settings.load()

        assert loaded.llm_provider == "ollama"
        assert loaded.get_provider_settings("ollama").model == "llama3.2"
        assert loaded.get_provider_settings("ollama").api_base == "http://localhost:11434"

    def test_secrets_are_never_persisted(self, config_dir):
        """Test no API key is written to settings.json."""
        Settings().save()
        assert "api_key" not in (config_dir / "settings.json").read_text()


class TestHistory:
    def record(self, text):
        return TranscriptionRecord(timestamp="2026-01-01T00:00:00", raw_text=text)

    def test_empty_history(self, config_dir):
        """Test history starts empty."""
        assert load_history() == []

    def test_add_and_load(self, config_dir):
        """Test history records survive a save and load."""
        add_history_record(self.record("first"))
        add_history_record(
            TranscriptionRecord(
                timestamp="2026-01-01T00:00:01",
                raw_text="second",
                enhanced_text="Second.",
                provider_id="openai",
                cost_usd=0.001,
            )
        )

        history = load_history()
        assert [r.raw_text for r in history] == ["first", "second"]
        assert history[1].enhanced_text == "Second."
        assert history[1].cost_usd == pytest.approx(0.001)

    def test_history_is_capped(self, config_dir):
        """Test history keeps only the newest entries."""
        for i in range(MAX_HISTORY_ENTRIES + 5):
            add_history_record(self.record(str(i)))

        history = load_history()
        assert len(history) == MAX_HISTORY_ENTRIES
        assert history[-1].raw_text == str(MAX_HISTORY_ENTRIES + 4)

    def test_corrupt_history_starts_fresh(self, config_dir):
        """Test a corrupt history file gives an empty history."""
        (config_dir / "history.json").write_text("not json")
        assert load_history() == []

    def test_clear_history(self, config_dir):
        """Test clear_history removes the file."""
        add_history_record(self.record("x"))
        clear_history()
        assert load_history() == []
