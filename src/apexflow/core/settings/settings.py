"""
Settings management with JSON persistence.

Handles loading, saving, and validating application settings.
Uses platformdirs for cross-platform directory resolution.
"""

import json
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Literal, Optional, Tuple

from platformdirs import user_config_path
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...utils.logger import get_logger
from .config import (
    CANCEL_GRACE_PERIOD_SECONDS,
    MAX_AUDIO_QUEUE_DEPTH,
    MAX_FALLBACK_BUFFER_SECONDS,
    MAX_HISTORY_ENTRIES,
)

if TYPE_CHECKING:
    from ..transcript_processor.llm_processor import Enhancement

logger = get_logger(__name__)

APP_NAME = "apexflow"
DEFAULT_LOCAL_MODEL = "sherpa-onnx-nemo-parakeet-tdt-0.6b-v3-int8"


def _get_default_enhancements() -> List[dict]:
    from ..transcript_processor.llm_processor import get_default_enhancements

    return [e.model_dump() for e in get_default_enhancements()]


def _get_default_prompt_tags() -> List[dict]:
    from ..transcript_processor.prompt_assembler import DEFAULT_TEMPLATE

    return DEFAULT_TEMPLATE.to_config()


def get_config_dir() -> Path:
    return user_config_path(APP_NAME, ensure_exists=True)


class TranscriptionRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=False)

    timestamp: str  # ISO format datetime
    raw_text: str
    enhanced_text: Optional[str] = None
    enhancement_name: Optional[str] = None
    provider_id: Optional[str] = None
    cost_usd: Optional[float] = None

    def to_dict(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptionRecord":
        return cls.model_validate(data)


class LLMProviderSettings(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    model: str = ""
    api_base: Optional[str] = None
    saved_models: List[str] = Field(default_factory=list)


class Settings(BaseModel):
    model_config = ConfigDict(validate_assignment=False)

    # Audio
    sample_rate: int = Field(default=16000, ge=8000, le=192000)
    input_device: Optional[str] = None
    vad_silence_threshold: float = Field(default=0.02, gt=0.0, lt=1.0)
    vad_trailing_silence: float = Field(default=1.0, gt=0.0, le=10.0)
    auto_stop_on_silence: bool = False
    max_queue_depth: int = Field(default=MAX_AUDIO_QUEUE_DEPTH, ge=1)

    # Transcription
    transcription_provider: str = "local"
    transcription_model: str = DEFAULT_LOCAL_MODEL
    transcription_endpoint: Optional[str] = None
    transcription_language: Optional[str] = None
    streaming_fallback: Literal["fail", "batch"] = "fail"
    fallback_transcription_provider: str = "local"
    fallback_transcription_model: str = DEFAULT_LOCAL_MODEL
    fallback_transcription_endpoint: Optional[str] = None
    fallback_buffer_seconds: float = Field(default=MAX_FALLBACK_BUFFER_SECONDS, gt=0)

    # Timeouts (seconds)
    request_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    idle_timeout: float = Field(default=10.0, gt=0)
    context_timeout: float = Field(default=2.0, gt=0)
    enhancement_timeout: float = Field(default=30.0, gt=0)
    cancel_grace_period: float = Field(default=CANCEL_GRACE_PERIOD_SECONDS, ge=0)

    # Enhancement
    enhancement_enabled: bool = False
    enhancement_mode: Literal["restrictive", "assistant"] = "restrictive"
    enhancements: List[dict] = Field(default_factory=list)
    active_enhancement_id: Optional[str] = None
    llm_provider: str = "openai"
    llm_provider_settings: Dict[str, dict] = Field(default_factory=dict)
    prompt_tags: List[dict] = Field(default_factory=_get_default_prompt_tags)

    # Context
    use_clipboard_context: bool = False
    use_screen_capture_context: bool = False
    use_selected_text_context: bool = False
    use_vocabulary_context: bool = True

    vocabulary: List[str] = Field(default_factory=list)
    vocabulary_replacements: List[Tuple[str, str]] = Field(default_factory=list)

    @field_validator("transcription_provider", "fallback_transcription_provider")
    @classmethod
    def provider_known(cls, v):
        from ..asr.registry import PROVIDERS

        if v not in PROVIDERS:
            raise ValueError(f"unknown transcription provider {v!r}")
        return v

    @field_validator("fallback_transcription_provider")
    @classmethod
    def fallback_is_batch(cls, v):
        from ..asr.registry import is_streaming_provider

        if is_streaming_provider(v):
            raise ValueError(f"fallback provider {v!r} must be a batch provider")
        return v

    @field_validator("prompt_tags")
    @classmethod
    def prompt_tags_valid(cls, v):
        from ..transcript_processor.prompt_assembler import PromptTemplate

        try:
            PromptTemplate.from_config(v)
        except (KeyError, TypeError) as e:
            raise ValueError(f"prompt tag entries need 'tag' and 'signal': {e}") from e
        return v

    @classmethod
    def load(cls) -> "Settings":
        config_file = get_config_dir() / "settings.json"

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)

                # Filter to valid keys only
                valid_keys = cls.model_fields.keys()
                filtered_data = {k: v for k, v in data.items() if k in valid_keys}

                if "enhancements" in filtered_data:
                    if not isinstance(filtered_data["enhancements"], list):
                        filtered_data["enhancements"] = []

                # Validate each field individually, falling back to defaults on error
                settings = cls._load_with_fallbacks(filtered_data)

                if not settings.enhancements:
                    settings.enhancements = _get_default_enhancements()

                return settings
            except (json.JSONDecodeError, TypeError, AttributeError) as e:
                logger.warning(f"Could not load settings: {e}. Using defaults.", exc_info=True)
                return cls._defaults()

        return cls._defaults()

    @classmethod
    def _defaults(cls) -> "Settings":
        settings = cls()
        settings.enhancements = _get_default_enhancements()
        return settings

    @classmethod
    def _load_with_fallbacks(cls, data: dict) -> "Settings":
        """Load settings with field-level fallback to defaults on validation errors."""
        defaults = cls()
        default_data = defaults.model_dump()
        result_data = {}

        for field_name in cls.model_fields:
            if field_name in data:
                try:
                    validated = cls.model_validate({**default_data, field_name: data[field_name]})
                    result_data[field_name] = getattr(validated, field_name)
                except Exception:
                    default_val = getattr(defaults, field_name)
                    logger.warning(
                        f"Invalid {field_name} {data[field_name]!r}, resetting to {default_val}"
                    )
                    result_data[field_name] = default_val
            else:
                result_data[field_name] = getattr(defaults, field_name)

        return cls.model_construct(**result_data)

    def save(self) -> None:
        config_file = get_config_dir() / "settings.json"

        data = self.model_dump()

        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)

    def reset_to_defaults(self) -> None:
        default = Settings()
        for key, value in default.model_dump().items():
            setattr(self, key, value)

    def get_active_enhancement(self) -> Optional["Enhancement"]:
        if not self.active_enhancement_id:
            return None

        from ..transcript_processor.llm_processor import Enhancement

        for enh_dict in self.enhancements:
            if enh_dict.get("id") == self.active_enhancement_id:
                return Enhancement.model_validate(enh_dict)

        return None

    def get_provider_settings(self, provider_id: str) -> LLMProviderSettings:
        if provider_id in self.llm_provider_settings:
            return LLMProviderSettings.model_validate(self.llm_provider_settings[provider_id])
        return LLMProviderSettings()

    def snapshot(self) -> "Settings":
        """Independent copy read once at session start."""
        return self.model_copy(deep=True)


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.load()
    return _settings_instance


def get_history_file() -> Path:
    return get_config_dir() / "history.json"


def load_history() -> List[TranscriptionRecord]:
    history_file = get_history_file()

    if not history_file.exists():
        return []

    try:
        with open(history_file, "r") as f:
            data = json.load(f)

        return [TranscriptionRecord.from_dict(item) for item in data]
    except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
        logger.warning(f"Could not load history: {e}. Starting fresh.")
        return []


def save_history(records: List[TranscriptionRecord]) -> None:
    history_file = get_history_file()
    records = records[-MAX_HISTORY_ENTRIES:]

    data = [record.to_dict() for record in records]

    with open(history_file, "w") as f:
        json.dump(data, f, indent=2)


def add_history_record(record: TranscriptionRecord) -> None:
    records = load_history()
    records.append(record)
    save_history(records)


def clear_history() -> None:
    history_file = get_history_file()
    if history_file.exists():
        history_file.unlink()
