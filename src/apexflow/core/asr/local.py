"""On-device batch transcription with sherpa-onnx models."""

import asyncio
import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from ...utils.logger import get_logger
from ..audio.types import AudioSegment
from ..errors import NoSpeechDetected, ProviderUnavailable
from .base import BatchTranscriptionProvider, ProviderDescriptor, TranscriptionResult
from .file_utils import ModelFiles, find_model_files, get_models_dir, missing_parts

logger = get_logger(__name__)

# (model path, language) -> loaded recognizer, shared across sessions
_recognizer_cache: Dict[Tuple[str, str], object] = {}
_cache_lock = threading.Lock()


@dataclass(frozen=True)
class LocalModel:
    id: str
    name: str
    type: str
    cached: bool


def _load_models_json() -> list[dict]:
    models_path = Path(__file__).parent / "models" / "models.json"
    if models_path.exists():
        with open(models_path, "r") as f:
            return json.load(f)
    return []


def get_model_type(model_id: str) -> str:
    for model in _load_models_json():
        if model.get("id") == model_id:
            model_type = model.get("type")
            if not model_type:
                raise ValueError(
                    f"Model '{model_id}' in models.json is missing a 'type' field "
                    f"('whisper' or 'transducer')"
                )
            return model_type
    raise ValueError(f"Model '{model_id}' not found in models.json")


def resolve_model_path(model: str) -> tuple[str, str]:
    if os.path.isabs(model):
        return model, os.path.basename(model)
    return os.path.join(get_models_dir(), model), model


def is_model_cached(model: str) -> bool:
    full_model_path, model_id = resolve_model_path(model)
    if not os.path.isdir(full_model_path):
        return False
    return not missing_parts(find_model_files(full_model_path, get_model_type(model_id)))


def list_local_models() -> List[LocalModel]:
    """Known models with whether their files are present in the models dir."""
    return [
        LocalModel(
            id=entry["id"],
            name=entry.get("name", entry["id"]),
            type=entry.get("type", ""),
            cached=bool(entry.get("type")) and is_model_cached(entry["id"]),
        )
        for entry in _load_models_json()
    ]


class LocalSherpaProvider(BatchTranscriptionProvider):
    """Runs a downloaded sherpa-onnx Whisper or NeMo transducer model on CPU."""

    display_name = "Local (sherpa-onnx)"
    num_threads = 4

    def __init__(self, descriptor: ProviderDescriptor):
        super().__init__(descriptor)
        self._recognizer = None

    async def _transcribe(self, segment: AudioSegment) -> TranscriptionResult:
        return await asyncio.to_thread(self._transcribe_sync, segment)

    def _transcribe_sync(self, segment: AudioSegment) -> TranscriptionResult:
        recognizer = self._get_recognizer()

        audio_float = segment.mono().astype(np.float32)
        if audio_float.size == 0:
            raise NoSpeechDetected("Empty audio segment", provider_id=self.provider_id)

        stream = recognizer.create_stream()
        stream.accept_waveform(segment.sample_rate, audio_float)
        recognizer.decode_stream(stream)

        result = stream.result

        timestamps = None
        tokens = None
        durations = None

        if hasattr(result, "timestamps") and hasattr(result, "tokens"):
            timestamps = list(result.timestamps) if result.timestamps else None
            tokens = list(result.tokens) if result.tokens else None
        if hasattr(result, "durations"):
            durations = list(result.durations) if result.durations else None

        return TranscriptionResult(
            text=result.text.strip(),
            timestamps=timestamps,
            tokens=tokens,
            durations=durations,
        )

    def _get_recognizer(self):
        if self._recognizer is not None:
            return self._recognizer

        full_model_path, model_id = resolve_model_path(self.descriptor.model)
        # Whisper bakes the decoding language into the recognizer
        key = (full_model_path, self.descriptor.language or "")
        with _cache_lock:
            recognizer = _recognizer_cache.get(key)
            if recognizer is None:
                recognizer = self._load(full_model_path, model_id)
                _recognizer_cache[key] = recognizer
        self._recognizer = recognizer
        return recognizer

    def _load(self, full_model_path: str, model_id: str):
        try:
            import sherpa_onnx
        except ImportError as e:
            raise ProviderUnavailable(
                "sherpa-onnx is not installed; install apexflow[local]",
                provider_id=self.provider_id,
            ) from e

        if not os.path.isdir(full_model_path):
            raise ProviderUnavailable(
                f"Model directory not found: {full_model_path}. "
                f"Please download the model first.",
                provider_id=self.provider_id,
            )

        try:
            model_type = get_model_type(model_id)
        except ValueError as e:
            raise ProviderUnavailable(str(e), provider_id=self.provider_id) from e

        files = find_model_files(full_model_path, model_type)
        missing = missing_parts(files)
        if missing:
            raise ProviderUnavailable(
                f"Missing {model_type} model files in {full_model_path}: {', '.join(missing)}",
                provider_id=self.provider_id,
            )

        logger.info(
            f"Loading model '{model_id}' as type '{model_type}' with CPU provider: "
            + ", ".join(f"{part}={os.path.basename(path)}" for part, path in files.items())
        )

        try:
            if model_type == "whisper":
                return self._load_whisper_model(sherpa_onnx, files)
            return self._load_transducer_model(sherpa_onnx, files)
        except Exception as e:
            raise ProviderUnavailable(
                f"Failed to load model from '{full_model_path}': {e}",
                provider_id=self.provider_id,
            ) from e

    def _load_whisper_model(self, sherpa_onnx, files: ModelFiles):
        return sherpa_onnx.OfflineRecognizer.from_whisper(
            encoder=files["encoder"],
            decoder=files["decoder"],
            tokens=files["tokens"],
            language=self.descriptor.language or "",
            num_threads=self.num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
        )

    def _load_transducer_model(self, sherpa_onnx, files: ModelFiles):
        return sherpa_onnx.OfflineRecognizer.from_transducer(
            encoder=files["encoder"],
            decoder=files["decoder"],
            joiner=files["joiner"],
            tokens=files["tokens"],
            num_threads=self.num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
            model_type="nemo_transducer",
        )


def unload_models(model_path: Optional[str] = None) -> None:
    with _cache_lock:
        if model_path is None:
            _recognizer_cache.clear()
        else:
            for key in [k for k in _recognizer_cache if k[0] == model_path]:
                del _recognizer_cache[key]
