"""Locating sherpa-onnx model files on disk."""

import os
from typing import Dict, List, Optional, Sequence

import platformdirs

# part -> accepted filename suffixes (Whisper exports prefix files with the model size)
WHISPER_PARTS: Dict[str, Sequence[str]] = {
    "encoder": ("-encoder.onnx", "-encoder.int8.onnx"),
    "decoder": ("-decoder.onnx", "-decoder.int8.onnx"),
    "tokens": ("-tokens.txt", "tokens.txt"),
}

# part -> accepted exact filenames, in order of preference
TRANSDUCER_PARTS: Dict[str, Sequence[str]] = {
    "encoder": ("encoder.onnx", "encoder.int8.onnx", "encoder.fp16.onnx"),
    "decoder": ("decoder.onnx", "decoder.int8.onnx", "decoder.fp16.onnx"),
    "joiner": ("joiner.onnx", "joiner.int8.onnx", "joiner.fp16.onnx"),
    "tokens": ("tokens.txt",),
}

ModelFiles = Dict[str, Optional[str]]


def get_models_dir() -> str:
    return os.path.join(platformdirs.user_data_dir("apexflow", appauthor=False), "models")


def _list_dir(directory: str) -> List[str]:
    try:
        return sorted(os.listdir(directory))
    except OSError:
        return []


def find_whisper_files(model_path: str) -> ModelFiles:
    filenames = _list_dir(model_path)
    found: ModelFiles = {}
    for part, suffixes in WHISPER_PARTS.items():
        match = next((f for f in filenames if f.endswith(tuple(suffixes))), None)
        found[part] = os.path.join(model_path, match) if match else None
    return found


def find_transducer_files(model_path: str) -> ModelFiles:
    found: ModelFiles = {}
    for part, names in TRANSDUCER_PARTS.items():
        candidates = (os.path.join(model_path, name) for name in names)
        found[part] = next((path for path in candidates if os.path.exists(path)), None)
    return found


def find_model_files(model_path: str, model_type: str) -> ModelFiles:
    if model_type == "whisper":
        return find_whisper_files(model_path)
    return find_transducer_files(model_path)


def missing_parts(files: ModelFiles) -> List[str]:
    return [part for part, path in files.items() if path is None]
