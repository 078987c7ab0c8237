from .recorder import AudioSource, SegmentMode
from .types import AudioDevice, AudioSegment, concatenate_segments
from .vad import VoiceActivityDetector

__all__ = [
    "AudioDevice",
    "AudioSegment",
    "AudioSource",
    "SegmentMode",
    "VoiceActivityDetector",
    "concatenate_segments",
]
