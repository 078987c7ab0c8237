import io

import numpy as np
import pytest
import scipy.io.wavfile as wav

from apexflow.core.audio import AudioSegment, VoiceActivityDetector, concatenate_segments


class TestAudioSegment:
    def test_one_dimensional_samples_become_a_column(self):
        """Test 1-D samples are reshaped to one channel."""
        segment = AudioSegment(np.zeros(160, dtype=np.float32), 16000, 1, sequence=1)
        assert segment.samples.shape == (160, 1)
        assert segment.duration == pytest.approx(0.01)

    def test_source_array_is_copied(self):
        """Test a segment does not share the caller's array."""
        source = np.zeros((10, 1), dtype=np.float32)
        segment = AudioSegment(source, 16000, 1, sequence=1)
        source[0, 0] = 1.0
        assert segment.samples[0, 0] == 0.0

    def test_stereo_mono_mix(self):
        """Test stereo audio is averaged to mono."""
        samples = np.array([[0.2, 0.4], [0.0, 1.0]], dtype=np.float32)
        segment = AudioSegment(samples, 16000, 2, sequence=1)
        np.testing.assert_allclose(segment.mono(), [0.3, 0.5])

    def test_pcm16_clips_out_of_range(self):
        """Test PCM16 conversion clips samples outside [-1, 1]."""
        segment = AudioSegment(np.array([2.0, -2.0, 0.0], dtype=np.float32), 16000, 1, 1)
        assert segment.to_pcm16().tolist() == [32767, -32767, 0]
        assert len(segment.to_pcm16_bytes()) == 6

    def test_wav_bytes_are_readable(self, make_segment):
        """Test WAV export is readable as 16-bit PCM."""
        segment = make_segment(seconds=0.25)
        rate, data = wav.read(io.BytesIO(segment.to_wav_bytes()))
        assert rate == 16000
        assert data.dtype == np.int16
        assert len(data) == 4000


class TestConcatenate:
    def test_merges_in_order(self, make_segment):
        """Test segments merge in order and keep the first start time."""
        first = make_segment(seconds=0.1, sequence=1)
        second = make_segment(seconds=0.2, sequence=2)

        merged = concatenate_segments([first, second])

        assert merged.duration == pytest.approx(0.3)
        assert merged.sequence == 2
        assert merged.started_at == first.started_at

    def test_single_segment_is_returned_as_is(self, make_segment):
        """Test a single segment is returned unchanged."""
        segment = make_segment()
        assert concatenate_segments([segment]) is segment

    def test_empty_list_rejected(self):
        """Test concatenating nothing raises ValueError."""
        with pytest.raises(ValueError):
            concatenate_segments([])

    def test_sample_rate_mismatch_rejected(self, make_segment):
        """Test mixed sample rates cannot be concatenated."""
        with pytest.raises(ValueError, match="Sample rate mismatch"):
            concatenate_segments([make_segment(sample_rate=16000), make_segment(sample_rate=8000)])


class TestVoiceActivityDetector:
    def test_pre_roll_is_kept_before_speech(self):
        """Test quiet blocks before speech are kept as pre-roll."""
        vad = VoiceActivityDetector(1000, trailing_silence=0.1, min_speech=0.05, pre_roll=0.02)
        quiet = np.full((10, 1), 0.001, dtype=np.float32)
        loud = np.full((100, 1), 0.5, dtype=np.float32)
        silence = np.zeros((100, 1), dtype=np.float32)

        for _ in range(5):
            assert vad.process(quiet) is None
        assert vad.process(loud) is None
        assert vad.in_speech is True

        closed = vad.process(silence)
        assert closed is not None
        # two pre-roll blocks + speech + trailing silence
        assert len(closed) == 20 + 100 + 100
        assert vad.in_speech is False

    def test_flush_without_speech_returns_nothing(self):
        """Test flushing with no speech yields no segment."""
        vad = VoiceActivityDetector(16000)
        vad.process(np.zeros((800, 1), dtype=np.float32))
        assert vad.flush() is None
