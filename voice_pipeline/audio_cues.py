"""
Short feedback tones at listening-session boundaries.

Tones are rendered to PCM16 locally and handed to the audio output as
fire-and-forget cues. A cue that cannot be played is dropped; it never
affects the conversation loop.
"""
import math
import struct
from enum import Enum
from typing import Dict, Optional, Tuple

from logging_setup import get_logger, Component
from .capabilities import AudioOutput

logger = get_logger(Component.AUDIO_CUE)

CUE_SAMPLE_RATE = 24000

# Peak gain and the floor of the exponential decay
_START_GAIN = 0.05
_END_GAIN = 0.00001


class Cue(str, Enum):
    LISTENING = "listening"
    PROCESSING = "processing"


# frequency (Hz), duration (s)
CUE_TONES: Dict[Cue, Tuple[float, float]] = {
    Cue.LISTENING: (440.0, 0.08),
    Cue.PROCESSING: (880.0, 0.1),
}


def render_tone(frequency: float, duration: float, sample_rate: int = CUE_SAMPLE_RATE) -> bytes:
    """Sine tone with an exponential fade, as little-endian PCM16 mono."""
    num_samples = max(1, int(sample_rate * duration))
    decay = _END_GAIN / _START_GAIN
    samples = []
    for i in range(num_samples):
        t = i / sample_rate
        gain = _START_GAIN * decay ** (i / num_samples)
        value = math.sin(2 * math.pi * frequency * t) * gain * 32767
        samples.append(max(-32768, min(32767, int(value))))
    return struct.pack(f"<{num_samples}h", *samples)


class AudioCuePlayer:
    """Stateless player for the listening / processing tones."""

    def __init__(self, output: Optional[AudioOutput], sample_rate: int = CUE_SAMPLE_RATE):
        self._output = output
        self._sample_rate = sample_rate
        self._rendered: Dict[Cue, bytes] = {}

    def play(self, cue: Cue) -> None:
        if self._output is None:
            return
        pcm = self._rendered.get(cue)
        if pcm is None:
            frequency, duration = CUE_TONES[cue]
            pcm = render_tone(frequency, duration, self._sample_rate)
            self._rendered[cue] = pcm
        try:
            self._output.play_cue(pcm, self._sample_rate)
        except Exception as e:
            logger.debug("Audio cue dropped", cue=cue.value, error=str(e), error_type=type(e).__name__)
