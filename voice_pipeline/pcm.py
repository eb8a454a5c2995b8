"""
PCM16 clean-up applied to synthesized speech before playback.

Segments are played back to back, so a DC offset or an abrupt first/last
sample is audible as a click at every segment boundary.
"""
import struct

FADE_IN_MS = 60
FADE_OUT_MS = 30
_DC_WINDOW = 100
_DC_THRESHOLD = 5


def smooth_edges(pcm: bytes, sample_rate: int) -> bytes:
    """Remove DC offset and apply a quadratic fade-in and a linear fade-out."""
    num_samples = len(pcm) // 2
    if num_samples == 0:
        return b""

    samples = list(struct.unpack(f"<{num_samples}h", pcm[: num_samples * 2]))

    window = min(_DC_WINDOW, num_samples)
    dc_offset = sum(samples[:window]) // window
    if abs(dc_offset) > _DC_THRESHOLD:
        samples = [max(-32768, min(32767, s - dc_offset)) for s in samples]

    fade_in = min(int(sample_rate * FADE_IN_MS / 1000), num_samples)
    for i in range(fade_in):
        samples[i] = int(samples[i] * (i / fade_in) ** 2)

    fade_out = min(int(sample_rate * FADE_OUT_MS / 1000), num_samples)
    if num_samples > fade_out:
        for i in range(fade_out):
            idx = num_samples - 1 - i
            samples[idx] = int(samples[idx] * (i / fade_out))

    return struct.pack(f"<{num_samples}h", *samples)
