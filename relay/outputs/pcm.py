"""
Raw PCM frame assembly.

The transcoder's RAW output is interleaved s16le stereo at 48 kHz with no
framing, and pipe reads can split a sample anywhere. PcmFrameAssembler turns
arbitrary byte chunks into whole numpy int16 frames of shape (N, 2).
"""

import numpy as np

from relay.transcoder.launcher import BYTES_PER_SAMPLE, CHANNELS


FRAME_BYTES = BYTES_PER_SAMPLE * CHANNELS


class PcmFrameAssembler:
    """Buffers partial samples between chunks."""

    def __init__(self, channels: int = CHANNELS):
        self.channels = channels
        self._frame_bytes = BYTES_PER_SAMPLE * channels
        self._remainder = b""

    @property
    def pending_bytes(self) -> int:
        return len(self._remainder)

    def feed(self, chunk: bytes) -> np.ndarray:
        """
        Append chunk and return every complete frame.

        Returns:
            int16 array of shape (frames, channels); may have zero rows
        """
        data = self._remainder + chunk
        usable = len(data) - (len(data) % self._frame_bytes)
        self._remainder = data[usable:]
        if usable == 0:
            return np.empty((0, self.channels), dtype=np.int16)
        samples = np.frombuffer(data[:usable], dtype="<i2")
        return samples.reshape(-1, self.channels)

    def reset(self) -> int:
        """Drop any buffered partial frame. Returns the number of bytes dropped."""
        dropped = len(self._remainder)
        self._remainder = b""
        return dropped


def peak_level(frames: np.ndarray) -> float:
    """Peak absolute amplitude in 0.0-1.0 (0.0 for an empty block)."""
    if frames.size == 0:
        return 0.0
    return float(np.max(np.abs(frames.astype(np.int32)))) / 32768.0
