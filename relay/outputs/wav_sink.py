import logging
import os
import wave
from typing import List, Optional

import numpy as np

from relay.errors import SinkRejected
from relay.outputs.base_sink import PlaybackSink
from relay.outputs.pcm import PcmFrameAssembler
from relay.transcoder.launcher import CHANNELS, SAMPLE_RATE, OutputContainer

logger = logging.getLogger(__name__)


class WavFileSink(PlaybackSink):
    """
    Simple WAV writer sink for raw PCM streams.

    Only RAW_PCM streams are accepted; each one is written to its own
    numbered `<stem>-NNN.wav` file.
    """

    def __init__(self, stem: str, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS):
        self.stem = stem
        self.sample_rate = sample_rate
        self.channels = channels
        self.paths: List[str] = []
        self.frames_written = 0
        self._wave: Optional[wave.Wave_write] = None
        self._assembler = PcmFrameAssembler(channels)
        self._count = 0

    def begin_stream(self, container: OutputContainer) -> None:
        if container is not OutputContainer.RAW_PCM:
            raise SinkRejected(f"WAV sink only accepts raw PCM, got {container.value}")
        self.end_stream()
        self._count += 1
        path = f"{self.stem}-{self._count:03d}.wav"
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._wave = wave.open(path, "wb")
        self._wave.setnchannels(self.channels)
        self._wave.setsampwidth(2)  # int16
        self._wave.setframerate(self.sample_rate)
        self.paths.append(path)
        logger.info(f"Recording raw PCM to {path}")

    def write(self, chunk: bytes) -> None:
        if self._wave is None:
            raise SinkRejected("WAV sink has no open stream")
        frames: np.ndarray = self._assembler.feed(chunk)
        if frames.shape[0]:
            self._wave.writeframes(frames.tobytes())
            self.frames_written += frames.shape[0]

    def end_stream(self) -> None:
        if self._wave is None:
            return
        dropped = self._assembler.reset()
        if dropped:
            logger.debug(f"Discarded {dropped} bytes of partial PCM frame")
        self._wave.close()
        self._wave = None

    def close(self) -> None:
        self.end_stream()
