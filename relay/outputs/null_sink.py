from relay.outputs.base_sink import PlaybackSink
from relay.transcoder.launcher import OutputContainer


class NullSink(PlaybackSink):
    """A sink that discards all audio. Useful for soak runs and health checks."""

    def __init__(self):
        self.bytes_discarded = 0
        self.streams_started = 0

    def begin_stream(self, container: OutputContainer) -> None:
        self.streams_started += 1

    def write(self, chunk: bytes) -> None:
        self.bytes_discarded += len(chunk)

    def end_stream(self) -> None:
        return

    def close(self) -> None:
        # Nothing to close
        return
