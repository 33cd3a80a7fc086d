"""
Playback sink interface for Retrowaves Relay.

The sink is the destination side of a session: it receives a byte stream
tagged with its container type so it can pick the right decode path.
"""

from abc import ABC, abstractmethod

from relay.transcoder.launcher import OutputContainer


class PlaybackSink(ABC):
    """
    Abstract base class for all playback sinks.

    Every relaunch of the transcoder starts a new stream: begin_stream() is
    called with the container of the new handle, followed by any number of
    write() calls and a matching end_stream().
    """

    def wait_ready(self, timeout: float) -> bool:
        """
        Block until the destination can accept audio.

        Args:
            timeout: Maximum seconds to wait

        Returns:
            True if ready, False if the wait timed out
        """
        return True

    @abstractmethod
    def begin_stream(self, container: OutputContainer) -> None:
        """
        Start a new stream.

        Raises:
            SinkRejected: If the sink cannot accept this container
        """
        ...

    @abstractmethod
    def write(self, chunk: bytes) -> None:
        """
        Write stream bytes.

        Raises:
            SinkRejected, OSError: If the destination refuses the data
        """
        ...

    @abstractmethod
    def end_stream(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the sink and release resources."""
        ...
