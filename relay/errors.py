"""
Error taxonomy for Retrowaves Relay.

Only InvalidLocator, TransportNotReady and BinaryUnavailable ever reach a
caller. Transient failures are recovered inside the session watchdog and are
recorded as a FailureKind instead of being raised.
"""

import enum


class RelayError(Exception):
    """Base class for all relay errors."""


class InvalidLocator(RelayError, ValueError):
    """Source locator cannot be parsed as an absolute URI."""

    def __init__(self, locator: str, reason: str = "not a valid URL"):
        self.locator = locator
        self.reason = reason
        super().__init__(f"Invalid source locator {locator!r}: {reason}")


class BinaryUnavailable(RelayError):
    """No usable ffmpeg binary could be found at startup."""

    def __init__(self, tried):
        self.tried = list(tried)
        detail = ", ".join(self.tried) if self.tried else "nothing"
        super().__init__(f"No executable ffmpeg binary found (tried: {detail})")


class TransportNotReady(RelayError):
    """Destination transport link did not become ready within the bounded wait."""


class LaunchFailed(RelayError):
    """Transcoder subprocess could not be spawned."""


class SinkRejected(RelayError):
    """Playback sink refused a stream or chunk."""


class FailureKind(enum.Enum):
    """Failure classes handled by the session watchdog."""
    CAPABILITY_REJECTED = "capability_rejected"
    STALL_TIMEOUT = "stall_timeout"
    PROCESS_EXIT = "process_exit"
    SINK_REJECTION = "sink_rejection"
    RETRY_EXHAUSTED = "retry_exhausted"
