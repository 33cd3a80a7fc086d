"""
Session registry for Retrowaves Relay.

Maps a destination identity to at most one StreamingSession. The map is only
mutated in response to explicit play/stop requests: sessions are created on
demand by play()/get_or_create() and removed when they are stopped.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from relay.outputs.base_sink import PlaybackSink
from relay.session.scheduler import Scheduler, ThreadingScheduler
from relay.session.streaming_session import StreamingSession
from relay.session.watchdog import WatchdogSettings, WatchdogState
from relay.sources.classifier import StreamSource, classify
from relay.transcoder.launcher import CodecMode

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Owns every StreamingSession of the process.

    Args:
        launcher: Shared transcoder launcher
        sink_factory: Builds the playback sink for a new destination
        settings: Watchdog settings applied to every session
        default_codec: Codec used when play() is not given one
        scheduler: Shared timer scheduler
        transport_ready_timeout_sec: Bounded wait for a destination's sink
        on_state_change: Optional listener called as (destination, state)
        threaded: Passed through to every session
        clock: Monotonic clock passed through to every session
    """

    def __init__(
        self,
        launcher,
        sink_factory: Callable[[str], PlaybackSink],
        settings: WatchdogSettings,
        default_codec: CodecMode = CodecMode.RAW,
        scheduler: Optional[Scheduler] = None,
        transport_ready_timeout_sec: float = 15.0,
        on_state_change: Optional[Callable[[str, WatchdogState], None]] = None,
        threaded: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._launcher = launcher
        self._sink_factory = sink_factory
        self._settings = settings
        self._default_codec = default_codec
        self._scheduler = scheduler or ThreadingScheduler()
        self._transport_ready_timeout_sec = transport_ready_timeout_sec
        self._on_state_change = on_state_change
        self._threaded = threaded
        self._clock = clock

        self._sessions: Dict[str, StreamingSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, destination: str) -> bool:
        with self._lock:
            return destination in self._sessions

    def get(self, destination: str) -> Optional[StreamingSession]:
        with self._lock:
            return self._sessions.get(destination)

    def get_or_create(self, destination: str) -> StreamingSession:
        """
        Return the session for destination, creating it if needed. Idempotent.

        A session that is still finishing stop() is replaced, never returned.
        """
        with self._lock:
            session = self._sessions.get(destination)
            if session is not None and not session.is_stopped:
                return session
            session = StreamingSession(
                destination=destination,
                launcher=self._launcher,
                sink=self._sink_factory(destination),
                settings=self._settings,
                scheduler=self._scheduler,
                clock=self._clock,
                default_codec=self._default_codec,
                on_state_change=self._on_state_change,
                on_stopped=self._on_session_stopped,
                threaded=self._threaded,
                transport_ready_timeout_sec=self._transport_ready_timeout_sec,
            )
            self._sessions[destination] = session
            logger.debug(f"Created session for {destination!r}")
            return session

    def play(self, destination: str, locator, codec: Optional[CodecMode] = None) -> StreamSource:
        """
        Play locator at destination.

        Raises:
            InvalidLocator: If locator cannot be parsed
            TransportNotReady: If the destination sink did not become ready
        """
        source = locator if isinstance(locator, StreamSource) else classify(locator)
        return self.get_or_create(destination).play(source, codec)

    def stop(self, destination: str) -> bool:
        """Stop and remove the session for destination. Returns False if there was none."""
        session = self.get(destination)
        if session is None:
            return False
        session.stop()
        return True

    def stop_all(self) -> None:
        with self._lock:
            sessions: List[StreamingSession] = list(self._sessions.values())
        for session in sessions:
            session.stop()

    def snapshot(self) -> Dict[str, str]:
        """Current state name of every registered session."""
        with self._lock:
            return {destination: session.state.value for destination, session in self._sessions.items()}

    def _on_session_stopped(self, destination: str, session: StreamingSession) -> None:
        with self._lock:
            if self._sessions.get(destination) is session:
                del self._sessions[destination]
                logger.debug(f"Removed session for {destination!r}")
