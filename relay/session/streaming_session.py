"""
Streaming session for Retrowaves Relay.

One StreamingSession exists per destination. It combines the current source,
the requested codec, the active SessionWatchdog and the destination's
playback sink, and exposes play/restart/stop to the outside world.

Every event that can change session state (handle output, diagnostics,
process exits, timer fires, sink reports, play and stop commands) goes through
one inbox and is processed by one control loop, so session-local state is
only ever touched from a single logical flow.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from relay.errors import TransportNotReady
from relay.outputs.base_sink import PlaybackSink
from relay.session.scheduler import Scheduler, ThreadingScheduler
from relay.session.watchdog import (
    SessionWatchdog,
    SinkEvent,
    SinkEventKind,
    WatchdogSettings,
    WatchdogState,
)
from relay.sources.classifier import StreamSource, classify
from relay.transcoder.launcher import CodecMode, OutputContainer, TranscodeRequest

logger = logging.getLogger(__name__)


FAILED_STATUS_MESSAGE = "could not start this source"

# Bound on how long play()/stop() wait for the control loop to apply a command
COMMAND_TIMEOUT_SEC = 5.0


@dataclass
class _PlayCommand:
    source: StreamSource
    codec: CodecMode
    applied: threading.Event = field(default_factory=threading.Event)


@dataclass
class _StopCommand:
    applied: threading.Event = field(default_factory=threading.Event)


@dataclass(frozen=True)
class _SinkCommand:
    event: SinkEvent


_SHUTDOWN = object()


class StreamingSession:
    """
    Per-destination streaming unit.

    Args:
        destination: Destination identity (registry key)
        launcher: Spawns transcoder handles
        sink: Playback sink receiving the container-tagged byte stream
        settings: Watchdog timer and retry settings
        scheduler: Timer scheduler (defaults to ThreadingScheduler)
        clock: Monotonic clock used for liveness checks
        default_codec: Codec used when play() is not given one
        on_state_change: Optional listener called as (destination, state)
        on_stopped: Called once with (destination, session) after stop()
        threaded: Run the control loop on a worker thread. When False, events
            are processed on the thread that submits them (deterministic tests).
        transport_ready_timeout_sec: Bounded wait for the sink before launching
    """

    def __init__(
        self,
        destination: str,
        launcher,
        sink: PlaybackSink,
        settings: WatchdogSettings,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        default_codec: CodecMode = CodecMode.RAW,
        on_state_change: Optional[Callable[[str, WatchdogState], None]] = None,
        on_stopped: Optional[Callable[[str, "StreamingSession"], None]] = None,
        threaded: bool = True,
        transport_ready_timeout_sec: float = 15.0,
    ) -> None:
        self.destination = destination
        self._launcher = launcher
        self._sink = sink
        self._settings = settings
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._default_codec = default_codec
        self._on_state_change = on_state_change
        self._on_stopped = on_stopped
        self._threaded = threaded
        self._transport_ready_timeout_sec = transport_ready_timeout_sec

        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._drain_guard = threading.Lock()
        self._draining = False

        self._watchdog: Optional[SessionWatchdog] = None
        self._current_source: Optional[StreamSource] = None
        self._requested_codec: CodecMode = default_codec
        self._stream_open = False

        self._lifecycle_lock = threading.Lock()
        self._stopped = False
        self._state_changed = threading.Condition()

    def __repr__(self) -> str:
        return f"<StreamingSession destination={self.destination!r} state={self.state.value}>"

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> WatchdogState:
        if self._stopped:
            return WatchdogState.STOPPED
        watchdog = self._watchdog
        return watchdog.state if watchdog is not None else WatchdogState.IDLE

    @property
    def retry_count(self) -> int:
        watchdog = self._watchdog
        return watchdog.retry_count if watchdog is not None else 0

    @property
    def codec_mode(self) -> CodecMode:
        """Codec currently being produced (reflects a fallback to RAW)."""
        watchdog = self._watchdog
        return watchdog.request.codec if watchdog is not None else self._requested_codec

    @property
    def current_source(self) -> Optional[StreamSource]:
        return self._current_source

    @property
    def handle(self):
        watchdog = self._watchdog
        return watchdog.handle if watchdog is not None else None

    @property
    def launch_count(self) -> int:
        watchdog = self._watchdog
        return watchdog.launch_count if watchdog is not None else 0

    @property
    def last_failure(self):
        watchdog = self._watchdog
        return watchdog.last_failure if watchdog is not None else None

    @property
    def watchdog(self) -> Optional[SessionWatchdog]:
        return self._watchdog

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def status_message(self) -> str:
        """User-facing status. Never contains transcoder diagnostics."""
        state = self.state
        if state is WatchdogState.FAILED:
            return FAILED_STATUS_MESSAGE
        if state is WatchdogState.AUDIBLE:
            return "playing"
        return state.value

    def wait_for_state(self, *states: WatchdogState, timeout: Optional[float] = None) -> bool:
        """Block until the session is in one of states. Returns False on timeout."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self.state in states, timeout=timeout)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def play(self, locator: Union[str, StreamSource], codec: Optional[CodecMode] = None) -> StreamSource:
        """
        Start playing a source, superseding whatever this session was playing.

        Retry counter and codec fallback are reset; the first launch is attempt 1.

        Raises:
            InvalidLocator: If locator cannot be parsed (nothing is spawned)
            TransportNotReady: If the sink did not become ready in time
            RuntimeError: If the session has been stopped
        """
        source = locator if isinstance(locator, StreamSource) else classify(locator)
        codec = codec or self._default_codec

        if self._stopped:
            raise RuntimeError(f"Session {self.destination!r} is stopped")

        if not self._sink.wait_ready(self._transport_ready_timeout_sec):
            raise TransportNotReady(
                f"Destination {self.destination!r} not ready after {self._transport_ready_timeout_sec:.0f}s"
            )

        logger.info(f"▶ [{self.destination}] play {source.locator} ({source.kind.value}, {codec.value})")
        command = _PlayCommand(source=source, codec=codec)
        self._submit(command)
        if not command.applied.wait(COMMAND_TIMEOUT_SEC):
            logger.warning(f"[{self.destination}] play command not applied within {COMMAND_TIMEOUT_SEC:.0f}s")
        return source

    def restart(self) -> Optional[StreamSource]:
        """Replay the current source with the originally requested codec."""
        if self._current_source is None:
            return None
        return self.play(self._current_source, self._requested_codec)

    def stop(self) -> None:
        """Kill the active handle, cancel all timers and release the sink. Idempotent."""
        with self._lifecycle_lock:
            if self._stopped:
                return
            self._stopped = True

        command = _StopCommand()
        if self._worker is not None and threading.current_thread() is self._worker:
            self._apply_stop(command)
        else:
            self._submit(command)
            if not command.applied.wait(COMMAND_TIMEOUT_SEC):
                logger.warning(f"[{self.destination}] stop command not applied within {COMMAND_TIMEOUT_SEC:.0f}s")

        if self._worker is not None:
            self._inbox.put(_SHUTDOWN)
            if threading.current_thread() is not self._worker:
                self._worker.join(timeout=COMMAND_TIMEOUT_SEC)

        try:
            self._sink.close()
        except OSError as e:
            logger.warning(f"[{self.destination}] error closing sink: {e}")

        self._notify_state(WatchdogState.STOPPED)
        logger.info(f"⏹ [{self.destination}] session stopped")

        if self._on_stopped:
            self._on_stopped(self.destination, self)

    def report_sink_error(self, detail: str = "") -> None:
        """Destination transport reports an error on the delivered stream."""
        self._submit(_SinkCommand(SinkEvent(SinkEventKind.ERROR, detail)))

    def report_sink_idle(self) -> None:
        """Destination transport reports it stopped consuming audio."""
        self._submit(_SinkCommand(SinkEvent(SinkEventKind.IDLE)))

    # ------------------------------------------------------------------
    # Event flow
    # ------------------------------------------------------------------

    def _post(self, watchdog: SessionWatchdog, event: object) -> None:
        """Entry point for handle and timer events of any watchdog of this session."""
        self._submit((watchdog, event))

    def _submit(self, item: object) -> None:
        if self._threaded:
            self._ensure_worker()
            self._inbox.put(item)
        else:
            self._inbox.put(item)
            self._drain_pending()

    def _ensure_worker(self) -> None:
        with self._lifecycle_lock:
            if self._worker is None:
                self._worker = threading.Thread(
                    target=self._run,
                    daemon=True,
                    name=f"RelaySession-{self.destination}",
                )
                self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _SHUTDOWN:
                break
            try:
                self._process(item)
            except Exception as e:
                logger.error(f"[{self.destination}] error processing {item!r}: {e}", exc_info=True)

    def _drain_pending(self) -> None:
        # Re-entrant submits (a watchdog relaunching from inside dispatch) are
        # queued and picked up by the drain already in progress.
        while True:
            with self._drain_guard:
                if self._draining or self._inbox.empty():
                    return
                self._draining = True
            try:
                while True:
                    try:
                        item = self._inbox.get_nowait()
                    except queue.Empty:
                        break
                    if item is not _SHUTDOWN:
                        self._process(item)
            finally:
                with self._drain_guard:
                    self._draining = False

    def _process(self, item: object) -> None:
        if isinstance(item, tuple):
            watchdog, event = item
            # Events from a superseded watchdog are dropped
            if watchdog is self._watchdog:
                watchdog.dispatch(event)
        elif isinstance(item, _PlayCommand):
            self._apply_play(item)
        elif isinstance(item, _SinkCommand):
            if self._watchdog is not None:
                self._watchdog.dispatch(item.event)
        elif isinstance(item, _StopCommand):
            self._apply_stop(item)
        else:
            logger.warning(f"[{self.destination}] unknown inbox item: {item!r}")

    def _apply_play(self, command: _PlayCommand) -> None:
        try:
            if self._stopped:
                return
            self._retire_watchdog()
            self._current_source = command.source
            self._requested_codec = command.codec

            watchdog = SessionWatchdog(
                request=TranscodeRequest(source=command.source, codec=command.codec, attempt=1),
                launcher=self._launcher,
                scheduler=self._scheduler,
                settings=self._settings,
                post=self._post,
                on_stream_start=self._on_stream_start,
                on_output=self._sink.write,
                on_state_change=self._on_watchdog_state,
                clock=self._clock,
            )
            self._watchdog = watchdog
            watchdog.start()
        finally:
            command.applied.set()

    def _apply_stop(self, command: _StopCommand) -> None:
        try:
            self._retire_watchdog()
        finally:
            command.applied.set()

    def _retire_watchdog(self) -> None:
        """Stop the current watchdog (kills its handle, cancels its timers) and end its stream."""
        watchdog = self._watchdog
        if watchdog is None:
            return
        # Detach first so the old watchdog's STOPPED transition is not reported
        self._watchdog = None
        watchdog.stop()
        self._end_stream()

    def _on_stream_start(self, container: OutputContainer) -> None:
        self._end_stream()
        self._sink.begin_stream(container)
        self._stream_open = True

    def _end_stream(self) -> None:
        if not self._stream_open:
            return
        self._stream_open = False
        try:
            self._sink.end_stream()
        except OSError as e:
            logger.warning(f"[{self.destination}] error ending sink stream: {e}")

    def _on_watchdog_state(self, state: WatchdogState) -> None:
        # STOPPED is reported once by stop(), not by retired watchdogs
        if state is not WatchdogState.STOPPED:
            self._notify_state(state)

    def _notify_state(self, state: WatchdogState) -> None:
        with self._state_changed:
            self._state_changed.notify_all()
        if self._on_state_change:
            try:
                self._on_state_change(self.destination, state)
            except Exception as e:
                logger.error(f"[{self.destination}] state listener failed: {e}", exc_info=True)
