"""
Session watchdog for Retrowaves Relay.

Owns one ffmpeg ProcessHandle at a time for a single play activation and
decides, from byte-arrival timing and stderr diagnostics, whether to accept
the stream as healthy, kill and retry it, or kill and fall back to raw PCM.

State machine:

    STARTING -> AUDIBLE -> STALLED -> (RETRYING | FALLING_BACK | FAILED)
    STOPPED is reachable from any state via stop().

All events (handle output, diagnostics, exits, timer fires, sink reports)
arrive through dispatch() on the owning session's single event flow. Timers
belong to the handle that armed them and are cancelled together at the one
point where that handle is retired, before any replacement arms its own.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from relay.errors import FailureKind, LaunchFailed, SinkRejected
from relay.session.retry import RetryPolicy
from relay.session.scheduler import Scheduler, TimerHandle
from relay.transcoder.diagnostics import DiagnosticKind, classify_diagnostic
from relay.transcoder.events import DiagnosticLine, OutputChunk, ProcessExited
from relay.transcoder.launcher import CodecMode, TranscodeRequest
from relay.transcoder.process_handle import ProcessHandle

logger = logging.getLogger(__name__)


class WatchdogState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    AUDIBLE = "audible"
    STALLED = "stalled"
    RETRYING = "retrying"
    FALLING_BACK = "falling_back"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATES = (WatchdogState.FAILED, WatchdogState.STOPPED)


class TimerKind(enum.Enum):
    STARTUP = "startup"
    LIVENESS = "liveness"
    RETRY = "retry"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TimerFired:
    """Posted by a timer callback. token identifies the arming (handle id or sequence)."""
    kind: TimerKind
    token: int


class SinkEventKind(enum.Enum):
    IDLE = "idle"
    ERROR = "error"


@dataclass(frozen=True)
class SinkEvent:
    """Playback sink state change reported by the destination."""
    kind: SinkEventKind
    detail: str = ""


@dataclass(frozen=True)
class WatchdogSettings:
    startup_timeout_sec: float = 8.0
    liveness_interval_sec: float = 5.0
    stall_threshold_sec: float = 20.0
    fallback_timeout_sec: float = 10.0
    kill_grace_sec: float = 0.4
    fallback_enabled: bool = True
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


class _HandleTimers:
    """Timers armed on behalf of one handle."""

    def __init__(self) -> None:
        self.startup: Optional[TimerHandle] = None
        self.liveness: Optional[TimerHandle] = None

    def cancel_startup(self) -> None:
        if self.startup is not None:
            self.startup.cancel()
            self.startup = None

    def cancel_all(self) -> None:
        self.cancel_startup()
        if self.liveness is not None:
            self.liveness.cancel()
            self.liveness = None


class SessionWatchdog:
    """
    Supervises the transcoder for one play activation.

    Decisions:
    - first output byte while STARTING -> AUDIBLE, retry counter reset
    - no byte before the startup timer, or silence past the stall threshold
      while AUDIBLE, or an unexpected exit -> kill, bounded retry
    - "unsupported option" on a first-attempt playlist -> immediate relaunch
      without the advanced flags (once, no retry slot consumed)
    - playlist in COMPACT mode not AUDIBLE by the fallback deadline ->
      relaunch once in RAW mode
    - retries exhausted -> FAILED, nothing further happens

    Args:
        request: First transcode request of the activation (attempt 1)
        launcher: Spawns handles (TranscoderLauncher or a test double)
        scheduler: Arms timers
        settings: Timer durations, fallback switch and retry policy
        post: Delivers (watchdog, event) into the owning session's event flow
        on_stream_start: Called with the OutputContainer of every new handle
        on_output: Called with every chunk of the current handle
        on_state_change: Optional listener for state transitions
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        request: TranscodeRequest,
        launcher,
        scheduler: Scheduler,
        settings: WatchdogSettings,
        post: Callable[["SessionWatchdog", object], None],
        on_stream_start: Callable,
        on_output: Callable[[bytes], None],
        on_state_change: Optional[Callable[[WatchdogState], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._request = request
        self._launcher = launcher
        self._scheduler = scheduler
        self._settings = settings
        self._post = post
        self._on_stream_start = on_stream_start
        self._on_output = on_output
        self._on_state_change = on_state_change
        self._clock = clock

        self._state = WatchdogState.IDLE
        self._handle: Optional[ProcessHandle] = None
        self._timers = _HandleTimers()
        self._last_output_at: Optional[float] = None

        self._retry_count = 0
        self._retry_timer: Optional[TimerHandle] = None
        self._retry_seq = 0

        self._fallback_timer: Optional[TimerHandle] = None
        self._fallback_used = False
        self._capability_relaunched = False

        self._launch_count = 0
        self._last_failure: Optional[FailureKind] = None
        self._last_stderr = ""

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> WatchdogState:
        return self._state

    @property
    def request(self) -> TranscodeRequest:
        return self._request

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def launch_count(self) -> int:
        return self._launch_count

    @property
    def last_failure(self) -> Optional[FailureKind]:
        return self._last_failure

    @property
    def fallback_used(self) -> bool:
        return self._fallback_used

    @property
    def fallback_armed(self) -> bool:
        return self._fallback_timer is not None

    @property
    def capability_relaunched(self) -> bool:
        return self._capability_relaunched

    @property
    def last_stderr(self) -> str:
        if self._handle is not None:
            return self._handle.last_stderr
        return self._last_stderr

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch attempt 1 and arm the codec fallback if it applies."""
        if self._state is not WatchdogState.IDLE:
            raise RuntimeError(f"Cannot start watchdog in state: {self._state}")

        self._launch(self._request)

        if self._fallback_applies() and self._state not in TERMINAL_STATES:
            self._fallback_timer = self._scheduler.call_later(
                self._settings.fallback_timeout_sec,
                lambda: self._post_timer(TimerKind.FALLBACK, 0),
            )
            logger.debug(f"Codec fallback armed ({self._settings.fallback_timeout_sec:.0f}s)")

    def stop(self) -> None:
        """Kill the active handle and cancel every timer. Idempotent."""
        if self._state is WatchdogState.STOPPED:
            return
        self._cancel_fallback_timer()
        self._cancel_retry_timer()
        self._retire_handle()
        self._set_state(WatchdogState.STOPPED)

    def dispatch(self, event: object) -> None:
        """Handle one event from the session's event flow."""
        if self._state in TERMINAL_STATES:
            return

        if isinstance(event, OutputChunk):
            if self._is_current(event.handle_id):
                self._on_chunk(event)
        elif isinstance(event, DiagnosticLine):
            if self._is_current(event.handle_id):
                self._on_diagnostic(event)
        elif isinstance(event, ProcessExited):
            if self._is_current(event.handle_id):
                self._on_exit(event)
        elif isinstance(event, TimerFired):
            self._on_timer(event)
        elif isinstance(event, SinkEvent):
            self._on_sink_event(event)
        else:
            logger.warning(f"Watchdog ignoring unknown event: {event!r}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_chunk(self, event: OutputChunk) -> None:
        self._last_output_at = self._clock()
        try:
            self._on_output(event.data)
        except (SinkRejected, OSError) as e:
            logger.warning(f"Playback sink rejected output: {e}")
            self._on_failure(FailureKind.SINK_REJECTION)
            return

        if self._state is WatchdogState.STARTING:
            self._become_audible()

    def _on_diagnostic(self, event: DiagnosticLine) -> None:
        diagnostic = classify_diagnostic(event.line, self._request.uses_advanced_playlist_flags)

        if diagnostic.kind is DiagnosticKind.CAPABILITY_REJECTED:
            if self._capability_relaunched:
                logger.warning(f"[FFMPEG] {event.line}")
                return
            self._relaunch_without_advanced_flags(diagnostic.option)
        elif diagnostic.kind is DiagnosticKind.NETWORK_FAILURE:
            logger.warning(f"[FFMPEG] {event.line}")
        elif diagnostic.kind is DiagnosticKind.SEGMENT_EOF:
            logger.info("[FFMPEG] playlist EOF (ffmpeg will reconnect)")
        else:
            logger.debug(f"[FFMPEG] {event.line}")

    def _on_exit(self, event: ProcessExited) -> None:
        if self._state not in (WatchdogState.STARTING, WatchdogState.AUDIBLE):
            return
        # An exit caused by a rejected playlist option is a capability
        # rejection even if its diagnostic line has not been dispatched yet
        rejected = self._rejected_option_in_stderr()
        if rejected is not None:
            logger.warning(f"ffmpeg exited (code={event.returncode}) after rejecting {rejected}")
            self._relaunch_without_advanced_flags(rejected)
            return
        logger.warning(f"ffmpeg exited unexpectedly (code={event.returncode}, state={self._state.value})")
        self._on_failure(FailureKind.PROCESS_EXIT)

    def _rejected_option_in_stderr(self) -> Optional[str]:
        if self._capability_relaunched or not self._request.uses_advanced_playlist_flags:
            return None
        for line in self._handle.last_stderr.splitlines():
            diagnostic = classify_diagnostic(line, True)
            if diagnostic.kind is DiagnosticKind.CAPABILITY_REJECTED:
                return diagnostic.option
        return None

    def _relaunch_without_advanced_flags(self, option: Optional[str]) -> None:
        """Immediate attempt-2 relaunch. Happens once and consumes no retry."""
        logger.warning(f"ffmpeg: {option} unsupported → restarting without it")
        self._capability_relaunched = True
        self._last_failure = FailureKind.CAPABILITY_REJECTED
        self._retire_handle()
        self._launch(self._request.without_advanced_flags())

    def _on_timer(self, event: TimerFired) -> None:
        if event.kind is TimerKind.STARTUP:
            if (
                self._is_current(event.token)
                and self._state is WatchdogState.STARTING
                and self._last_output_at is None
            ):
                logger.warning(
                    f"ffmpeg: no audio at startup ({self._settings.startup_timeout_sec:.0f}s, "
                    f"{self._request.codec.value}) → restart"
                )
                self._on_failure(FailureKind.STALL_TIMEOUT)

        elif event.kind is TimerKind.LIVENESS:
            if not self._is_current(event.token) or self._state is not WatchdogState.AUDIBLE:
                return
            silent_for = self._clock() - (self._last_output_at or 0.0)
            if silent_for >= self._settings.stall_threshold_sec:
                logger.warning(f"ffmpeg: no audio for {silent_for:.0f}s → restart")
                self._on_failure(FailureKind.STALL_TIMEOUT)

        elif event.kind is TimerKind.RETRY:
            if event.token != self._retry_seq or self._retry_timer is None:
                return
            self._retry_timer = None
            if self._state is WatchdogState.RETRYING:
                self._launch(self._request)

        elif event.kind is TimerKind.FALLBACK:
            if self._fallback_timer is None:
                return
            self._fallback_timer = None
            if self._state is not WatchdogState.AUDIBLE:
                self._fall_back()

    def _on_sink_event(self, event: SinkEvent) -> None:
        if event.kind is SinkEventKind.ERROR:
            logger.error(f"Playback sink error: {event.detail or '<no detail>'}")
            if self._state in (WatchdogState.STARTING, WatchdogState.AUDIBLE):
                self._on_failure(FailureKind.SINK_REJECTION)
        elif event.kind is SinkEventKind.IDLE:
            if self._state is WatchdogState.AUDIBLE:
                logger.warning("Playback sink went idle while streaming")
                self._on_failure(FailureKind.PROCESS_EXIT)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _launch(self, request: TranscodeRequest) -> None:
        """Spawn a handle for request. The previous handle must already be retired."""
        self._request = request
        self._launch_count += 1
        try:
            handle = self._launcher.launch(request, emit=self._emit_handle_event)
        except LaunchFailed as e:
            logger.error(f"ffmpeg launch failed: {e}")
            self._set_state(WatchdogState.STARTING)
            self._on_failure(FailureKind.PROCESS_EXIT)
            return

        self._handle = handle
        self._timers = _HandleTimers()
        self._last_output_at = None
        self._set_state(WatchdogState.STARTING)

        try:
            self._on_stream_start(request.codec.container)
        except (SinkRejected, OSError) as e:
            logger.warning(f"Playback sink rejected {request.codec.container.value} stream: {e}")
            self._on_failure(FailureKind.SINK_REJECTION)
            return

        # Raw playlists may take a while to produce the first segment and have
        # nothing to fall back to; they are left to ffmpeg's own I/O timeout.
        if not (request.source.is_playlist and request.codec is CodecMode.RAW):
            handle_id = handle.id
            self._timers.startup = self._scheduler.call_later(
                self._settings.startup_timeout_sec,
                lambda: self._post_timer(TimerKind.STARTUP, handle_id),
            )

    def _become_audible(self) -> None:
        self._set_state(WatchdogState.AUDIBLE)
        self._retry_count = 0
        self._timers.cancel_startup()
        self._cancel_fallback_timer()
        handle_id = self._handle.id
        self._timers.liveness = self._scheduler.call_every(
            self._settings.liveness_interval_sec,
            lambda: self._post_timer(TimerKind.LIVENESS, handle_id),
        )
        logger.info(f"🎧 Audio flowing ({self._request.codec.value}, attempt {self._request.attempt})")

    def _fall_back(self) -> None:
        logger.warning("Playlist did not start in compact mode → falling back to raw PCM")
        self._fallback_used = True
        self._set_state(WatchdogState.FALLING_BACK)
        self._cancel_retry_timer()
        self._retire_handle()
        self._launch(self._request.fallback_to_raw())

    def _on_failure(self, kind: FailureKind) -> None:
        """Kill the current handle, then retry with backoff or give up."""
        if self._state in TERMINAL_STATES:
            return
        self._last_failure = kind
        self._set_state(WatchdogState.STALLED)
        self._retire_handle()

        policy = self._settings.retry_policy
        if not policy.allows(self._retry_count):
            self._cancel_fallback_timer()
            self._cancel_retry_timer()
            self._last_failure = FailureKind.RETRY_EXHAUSTED
            self._set_state(WatchdogState.FAILED)
            logger.error(
                f"❌ Giving up on {self._request.source.locator} after {self._retry_count} restarts "
                f"(last failure: {kind.value})"
            )
            if self._last_stderr:
                logger.error("ffmpeg stderr before failure:\n%s", self._last_stderr)
            return

        self._retry_count += 1
        delay = policy.delay_for(self._retry_count)
        self._set_state(WatchdogState.RETRYING)
        logger.warning(
            f"🔁 Stream dropped ({kind.value}). Restart #{self._retry_count}/{policy.max_retries} "
            f"in {delay:.1f}s"
        )

        if delay <= 0:
            self._launch(self._request)
            return

        self._retry_seq += 1
        token = self._retry_seq
        self._retry_timer = self._scheduler.call_later(
            delay, lambda: self._post_timer(TimerKind.RETRY, token)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retire_handle(self) -> None:
        """Cancel the handle's timers and kill it. Single point of supersession."""
        self._timers.cancel_all()
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        self._last_stderr = handle.last_stderr
        handle.kill(self._settings.kill_grace_sec)
        logger.debug(f"Retired handle {handle.id} (pid={handle.pid})")

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _cancel_fallback_timer(self) -> None:
        if self._fallback_timer is not None:
            self._fallback_timer.cancel()
            self._fallback_timer = None

    def _fallback_applies(self) -> bool:
        return (
            self._settings.fallback_enabled
            and not self._fallback_used
            and self._request.source.is_playlist
            and self._request.codec is CodecMode.COMPACT
        )

    def _is_current(self, handle_id: int) -> bool:
        return self._handle is not None and self._handle.id == handle_id

    def _emit_handle_event(self, event: object) -> None:
        self._post(self, event)

    def _post_timer(self, kind: TimerKind, token: int) -> None:
        self._post(self, TimerFired(kind=kind, token=token))

    def _set_state(self, new_state: WatchdogState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.debug(f"Watchdog state: {old_state.value} -> {new_state.value}")
        if self._on_state_change:
            self._on_state_change(new_state)
