"""
Shared pytest fixtures for relay contract tests.

Sessions and watchdogs are driven deterministically: a ManualScheduler owns
virtual time (and doubles as the monotonic clock), FakeLauncher hands out
FakeHandles whose output/diagnostics/exit are emitted by the test itself,
and RecordingSink records everything it receives.
"""

import threading
from typing import Callable, List, Optional

import pytest

from relay.errors import LaunchFailed, SinkRejected
from relay.outputs.base_sink import PlaybackSink
from relay.session.scheduler import Scheduler, TimerHandle
from relay.session.watchdog import WatchdogSettings
from relay.transcoder.events import DiagnosticLine, OutputChunk, ProcessExited
from relay.transcoder.launcher import OutputContainer, TranscodeRequest


PROGRESSIVE_URL = "http://x.example/stream.mp3"
PLAYLIST_URL = "https://y.example/live.m3u8"


class _ManualTimer(TimerHandle):
    def __init__(self, due: float, callback: Callable[[], None], interval: Optional[float]):
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Virtual-time scheduler. Timers only fire inside advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[_ManualTimer] = []

    def clock(self) -> float:
        return self.now

    def call_later(self, delay_sec, callback):
        timer = _ManualTimer(self.now + delay_sec, callback, None)
        self.timers.append(timer)
        return timer

    def call_every(self, interval_sec, callback):
        timer = _ManualTimer(self.now + interval_sec, callback, interval_sec)
        self.timers.append(timer)
        return timer

    def active_timers(self) -> List[_ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due timers in order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.active_timers() if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            if timer.interval is None:
                timer.cancelled = True
            else:
                timer.due += timer.interval
            timer.callback()
        self.now = target


class FakeHandle:
    """Stands in for ProcessHandle; the test emits its events."""

    def __init__(self, handle_id: int, request: TranscodeRequest, emit, log: List[str]):
        self.id = handle_id
        self.pid = 1000 + handle_id
        self.request = request
        self.last_stderr = ""
        self.killed = False
        self.kill_grace = None
        self._emit = emit
        self._log = log

    def kill(self, grace_sec: float = 0.4) -> None:
        if self.killed:
            return
        self.killed = True
        self.kill_grace = grace_sec
        self._log.append(f"kill {self.id}")

    def is_alive(self) -> bool:
        return not self.killed

    def emit_output(self, data: bytes = b"\x00\x01" * 64) -> None:
        self._emit(OutputChunk(handle_id=self.id, data=data))

    def emit_diagnostic(self, line: str) -> None:
        self.last_stderr += line + "\n"
        self._emit(DiagnosticLine(handle_id=self.id, line=line))

    def emit_exit(self, returncode: int = 1) -> None:
        self._emit(ProcessExited(handle_id=self.id, returncode=returncode))


class FakeLauncher:
    """Records every launch; fail_launches makes launch() raise LaunchFailed."""

    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.log: List[str] = []
        self.fail_launches = False
        self.attempted = 0
        self._lock = threading.Lock()

    def launch(self, request: TranscodeRequest, emit) -> FakeHandle:
        with self._lock:
            self.attempted += 1
            if self.fail_launches:
                raise LaunchFailed("spawn refused")
            handle = FakeHandle(len(self.handles) + 1, request, emit, self.log)
            self.handles.append(handle)
            self.log.append(f"launch {handle.id}")
            return handle

    @property
    def requests(self) -> List[TranscodeRequest]:
        return [h.request for h in self.handles]

    @property
    def current(self) -> FakeHandle:
        return self.handles[-1]

    def live_handles(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.killed]


class RecordingSink(PlaybackSink):
    """Playback sink double recording every call."""

    def __init__(self):
        self.ready = True
        self.containers: List[OutputContainer] = []
        self.chunks: List[bytes] = []
        self.ended = 0
        self.closed = False
        self.reject_containers = set()
        self.fail_writes = False

    def wait_ready(self, timeout: float) -> bool:
        return self.ready

    def begin_stream(self, container: OutputContainer) -> None:
        if container in self.reject_containers:
            raise SinkRejected(f"{container.value} not supported")
        self.containers.append(container)

    def write(self, chunk: bytes) -> None:
        if self.fail_writes:
            raise OSError("destination gone")
        self.chunks.append(chunk)

    def end_stream(self) -> None:
        self.ended += 1

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    return WatchdogSettings()
