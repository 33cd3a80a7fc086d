"""
Contract tests for StreamingSession and SessionManager.

Sessions run in synchronous mode (events processed on the submitting
thread) against the fake launcher and manual scheduler from conftest.
"""

import pytest

from relay.errors import FailureKind, InvalidLocator, TransportNotReady
from relay.session.retry import RetryPolicy
from relay.session.session_manager import SessionManager
from relay.session.streaming_session import FAILED_STATUS_MESSAGE, StreamingSession
from relay.session.watchdog import WatchdogSettings, WatchdogState
from relay.transcoder.launcher import CodecMode, OutputContainer

from conftest import PLAYLIST_URL, PROGRESSIVE_URL, RecordingSink


OTHER_URL = "https://other.example/radio.aac"


@pytest.fixture
def sinks():
    return {}


@pytest.fixture
def state_log():
    return []


@pytest.fixture
def manager(launcher, scheduler, settings, sinks, state_log):
    def factory(destination):
        sinks[destination] = RecordingSink()
        return sinks[destination]

    return SessionManager(
        launcher=launcher,
        sink_factory=factory,
        settings=settings,
        default_codec=CodecMode.COMPACT,
        scheduler=scheduler,
        on_state_change=lambda destination, state: state_log.append((destination, state)),
        threaded=False,
        clock=scheduler.clock,
    )


class TestPlay:
    """play() on a destination."""

    @pytest.mark.timeout(5)
    def test_play_creates_session_and_launches(self, manager, launcher, sinks):
        source = manager.play("guild-1", PROGRESSIVE_URL)

        assert source.locator == PROGRESSIVE_URL
        assert "guild-1" in manager
        session = manager.get("guild-1")
        assert session.state is WatchdogState.STARTING
        assert session.current_source == source
        assert len(launcher.handles) == 1
        assert sinks["guild-1"].containers == [OutputContainer.OGG_OPUS]

    @pytest.mark.timeout(5)
    def test_get_or_create_is_idempotent(self, manager):
        first = manager.get_or_create("guild-1")
        assert manager.get_or_create("guild-1") is first
        assert len(manager) == 1

    @pytest.mark.timeout(5)
    def test_output_reaches_sink(self, manager, launcher, sinks):
        manager.play("guild-1", PROGRESSIVE_URL)
        launcher.current.emit_output(b"xy")

        assert sinks["guild-1"].chunks == [b"xy"]
        assert manager.get("guild-1").state is WatchdogState.AUDIBLE
        assert manager.get("guild-1").status_message == "playing"

    @pytest.mark.timeout(5)
    def test_invalid_locator_spawns_nothing(self, manager, launcher):
        with pytest.raises(InvalidLocator):
            manager.play("guild-1", "not a url")
        assert launcher.handles == []
        assert len(manager) == 0

    @pytest.mark.timeout(5)
    def test_transport_not_ready_spawns_nothing(self, launcher, scheduler, settings):
        sink = RecordingSink()
        sink.ready = False
        session = StreamingSession(
            "guild-1", launcher, sink, settings, scheduler=scheduler, threaded=False,
            transport_ready_timeout_sec=0.01,
        )
        with pytest.raises(TransportNotReady):
            session.play(PROGRESSIVE_URL)
        assert launcher.handles == []

    @pytest.mark.timeout(5)
    def test_explicit_codec_overrides_default(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL, CodecMode.RAW)
        assert launcher.current.request.codec is CodecMode.RAW
        assert manager.get("guild-1").codec_mode is CodecMode.RAW


class TestReplay:
    """A second play supersedes the first."""

    @pytest.mark.timeout(5)
    def test_second_play_kills_first_handle_before_launching(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        manager.play("guild-1", OTHER_URL)

        assert launcher.log == ["launch 1", "kill 1", "launch 2"]
        live = launcher.live_handles()
        assert len(live) == 1
        assert live[0].request.source.locator == OTHER_URL
        assert manager.get("guild-1").current_source.locator == OTHER_URL

    @pytest.mark.timeout(5)
    def test_second_play_ends_previous_stream(self, manager, sinks):
        manager.play("guild-1", PROGRESSIVE_URL)
        manager.play("guild-1", OTHER_URL)
        assert sinks["guild-1"].ended == 1
        assert len(sinks["guild-1"].containers) == 2

    @pytest.mark.timeout(5)
    def test_replay_resets_retry_and_attempt(self, manager, launcher, scheduler):
        manager.play("guild-1", PLAYLIST_URL)
        launcher.current.emit_diagnostic("Unrecognized option 'playlist_flags'.")
        scheduler.advance(8)
        session = manager.get("guild-1")
        assert session.retry_count == 1

        manager.play("guild-1", PLAYLIST_URL)
        assert session.retry_count == 0
        assert launcher.current.request.attempt == 1
        assert session.watchdog.fallback_armed

    @pytest.mark.timeout(5)
    def test_events_from_superseded_handle_are_dropped(self, manager, launcher, sinks):
        manager.play("guild-1", PROGRESSIVE_URL)
        first = launcher.current
        manager.play("guild-1", OTHER_URL)

        first.emit_output(b"stale")
        first.emit_exit(1)

        assert sinks["guild-1"].chunks == []
        assert manager.get("guild-1").state is WatchdogState.STARTING
        assert len(launcher.handles) == 2

    @pytest.mark.timeout(5)
    def test_restart_replays_requested_codec_after_fallback(self, manager, launcher, scheduler):
        manager.play("guild-1", PLAYLIST_URL)
        scheduler.advance(10)
        session = manager.get("guild-1")
        assert session.codec_mode is CodecMode.RAW

        session.restart()
        assert launcher.current.request.codec is CodecMode.COMPACT
        assert launcher.current.request.attempt == 1
        assert len(launcher.live_handles()) == 1


class TestStop:
    """stop() and registry removal."""

    @pytest.mark.timeout(5)
    def test_stop_while_starting_kills_cancels_and_removes(self, manager, launcher, scheduler, sinks):
        manager.play("guild-1", PLAYLIST_URL)
        session = manager.get("guild-1")
        assert session.state is WatchdogState.STARTING

        assert manager.stop("guild-1") is True

        assert launcher.current.killed
        assert scheduler.active_timers() == []
        assert "guild-1" not in manager
        assert session.state is WatchdogState.STOPPED
        assert sinks["guild-1"].closed

    @pytest.mark.timeout(5)
    def test_second_stop_is_a_noop(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        session = manager.get("guild-1")
        manager.stop("guild-1")

        assert manager.stop("guild-1") is False
        session.stop()
        assert launcher.log == ["launch 1", "kill 1"]

    @pytest.mark.timeout(5)
    def test_stopped_session_rejects_play(self, manager):
        manager.play("guild-1", PROGRESSIVE_URL)
        session = manager.get("guild-1")
        session.stop()
        with pytest.raises(RuntimeError):
            session.play(PROGRESSIVE_URL)

    @pytest.mark.timeout(5)
    def test_play_after_stop_creates_fresh_session(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        old = manager.get("guild-1")
        manager.stop("guild-1")

        manager.play("guild-1", PROGRESSIVE_URL)
        assert manager.get("guild-1") is not old
        assert len(launcher.live_handles()) == 1

    @pytest.mark.timeout(5)
    def test_play_while_stop_is_finishing_gets_fresh_session(self, launcher, scheduler, settings):
        """A play racing the tail of stop() must not reach the stopped session."""
        replayed = []

        class ReplayOnCloseSink(RecordingSink):
            def close(self):
                super().close()
                if not replayed:
                    replayed.append(manager.play("guild-1", OTHER_URL))

        manager = SessionManager(
            launcher=launcher,
            sink_factory=lambda destination: ReplayOnCloseSink(),
            settings=settings,
            scheduler=scheduler,
            threaded=False,
            clock=scheduler.clock,
        )
        manager.play("guild-1", PROGRESSIVE_URL)
        old = manager.get("guild-1")

        manager.stop("guild-1")

        assert replayed
        fresh = manager.get("guild-1")
        assert fresh is not None and fresh is not old
        assert fresh.state is WatchdogState.STARTING
        assert fresh.current_source.locator == OTHER_URL
        assert old.state is WatchdogState.STOPPED
        assert len(launcher.live_handles()) == 1

    @pytest.mark.timeout(5)
    def test_stop_all(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        manager.play("guild-2", OTHER_URL)
        manager.stop_all()
        assert len(manager) == 0
        assert launcher.live_handles() == []


class TestFailure:
    """Terminal failure stays observable."""

    @pytest.fixture
    def strict_manager(self, launcher, scheduler, sinks):
        def factory(destination):
            sinks[destination] = RecordingSink()
            return sinks[destination]

        return SessionManager(
            launcher=launcher,
            sink_factory=factory,
            settings=WatchdogSettings(retry_policy=RetryPolicy(max_retries=1, backoff_schedule_ms=[0])),
            scheduler=scheduler,
            threaded=False,
            clock=scheduler.clock,
        )

    @pytest.mark.timeout(5)
    def test_failed_session_stays_registered(self, strict_manager, launcher, scheduler):
        strict_manager.play("guild-1", PROGRESSIVE_URL, CodecMode.COMPACT)
        scheduler.advance(20)

        session = strict_manager.get("guild-1")
        assert session is not None
        assert session.state is WatchdogState.FAILED
        assert session.last_failure is FailureKind.RETRY_EXHAUSTED
        assert session.status_message == FAILED_STATUS_MESSAGE
        assert strict_manager.snapshot() == {"guild-1": "failed"}
        assert len(launcher.handles) == 2

    @pytest.mark.timeout(5)
    def test_status_message_hides_diagnostics(self, strict_manager, launcher, scheduler):
        strict_manager.play("guild-1", PROGRESSIVE_URL)
        launcher.current.emit_diagnostic("Server returned 403 Forbidden")
        scheduler.advance(20)
        assert "403" not in strict_manager.get("guild-1").status_message

    @pytest.mark.timeout(5)
    def test_play_after_failure_restarts_same_session(self, strict_manager, launcher, scheduler):
        strict_manager.play("guild-1", PROGRESSIVE_URL)
        scheduler.advance(20)
        session = strict_manager.get("guild-1")

        strict_manager.play("guild-1", OTHER_URL)
        assert strict_manager.get("guild-1") is session
        assert session.state is WatchdogState.STARTING
        assert session.retry_count == 0

    @pytest.mark.timeout(5)
    def test_sink_error_report_triggers_retry(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        launcher.current.emit_output()
        session = manager.get("guild-1")

        session.report_sink_error("voice websocket closed")

        assert session.state is WatchdogState.RETRYING
        assert session.last_failure is FailureKind.SINK_REJECTION


class TestIsolationAndObservability:

    @pytest.mark.timeout(5)
    def test_destinations_are_independent(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        manager.play("guild-2", OTHER_URL)
        first, second = launcher.handles

        manager.stop("guild-1")
        assert first.killed
        assert not second.killed
        assert manager.get("guild-2").state is WatchdogState.STARTING

    @pytest.mark.timeout(5)
    def test_state_listener_receives_transitions(self, manager, launcher, state_log):
        manager.play("guild-1", PROGRESSIVE_URL)
        launcher.current.emit_output()
        manager.stop("guild-1")

        states = [state for destination, state in state_log if destination == "guild-1"]
        assert states[:2] == [WatchdogState.STARTING, WatchdogState.AUDIBLE]
        assert states[-1] is WatchdogState.STOPPED

    @pytest.mark.timeout(5)
    def test_snapshot(self, manager, launcher):
        manager.play("guild-1", PROGRESSIVE_URL)
        manager.play("guild-2", OTHER_URL)
        launcher.handles[0].emit_output()
        assert manager.snapshot() == {"guild-1": "audible", "guild-2": "starting"}


class TestThreadedSession:
    """Control loop on a worker thread."""

    @pytest.mark.timeout(10)
    def test_threaded_session_processes_events(self, launcher, scheduler, settings):
        sink = RecordingSink()
        session = StreamingSession(
            "guild-1", launcher, sink, settings, scheduler=scheduler, clock=scheduler.clock,
            default_codec=CodecMode.RAW, threaded=True,
        )
        session.play(PROGRESSIVE_URL)
        assert len(launcher.handles) == 1

        launcher.current.emit_output(b"pcm")
        assert session.wait_for_state(WatchdogState.AUDIBLE, timeout=5.0)
        assert sink.chunks == [b"pcm"]

        session.stop()
        assert launcher.current.killed
        assert session.state is WatchdogState.STOPPED
