"""
Session supervision for Retrowaves Relay.

SessionWatchdog decides kill/retry/fallback for one play activation,
StreamingSession owns the watchdog of one destination, and SessionManager
maps destinations to sessions.
"""

from relay.session.retry import RetryPolicy
from relay.session.scheduler import Scheduler, ThreadingScheduler, TimerHandle
from relay.session.session_manager import SessionManager
from relay.session.streaming_session import FAILED_STATUS_MESSAGE, StreamingSession
from relay.session.watchdog import (
    SessionWatchdog,
    SinkEvent,
    SinkEventKind,
    TimerFired,
    TimerKind,
    WatchdogSettings,
    WatchdogState,
)

__all__ = [
    "FAILED_STATUS_MESSAGE",
    "RetryPolicy",
    "Scheduler",
    "SessionManager",
    "SessionWatchdog",
    "SinkEvent",
    "SinkEventKind",
    "StreamingSession",
    "ThreadingScheduler",
    "TimerFired",
    "TimerHandle",
    "TimerKind",
    "WatchdogSettings",
    "WatchdogState",
]
