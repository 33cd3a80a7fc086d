"""
ProcessHandle for Retrowaves Relay.

Owns exactly one ffmpeg subprocess and the two daemon threads draining it.
Everything the process does is reported through the `emit` callback as a
typed event (OutputChunk, DiagnosticLine, ProcessExited); the handle itself
makes no decisions.
"""

import logging
import subprocess
import threading
import time
from typing import BinaryIO, Callable, Optional

from relay.transcoder.events import DiagnosticLine, HandleEvent, OutputChunk, ProcessExited

logger = logging.getLogger(__name__)


# Keep the last 10KB of stderr for post-mortem logging
LAST_STDERR_MAX_SIZE = 10 * 1024

# How long the exit report waits for stderr to be fully drained
STDERR_DRAIN_TIMEOUT_SEC = 2.0


class ProcessHandle:
    """
    Running transcoder.

    kill() is fire-and-forget: SIGTERM is sent immediately and a timer
    escalates to SIGKILL after the grace period if the process is still alive.
    ProcessExited is emitted only after stderr has been drained, and the
    pipes are closed just before it.
    """

    def __init__(
        self,
        handle_id: int,
        process: subprocess.Popen,
        request,
        emit: Callable[[HandleEvent], None],
        read_chunk_size: int = 8192,
    ) -> None:
        self.id = handle_id
        self.process = process
        self.request = request
        self.started_at = time.monotonic()
        self._emit = emit
        self._read_chunk_size = read_chunk_size

        self._killed = threading.Event()
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._kill_timer: Optional[threading.Timer] = None

        self._last_stderr = ""
        self._stderr_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<ProcessHandle id={self.id} pid={self.pid} attempt={self.request.attempt}>"

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def output_stream(self) -> Optional[BinaryIO]:
        return self.process.stdout

    @property
    def diagnostic_stream(self) -> Optional[BinaryIO]:
        return self.process.stderr

    @property
    def killed(self) -> bool:
        return self._killed.is_set()

    @property
    def last_stderr(self) -> str:
        with self._stderr_lock:
            return self._last_stderr

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def start(self) -> None:
        """Start the stdout and stderr drain threads."""
        # Both threads exist before either runs; the stdout drain joins stderr
        if self.diagnostic_stream is not None:
            self._stderr_thread = threading.Thread(
                target=self._stderr_drain,
                daemon=True,
                name=f"RelayStderrDrain-{self.id}",
            )
        if self.output_stream is not None:
            self._stdout_thread = threading.Thread(
                target=self._stdout_drain,
                daemon=True,
                name=f"RelayStdoutDrain-{self.id}",
            )

        if self._stderr_thread is not None:
            self._stderr_thread.start()
        if self._stdout_thread is not None:
            self._stdout_thread.start()

    def kill(self, grace_sec: float = 0.4) -> None:
        """
        Terminate the process: SIGTERM now, SIGKILL after grace_sec if still alive.

        Idempotent. Never blocks the caller.
        """
        if self._killed.is_set():
            return
        self._killed.set()

        if self.process.poll() is not None:
            logger.debug(f"ffmpeg already exited (handle={self.id}, pid={self.pid})")
            return

        try:
            self.process.terminate()
            logger.debug(f"ffmpeg SIGTERM sent (handle={self.id}, pid={self.pid})")
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning(f"Error terminating ffmpeg (handle={self.id}, pid={self.pid}): {e}")

        self._kill_timer = threading.Timer(grace_sec, self._force_kill)
        self._kill_timer.daemon = True
        self._kill_timer.start()

    def _force_kill(self) -> None:
        if self.process.poll() is not None:
            return
        logger.warning(f"ffmpeg SIGKILL sent (grace exceeded, handle={self.id}, pid={self.pid})")
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"Error killing ffmpeg (handle={self.id}, pid={self.pid}): {e}")

    def join(self, timeout: float = 1.0) -> None:
        """Wait for the drain threads to finish (tests and shutdown)."""
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=timeout)

    def _stdout_drain(self) -> None:
        stdout = self.output_stream
        try:
            while True:
                data = stdout.read(self._read_chunk_size)
                if not data:
                    break
                self._emit(OutputChunk(handle_id=self.id, data=bytes(data)))
        except (OSError, ValueError) as e:
            # Pipe closed underneath us during kill
            logger.debug(f"stdout drain ended (handle={self.id}): {e}")

        try:
            returncode = self.process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            returncode = None
        logger.debug(f"ffmpeg stdout closed (handle={self.id}, returncode={returncode})")

        # Every diagnostic line must be reported before the exit
        stderr_thread = self._stderr_thread
        if stderr_thread is not None and stderr_thread is not threading.current_thread():
            stderr_thread.join(timeout=STDERR_DRAIN_TIMEOUT_SEC)
            if stderr_thread.is_alive():
                logger.warning(f"ffmpeg stderr still open after exit (handle={self.id})")

        self._close_pipes()
        self._emit(ProcessExited(handle_id=self.id, returncode=returncode))

    def _close_pipes(self) -> None:
        for stream in (self.output_stream, self.diagnostic_stream):
            if stream is None:
                continue
            try:
                stream.close()
            except (OSError, ValueError) as e:
                logger.debug(f"Error closing ffmpeg pipe (handle={self.id}): {e}")

    def _stderr_drain(self) -> None:
        stderr = self.diagnostic_stream
        try:
            while True:
                line = stderr.readline()
                if not line:
                    break
                decoded = line.decode(errors="ignore").rstrip()
                if not decoded:
                    continue
                self._remember_stderr(decoded)
                self._emit(DiagnosticLine(handle_id=self.id, line=decoded))
        except (OSError, ValueError) as e:
            logger.debug(f"stderr drain ended (handle={self.id}): {e}")

    def _remember_stderr(self, line: str) -> None:
        new_line = line + "\n"
        with self._stderr_lock:
            combined = self._last_stderr + new_line
            if len(combined) > LAST_STDERR_MAX_SIZE:
                combined = combined[len(combined) - LAST_STDERR_MAX_SIZE:]
            self._last_stderr = combined
