"""
Transcoder launcher for Retrowaves Relay.

Builds the ffmpeg argument set for one transcode request and spawns it.

Argument template (by effect):
- reconnect on dropped connections, streamed inputs and EOF, bounded reconnect delay
- read/write timeout so a hung socket cannot block forever
- probe size / analyze duration per ProbeProfile
- spoofed transport headers from the source classifier
- playlist sources: protocol allow-list; first attempt adds live-playlist hints
- always: regenerate/discard corrupt timestamps, drop video/subtitle/data streams
- output: Ogg/Opus (COMPACT) or raw s16le 48 kHz stereo (RAW) on stdout
"""

import dataclasses
import enum
import itertools
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, List

from relay.errors import LaunchFailed
from relay.sources.classifier import StreamSource, headers_for
from relay.transcoder.events import HandleEvent
from relay.transcoder.process_handle import ProcessHandle

logger = logging.getLogger(__name__)


# Canonical raw output format
SAMPLE_RATE = 48000
CHANNELS = 2
BYTES_PER_SAMPLE = 2  # s16le

PLAYLIST_PROTOCOL_WHITELIST = "file,crypto,tcp,http,https,tls"
ADVANCED_PLAYLIST_FLAGS = "+live+append_list+ignore_length+omit_endlist"


class OutputContainer(enum.Enum):
    """Container tag handed to the playback sink with every stream."""
    OGG_OPUS = "ogg_opus"
    RAW_PCM = "raw_pcm"

    @property
    def mime_type(self) -> str:
        if self is OutputContainer.OGG_OPUS:
            return "audio/ogg"
        return f"audio/L16;rate={SAMPLE_RATE};channels={CHANNELS}"

    @property
    def file_extension(self) -> str:
        return "ogg" if self is OutputContainer.OGG_OPUS else "pcm"


class CodecMode(enum.Enum):
    """Requested output encoding."""
    COMPACT = "compact"
    RAW = "raw"

    @property
    def container(self) -> OutputContainer:
        return OutputContainer.OGG_OPUS if self is CodecMode.COMPACT else OutputContainer.RAW_PCM


class ProbeProfile(enum.Enum):
    """
    Input probing profile.

    FAST (default) starts playback quickly with a small probe buffer, at a
    larger risk of misdetecting the stream and stalling. ROBUST probes longer.
    """
    FAST = "fast"
    ROBUST = "robust"

    @property
    def analyzeduration_us(self) -> int:
        return 2_000_000 if self is ProbeProfile.FAST else 5_000_000

    @property
    def probesize(self) -> str:
        return "256k" if self is ProbeProfile.FAST else "1M"


@dataclass(frozen=True)
class TranscodeRequest:
    """One transcoder invocation: what to read, how to encode, which attempt."""
    source: StreamSource
    codec: CodecMode
    attempt: int = 1

    @property
    def uses_advanced_playlist_flags(self) -> bool:
        return self.source.is_playlist and self.attempt == 1

    def without_advanced_flags(self) -> "TranscodeRequest":
        return dataclasses.replace(self, attempt=2)

    def fallback_to_raw(self) -> "TranscodeRequest":
        return dataclasses.replace(self, codec=CodecMode.RAW, attempt=2)


class TranscoderLauncher:
    """
    Spawns ffmpeg transcoders.

    The binary is resolved once at startup (see relay.transcoder.binary) and
    passed in; the launcher never searches for it.
    """

    def __init__(
        self,
        binary: str,
        probe_profile: ProbeProfile = ProbeProfile.FAST,
        rw_timeout_sec: int = 15,
        reconnect_delay_max_sec: int = 5,
        read_chunk_size: int = 8192,
    ) -> None:
        self.binary = binary
        self.probe_profile = probe_profile
        self.rw_timeout_sec = rw_timeout_sec
        self.reconnect_delay_max_sec = reconnect_delay_max_sec
        self.read_chunk_size = read_chunk_size
        self._handle_ids = itertools.count(1)

    def build_args(self, request: TranscodeRequest) -> List[str]:
        """Full command line (binary first) for a request."""
        source = request.source
        args = [
            self.binary,
            "-hide_banner", "-nostdin", "-loglevel", "warning",
            "-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_at_eof", "1",
            "-reconnect_delay_max", str(self.reconnect_delay_max_sec),
            "-rw_timeout", str(self.rw_timeout_sec * 1_000_000),  # microseconds
            "-analyzeduration", str(self.probe_profile.analyzeduration_us),
            "-probesize", self.probe_profile.probesize,
            "-headers", headers_for(source.locator).as_ffmpeg_block(),
        ]

        if source.is_playlist:
            args += ["-protocol_whitelist", PLAYLIST_PROTOCOL_WHITELIST]
            args += ["-ignore_io_errors", "1"]
            if request.uses_advanced_playlist_flags:
                # Not every ffmpeg build knows these; a rejection triggers attempt 2
                args += ["-playlist_flags", ADVANCED_PLAYLIST_FLAGS]

        args += ["-i", source.locator, "-fflags", "+genpts+discardcorrupt", "-vn", "-sn", "-dn"]

        if request.codec is CodecMode.COMPACT:
            args += [
                "-c:a", "libopus", "-b:a", "128k", "-vbr", "on",
                "-compression_level", "10", "-f", "ogg", "pipe:1",
            ]
        else:
            args += [
                "-acodec", "pcm_s16le", "-f", "s16le",
                "-ar", str(SAMPLE_RATE), "-ac", str(CHANNELS), "pipe:1",
            ]
        return args

    def launch(self, request: TranscodeRequest, emit: Callable[[HandleEvent], None]) -> ProcessHandle:
        """
        Spawn ffmpeg for a request and start draining its output.

        Args:
            request: What to transcode
            emit: Receives every event of the new handle (data, diagnostics, exit)

        Returns:
            Running ProcessHandle

        Raises:
            LaunchFailed: If the subprocess could not be spawned
        """
        cmd = self.build_args(request)
        try:
            # New session isolates ffmpeg from Ctrl-C sent to the parent
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn ffmpeg for {request.source.locator}: {e}")
            raise LaunchFailed(str(e)) from e

        handle = ProcessHandle(
            handle_id=next(self._handle_ids),
            process=process,
            request=request,
            emit=emit,
            read_chunk_size=self.read_chunk_size,
        )
        logger.info(
            "ffmpeg started",
            extra={
                "pid": process.pid,
                "handle": handle.id,
                "attempt": request.attempt,
                "codec": request.codec.value,
                "kind": request.source.kind.value,
            },
        )
        handle.start()
        return handle
