"""
Transcoder subsystem for Retrowaves Relay.

Builds ffmpeg invocations, spawns them and exposes each running process as a
ProcessHandle emitting a typed event stream.
"""

from relay.transcoder.events import DiagnosticLine, HandleEvent, OutputChunk, ProcessExited
from relay.transcoder.launcher import (
    CodecMode,
    OutputContainer,
    ProbeProfile,
    TranscodeRequest,
    TranscoderLauncher,
)
from relay.transcoder.process_handle import ProcessHandle

__all__ = [
    "CodecMode",
    "DiagnosticLine",
    "HandleEvent",
    "OutputChunk",
    "OutputContainer",
    "ProbeProfile",
    "ProcessExited",
    "ProcessHandle",
    "TranscodeRequest",
    "TranscoderLauncher",
]
