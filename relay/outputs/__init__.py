"""
Playback sinks for Retrowaves Relay.

A sink receives each container-tagged byte stream a session produces.
"""

from relay.outputs.base_sink import PlaybackSink
from relay.outputs.factory import create_playback_sink
from relay.outputs.file_sink import FileSink
from relay.outputs.http_sink import HttpStreamingSink
from relay.outputs.null_sink import NullSink
from relay.outputs.wav_sink import WavFileSink

__all__ = [
    "FileSink",
    "HttpStreamingSink",
    "NullSink",
    "PlaybackSink",
    "WavFileSink",
    "create_playback_sink",
]
