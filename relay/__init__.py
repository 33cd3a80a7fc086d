"""
Retrowaves Relay.

Relays remote internet radio (progressive MP3/AAC streams and HLS playlists)
into a continuous audio stream for a playback sink, supervising one ffmpeg
transcoder per destination.
"""

__version__ = "0.3.0"
