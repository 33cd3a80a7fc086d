import logging

from relay.outputs.base_sink import PlaybackSink
from relay.outputs.file_sink import FileSink
from relay.outputs.http_sink import HttpStreamingSink
from relay.outputs.null_sink import NullSink
from relay.outputs.wav_sink import WavFileSink

logger = logging.getLogger(__name__)


def create_playback_sink(config, destination: str = "default") -> PlaybackSink:
    """
    Create a playback sink from relay configuration.

    Config fields used:
        sink_mode: "null" | "file" | "wav" | "http"
        output_path: Path stem for file and wav recordings
        http_host / http_port: Listener address for the http sink

    Returns:
        PlaybackSink instance configured according to sink_mode
    """
    mode = config.sink_mode

    if mode == "file":
        return FileSink(_stem_for(config.output_path, destination))

    if mode == "wav":
        return WavFileSink(_stem_for(config.output_path, destination))

    if mode == "http":
        return HttpStreamingSink(host=config.http_host, port=config.http_port)

    if mode != "null":
        raise ValueError(f"Unknown sink mode: {mode}")

    # Default: discard audio, supervision still runs
    return NullSink()


def _stem_for(output_path: str, destination: str) -> str:
    if destination == "default":
        return output_path
    return f"{output_path}-{destination}"
