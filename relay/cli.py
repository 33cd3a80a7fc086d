"""
Command-line interface for Retrowaves Relay.

    relay play <url|station> [--codec compact|raw] [--sink MODE] [--output PATH]
                             [--port N] [--no-fallback]
    relay stations
    relay doctor
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from relay import __version__
from relay.config import RelayConfig
from relay.errors import BinaryUnavailable, InvalidLocator, TransportNotReady
from relay.outputs.factory import create_playback_sink
from relay.session.session_manager import SessionManager
from relay.session.streaming_session import FAILED_STATUS_MESSAGE
from relay.session.watchdog import WatchdogState
from relay.sources.catalog import StationCatalog
from relay.transcoder.binary import dependency_report, resolve_ffmpeg_binary
from relay.transcoder.launcher import CodecMode, TranscoderLauncher

logger = logging.getLogger(__name__)


DESTINATION = "default"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Retrowaves Relay - resilient internet radio relay",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    play = subparsers.add_parser("play", help="Relay a stream URL or catalog station")
    play.add_argument("source", help="Stream URL or station label (see 'relay stations')")
    play.add_argument(
        "--codec",
        choices=[mode.value for mode in CodecMode],
        help="Output codec (default: RELAY_STREAM_CODEC)",
    )
    play.add_argument(
        "--sink",
        choices=["null", "file", "wav", "http"],
        help="Playback sink (default: RELAY_SINK_MODE)",
    )
    play.add_argument("--output", help="Path stem for file/wav recordings")
    play.add_argument("--port", type=int, help="Listener port for the http sink")
    play.add_argument(
        "--no-fallback",
        action="store_true",
        help="Disable the compact -> raw codec fallback for playlists",
    )

    subparsers.add_parser("stations", help="List catalog stations")
    subparsers.add_parser("doctor", help="Show the ffmpeg binary in use and its version")
    return parser


def _apply_overrides(config: RelayConfig, args: argparse.Namespace) -> CodecMode:
    if args.sink:
        config.sink_mode = args.sink
    if args.output:
        config.output_path = args.output
    if args.port is not None:
        config.http_port = args.port
    if args.no_fallback:
        config.codec_fallback_enabled = False

    codec = CodecMode(args.codec) if args.codec else config.default_codec
    if config.sink_mode == "wav" and codec is CodecMode.COMPACT:
        logger.warning("WAV sink records raw PCM only; using raw codec")
        codec = CodecMode.RAW
    return codec


def cmd_play(config: RelayConfig, args: argparse.Namespace, catalog: StationCatalog) -> int:
    codec = _apply_overrides(config, args)

    try:
        binary = resolve_ffmpeg_binary(config.ffmpeg_bin)
    except BinaryUnavailable as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    logger.info(f"ffmpeg: {dependency_report(binary)}")

    launcher = TranscoderLauncher(
        binary,
        probe_profile=config.probe_profile,
        rw_timeout_sec=config.rw_timeout_sec,
        reconnect_delay_max_sec=config.reconnect_delay_max_sec,
        read_chunk_size=config.read_chunk_size,
    )
    manager = SessionManager(
        launcher=launcher,
        sink_factory=lambda destination: create_playback_sink(config, destination),
        settings=config.watchdog_settings(),
        default_codec=config.default_codec,
        transport_ready_timeout_sec=config.transport_ready_timeout_sec,
    )

    locator = catalog.resolve(args.source)
    try:
        manager.play(DESTINATION, locator, codec)
    except InvalidLocator as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except TransportNotReady as e:
        logger.error(str(e))
        manager.stop_all()
        return EXIT_FAILED

    session = manager.get(DESTINATION)

    def _handle_sigterm(signum, frame):
        logger.info("SIGTERM received, stopping")
        manager.stop_all()

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        while not session.wait_for_state(WatchdogState.FAILED, WatchdogState.STOPPED, timeout=1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Relay shutdown requested")
        manager.stop_all()
        return EXIT_OK

    if session.state is WatchdogState.FAILED:
        print(FAILED_STATUS_MESSAGE, file=sys.stderr)
        manager.stop_all()
        return EXIT_FAILED

    manager.stop_all()
    return EXIT_OK


def cmd_stations(catalog: StationCatalog) -> int:
    for station in catalog.list():
        print(f"{station.label:<16} {station.description:<20} {station.locator}")
    return EXIT_OK


def cmd_doctor(config: RelayConfig) -> int:
    try:
        binary = resolve_ffmpeg_binary(config.ffmpeg_bin)
    except BinaryUnavailable as e:
        print(f"ffmpeg: NOT FOUND ({e})")
        return EXIT_USAGE
    print(f"ffmpeg: {binary}")
    print(f"version: {dependency_report(binary)}")
    print(f"default codec: {config.default_codec.value}")
    print(f"codec fallback: {'on' if config.codec_fallback_enabled else 'off'}")
    print(f"sink: {config.sink_mode}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = RelayConfig.load_config()
    except ValueError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(config.log_level)
    catalog = StationCatalog()

    if args.command == "play":
        return cmd_play(config, args, catalog)
    if args.command == "stations":
        return cmd_stations(catalog)
    return cmd_doctor(config)
