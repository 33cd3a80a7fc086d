"""
Contract tests for TranscoderLauncher.

Verifies the ffmpeg argument template per source kind, codec and attempt,
and that launch() spawns ffmpeg with the expected pipes.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from relay.errors import LaunchFailed
from relay.sources.classifier import classify
from relay.transcoder.launcher import (
    ADVANCED_PLAYLIST_FLAGS,
    PLAYLIST_PROTOCOL_WHITELIST,
    CodecMode,
    OutputContainer,
    ProbeProfile,
    TranscodeRequest,
    TranscoderLauncher,
)


FFMPEG = "/usr/bin/ffmpeg"


def _request(locator, codec=CodecMode.COMPACT, attempt=1):
    return TranscodeRequest(source=classify(locator), codec=codec, attempt=attempt)


def _value_after(args, flag):
    return args[args.index(flag) + 1]


@pytest.fixture
def launcher():
    return TranscoderLauncher(FFMPEG)


class TestArgumentTemplate:

    def test_progressive_compact_exact_command(self, launcher):
        args = launcher.build_args(_request("http://x.example/stream.mp3"))
        headers = (
            "User-Agent: Mozilla/5.0 (RetrowavesRelay)\r\n"
            "Origin: http://x.example\r\n"
            "Referer: http://x.example/\r\n"
            "Accept: */*\r\n"
        )
        assert args == [
            FFMPEG,
            "-hide_banner", "-nostdin", "-loglevel", "warning",
            "-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_at_eof", "1",
            "-reconnect_delay_max", "5",
            "-rw_timeout", "15000000",
            "-analyzeduration", "2000000",
            "-probesize", "256k",
            "-headers", headers,
            "-i", "http://x.example/stream.mp3",
            "-fflags", "+genpts+discardcorrupt", "-vn", "-sn", "-dn",
            "-c:a", "libopus", "-b:a", "128k", "-vbr", "on",
            "-compression_level", "10", "-f", "ogg", "pipe:1",
        ]

    def test_progressive_has_no_protocol_whitelist(self, launcher):
        args = launcher.build_args(_request("http://x.example/stream.mp3"))
        assert "-protocol_whitelist" not in args
        assert "-playlist_flags" not in args

    def test_playlist_first_attempt_uses_advanced_flags(self, launcher):
        args = launcher.build_args(_request("https://y.example/live.m3u8"))
        assert _value_after(args, "-protocol_whitelist") == PLAYLIST_PROTOCOL_WHITELIST
        assert _value_after(args, "-ignore_io_errors") == "1"
        assert _value_after(args, "-playlist_flags") == ADVANCED_PLAYLIST_FLAGS
        # input options precede -i
        assert args.index("-playlist_flags") < args.index("-i")

    def test_playlist_second_attempt_drops_advanced_flags(self, launcher):
        args = launcher.build_args(_request("https://y.example/live.m3u8").without_advanced_flags())
        assert "-playlist_flags" not in args
        assert _value_after(args, "-protocol_whitelist") == PLAYLIST_PROTOCOL_WHITELIST

    def test_raw_output(self, launcher):
        args = launcher.build_args(_request("http://x.example/stream.mp3", CodecMode.RAW))
        assert args[-9:] == [
            "-acodec", "pcm_s16le", "-f", "s16le", "-ar", "48000", "-ac", "2", "pipe:1",
        ]
        assert "libopus" not in args

    def test_robust_probe_profile(self):
        args = TranscoderLauncher(FFMPEG, probe_profile=ProbeProfile.ROBUST).build_args(
            _request("http://x.example/stream.mp3")
        )
        assert _value_after(args, "-analyzeduration") == "5000000"
        assert _value_after(args, "-probesize") == "1M"

    def test_override_host_headers_are_sent(self, launcher):
        args = launcher.build_args(
            _request("https://hls-01-gpm.hostingradio.ru/avtoradio495/playlist.m3u8")
        )
        headers = _value_after(args, "-headers")
        assert "Origin: https://www.avtoradio.ru\r\n" in headers
        assert "Referer: https://www.avtoradio.ru/online/\r\n" in headers


class TestRequests:

    def test_fallback_to_raw_is_second_attempt(self):
        request = _request("https://y.example/live.m3u8").fallback_to_raw()
        assert request.codec is CodecMode.RAW
        assert request.attempt == 2
        assert not request.uses_advanced_playlist_flags

    def test_codec_containers(self):
        assert CodecMode.COMPACT.container is OutputContainer.OGG_OPUS
        assert CodecMode.RAW.container is OutputContainer.RAW_PCM
        assert OutputContainer.OGG_OPUS.mime_type == "audio/ogg"
        assert OutputContainer.RAW_PCM.file_extension == "pcm"


class TestLaunch:

    @pytest.mark.timeout(5)
    def test_launch_spawns_with_pipes(self, launcher):
        process = MagicMock()
        process.pid = 4242
        process.stdout = None
        process.stderr = None
        with patch("relay.transcoder.launcher.subprocess.Popen", return_value=process) as popen:
            handle = launcher.launch(_request("http://x.example/stream.mp3"), emit=lambda event: None)

        cmd = popen.call_args[0][0]
        kwargs = popen.call_args[1]
        assert cmd == launcher.build_args(_request("http://x.example/stream.mp3"))
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stdout"] is subprocess.PIPE
        assert kwargs["stderr"] is subprocess.PIPE
        assert handle.pid == 4242
        assert handle.request.attempt == 1

    @pytest.mark.timeout(5)
    def test_handle_ids_are_unique(self, launcher):
        process = MagicMock(stdout=None, stderr=None)
        with patch("relay.transcoder.launcher.subprocess.Popen", return_value=process):
            first = launcher.launch(_request("http://x.example/stream.mp3"), emit=lambda event: None)
            second = launcher.launch(_request("http://x.example/stream.mp3"), emit=lambda event: None)
        assert first.id != second.id

    @pytest.mark.timeout(5)
    def test_spawn_error_raises_launch_failed(self, launcher):
        with patch("relay.transcoder.launcher.subprocess.Popen", side_effect=FileNotFoundError("ffmpeg")):
            with pytest.raises(LaunchFailed):
                launcher.launch(_request("http://x.example/stream.mp3"), emit=lambda event: None)
