"""
Configuration management for Retrowaves Relay.

Reads configuration from an optional .env file and environment variables with
sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from relay.session.retry import RetryPolicy
from relay.session.watchdog import WatchdogSettings
from relay.transcoder.launcher import CodecMode, ProbeProfile


DEFAULT_ENV_FILE = Path(".env")

logger = logging.getLogger(__name__)


def _load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _parse_backoff_schedule(backoff_str: str) -> List[int]:
    """
    Parse retry backoff schedule from comma-separated string.

    Args:
        backoff_str: Comma-separated list of milliseconds (e.g., "1000,2000,4000")

    Returns:
        List of backoff delays in milliseconds

    Raises:
        ValueError: If parsing fails or values are invalid
    """
    if not backoff_str:
        raise ValueError("Backoff schedule cannot be empty")

    try:
        delays = [int(x.strip()) for x in backoff_str.split(",")]
    except ValueError:
        raise ValueError(f"Invalid backoff schedule format: {backoff_str} (must be comma-separated integers)")
    if any(d < 0 for d in delays):
        raise ValueError("Backoff delays must not be negative")
    return delays


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be an integer)")


def _flag_env(name: str) -> bool:
    return os.getenv(name, "0").strip().lower() in ("1", "true", "yes")


@dataclass
class RelayConfig:
    """Relay configuration loaded from .env file and environment variables."""

    # Environment
    env: str = "dev"
    log_level: str = "INFO"

    # Transcoder
    ffmpeg_bin: Optional[str] = None
    probe_profile: ProbeProfile = ProbeProfile.FAST
    rw_timeout_sec: int = 15
    reconnect_delay_max_sec: int = 5
    read_chunk_size: int = 8192

    # Codec selection
    default_codec: CodecMode = CodecMode.RAW
    codec_fallback_enabled: bool = True

    # Watchdog timers
    startup_timeout_ms: int = 8000
    liveness_interval_ms: int = 5000
    stall_threshold_ms: int = 20000
    fallback_timeout_ms: int = 10000
    kill_grace_ms: int = 400

    # Retry policy
    max_retries: int = 5
    retry_backoff_ms: List[int] = field(
        default_factory=lambda: [1000, 2000, 4000, 8000, 10000]
    )

    # Destination transport
    transport_ready_timeout_ms: int = 15000

    # Playback sink
    sink_mode: str = "null"
    output_path: str = "relay-output"
    http_host: str = "0.0.0.0"
    http_port: int = 8010

    def watchdog_settings(self) -> WatchdogSettings:
        """Timer and retry settings handed to every session watchdog."""
        return WatchdogSettings(
            startup_timeout_sec=self.startup_timeout_ms / 1000.0,
            liveness_interval_sec=self.liveness_interval_ms / 1000.0,
            stall_threshold_sec=self.stall_threshold_ms / 1000.0,
            fallback_timeout_sec=self.fallback_timeout_ms / 1000.0,
            kill_grace_sec=self.kill_grace_ms / 1000.0,
            fallback_enabled=self.codec_fallback_enabled,
            retry_policy=RetryPolicy(
                max_retries=self.max_retries,
                backoff_schedule_ms=list(self.retry_backoff_ms),
            ),
        )

    @property
    def transport_ready_timeout_sec(self) -> float:
        return self.transport_ready_timeout_ms / 1000.0

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        env = os.getenv("RELAY_ENV", "dev")
        log_level = os.getenv("RELAY_LOG_LEVEL", "INFO").upper()

        ffmpeg_bin = os.getenv("FFMPEG_BIN") or None

        probe_str = os.getenv("RELAY_PROBE_PROFILE", "fast").lower()
        try:
            probe_profile = ProbeProfile(probe_str)
        except ValueError:
            raise ValueError(f"Invalid RELAY_PROBE_PROFILE: {probe_str} (must be 'fast' or 'robust')")

        # Production relays ship compressed audio; dev defaults to raw PCM
        codec_str = os.getenv("RELAY_STREAM_CODEC")
        if not codec_str:
            codec_str = "compact" if env == "production" else "raw"
        try:
            default_codec = CodecMode(codec_str.lower())
        except ValueError:
            raise ValueError(f"Invalid RELAY_STREAM_CODEC: {codec_str} (must be 'compact' or 'raw')")

        backoff_str = os.getenv("RELAY_RETRY_BACKOFF_MS", "1000,2000,4000,8000,10000")
        try:
            retry_backoff_ms = _parse_backoff_schedule(backoff_str)
        except ValueError as e:
            raise ValueError(f"Invalid RELAY_RETRY_BACKOFF_MS: {e}")

        max_retries = _int_env("RELAY_MAX_RETRIES", "5")
        if max_retries < 0:
            raise ValueError(f"Invalid RELAY_MAX_RETRIES: {max_retries} (must not be negative)")

        sink_mode = os.getenv("RELAY_SINK_MODE", "null").lower()
        if sink_mode not in ("null", "file", "wav", "http"):
            raise ValueError(f"Invalid RELAY_SINK_MODE: {sink_mode} (must be null, file, wav or http)")

        config = cls(
            env=env,
            log_level=log_level,
            ffmpeg_bin=ffmpeg_bin,
            probe_profile=probe_profile,
            rw_timeout_sec=_int_env("RELAY_RW_TIMEOUT_SEC", "15"),
            reconnect_delay_max_sec=_int_env("RELAY_RECONNECT_DELAY_MAX_SEC", "5"),
            read_chunk_size=_int_env("RELAY_READ_CHUNK_SIZE", "8192"),
            default_codec=default_codec,
            codec_fallback_enabled=not _flag_env("RELAY_NO_CODEC_FALLBACK"),
            startup_timeout_ms=_int_env("RELAY_STARTUP_TIMEOUT_MS", "8000"),
            liveness_interval_ms=_int_env("RELAY_LIVENESS_INTERVAL_MS", "5000"),
            stall_threshold_ms=_int_env("RELAY_STALL_THRESHOLD_MS", "20000"),
            fallback_timeout_ms=_int_env("RELAY_FALLBACK_TIMEOUT_MS", "10000"),
            kill_grace_ms=_int_env("RELAY_KILL_GRACE_MS", "400"),
            max_retries=max_retries,
            retry_backoff_ms=retry_backoff_ms,
            transport_ready_timeout_ms=_int_env("RELAY_TRANSPORT_READY_TIMEOUT_MS", "15000"),
            sink_mode=sink_mode,
            output_path=os.getenv("RELAY_OUTPUT_PATH", "relay-output"),
            http_host=os.getenv("RELAY_HTTP_HOST", "0.0.0.0"),
            http_port=_int_env("RELAY_HTTP_PORT", "8010"),
        )
        logger.debug(f"Loaded relay config (env={config.env}, codec={config.default_codec.value}, sink={config.sink_mode})")
        return config
