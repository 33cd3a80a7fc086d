"""
ffmpeg binary resolution for Retrowaves Relay.

Resolved once at process startup: explicit FFMPEG_BIN → binary bundled with
imageio-ffmpeg → ffmpeg on PATH. Failing all three is the only fatal condition
in the relay.
"""

import logging
import os
import shutil
import subprocess
from typing import List, Optional

import imageio_ffmpeg

from relay.errors import BinaryUnavailable

logger = logging.getLogger(__name__)


def _is_executable(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path) and os.access(path, os.X_OK)


def _bundled_binary() -> Optional[str]:
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as e:
        # imageio-ffmpeg raises when no binary ships for this platform
        logger.debug(f"No bundled ffmpeg available: {e}")
        return None


def resolve_ffmpeg_binary(configured: Optional[str] = None) -> str:
    """
    Resolve the ffmpeg executable.

    Args:
        configured: Explicit path (usually FFMPEG_BIN); takes precedence

    Returns:
        Absolute path to an executable ffmpeg

    Raises:
        BinaryUnavailable: If no candidate is executable
    """
    tried: List[str] = []

    if configured:
        tried.append(f"FFMPEG_BIN={configured}")
        resolved = configured if os.path.sep in configured else shutil.which(configured)
        if _is_executable(resolved):
            logger.info(f"🎬 Using configured ffmpeg: {resolved}")
            return resolved
        logger.warning(f"Configured FFMPEG_BIN is not executable: {configured}")

    bundled = _bundled_binary()
    tried.append(f"bundled={bundled or '<none>'}")
    if _is_executable(bundled):
        logger.info(f"🎬 Using bundled ffmpeg: {bundled}")
        return bundled

    on_path = shutil.which("ffmpeg")
    tried.append(f"PATH={on_path or '<none>'}")
    if _is_executable(on_path):
        logger.info(f"🎬 Using ffmpeg from PATH: {on_path}")
        return on_path

    raise BinaryUnavailable(tried)


def dependency_report(binary: str, timeout: float = 5.0) -> str:
    """Return the first line of `ffmpeg -version`, or a description of why it failed."""
    try:
        result = subprocess.run(
            [binary, "-hide_banner", "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"{binary}: unable to run ({e})"

    output = result.stdout.decode(errors="ignore").strip()
    first_line = output.splitlines()[0] if output else "<no output>"
    if result.returncode != 0:
        return f"{binary}: exited with {result.returncode} ({first_line})"
    return first_line
