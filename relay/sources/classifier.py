"""
Source classifier for Retrowaves Relay.

Decides whether a locator is a progressive stream or a segmented (HLS)
playlist and derives the spoofed transport headers ffmpeg sends upstream.
Pure lookup + URL parsing: no network access.
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import Tuple
from urllib.parse import SplitResult, urlsplit

from relay.errors import InvalidLocator

logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = "Mozilla/5.0 (RetrowavesRelay)"
DEFAULT_ACCEPT = "*/*"

# Playlist suffix, optionally followed by a query string
_PLAYLIST_SUFFIX_RE = re.compile(r"\.m3u8(\?.*)?$", re.IGNORECASE)

# Hosts whose CDN rejects generic origin/referer headers.
# (host suffix pattern, origin, referer)
HOST_HEADER_OVERRIDES: Tuple[Tuple[re.Pattern, str, str], ...] = (
    (
        re.compile(r"(^|\.)hostingradio\.ru$", re.IGNORECASE),
        "https://www.avtoradio.ru",
        "https://www.avtoradio.ru/online/",
    ),
)


class SourceKind(enum.Enum):
    """How the upstream delivers audio."""
    PROGRESSIVE = "progressive"
    PLAYLIST = "playlist"


@dataclass(frozen=True)
class StreamSource:
    """A classified source. Immutable once classified."""
    locator: str
    kind: SourceKind

    @property
    def is_playlist(self) -> bool:
        return self.kind is SourceKind.PLAYLIST

    @property
    def host(self) -> str:
        return urlsplit(self.locator).netloc


@dataclass(frozen=True)
class TransportHeaders:
    """Headers ffmpeg presents to the upstream server."""
    origin: str
    referer: str
    accept: str = DEFAULT_ACCEPT
    user_agent: str = DEFAULT_USER_AGENT

    def as_ffmpeg_block(self) -> str:
        """Render as the CRLF-terminated block expected by ffmpeg's -headers option."""
        return (
            f"User-Agent: {self.user_agent}\r\n"
            f"Origin: {self.origin}\r\n"
            f"Referer: {self.referer}\r\n"
            f"Accept: {self.accept}\r\n"
        )


def _parse(locator: str) -> SplitResult:
    if not isinstance(locator, str) or not locator.strip():
        raise InvalidLocator(str(locator), "empty locator")
    if any(ch.isspace() for ch in locator.strip()):
        raise InvalidLocator(locator, "contains whitespace")
    try:
        parts = urlsplit(locator.strip())
        # Accessing .port validates the authority section
        parts.port
    except ValueError as e:
        raise InvalidLocator(locator, str(e))
    if not parts.scheme or not parts.hostname:
        raise InvalidLocator(locator, "scheme and host are required")
    return parts


def classify(locator: str) -> StreamSource:
    """
    Classify a locator by its path suffix.

    Raises:
        InvalidLocator: If the locator cannot be parsed as a URI
    """
    _parse(locator)
    locator = locator.strip()
    kind = SourceKind.PLAYLIST if _PLAYLIST_SUFFIX_RE.search(locator) else SourceKind.PROGRESSIVE
    logger.debug(f"Classified {locator} as {kind.value}")
    return StreamSource(locator=locator, kind=kind)


def headers_for(locator: str) -> TransportHeaders:
    """
    Derive origin/referer for a locator.

    Defaults come from the locator's own scheme and host; hosts listed in
    HOST_HEADER_OVERRIDES get their station website pair instead.

    Raises:
        InvalidLocator: If the locator cannot be parsed as a URI
    """
    parts = _parse(locator)
    origin = f"{parts.scheme}://{parts.netloc}"
    referer = f"{origin}/"

    for pattern, override_origin, override_referer in HOST_HEADER_OVERRIDES:
        if pattern.search(parts.hostname or ""):
            logger.debug(f"Using header override for host {parts.hostname}")
            origin, referer = override_origin, override_referer
            break

    return TransportHeaders(origin=origin, referer=referer)
