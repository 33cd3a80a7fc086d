"""
Station catalog for Retrowaves Relay.

In-memory list of known stations. Custom stations added at runtime are listed
before the built-in ones and are not persisted.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from relay.sources.classifier import classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Station:
    label: str
    locator: str
    description: str = "Radio"


BUILTIN_STATIONS = (
    Station("Radio R", "https://stream1.relaxfm.lt/rrb128.mp3", "Lithuania (MP3)"),
    Station("Avtoradio", "https://hls-01-gpm.hostingradio.ru/avtoradio495/playlist.m3u8", "Moscow (HLS)"),
    Station("Retro FM", "http://emgregion.hostingradio.ru:8064/moscow.retrofm.mp3", "Moscow (MP3)"),
)


class StationCatalog:
    """Thread-safe catalog of built-in and custom stations."""

    def __init__(self, builtin=BUILTIN_STATIONS):
        self._builtin: List[Station] = list(builtin)
        self._custom: List[Station] = []
        self._lock = threading.Lock()

    def list(self) -> List[Station]:
        with self._lock:
            return self._custom + self._builtin

    def add(self, label: str, locator: str, description: str = "Custom station") -> Station:
        """
        Add a custom station in front of the existing ones.

        Raises:
            ValueError: If label is empty
            InvalidLocator: If locator is not a valid URL
        """
        label = label.strip()
        if not label:
            raise ValueError("Station label cannot be empty")
        classify(locator)
        station = Station(label=label, locator=locator.strip(), description=description)
        with self._lock:
            self._custom.insert(0, station)
        logger.info(f"Added station {label!r} -> {station.locator}")
        return station

    def find(self, label: str) -> Optional[Station]:
        """Case-insensitive label lookup."""
        wanted = label.strip().lower()
        for station in self.list():
            if station.label.lower() == wanted:
                return station
        return None

    def resolve(self, arg: str) -> str:
        """Map a station label to its locator; anything else is returned unchanged."""
        station = self.find(arg)
        return station.locator if station else arg.strip()
