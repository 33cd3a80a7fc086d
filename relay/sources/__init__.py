"""
Source handling for Retrowaves Relay.

Provides source classification (progressive vs. playlist), transport header
derivation and the in-memory station catalog.
"""

from relay.sources.classifier import (
    SourceKind,
    StreamSource,
    TransportHeaders,
    classify,
    headers_for,
)
from relay.sources.catalog import Station, StationCatalog

__all__ = [
    "SourceKind",
    "StreamSource",
    "TransportHeaders",
    "classify",
    "headers_for",
    "Station",
    "StationCatalog",
]
