"""
Typed event stream emitted by a ProcessHandle.

Every event carries the id of the handle that produced it so the consumer can
discard events from handles it has already superseded.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class OutputChunk:
    """Bytes read from the transcoder's stdout."""
    handle_id: int
    data: bytes


@dataclass(frozen=True)
class DiagnosticLine:
    """One decoded line from the transcoder's stderr."""
    handle_id: int
    line: str


@dataclass(frozen=True)
class ProcessExited:
    """Transcoder stdout closed and the process exited."""
    handle_id: int
    returncode: Optional[int]


HandleEvent = Union[OutputChunk, DiagnosticLine, ProcessExited]
