"""
Classification of ffmpeg stderr lines.

Only a capability rejection changes what the watchdog does; network failures
and segment EOF notices are advisory and only affect logging.
"""

import enum
import re
from dataclasses import dataclass
from typing import Optional


_UNSUPPORTED_OPTION_RE = re.compile(
    r"Unrecognized option '(?P<option>[^']+)'|Option (?P<named>\S+) not found|Option not found"
)
_NETWORK_FAILURE_RE = re.compile(
    r"(error|invalid|fail|timeout|timed out|403|404|denied|forbidden|not found)",
    re.IGNORECASE,
)
_SEGMENT_EOF_RE = re.compile(r"end of file", re.IGNORECASE)


class DiagnosticKind(enum.Enum):
    CAPABILITY_REJECTED = "capability_rejected"
    NETWORK_FAILURE = "network_failure"
    SEGMENT_EOF = "segment_eof"
    INFO = "info"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    line: str
    option: Optional[str] = None


def classify_diagnostic(line: str, advanced_flags_active: bool) -> Diagnostic:
    """
    Classify one stderr line.

    An "unsupported option" line only counts as a capability rejection while
    the advanced playlist flags are in use; otherwise it is advisory.
    """
    match = _UNSUPPORTED_OPTION_RE.search(line)
    if match and advanced_flags_active:
        option = match.group("option") or match.group("named")
        if option:
            option = option.lstrip("-")
        return Diagnostic(DiagnosticKind.CAPABILITY_REJECTED, line, option or "playlist_flags")
    if _NETWORK_FAILURE_RE.search(line):
        return Diagnostic(DiagnosticKind.NETWORK_FAILURE, line)
    if _SEGMENT_EOF_RE.search(line):
        return Diagnostic(DiagnosticKind.SEGMENT_EOF, line)
    return Diagnostic(DiagnosticKind.INFO, line)
