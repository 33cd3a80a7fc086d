"""
File recording sink.

Each stream delivered by a session is recorded to its own numbered file,
`<stem>-NNN.<ext>`, with the extension of the stream's container.
"""

import logging
import os
from typing import BinaryIO, List, Optional

from relay.outputs.base_sink import PlaybackSink
from relay.transcoder.launcher import OutputContainer

logger = logging.getLogger(__name__)


class FileSink(PlaybackSink):
    """
    Container-tagged file writer.

    Debug sink for inspecting exactly what the transcoder produced.
    """

    def __init__(self, stem: str):
        self.stem = stem
        self.paths: List[str] = []
        self._file: Optional[BinaryIO] = None
        self._count = 0

    @property
    def current_path(self) -> Optional[str]:
        return self.paths[-1] if self._file is not None else None

    def begin_stream(self, container: OutputContainer) -> None:
        self.end_stream()
        self._count += 1
        path = f"{self.stem}-{self._count:03d}.{container.file_extension}"
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._file = open(path, "wb")
        self.paths.append(path)
        logger.info(f"Recording {container.value} stream to {path}")

    def write(self, chunk: bytes) -> None:
        if self._file is None:
            return
        self._file.write(chunk)

    def end_stream(self) -> None:
        if self._file is None:
            return
        self._file.close()
        self._file = None

    def close(self) -> None:
        self.end_stream()
