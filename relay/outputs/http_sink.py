"""
HTTP streaming sink for Retrowaves Relay.

Re-broadcasts the relayed stream to any number of HTTP listeners.

Endpoints:
- GET /stream  the live byte stream, Content-Type from the current container
- GET /status  JSON with the current container and listener count
"""

import json
import logging
import select
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from relay.outputs.base_sink import PlaybackSink
from relay.outputs.connection_manager import HTTPConnectionManager
from relay.transcoder.launcher import OutputContainer

logger = logging.getLogger(__name__)


class HTTPStreamingHandler(BaseHTTPRequestHandler):
    """Request handler bound to one HttpStreamingSink via create_handler_class()."""

    sink: "HttpStreamingSink" = None

    def do_GET(self):
        if self.path == "/stream":
            self._handle_stream()
        elif self.path == "/status":
            self._handle_status()
        else:
            self.send_error(404, "Not Found")

    def _handle_status(self):
        body = json.dumps(self.sink.status()).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _handle_stream(self):
        container = self.sink.container
        if container is None:
            self.send_error(503, "No stream")
            return

        self.send_response(200)
        self.send_header("Content-Type", container.mime_type)
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self.end_headers()
        try:
            self.wfile.flush()
        except OSError:
            return

        client_socket = self.connection
        client_address = self.client_address[0]
        manager = self.sink.connection_manager
        manager.add_client(client_socket, client_address)

        # Connection manager writes; this thread only waits for the client to go away
        try:
            while not self.sink.closed:
                ready, _, _ = select.select([client_socket], [], [], 1.0)
                if not ready:
                    continue
                try:
                    if not client_socket.recv(1, socket.MSG_PEEK):
                        break
                except BlockingIOError:
                    continue
        except (OSError, ValueError) as e:
            logger.debug(f"[STREAM] Connection check error for {client_address}: {e}")
        finally:
            manager.remove_client(client_socket, client_address)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"{self.address_string()} - {format % args}")


def create_handler_class(sink: "HttpStreamingSink"):
    class Handler(HTTPStreamingHandler):
        pass

    Handler.sink = sink
    return Handler


class HttpStreamingSink(PlaybackSink):
    """
    HTTP re-broadcast sink.

    The server starts on the first wait_ready() (or an explicit start()).
    When the container changes between streams, connected listeners are
    disconnected so they reconnect with the right Content-Type.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 8010):
        self.host = host
        self.port = port
        self.connection_manager = HTTPConnectionManager()
        self.container: Optional[OutputContainer] = None
        self.closed = False
        self.bytes_broadcast = 0

        self._server: Optional[ThreadingHTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._start_lock = threading.Lock()

    @property
    def server_port(self) -> Optional[int]:
        """Bound port (useful when constructed with port 0)."""
        if self._server is None:
            return None
        return self._server.server_address[1]

    def start(self) -> None:
        with self._start_lock:
            if self._server is not None or self.closed:
                return
            self._server = ThreadingHTTPServer((self.host, self.port), create_handler_class(self))
            self._server.daemon_threads = True
            self._server_thread = threading.Thread(
                target=self._server.serve_forever,
                daemon=True,
                name="RelayHttpSink",
            )
            self._server_thread.start()
            self._ready.set()
        logger.info(f"[STREAM] HTTP server listening on http://{self.host}:{self.server_port}/stream")

    def wait_ready(self, timeout: float) -> bool:
        if not self._ready.is_set():
            try:
                self.start()
            except OSError as e:
                logger.error(f"[STREAM] Could not start HTTP server on port {self.port}: {e}")
                return False
        return self._ready.wait(timeout)

    def status(self) -> dict:
        return {
            "container": self.container.value if self.container else None,
            "mime_type": self.container.mime_type if self.container else None,
            "listeners": self.connection_manager.get_client_count(),
            "bytes_broadcast": self.bytes_broadcast,
        }

    def begin_stream(self, container: OutputContainer) -> None:
        if self.container is not None and container is not self.container:
            logger.info(f"[STREAM] Container changed to {container.value}; disconnecting listeners")
            self.connection_manager.close_all()
        self.container = container

    def write(self, chunk: bytes) -> None:
        self.bytes_broadcast += len(chunk)
        self.connection_manager.broadcast(chunk)

    def end_stream(self) -> None:
        return

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.connection_manager.close_all()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        logger.info("[STREAM] HTTP server stopped")
