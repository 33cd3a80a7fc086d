"""
HTTP connection manager for Retrowaves Relay.

Tracks connected listeners of the HTTP sink and broadcasts stream bytes to
them. Each client has a small ring buffer: a client that cannot keep up loses
its oldest chunks instead of blocking the session that feeds the broadcast.
"""

import logging
import socket
import threading
from collections import deque
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# Maximum chunks buffered per client
DEFAULT_CLIENT_BUFFER_SIZE = 64


class ClientBuffer:
    """
    Per-client ring buffer for backpressure protection.

    If the buffer fills up, the oldest chunk is dropped.
    """

    def __init__(self, max_size: int = DEFAULT_CLIENT_BUFFER_SIZE):
        self.buffer: deque = deque(maxlen=max_size)
        self.lock = threading.Lock()
        self.dropped_chunks = 0
        self.total_chunks = 0

    def add_chunk(self, chunk: bytes) -> bool:
        """
        Add a chunk to the buffer.

        Returns:
            True if nothing was dropped, False if the oldest chunk was dropped
        """
        with self.lock:
            self.total_chunks += 1
            dropped = len(self.buffer) >= self.buffer.maxlen
            if dropped:
                self.buffer.popleft()
                self.dropped_chunks += 1
            self.buffer.append(chunk)
            return not dropped

    def take_all(self) -> List[bytes]:
        """Remove and return every buffered chunk, oldest first."""
        with self.lock:
            chunks = list(self.buffer)
            self.buffer.clear()
            return chunks

    def put_back(self, chunks: List[bytes]) -> None:
        """Return unsent chunks to the front of the buffer, keeping order."""
        with self.lock:
            for chunk in reversed(chunks):
                if len(self.buffer) >= self.buffer.maxlen:
                    self.dropped_chunks += 1
                    continue
                self.buffer.appendleft(chunk)

    def is_lagging(self) -> bool:
        return self.dropped_chunks > 0


class HTTPConnectionManager:
    """
    Thread-safe registry of streaming clients with a non-blocking broadcast.

    Client sockets are switched to non-blocking mode; a send that would block
    leaves the rest of the data in the client's buffer for the next broadcast.
    """

    def __init__(self, buffer_size: int = DEFAULT_CLIENT_BUFFER_SIZE):
        self.clients: Dict[socket.socket, Tuple[str, ClientBuffer]] = {}
        self.lock = threading.Lock()
        self.buffer_size = buffer_size

    def add_client(self, client_socket: socket.socket, address: str) -> None:
        try:
            client_socket.setblocking(False)
        except OSError as e:
            logger.warning(f"[STREAM] Failed to set non-blocking for {address}: {e}")
        with self.lock:
            self.clients[client_socket] = (address, ClientBuffer(max_size=self.buffer_size))
            logger.info(f"[STREAM] Client connected from {address} (total: {len(self.clients)})")

    def remove_client(self, client_socket: socket.socket, address: Optional[str] = None) -> None:
        with self.lock:
            entry = self.clients.pop(client_socket, None)
            if entry is None:
                return
            client_addr, buffer = entry
            if buffer.dropped_chunks > 0:
                logger.warning(f"[STREAM] Client {client_addr} dropped {buffer.dropped_chunks} chunks")
            logger.info(f"[STREAM] Client disconnected from {client_addr or address} (total: {len(self.clients)})")

    def broadcast(self, data: bytes) -> None:
        """
        Queue data for every client and flush as much as each socket accepts.

        Clients whose socket raises are closed and removed.
        """
        if not data:
            return

        dead_clients = []
        with self.lock:
            clients_to_write = list(self.clients.items())

        for client_socket, (address, buffer) in clients_to_write:
            if not buffer.add_chunk(data) and buffer.dropped_chunks == 1:
                logger.warning(f"[STREAM] Client {address} lagging, dropping chunks")
            try:
                self._flush(client_socket, buffer)
            except OSError as e:
                logger.debug(f"[STREAM] Client {address} write failed: {e}")
                dead_clients.append(client_socket)

        if dead_clients:
            with self.lock:
                for client in dead_clients:
                    self.clients.pop(client, None)
                    try:
                        client.close()
                    except OSError:
                        pass

    @staticmethod
    def _flush(client_socket: socket.socket, buffer: ClientBuffer) -> None:
        pending = buffer.take_all()
        while pending:
            chunk = pending[0]
            try:
                sent = client_socket.send(chunk)
            except BlockingIOError:
                break
            if sent <= 0:
                raise ConnectionError("client socket accepted no data")
            if sent < len(chunk):
                # Socket buffer full
                pending[0] = chunk[sent:]
                break
            pending.pop(0)
        if pending:
            buffer.put_back(pending)

    def get_client_count(self) -> int:
        with self.lock:
            return len(self.clients)

    def close_all(self) -> None:
        """Close all client connections."""
        with self.lock:
            for client_socket in self.clients:
                try:
                    client_socket.close()
                except OSError:
                    pass
            self.clients.clear()
        logger.info("[STREAM] All client connections closed")
