"""Loopback TCP bridge between a GDB client and the target's debug stub."""

from __future__ import annotations

import socket
import sys
import time

GDB_PORT = 2159
GDB_BUFSIZE = 1024

_TERMINATE_PACKET = b"+$X0f#ee"
_CLOSE_DELAY = 1.0


class GdbBridge:
    """A GDB server socket on the loopback interface, serving one client."""

    def __init__(self, port: int = GDB_PORT) -> None:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        try:
            try:
                server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            except OSError as exc:
                print(f"warning: failed to set gdb socket options: {exc}", file=sys.stderr)
            server.bind(("127.0.0.1", port))
            server.listen(0)
        except OSError:
            server.close()
            raise
        self._server: socket.socket | None = server
        self._client: socket.socket | None = None
        self.port: int = server.getsockname()[1]

    def __enter__(self) -> GdbBridge:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        """Whether a GDB client is currently attached."""
        return self._client is not None

    def accept(self) -> socket.socket:
        """Return the client connection, waiting for one if none is attached."""
        if self._server is None:
            raise OSError("gdb server socket is not open")
        if self._client is None:
            print("waiting for gdb client connection...", flush=True)
            self._client, _ = self._server.accept()
        return self._client

    def exchange(self, outgoing: bytes, max_incoming: int) -> bytes:
        """Forward outgoing to the client, then read up to max_incoming bytes back.

        An empty result after asking for data means the client went away.
        """
        client = self.accept()
        if outgoing:
            client.sendall(outgoing)
        if max_incoming <= 0:
            return b""
        data = client.recv(min(max_incoming, GDB_BUFSIZE))
        if not data:
            self._drop_client()
        return data

    def _drop_client(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def close(self) -> None:
        """Tell an attached client the program has ended, then close all sockets."""
        if self._client is not None:
            try:
                self._client.sendall(_TERMINATE_PACKET)
                time.sleep(_CLOSE_DELAY)
            except OSError:
                pass
            finally:
                self._drop_client()
        if self._server is not None:
            self._server.close()
            self._server = None