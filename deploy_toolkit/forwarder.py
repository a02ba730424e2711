"""
forwarder.py - Local TCP listener that tunnels connections to a device.

Used where the daemon has no forwarding of its own (usbmuxd): each accepted
client gets a fresh upstream socket from ``connect_upstream`` and two pump
threads copy bytes in both directions.
"""

import logging
import socket
import threading
from typing import Callable, List

log = logging.getLogger("deploy_toolkit.forwarder")


class TcpForwarder:
    def __init__(self, connect_upstream: Callable[[], socket.socket], name: str = ""):
        self._connect_upstream = connect_upstream
        self.name = name
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(4)
        self.local_port: int = self._server.getsockname()[1]
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._sockets: List[socket.socket] = []
        self._thread = threading.Thread(
            target=self._accept_loop, name=f"forward-{self.local_port}", daemon=True
        )
        self._thread.start()

    def _accept_loop(self):
        while not self._stop.is_set():
            try:
                client, _ = self._server.accept()
            except OSError:
                break
            try:
                upstream = self._connect_upstream()
            except Exception as exc:
                log.warning("Forward %s: upstream connect failed: %s", self.name, exc)
                client.close()
                continue
            with self._lock:
                if self._stop.is_set():
                    client.close()
                    upstream.close()
                    break
                self._sockets.extend((client, upstream))
            for src, dst in ((client, upstream), (upstream, client)):
                threading.Thread(target=self._pump, args=(src, dst), daemon=True).start()

    @staticmethod
    def _pump(src: socket.socket, dst: socket.socket):
        try:
            while True:
                data = src.recv(65536)
                if not data:
                    break
                dst.sendall(data)
        except OSError:
            pass
        finally:
            try:
                dst.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self):
        if self._stop.is_set():
            return
        self._stop.set()
        try:
            self._server.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._server.close()
        with self._lock:
            sockets, self._sockets = self._sockets, []
        for s in sockets:
            try:
                s.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            s.close()
        log.debug("Forward %s on %d closed", self.name, self.local_port)
