"""
gdb_remote.py - gdb remote serial protocol, as spoken by lldb-server and
Apple's debugserver.

Packets are ``$<payload>#<checksum>`` where the checksum is the modulo-256
sum of the payload bytes as two hex digits. Until ``QStartNoAckMode`` is
accepted every packet is acknowledged with ``+`` (or ``-`` on a bad
checksum). ``\\x03`` on its own interrupts the inferior.

Stop replies handled here:

* ``O<hex>``  inferior output
* ``W<xx>``   exited with status xx
* ``X<xx>``   terminated by signal xx
* ``T<xx>..`` / ``S<xx>`` stopped with signal xx
* ``E<xx>``   error
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .device_interface import Channel, Platform, RemoteProcess
from .errors import TransportProtocolError

log = logging.getLogger("deploy_toolkit.gdb_remote")

INTERRUPT = b"\x03"
_ESCAPED = frozenset(b"$#}*")

# Signals the inferior handles itself; a stop for one is resumed with C<sig>.
# PIPE ALRM CHLD URG VTALRM PROF WINCH IO
LINUX_PASS_SIGNALS = (13, 14, 17, 23, 26, 27, 28, 29)
# PIPE ALRM URG CHLD IO VTALRM PROF WINCH
DARWIN_PASS_SIGNALS = (13, 14, 16, 20, 23, 26, 27, 28)


def checksum(payload: bytes) -> int:
    return sum(payload) & 0xFF


def escape(payload: bytes) -> bytes:
    out = bytearray()
    for b in payload:
        if b in _ESCAPED:
            out += bytes((0x7D, b ^ 0x20))
        else:
            out.append(b)
    return bytes(out)


def encode_packet(payload) -> bytes:
    if isinstance(payload, str):
        payload = payload.encode("ascii")
    body = escape(payload)
    return b"$" + body + b"#" + f"{checksum(body):02x}".encode("ascii")


def decode_body(body: bytes) -> bytes:
    """Undo ``}`` escaping and ``*`` run-length encoding."""
    out = bytearray()
    i = 0
    while i < len(body):
        b = body[i]
        if b == 0x7D and i + 1 < len(body):
            out.append(body[i + 1] ^ 0x20)
            i += 2
        elif b == 0x2A and out and i + 1 < len(body):
            out += bytes((out[-1],)) * (body[i + 1] - 29)
            i += 2
        else:
            out.append(b)
            i += 1
    return bytes(out)


def hex_encode(text: str) -> str:
    return text.encode("utf-8").hex()


def launch_packet(argv: Sequence[str]) -> str:
    """Build the ``A`` packet: ``A<len>,<index>,<hex arg>,...``."""
    parts = []
    for i, arg in enumerate(argv):
        h = hex_encode(arg)
        parts.append(f"{len(h)},{i},{h}")
    return "A" + ",".join(parts)


def pass_signals_for(platform: Platform) -> Tuple[int, ...]:
    """Signals to pass through, in the numbering of the device's kernel."""
    if platform in (Platform.IOS, Platform.MACOS):
        return DARWIN_PASS_SIGNALS
    if platform == Platform.WINDOWS:
        return ()
    return LINUX_PASS_SIGNALS


class PacketParser:
    """Splits a byte stream into ``("ack"|"nak"|"packet"|"notify", payload)``."""

    def __init__(self):
        self._buf = bytearray()

    def feed(self, data: bytes) -> List[Tuple[str, bytes]]:
        self._buf += data
        events = []
        while self._buf:
            lead = self._buf[0]
            if lead == ord("+"):
                events.append(("ack", b""))
                del self._buf[0]
            elif lead == ord("-"):
                events.append(("nak", b""))
                del self._buf[0]
            elif lead in (ord("$"), ord("%")):
                end = self._buf.find(b"#")
                if end < 0 or len(self._buf) < end + 3:
                    break
                body = bytes(self._buf[1:end])
                cs = bytes(self._buf[end + 1:end + 3])
                del self._buf[:end + 3]
                try:
                    expected = int(cs, 16)
                except ValueError:
                    raise TransportProtocolError(f"bad packet checksum field {cs!r}") from None
                if checksum(body) != expected:
                    raise TransportProtocolError(
                        f"packet checksum mismatch ({checksum(body):02x} != {expected:02x})"
                    )
                kind = "packet" if lead == ord("$") else "notify"
                events.append((kind, decode_body(body)))
            else:
                # stray byte (e.g. a late interrupt echo)
                del self._buf[0]
        return events


@dataclass
class StopReply:
    kind: str  # "output", "exited", "signaled", "stopped", "error", "ok", "other"
    code: Optional[int] = None
    text: str = ""
    raw: bytes = b""


def parse_stop_reply(payload: bytes) -> StopReply:
    if payload == b"OK":
        return StopReply("ok", raw=payload)
    if not payload:
        return StopReply("other", raw=payload)
    lead, rest = chr(payload[0]), payload[1:]
    try:
        if lead == "O":
            text = bytes.fromhex(rest.decode("ascii")).decode("utf-8", "replace")
            return StopReply("output", text=text, raw=payload)
        if lead in "WX":
            code = int(rest.split(b";")[0], 16)
            return StopReply("exited" if lead == "W" else "signaled", code=code, raw=payload)
        if lead in "TS":
            return StopReply("stopped", code=int(rest[:2], 16), text=rest[2:].decode("ascii", "replace"), raw=payload)
        if lead == "E":
            code = int(rest[:2], 16) if re.fullmatch(rb"[0-9a-fA-F]{2}", rest[:2]) else None
            return StopReply("error", code=code, text=rest.decode("ascii", "replace"), raw=payload)
    except ValueError as exc:
        raise TransportProtocolError(f"malformed stop reply {payload!r}: {exc}") from exc
    return StopReply("other", raw=payload)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class GdbRemoteClient:
    """Minimal gdb-remote client over a Channel.

    ``read_packet`` may run on a reader thread while ``send_packet`` is
    called from another; sends are serialized.
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        self.ack_mode = True
        self.features: dict = {}
        self.replies = 0
        self.eof = False
        self._parser = PacketParser()
        self._pending: List[Tuple[str, bytes]] = []
        self._send_lock = threading.Lock()

    def send_raw(self, data: bytes):
        with self._send_lock:
            self.channel.send(data)

    def send_packet(self, payload):
        log.debug("→ %s", payload)
        self.send_raw(encode_packet(payload))

    def interrupt(self):
        self.send_raw(INTERRUPT)

    def read_packet(self) -> Optional[bytes]:
        """Next packet payload, or None once the remote closes the stream."""
        while True:
            while self._pending:
                kind, payload = self._pending.pop(0)
                if kind == "packet":
                    if self.ack_mode:
                        self.send_raw(b"+")
                    log.debug("← %r", payload[:200])
                    self.replies += 1
                    return payload
                if kind == "nak":
                    raise TransportProtocolError("remote rejected a packet (nak)")
            data = self.channel.recv(4096)
            if not data:
                self.eof = True
                return None
            self._pending.extend(self._parser.feed(data))

    def request(self, payload) -> bytes:
        """Send and return the next reply, skipping inferior output."""
        self.send_packet(payload)
        while True:
            reply = self.read_packet()
            if reply is None:
                raise TransportProtocolError("remote closed the connection")
            if reply.startswith(b"O") and reply != b"OK":
                continue
            return reply

    def handshake(self, pass_signals: Sequence[int] = ()):
        self.send_raw(b"+")
        if self.request("QStartNoAckMode") == b"OK":
            self.ack_mode = False
        reply = self.request("qSupported:swbreak+;hwbreak+")
        for item in reply.decode("ascii", "replace").split(";"):
            if item.endswith(("+", "-")):
                self.features[item[:-1]] = item[-1] == "+"
            elif "=" in item:
                key, _, value = item.partition("=")
                self.features[key] = value
        if pass_signals:
            # an empty reply means the server does not filter signals
            self.request("QPassSignals:" + ";".join(f"{s:02x}" for s in sorted(pass_signals)))

    def launch(self, argv: Sequence[str]):
        reply = self.request(launch_packet(argv))
        if reply != b"OK":
            raise TransportProtocolError(f"launch rejected: {reply.decode('ascii', 'replace')}")
        reply = self.request("qLaunchSuccess")
        if reply != b"OK":
            raise TransportProtocolError(
                f"launch failed: {reply[1:].decode('ascii', 'replace') or reply!r}"
            )

    def close(self):
        self.channel.close()


class GdbRemoteProcess(RemoteProcess):
    """A process launched through a debug server and simply run to the end.

    Used where the device has no shell (iOS); the exit status is the ``W``
    status, or 128 + signal when the inferior is killed or stops.
    """

    def __init__(self, argv: Sequence[str], channel: Channel, pass_signals: Sequence[int] = ()):
        super().__init__(argv)
        self.client = GdbRemoteClient(channel)
        self.pass_signals = frozenset(pass_signals)
        self.error: Optional[Exception] = None
        self._killed = threading.Event()
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self):
        code = -1
        try:
            self.client.handshake(sorted(self.pass_signals))
            self.client.launch(self.argv)
            self.client.send_packet("c")
            while True:
                payload = self.client.read_packet()
                if payload is None:
                    raise TransportProtocolError("debug server closed the connection")
                reply = parse_stop_reply(payload)
                if reply.kind == "output":
                    self.stdout.feed(reply.text)
                elif reply.kind == "exited":
                    code = reply.code
                    break
                elif reply.kind == "signaled":
                    code = 128 + reply.code
                    break
                elif reply.kind == "stopped":
                    if self._killed.is_set():
                        code = 128 + reply.code
                        break
                    if reply.code in self.pass_signals:
                        self.client.send_packet(f"C{reply.code:02x}")
                        continue
                    self.stderr.feed(f"stopped with signal {reply.code}\n")
                    self.client.send_packet("k")
        except (OSError, TransportProtocolError) as exc:
            self.error = exc
            if not self._killed.is_set():
                self.stderr.feed(f"{exc}\n")
        finally:
            self.client.close()
            self._finish(code)

    def kill(self):
        if self.poll() is not None:
            return
        self._killed.set()
        try:
            self.client.interrupt()
            self.client.send_packet("k")
        except OSError:
            self.client.close()
