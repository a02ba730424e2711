"""
debug_bridge.py - Scripted remote debugging over a forwarded gdb-remote port.

Session lifecycle::

    IDLE -> CONNECTING -> CONNECTED -> RUNNING -> EXITED | DETACHED

After the handshake a reader thread turns the channel into a stream of
packets and a single worker thread owns the session: it takes API commands
and packets from one inbox, so every state change after ``connect`` happens
on that thread. Output leaves through ``OutputStream`` subscriptions and
line sinks.

A debug script is a fixed sequence::

    connect
    run
    autoexit      # or: safequit
"""

import collections
import itertools
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .device_interface import Channel, Device, LaunchTarget, OutputStream, RemoteProcess
from .device_registry import PortForward
from .errors import (
    DebugConnectFailed,
    DebugError,
    DebugSessionActive,
    DeployError,
    InvalidDebugState,
    TransportProtocolError,
)
from .gdb_remote import GdbRemoteClient, launch_packet, parse_stop_reply, pass_signals_for

log = logging.getLogger("deploy_toolkit.debug")


class DebugState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RUNNING = "running"
    EXITED = "exited"
    DETACHED = "detached"

    @property
    def active(self) -> bool:
        return self in (DebugState.CONNECTING, DebugState.CONNECTED, DebugState.RUNNING)

    @property
    def terminal(self) -> bool:
        return self in (DebugState.EXITED, DebugState.DETACHED)


@dataclass
class DebugStatus:
    state: DebugState
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def process_exited(self) -> bool:
        return self.exit_code is not None or self.signal is not None

    @property
    def returncode(self) -> int:
        """Shell-style status: exit code, 128 + signal, or 1 on error."""
        if self.exit_code is not None:
            return self.exit_code
        if self.signal is not None:
            return 128 + self.signal
        return 1 if self.error is not None else 0


class _Command:
    """A request posted to the worker; the caller blocks on ``wait``."""

    def __init__(self, name: str, *args):
        self.name = name
        self.args = args
        self._done = threading.Event()
        self._error: Optional[BaseException] = None

    def resolve(self):
        self._done.set()

    def fail(self, exc: BaseException):
        self._error = exc
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        if not self._done.wait(timeout):
            return False
        if self._error is not None:
            raise self._error
        return True


def _refused(exc: BaseException, client: Optional[GdbRemoteClient]) -> bool:
    """True when nothing answered: refused, timed out, or hung up before any reply."""
    if isinstance(exc, (ConnectionRefusedError, socket.timeout)):
        return True
    if client is None or client.replies:
        return False
    return client.eof or isinstance(exc, ConnectionError)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class DebugSession:
    def __init__(self, bridge: "DebugBridge", device: Device, session_id: int,
                 grace_period: float = 3.0, connect_timeout: float = 10.0):
        self.id = session_id
        self.bridge = bridge
        self.device = device
        self.grace_period = grace_period
        self.connect_timeout = connect_timeout
        self.error: Optional[BaseException] = None
        self.lines: List[str] = []

        self._state = DebugState.IDLE
        self._cond = threading.Condition()
        self._inbox: "queue.Queue[Tuple[str, object]]" = queue.Queue()
        self._worker_done = False
        self._client: Optional[GdbRemoteClient] = None
        self._forward: Optional[PortForward] = None

        self._expect: Deque[Tuple[str, _Command]] = collections.deque()
        self._autoexit = False
        self._quitting = False
        self._killing = False
        self._process_done = False
        self._disconnected = False
        self._exit_code: Optional[int] = None
        self._signal: Optional[int] = None
        self._pass_signals: frozenset = frozenset()

        self._subscribers: List[OutputStream] = []
        self._sinks: List[Callable[[str], None]] = []
        self._line_buf = ""
        self._output_closed = False

    def __repr__(self):
        return f"<DebugSession {self.id} {self.device.identifier} {self.state.value}>"

    # ---- State ----------------------------------------------------------

    @property
    def state(self) -> DebugState:
        with self._cond:
            return self._state

    def status(self) -> DebugStatus:
        with self._cond:
            return DebugStatus(self._state, self._exit_code, self._signal, self.error)

    def _set_state(self, state: DebugState):
        with self._cond:
            old, self._state = self._state, state
            self._cond.notify_all()
        log.info("Debug session %d on %s: %s -> %s", self.id, self.device.identifier,
                 old.value, state.value)

    def wait(self, timeout: Optional[float] = None) -> DebugStatus:
        """Block until the session ends or its process exits."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not (self._state.terminal or self._process_done or self._state == DebugState.IDLE):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError(f"debug session {self.id} still {self._state.value}")
                self._cond.wait(remaining)
        return self.status()

    # ---- Output ---------------------------------------------------------

    def subscribe(self) -> OutputStream:
        """Stream of the inferior's output lines from now on."""
        stream = OutputStream(f"debug-{self.id}")
        with self._cond:
            if self._output_closed:
                stream.close()
            else:
                self._subscribers.append(stream)
        return stream

    def add_sink(self, sink: Callable[[str], None]):
        """Call *sink* with every complete output line."""
        with self._cond:
            self._sinks.append(sink)

    def _emit_output(self, text: str):
        with self._cond:
            if self._output_closed:
                return
            subscribers = list(self._subscribers)
            sinks = list(self._sinks)
            data = self._line_buf + text
            *lines, self._line_buf = data.split("\n")
            self.lines.extend(line.rstrip("\r") for line in lines)
        for stream in subscribers:
            stream.feed(text)
        for line in lines:
            for sink in sinks:
                sink(line.rstrip("\r"))

    def _emit_line(self, line: str):
        with self._cond:
            if self._output_closed:
                return
            subscribers = list(self._subscribers)
            sinks = list(self._sinks)
            self.lines.append(line)
        for stream in subscribers:
            stream.feed(line + "\n")
        for sink in sinks:
            sink(line)

    def _close_output(self):
        with self._cond:
            if self._output_closed:
                return
            self._output_closed = True
            tail, self._line_buf = self._line_buf, ""
            if tail:
                self.lines.append(tail)
            subscribers = list(self._subscribers)
            sinks = list(self._sinks)
        if tail:
            for sink in sinks:
                sink(tail)
        for stream in subscribers:
            stream.close()

    # ---- Public API -----------------------------------------------------

    def connect(self, forward: PortForward, timeout: Optional[float] = None):
        """Open the forwarded port and run the gdb-remote handshake."""
        state = self.state
        if state != DebugState.IDLE:
            raise InvalidDebugState("connect", state.value)
        self.bridge._claim(self)
        self._forward = forward
        self._set_state(DebugState.CONNECTING)
        timeout = self.connect_timeout if timeout is None else timeout

        channel = None
        client = None
        try:
            sock = socket.create_connection(("127.0.0.1", forward.local_port), timeout=timeout)
            channel = Channel(sock, name=f"gdb-remote:{forward.local_port}")
            client = GdbRemoteClient(channel)
            client.handshake(pass_signals_for(self.device.platform))
            sock.settimeout(None)
        except (OSError, TransportProtocolError) as exc:
            if channel is not None:
                channel.close()
            if _refused(exc, client):
                self._forward = None
                self._set_state(DebugState.IDLE)
                self.bridge._release(self)
                raise DebugConnectFailed(
                    f"debug server on port {forward.local_port} not reachable: {exc}"
                ) from exc
            self.error = exc
            self._finish(DebugState.EXITED)
            raise DebugConnectFailed(f"debug handshake failed: {exc}") from exc

        self._client = client
        self._pass_signals = frozenset(pass_signals_for(self.device.platform))
        self._set_state(DebugState.CONNECTED)
        threading.Thread(target=self._read_loop, args=(client,), daemon=True,
                         name=f"debug-{self.id}-reader").start()
        threading.Thread(target=self._work, daemon=True,
                         name=f"debug-{self.id}-worker").start()

    def run(self, entry_point: str, args: Sequence[str] = ()):
        """Launch *entry_point*; returns once the launch is acknowledged."""
        state = self.state
        if state != DebugState.CONNECTED:
            raise InvalidDebugState("run", state.value)
        self._start(_Command("run", [entry_point, *args]), entry_point)

    def attach(self, pid: int):
        """Attach to the running process *pid* and let it continue."""
        state = self.state
        if state != DebugState.CONNECTED:
            raise InvalidDebugState("attach", state.value)
        self._start(_Command("attach", pid), f"pid {pid}")

    def _start(self, cmd: _Command, what: str):
        self._post(cmd)
        if cmd.wait(self.connect_timeout):
            return
        exc = DebugError(f"start of {what} not acknowledged within {self.connect_timeout}s")
        self._inbox.put(("fail", exc))
        with self._cond:
            self._cond.wait_for(lambda: self._state.terminal, self.grace_period)
        raise exc

    def follow(self, process: RemoteProcess):
        """Mirror *process*'s output lines (e.g. logcat) into the session."""
        def pump():
            for line in process.stdout:
                self._emit_line(line)

        threading.Thread(target=pump, daemon=True, name=f"debug-{self.id}-follow").start()

    def autoexit(self):
        """End the session (EXITED) as soon as the process ends."""
        state = self.state
        if state != DebugState.RUNNING:
            raise InvalidDebugState("autoexit", state.value)
        self._post(_Command("autoexit")).wait()

    def safequit(self) -> DebugStatus:
        """Detach, forcing DETACHED once the grace period runs out."""
        state = self.state
        if state not in (DebugState.CONNECTED, DebugState.RUNNING):
            return self.status()
        try:
            self._post(_Command("safequit"))
        except InvalidDebugState:
            return self.status()

        deadline = time.monotonic() + self.grace_period
        with self._cond:
            while not self._state.terminal:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
        if not self.state.terminal:
            log.warning("Debug server did not answer within %.1fs; forcing detach",
                        self.grace_period)
            self._finish(DebugState.DETACHED)
        return self.status()

    # ---- Worker ---------------------------------------------------------

    def _post(self, cmd: _Command) -> _Command:
        with self._cond:
            if self._worker_done or self._state.terminal:
                raise InvalidDebugState(cmd.name, self._state.value)
            self._inbox.put(("command", cmd))
        return cmd

    def _read_loop(self, client: GdbRemoteClient):
        try:
            while True:
                payload = client.read_packet()
                if payload is None:
                    self._inbox.put(("eof", None))
                    return
                self._inbox.put(("packet", payload))
        except (OSError, TransportProtocolError) as exc:
            self._inbox.put(("eof", exc))

    def _work(self):
        while not self.state.terminal:
            kind, item = self._inbox.get()
            try:
                if kind == "command":
                    self._handle_command(item)
                elif kind == "packet":
                    self._handle_packet(item)
                elif kind == "eof":
                    self._handle_eof(item)
                elif kind == "fail":
                    self._fail(item)
            except (OSError, TransportProtocolError) as exc:
                self._fail(exc)

        with self._cond:
            self._worker_done = True
        while True:
            try:
                kind, item = self._inbox.get_nowait()
            except queue.Empty:
                break
            if kind == "command":
                item.fail(InvalidDebugState(item.name, self.state.value))

    def _send(self, payload):
        self._client.send_packet(payload)

    def _handle_command(self, cmd: _Command):
        state = self.state
        if cmd.name in ("run", "attach"):
            if state != DebugState.CONNECTED or self._expect:
                cmd.fail(InvalidDebugState(cmd.name, state.value))
                return
            if cmd.name == "run":
                self._send(launch_packet(cmd.args[0]))
                self._expect.append(("launch", cmd))
            else:
                self._send(f"vAttach;{cmd.args[0]:x}")
                self._expect.append(("attach", cmd))

        elif cmd.name == "autoexit":
            if state != DebugState.RUNNING:
                cmd.fail(InvalidDebugState("autoexit", state.value))
                return
            self._autoexit = True
            cmd.resolve()
            if self._process_done:
                self._finish(DebugState.EXITED)

        elif cmd.name == "safequit":
            cmd.resolve()
            if state == DebugState.CONNECTED:
                self._quitting = True
                self._send("D")
            elif state == DebugState.RUNNING:
                if self._process_done or self._disconnected:
                    self._finish(DebugState.DETACHED)
                    return
                self._quitting = True
                self._client.interrupt()

    def _handle_packet(self, payload: bytes):
        reply = parse_stop_reply(payload)
        if reply.kind == "output":
            self._emit_output(reply.text)
            return

        if self._quitting:
            if reply.kind == "stopped":
                self._send("k")
                return
            if reply.kind in ("exited", "signaled"):
                self._record_exit(reply.kind, reply.code)
            self._finish(DebugState.DETACHED)
            return

        if self._expect:
            step, cmd = self._expect.popleft()
            if step == "attach":
                # a successful attach answers with the stop it caused
                if reply.kind != "stopped":
                    cmd.fail(DebugError(f"attach rejected: {payload.decode('ascii', 'replace')}"))
                    return
                self._send("c")
                self._set_state(DebugState.RUNNING)
                cmd.resolve()
            elif payload != b"OK":
                cmd.fail(DebugError(f"{step} rejected: {payload.decode('ascii', 'replace')}"))
            elif step == "launch":
                self._send("qLaunchSuccess")
                self._expect.append(("launch check", cmd))
            else:
                self._send("c")
                self._set_state(DebugState.RUNNING)
                cmd.resolve()
            return

        if reply.kind in ("exited", "signaled"):
            self._record_exit(reply.kind, reply.code)
            self._process_ended()
        elif reply.kind == "stopped" and self._killing:
            log.debug("Ignoring stop while killing")
        elif reply.kind == "stopped" and reply.code in self._pass_signals:
            self._send(f"C{reply.code:02x}")
        elif reply.kind == "stopped" and self.state == DebugState.RUNNING:
            log.info("Process stopped with signal %d; killing it", reply.code)
            self._record_exit("signaled", reply.code)
            self._killing = True
            self._send("k")
        else:
            log.debug("Ignoring packet %r", payload[:80])

    def _handle_eof(self, exc: Optional[BaseException]):
        if self._quitting:
            self._finish(DebugState.DETACHED)
            return
        if self.state == DebugState.RUNNING and (self._process_done or self._killing):
            self._disconnected = True
            self._process_ended()
            return
        self._fail(exc or TransportProtocolError("debug server closed the connection"))

    def _record_exit(self, kind: str, code: Optional[int]):
        with self._cond:
            if self._exit_code is not None or self._signal is not None:
                return
            if kind == "exited":
                self._exit_code = code
            else:
                self._signal = code
        log.info("Process on %s ended (%s %s)", self.device.identifier, kind, code)

    def _process_ended(self):
        with self._cond:
            self._process_done = True
            self._cond.notify_all()
        self._close_output()
        if self._autoexit:
            self._finish(DebugState.EXITED)

    def _fail(self, exc: BaseException):
        if self.state.terminal:
            return
        log.error("Debug session %d failed: %s", self.id, exc)
        self.error = exc
        self._finish(DebugState.EXITED)

    def _finish(self, state: DebugState):
        """Enter a terminal state and release the channel and forward."""
        with self._cond:
            if self._state.terminal:
                return
            old, self._state = self._state, state
            self._cond.notify_all()
        log.info("Debug session %d on %s: %s -> %s", self.id, self.device.identifier,
                 old.value, state.value)
        self._close_output()
        while self._expect:
            _, cmd = self._expect.popleft()
            cmd.fail(InvalidDebugState(cmd.name, state.value))
        if self._client is not None:
            self._client.close()
        if self._forward is not None:
            try:
                self._forward.close()
            except DeployError as exc:
                log.warning("Could not release %r: %s", self._forward, exc)
        self.bridge._release(self)
        self._inbox.put(("wake", None))


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------
class DebugBridge:
    """Creates debug sessions; at most one is active per device."""

    def __init__(self, grace_period: float = 3.0, connect_timeout: float = 10.0):
        self.grace_period = grace_period
        self.connect_timeout = connect_timeout
        self._active: Dict[str, DebugSession] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "DebugBridge":
        return cls(
            grace_period=float(config.get("debug.grace_period", 3.0)),
            connect_timeout=float(config.get("debug.connect_timeout", 10.0)),
        )

    def session(self, device: Device) -> DebugSession:
        return DebugSession(self, device, next(self._ids),
                            self.grace_period, self.connect_timeout)

    def active_session(self, device: Device) -> Optional[DebugSession]:
        with self._lock:
            return self._active.get(device.identifier)

    def _claim(self, session: DebugSession):
        with self._lock:
            current = self._active.get(session.device.identifier)
            if current is not None and current is not session:
                raise DebugSessionActive(
                    f"debug session {current.id} is already active on {session.device.identifier}"
                )
            self._active[session.device.identifier] = session

    def _release(self, session: DebugSession):
        with self._lock:
            if self._active.get(session.device.identifier) is session:
                del self._active[session.device.identifier]

    def close(self):
        with self._lock:
            sessions = list(self._active.values())
        for session in sessions:
            session.safequit()


# ---------------------------------------------------------------------------
# Script host
# ---------------------------------------------------------------------------
class DebugScript:
    COMMANDS = ("connect", "run", "autoexit", "safequit")

    def __init__(self, steps: Sequence[str]):
        self.steps = list(steps)

    @classmethod
    def default(cls, autoexit: bool = True) -> "DebugScript":
        return cls(["connect", "run", "autoexit" if autoexit else "safequit"])

    @classmethod
    def parse(cls, text: str) -> "DebugScript":
        steps = []
        for lineno, raw in enumerate(text.splitlines(), 1):
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            if line not in cls.COMMANDS:
                raise DebugError(f"debug script line {lineno}: unknown command {line!r}")
            steps.append(line)
        if len(steps) != 3 or steps[:2] != ["connect", "run"] or steps[2] not in ("autoexit", "safequit"):
            raise DebugError(
                "debug script must be 'connect', 'run', then 'autoexit' or 'safequit'; "
                f"got {steps}"
            )
        return cls(steps)

    def execute(
        self,
        session: DebugSession,
        forward: PortForward,
        target: Union[str, LaunchTarget],
        args: Sequence[str] = (),
        before_quit: Optional[Callable[[DebugSession], None]] = None,
    ) -> DebugStatus:
        """Drive *session* through the script.

        *target* is a path to launch or a ``LaunchTarget``; an attach target
        is attached by pid and its side output is mirrored into the session.
        """
        if isinstance(target, str):
            target = LaunchTarget(path=target)
        for step in self.steps:
            if step == "connect":
                session.connect(forward)
            elif step == "run":
                if target.attach:
                    session.attach(target.pid)
                else:
                    session.run(target.path, args)
                if target.output is not None:
                    session.follow(target.output)
                if target.on_running is not None:
                    try:
                        target.on_running()
                    except (DeployError, OSError):
                        session.safequit()
                        raise
            elif step == "autoexit":
                session.autoexit()
                session.wait()
            elif step == "safequit":
                if before_quit is not None:
                    before_quit(session)
                session.safequit()
        return session.status()
