from __future__ import annotations

import time

import pytest

from conftest import FakeForward, FakeServer, make_device, wait_for
from deploy_toolkit.debug_bridge import DebugBridge, DebugScript, DebugState, DebugStatus
from deploy_toolkit.device_interface import LaunchTarget, RemoteProcess
from deploy_toolkit.errors import (
    DebugConnectFailed,
    DebugError,
    DebugSessionActive,
    InvalidDebugState,
    TransportProtocolError,
)
from deploy_toolkit.utils import free_tcp_port

ENTRY = "/data/local/tmp/libhello.so"


@pytest.fixture
def bridge():
    bridge = DebugBridge(grace_period=0.3, connect_timeout=2.0)
    yield bridge
    bridge.close()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
def test_safequit_from_idle_is_a_noop(bridge) -> None:
    session = bridge.session(make_device())

    status = session.safequit()

    assert status.state == DebugState.IDLE
    assert session.state == DebugState.IDLE


def test_run_requires_connection(bridge) -> None:
    session = bridge.session(make_device())
    with pytest.raises(InvalidDebugState):
        session.run(ENTRY)


def test_refused_connect_returns_to_idle(bridge) -> None:
    device = make_device()
    session = bridge.session(device)
    forward = FakeForward(free_tcp_port())

    with pytest.raises(DebugConnectFailed):
        session.connect(forward)

    assert session.state == DebugState.IDLE
    assert bridge.active_session(device) is None


def test_autoexit_ends_with_process(bridge, gdb_server) -> None:
    gdb_server.replies["c"] = ["O68656c6c6f0a776f", "O726c640a", "W00"]
    device = make_device()
    session = bridge.session(device)
    seen = []
    session.add_sink(seen.append)
    stream = session.subscribe()
    forward = FakeForward(gdb_server.port)

    session.connect(forward)
    assert session.state == DebugState.CONNECTED
    assert bridge.active_session(device) is session
    session.run(ENTRY, ["--fast"])
    session.autoexit()
    status = session.wait(5)

    assert status.state == DebugState.EXITED
    assert status.exit_code == 0
    assert status.returncode == 0
    assert session.lines == ["hello", "world"]
    assert seen == ["hello", "world"]
    assert stream.read_lines() == ["hello", "world"]
    assert forward.close_count == 1
    assert bridge.active_session(device) is None
    launch = [p for p in gdb_server.received if p.startswith("A")]
    assert launch == ["A" + ",".join([
        f"{len(ENTRY.encode().hex())},0,{ENTRY.encode().hex()}",
        f"{len('--fast'.encode().hex())},1,{'--fast'.encode().hex()}",
    ])]


def test_signal_stop_kills_process(bridge, gdb_server) -> None:
    gdb_server.replies["c"] = ["T0bthread:01;"]
    gdb_server.replies["k"] = ["X0b"]
    session = bridge.session(make_device())

    session.connect(FakeForward(gdb_server.port))
    session.run(ENTRY)
    session.autoexit()
    status = session.wait(5)

    assert status.state == DebugState.EXITED
    assert status.signal == 11
    assert status.returncode == 139
    assert "k" in gdb_server.received


def test_safequit_detaches_cleanly(bridge, gdb_server) -> None:
    gdb_server.on_interrupt = ["T02thread:01;"]
    gdb_server.replies["k"] = ["X09"]
    session = bridge.session(make_device())
    forward = FakeForward(gdb_server.port)

    session.connect(forward)
    session.run(ENTRY)
    status = session.safequit()

    assert status.state == DebugState.DETACHED
    assert gdb_server.interrupted.is_set()
    assert forward.close_count == 1


def test_safequit_forces_detach_when_remote_is_silent(bridge, gdb_server) -> None:
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))
    session.run(ENTRY)

    start = time.monotonic()
    status = session.safequit()
    elapsed = time.monotonic() - start

    assert status.state == DebugState.DETACHED
    assert 0.25 <= elapsed < 3.0
    # a second quit after the session ended changes nothing
    assert session.safequit().state == DebugState.DETACHED


def test_safequit_before_run_sends_detach(bridge, gdb_server) -> None:
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))

    assert session.safequit().state == DebugState.DETACHED
    assert "D" in gdb_server.received


def test_second_session_on_same_device_is_rejected(bridge, gdb_server) -> None:
    device = make_device()
    first = bridge.session(device)
    first.connect(FakeForward(gdb_server.port))

    second = bridge.session(device)
    with pytest.raises(DebugSessionActive):
        second.connect(FakeForward(gdb_server.port))
    assert second.state == DebugState.IDLE

    first.safequit()
    assert wait_for(lambda: bridge.active_session(device) is None)


def test_sessions_on_different_devices_coexist(bridge, gdb_server) -> None:
    a = bridge.session(make_device("adb:emulator-5554"))
    b = bridge.session(make_device("adb:emulator-5556"))

    a.connect(FakeForward(gdb_server.port))
    b.connect(FakeForward(gdb_server.port))

    assert a.state == b.state == DebugState.CONNECTED
    a.safequit()
    b.safequit()


def test_remote_disconnect_during_run_records_error(bridge, gdb_server) -> None:
    gdb_server.hangup_on = ["c"]
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))
    session.run(ENTRY)

    status = session.wait(5)

    assert status.state == DebugState.EXITED
    assert status.error is not None
    assert status.returncode == 1


def test_server_that_hangs_up_at_once_counts_as_refused(bridge) -> None:
    server = FakeServer(lambda conn: None)
    device = make_device()
    session = bridge.session(device)
    try:
        with pytest.raises(DebugConnectFailed, match="not reachable"):
            session.connect(FakeForward(server.port))
    finally:
        server.close()

    assert session.state == DebugState.IDLE
    assert session.error is None
    assert bridge.active_session(device) is None


def test_hangup_mid_handshake_ends_the_session(bridge, gdb_server) -> None:
    gdb_server.replies["qSupported"] = []
    gdb_server.hangup_on = ["qSupported"]
    device = make_device()
    session = bridge.session(device)

    with pytest.raises(DebugConnectFailed, match="handshake"):
        session.connect(FakeForward(gdb_server.port))

    assert session.state == DebugState.EXITED
    assert session.error is not None
    assert bridge.active_session(device) is None


def test_unacknowledged_launch_times_out_to_exited(gdb_server) -> None:
    gdb_server.replies["A"] = []
    bridge = DebugBridge(grace_period=0.3, connect_timeout=0.5)
    device = make_device()
    session = bridge.session(device)
    forward = FakeForward(gdb_server.port)
    session.connect(forward)

    start = time.monotonic()
    with pytest.raises(DebugError, match="not acknowledged"):
        session.run(ENTRY)
    elapsed = time.monotonic() - start

    assert elapsed < 2.0
    assert session.state == DebugState.EXITED
    assert isinstance(session.error, DebugError)
    assert forward.close_count == 1
    assert bridge.active_session(device) is None


def test_handshake_passes_platform_signals(bridge, gdb_server) -> None:
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))
    session.safequit()

    assert "QPassSignals:0d;0e;11;17;1a;1b;1c;1d" in gdb_server.received


def test_pass_signal_stop_resumes_with_signal(bridge, gdb_server) -> None:
    # SIGCHLD on Linux is 17
    gdb_server.replies["c"] = ["T11thread:01;"]
    gdb_server.replies["C11"] = ["W00"]
    session = bridge.session(make_device())

    session.connect(FakeForward(gdb_server.port))
    session.run(ENTRY)
    session.autoexit()
    status = session.wait(5)

    assert status.state == DebugState.EXITED
    assert status.exit_code == 0
    assert "C11" in gdb_server.received
    assert "k" not in gdb_server.received


def test_attach_resumes_the_process(bridge, gdb_server) -> None:
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))

    session.attach(4242)

    assert session.state == DebugState.RUNNING
    assert wait_for(lambda: gdb_server.received[-2:] == ["vAttach;1092", "c"])
    session.safequit()


def test_rejected_attach_raises(bridge, gdb_server) -> None:
    gdb_server.replies["vAttach"] = ["E01"]
    session = bridge.session(make_device())
    session.connect(FakeForward(gdb_server.port))

    with pytest.raises(DebugError, match="attach rejected"):
        session.attach(4242)
    assert session.state == DebugState.CONNECTED
    session.safequit()


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------
def test_status_returncode() -> None:
    assert DebugStatus(DebugState.EXITED, exit_code=3).returncode == 3
    assert DebugStatus(DebugState.EXITED, signal=9).returncode == 137
    assert DebugStatus(DebugState.EXITED, error=OSError("reset")).returncode == 1
    assert DebugStatus(DebugState.DETACHED).returncode == 0
    assert not DebugStatus(DebugState.DETACHED).process_exited


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------
def test_parse_script_with_comments() -> None:
    script = DebugScript.parse("# run it\nconnect\n\nrun   # launch\nsafequit\n")
    assert script.steps == ["connect", "run", "safequit"]


@pytest.mark.parametrize(
    "text",
    [
        "run\nconnect\nautoexit\n",
        "connect\nrun\n",
        "connect\nrun\nautoexit\nsafequit\n",
        "connect\nrun\ndetach\n",
    ],
)
def test_parse_script_rejects_bad_sequences(text: str) -> None:
    with pytest.raises(DebugError):
        DebugScript.parse(text)


def test_default_script_executes(bridge, gdb_server) -> None:
    gdb_server.replies["c"] = ["O6f6b0a", "W05"]
    session = bridge.session(make_device())

    status = DebugScript.default(autoexit=True).execute(session, FakeForward(gdb_server.port), ENTRY)

    assert status.state == DebugState.EXITED
    assert status.returncode == 5
    assert session.lines == ["ok"]


def test_safequit_script_waits_for_process(bridge, gdb_server) -> None:
    gdb_server.replies["c"] = ["W00"]
    session = bridge.session(make_device())
    held = []

    def hold(s) -> None:
        held.append(s.wait(5).exit_code)

    status = DebugScript.default(autoexit=False).execute(
        session, FakeForward(gdb_server.port), ENTRY, before_quit=hold,
    )

    assert held == [0]
    assert status.state == DebugState.DETACHED
    assert status.exit_code == 0


class SideOutput(RemoteProcess):
    def kill(self) -> None:
        if self.poll() is None:
            self._finish(-9)


def test_script_attaches_to_launch_target(bridge, gdb_server) -> None:
    gdb_server.on_interrupt = ["T02thread:01;"]
    logcat = SideOutput(["logcat"])
    logcat.stdout.feed("I/hello   ( 4242): started\n")
    released = []
    target = LaunchTarget(pid=4242, output=logcat, on_running=lambda: released.append(True))
    session = bridge.session(make_device())

    def hold(s) -> None:
        assert wait_for(lambda: s.lines == ["I/hello   ( 4242): started"])

    status = DebugScript.default(autoexit=False).execute(
        session, FakeForward(gdb_server.port), target, before_quit=hold,
    )
    target.close()

    assert status.state == DebugState.DETACHED
    assert released == [True]
    assert "vAttach;1092" in gdb_server.received
    assert not any(p.startswith("A") for p in gdb_server.received)
    assert logcat.poll() == -9


def test_script_quits_when_release_fails(bridge, gdb_server) -> None:
    def release() -> None:
        raise TransportProtocolError("jdwp refused")

    target = LaunchTarget(pid=4242, on_running=release)
    session = bridge.session(make_device())

    with pytest.raises(TransportProtocolError, match="jdwp refused"):
        DebugScript.default().execute(session, FakeForward(gdb_server.port), target)
    assert session.state == DebugState.DETACHED
