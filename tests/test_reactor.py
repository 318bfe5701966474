"""Tests for the main loop (vmpilot/lib/reactor.py)."""

import socket
from unittest.mock import MagicMock

import pytest
from conftest import read_record, write_records

from vmpilot.lib.commands import CommandHandler, UnknownCommandError
from vmpilot.lib.ipc import Channel
from vmpilot.lib.reactor import Reactor
from vmpilot.lib.session import Session


@pytest.fixture()
def wiring(tmp_path, fake_backend, clock):
    """A reactor over real socket pairs for the test runner and command server."""
    t_parent, t_peer = socket.socketpair()
    c_parent, c_peer = socket.socketpair()
    test_channel = Channel(t_parent, "autotest")
    cmd_channel = Channel(c_parent, "commands")
    handler = CommandHandler(
        fake_backend, test_channel=test_channel, cmd_channel=cmd_channel, clock=clock, version="1.2",
    )
    session = Session(tmp_path)
    reactor = Reactor(session, handler)
    yield reactor, t_peer, c_peer
    for closable in (test_channel, cmd_channel, t_peer, c_peer):
        closable.close()


def _cmd(cmd_name, /, **arguments):
    return {"cmd": cmd_name, "arguments": arguments}


class TestDispatch:
    def test_command_is_answered(self, wiring):
        reactor, t_peer, _ = wiring
        write_records(t_peer, _cmd("version"))
        reactor.run_once()
        assert read_record(t_peer) == {"ret": {"version": "1.2"}}

    def test_every_ready_channel_is_served(self, wiring):
        reactor, t_peer, c_peer = wiring
        write_records(t_peer, _cmd("version"))
        write_records(c_peer, _cmd("status"))
        reactor.run_once()
        assert read_record(t_peer)["ret"] == {"version": "1.2"}
        assert read_record(c_peer)["ret"]["test_completed"] is False

    def test_buffered_records_skip_the_wait(self, wiring):
        reactor, t_peer, _ = wiring
        write_records(t_peer, _cmd("version"), _cmd("version"))
        reactor.run_once()
        assert reactor.handler.test_channel.pending
        # timeout is None: would block forever if the reactor waited
        reactor.run_once()
        assert read_record(t_peer) == {"ret": {"version": "1.2"}}
        assert read_record(t_peer) == {"ret": {"version": "1.2"}}

    def test_backend_output_goes_to_requester(self, wiring, fake_backend):
        reactor, t_peer, _ = wiring
        write_records(t_peer, _cmd("backend_mouse_hide"))
        reactor.run_once()
        assert fake_backend.async_calls == [("mouse_hide", {})]
        write_records(fake_backend.output_peer, {"rsp": 5})
        reactor.run_once()
        assert read_record(t_peer) == {"ret": 5}

    def test_unknown_command_propagates(self, wiring):
        reactor, t_peer, _ = wiring
        write_records(t_peer, _cmd("frobnicate"))
        with pytest.raises(UnknownCommandError):
            reactor.run_once()


class TestPeerLoss:
    def test_eof_ends_loop_with_failure(self, wiring):
        reactor, t_peer, _ = wiring
        reactor.session.return_code = 0
        t_peer.close()
        reactor.run_once()
        assert reactor.session.loop is False
        assert reactor.session.return_code == 1

    def test_malformed_record_ends_loop(self, wiring, caplog):
        reactor, _, c_peer = wiring
        c_peer.sendall(b"garbage\n")
        reactor.run_once()
        assert reactor.session.loop is False
        assert reactor.session.return_code == 1
        assert "peer is gone" in caplog.text

    def test_nothing_to_wait_on(self, tmp_path, fake_backend):
        fake_backend.output.close()
        handler = CommandHandler(fake_backend, test_channel=None, cmd_channel=None)
        reactor = Reactor(Session(tmp_path), handler)
        reactor.run_once()
        assert reactor.session.loop is False


class TestScreenCheck:
    def test_armed_tags_trigger_check(self, wiring, fake_backend):
        reactor, t_peer, _ = wiring
        fake_backend.screen_results.append({"found": {"needle": "grub"}})
        reactor.handler.tags = ["grub"]
        reactor.handler.timeout = 0
        reactor.run_once()
        assert ("check_asserted_screen", {}) in fake_backend.calls
        assert read_record(t_peer) == {"ret": {"found": {"needle": "grub"}, "tags": ["grub"]}}

    def test_no_check_without_tags(self, wiring, fake_backend):
        reactor, _, _ = wiring
        reactor.handler.timeout = 0
        reactor.run_once()
        assert fake_backend.calls == []

    def test_no_check_after_loop_ended(self, wiring, fake_backend):
        reactor, t_peer, _ = wiring
        reactor.handler.tags = ["grub"]
        t_peer.close()
        reactor.run_once()
        assert fake_backend.calls == []


class TestRun:
    def test_cancel_request_leaves_loop(self, wiring):
        reactor, _, _ = wiring
        reactor.session.cancel.signal()
        reactor.run()
        assert reactor.session.loop is False
        assert reactor.iterations == 0

    def test_loop_ends_when_child_collected(self, wiring):
        reactor, _, _ = wiring
        child = MagicMock()

        def collected():
            reactor.session.loop = False
            return True

        child.poll.side_effect = collected
        reactor.children = [child]
        reactor.handler.timeout = 0
        reactor.run()
        assert reactor.iterations == 1
        child.poll.assert_called_once()

    def test_wakeup_interrupts_wait(self, wiring):
        reactor, _, _ = wiring
        wake_r, wake_w = socket.socketpair()
        wake_r.setblocking(False)
        reactor.wakeup = wake_r
        try:
            wake_w.send(b"\x02")
            reactor.run_once()
            with pytest.raises(BlockingIOError):
                wake_r.recv(1)
        finally:
            wake_r.close()
            wake_w.close()
