"""Tests for the JSON-line channel (vmpilot/lib/ipc.py)."""

import socket

import pytest
from conftest import read_record, write_records

from vmpilot.lib.ipc import Channel, ChannelReadError, ChannelWriteError, channel_pair


class TestSend:
    def test_send_writes_one_line(self, channel_and_peer):
        channel, peer = channel_and_peer
        channel.send({"cmd": "alive", "arguments": {}})
        assert read_record(peer) == {"cmd": "alive", "arguments": {}}

    def test_send_on_closed_channel_raises(self, channel_and_peer):
        channel, _ = channel_and_peer
        channel.close()
        with pytest.raises(ChannelWriteError, match="closed"):
            channel.send({"ret": 1})

    def test_send_after_peer_closed_raises(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.close()
        with pytest.raises(ChannelWriteError):
            channel.send({"ret": 1})


class TestReceive:
    def test_receive_one_record(self, channel_and_peer):
        channel, peer = channel_and_peer
        write_records(peer, {"ret": 42})
        assert channel.receive() == {"ret": 42}

    def test_records_in_one_chunk_are_returned_in_order(self, channel_and_peer):
        channel, peer = channel_and_peer
        write_records(peer, {"n": 1}, {"n": 2}, {"n": 3})
        assert channel.receive() == {"n": 1}
        assert channel.pending
        assert channel.receive() == {"n": 2}
        assert channel.receive() == {"n": 3}
        assert not channel.pending

    def test_record_split_across_writes(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.sendall(b'{"cmd": "sta')
        peer.sendall(b'tus"}\n')
        assert channel.receive() == {"cmd": "status"}

    def test_blank_lines_are_skipped(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.sendall(b'\n\n{"ret": 1}\n')
        assert channel.receive() == {"ret": 1}

    def test_clean_close_returns_none(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.close()
        assert channel.receive() is None

    def test_close_mid_record_returns_none(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.sendall(b'{"ret": ')
        peer.close()
        assert channel.receive() is None
        # nothing left over for the next call
        assert channel.receive() is None

    def test_receive_on_closed_channel_returns_none(self, channel_and_peer):
        channel, _ = channel_and_peer
        channel.close()
        assert channel.receive() is None

    def test_malformed_json_raises(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.sendall(b"not json\n")
        with pytest.raises(ChannelReadError, match="Malformed"):
            channel.receive()

    def test_non_object_raises(self, channel_and_peer):
        channel, peer = channel_and_peer
        peer.sendall(b"[1, 2]\n")
        with pytest.raises(ChannelReadError, match="not an object"):
            channel.receive()


class TestLifecycle:
    def test_close_is_idempotent(self, channel_and_peer):
        channel, _ = channel_and_peer
        channel.close()
        channel.close()
        assert channel.closed

    def test_fileno_on_closed_channel_raises(self, channel_and_peer):
        channel, _ = channel_and_peer
        channel.close()
        with pytest.raises(ValueError):
            channel.fileno()

    def test_default_name_uses_fd(self):
        a, b = socket.socketpair()
        try:
            channel = Channel(a)
            assert channel.name == f"fd{a.fileno()}"
        finally:
            a.close()
            b.close()

    def test_channel_pair(self):
        channel, child = channel_pair("autotest")
        try:
            assert channel.name == "autotest"
            assert child.get_inheritable()
            write_records(child, {"cmd": "tests_done"})
            assert channel.receive() == {"cmd": "tests_done"}
        finally:
            channel.close()
            child.close()
