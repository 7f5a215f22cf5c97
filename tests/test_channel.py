"""Tests for PeerChannel: connecting, framing partial replies and retiring."""

from __future__ import annotations

import socket

import pytest

from branch_ledger.channel import ChannelState, PeerChannel
from branch_ledger.errors import MalformedReply, PeerClosedEarly, PeerUnreachable
from branch_ledger.peers import PeerAddress

ADDRESS = PeerAddress("127.0.0.1", 5001)


@pytest.fixture
def pair():
    """A connected socket pair: (channel around the local end, remote end)."""
    local, remote = socket.socketpair()
    channel = PeerChannel(ADDRESS, local)
    yield channel, remote
    channel.close()
    remote.close()


@pytest.mark.unit
class TestReadReply:
    """Accumulating reply bytes across reads."""

    def test_complete_in_one_read(self, pair):
        channel, remote = pair
        remote.sendall(b"BRANCH_ID: A\nRECORDS: 1\nSUBTOTAL: 1.00\nEND\n")
        assert channel.read_reply(4096, 65536) == (
            b"BRANCH_ID: A\nRECORDS: 1\nSUBTOTAL: 1.00\nEND\n"
        )

    def test_partial_reply_returns_none_until_sentinel(self, pair):
        channel, remote = pair
        remote.sendall(b"BRANCH_ID: A\nREC")
        assert channel.read_reply(4096, 65536) is None
        remote.sendall(b"ORDS: 1\nSUBTOTAL: 1.00\nEND\n")
        assert channel.read_reply(4096, 65536).endswith(b"END\n")

    def test_eof_after_data_completes_reply(self, pair):
        channel, remote = pair
        remote.sendall(b"BRANCH_ID: A\nRECORDS: 1\nSUBTOTAL: 1.00\n")
        remote.shutdown(socket.SHUT_WR)
        assert channel.read_reply(4096, 65536) is None
        assert channel.read_reply(4096, 65536) == b"BRANCH_ID: A\nRECORDS: 1\nSUBTOTAL: 1.00\n"

    def test_eof_before_any_data(self, pair):
        channel, remote = pair
        remote.shutdown(socket.SHUT_WR)
        with pytest.raises(PeerClosedEarly) as exc_info:
            channel.read_reply(4096, 65536)
        assert exc_info.value.address == ADDRESS

    def test_oversized_reply(self, pair):
        channel, remote = pair
        remote.sendall(b"x" * 64)
        with pytest.raises(MalformedReply, match="exceeds 32 bytes"):
            channel.read_reply(4096, 32)

    def test_request_is_sent(self, pair):
        channel, remote = pair
        channel.send_request()
        assert remote.recv(64) == b"REQUEST\n"


@pytest.mark.unit
class TestLifecycle:
    def test_new_channel_with_socket_is_pending(self, pair):
        channel, _ = pair
        assert channel.state is ChannelState.PENDING
        assert channel.is_pending

    def test_mark_failed_records_error(self, pair):
        channel, _ = pair
        error = RuntimeError("boom")
        channel.mark_failed(error)
        assert channel.state is ChannelState.FAILED
        assert channel.error is error

    def test_close_is_idempotent(self, pair):
        channel, _ = pair
        channel.mark_complete()
        channel.close()
        channel.close()
        assert channel.state is ChannelState.DEAD
        with pytest.raises(ValueError):
            channel.fileno()

    def test_repr(self, pair):
        channel, _ = pair
        assert repr(channel) == "PeerChannel(127.0.0.1:5001, state=pending)"


@pytest.mark.integration
class TestConnect:
    def test_refused_connection_is_unreachable(self, refused_address):
        channel = PeerChannel.connect(refused_address, timeout=2)
        assert channel.state is ChannelState.UNREACHABLE
        assert not channel.is_pending
        assert isinstance(channel.error, PeerUnreachable)
        assert channel.error.address == refused_address

    def test_connects_to_listener(self, fake_branch):
        branch = fake_branch(close=True)
        channel = PeerChannel.connect(branch.address, timeout=2)
        try:
            assert channel.is_pending
            assert channel.fileno() >= 0
        finally:
            channel.close()
