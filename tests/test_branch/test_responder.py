"""Tests for the branch responder.

Most tests drive :meth:`BranchResponder.handle_connection` over a
``socket.socketpair`` so no ports are needed; one test exercises the real
accept loop on a loopback listener.
"""

from __future__ import annotations

import socket
import threading
from decimal import Decimal

import pytest

from branch_ledger.branch import BranchResponder, bind_listener
from branch_ledger.config import ServerSettings
from branch_ledger.errors import DataUnavailable


class StaticProvider:
    """Summary provider returning fixed values, or raising if given an error."""

    def __init__(self, count=3, subtotal=Decimal("12.5"), error=None):
        self.count = count
        self.subtotal = subtotal
        self.error = error
        self.calls = 0

    def summarize(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.count, self.subtotal


def _exchange(responder: BranchResponder, request: bytes) -> tuple[bool, bytes]:
    """Send ``request`` to the responder and collect everything it answers."""
    server_end, client_end = socket.socketpair()
    with client_end:
        client_end.sendall(request)
        client_end.shutdown(socket.SHUT_WR)
        sent = responder.handle_connection(server_end)
        reply = b""
        while chunk := client_end.recv(4096):
            reply += chunk
    return sent, reply


@pytest.mark.unit
class TestHandleConnection:
    def test_replies_to_request(self):
        responder = BranchResponder("A", StaticProvider())

        sent, reply = _exchange(responder, b"REQUEST\n")

        assert sent is True
        assert reply == b"BRANCH_ID: A\nRECORDS: 3\nSUBTOTAL: 12.50\nEND\n"

    def test_request_with_crlf(self):
        _, reply = _exchange(BranchResponder("A", StaticProvider()), b"REQUEST\r\n")
        assert reply.startswith(b"BRANCH_ID: A\n")

    def test_request_without_newline_before_eof(self):
        _, reply = _exchange(BranchResponder("A", StaticProvider()), b"REQUEST")
        assert reply.endswith(b"END\n")

    def test_unknown_request_gets_no_reply(self):
        provider = StaticProvider()

        sent, reply = _exchange(BranchResponder("A", provider), b"HELLO\n")

        assert sent is False
        assert reply == b""
        assert provider.calls == 0

    def test_request_must_match_exactly(self):
        sent, reply = _exchange(BranchResponder("A", StaticProvider()), b"XREQUESTX\n")
        assert sent is False
        assert reply == b""

    def test_empty_connection(self):
        sent, reply = _exchange(BranchResponder("A", StaticProvider()), b"")
        assert sent is False
        assert reply == b""

    def test_oversized_request_is_rejected(self):
        responder = BranchResponder("A", StaticProvider(), ServerSettings(request_max_bytes=8))
        server_end, client_end = socket.socketpair()
        with client_end:
            client_end.sendall(b"REQUESTREQUEST\n")
            # unread bytes make the close a reset, so only the result is checked
            assert responder.handle_connection(server_end) is False

    def test_provider_failure_sends_error_reply(self):
        provider = StaticProvider(error=DataUnavailable("disk gone"))

        sent, reply = _exchange(BranchResponder("A", provider), b"REQUEST\n")

        assert sent is False
        assert reply == b"ERROR: cannot read branch data\nEND\n"

    def test_out_of_range_summary_sends_error_reply(self):
        provider = StaticProvider(subtotal=Decimal("1E+20"))

        sent, reply = _exchange(BranchResponder("A", provider), b"REQUEST\n")

        assert sent is False
        assert reply == b"ERROR: summary out of range\nEND\n"

    def test_invalid_branch_id(self):
        with pytest.raises(ValueError):
            BranchResponder("A B", StaticProvider())


@pytest.mark.integration
class TestServeForever:
    def test_serves_one_connection_per_request(self):
        responder = BranchResponder("east", StaticProvider(count=0, subtotal=Decimal("0")))
        with bind_listener("127.0.0.1", 0) as listener:
            port = listener.getsockname()[1]
            handled: list[int] = []
            server = threading.Thread(
                target=lambda: handled.append(responder.serve_forever(listener, 2)),
                daemon=True,
            )
            server.start()

            replies = []
            for _ in range(2):
                with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
                    client.sendall(b"REQUEST\n")
                    data = b""
                    while chunk := client.recv(4096):
                        data += chunk
                    replies.append(data)

            server.join(timeout=5)

        assert handled == [2]
        assert replies == [b"BRANCH_ID: east\nRECORDS: 0\nSUBTOTAL: 0.00\nEND\n"] * 2

    def test_bind_listener_reuses_address(self):
        with bind_listener("127.0.0.1", 0) as listener:
            assert listener.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR)

    def test_bind_listener_dual_stack_falls_back(self):
        with bind_listener("", 0, family=socket.AF_UNSPEC) as listener:
            assert listener.family in (socket.AF_INET, socket.AF_INET6)
