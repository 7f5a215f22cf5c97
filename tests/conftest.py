"""
Shared pytest fixtures for the Branch Ledger test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary ledger files with a header row
- Fake branch services running on loopback sockets in background threads
- Addresses that are guaranteed to refuse connections

Fake branches accept exactly one connection, record the request bytes and
then run a handler that decides how (or whether) to reply.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import pytest

from branch_ledger.peers import PeerAddress

LEDGER_HEADER = "ts,branch,records,subtotal,ts2\n"


# ============================================================================
# LEDGER FIXTURES
# ============================================================================


@pytest.fixture
def ledger_file(tmp_path: Path) -> Path:
    """Create a ledger holding only a header row."""
    path = tmp_path / "main.csv"
    path.write_text(LEDGER_HEADER, encoding="utf-8")
    return path


# ============================================================================
# FAKE BRANCH SERVICES
# ============================================================================


class FakeBranch:
    """A one-shot branch service on 127.0.0.1 with a pluggable handler.

    Attributes:
        address: Where the collector should connect.
        requests: Raw bytes received from the collector.
        release: Set on teardown; handlers that hold a connection open wait
            on it.
    """

    def __init__(self, handler: Callable[[FakeBranch, socket.socket], None]) -> None:
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(5)
        self.address = PeerAddress("127.0.0.1", self._listener.getsockname()[1])
        self.requests: list[bytes] = []
        self.release = threading.Event()
        self._handler = handler
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> FakeBranch:
        self._thread.start()
        return self

    def _serve(self) -> None:
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            try:
                self.requests.append(conn.recv(64))
                self._handler(self, conn)
            except OSError:
                pass

    def stop(self) -> None:
        self.release.set()
        self._listener.close()
        self._thread.join(timeout=5)


def reply_with(data: bytes, delay: float = 0.0) -> Callable[[FakeBranch, socket.socket], None]:
    """Handler: optionally wait, send ``data``, then close."""

    def handler(branch: FakeBranch, conn: socket.socket) -> None:
        if delay:
            time.sleep(delay)
        conn.sendall(data)

    return handler


def reply_in_pieces(
    *pieces: bytes, gap: float = 0.05
) -> Callable[[FakeBranch, socket.socket], None]:
    """Handler: send ``pieces`` separately with a pause between them."""

    def handler(branch: FakeBranch, conn: socket.socket) -> None:
        for piece in pieces:
            conn.sendall(piece)
            time.sleep(gap)

    return handler


def hold_open(branch: FakeBranch, conn: socket.socket) -> None:
    """Handler: never reply; keep the connection open until teardown."""
    branch.release.wait(5)


def close_without_reply(branch: FakeBranch, conn: socket.socket) -> None:
    """Handler: close as soon as the request has been read."""


@pytest.fixture
def fake_branch() -> Generator[Callable[..., FakeBranch], None, None]:
    """Factory fixture starting fake branches that are stopped on teardown.

    Exactly one behaviour keyword selects the handler::

        fake_branch(reply=b"...", delay=0.1)   # send bytes, then close
        fake_branch(pieces=[b"...", b"..."])   # send fragments with pauses
        fake_branch(hold=True)                 # never reply
        fake_branch(close=True)                # close without replying
    """
    branches: list[FakeBranch] = []

    def _start(
        *,
        reply: bytes | None = None,
        delay: float = 0.0,
        pieces: Sequence[bytes] | None = None,
        hold: bool = False,
        close: bool = False,
    ) -> FakeBranch:
        if reply is not None:
            handler = reply_with(reply, delay)
        elif pieces is not None:
            handler = reply_in_pieces(*pieces)
        elif hold:
            handler = hold_open
        elif close:
            handler = close_without_reply
        else:
            raise ValueError("fake_branch needs one of reply, pieces, hold or close")
        branch = FakeBranch(handler).start()
        branches.append(branch)
        return branch

    yield _start

    for branch in branches:
        branch.stop()


@pytest.fixture
def refused_address() -> PeerAddress:
    """An address on 127.0.0.1 with nothing listening."""
    with socket.create_server(("127.0.0.1", 0)) as probe:
        port = probe.getsockname()[1]
    return PeerAddress("127.0.0.1", port)


@pytest.fixture
def refused_addresses() -> list[PeerAddress]:
    """Two distinct refusing addresses."""
    probes = [socket.create_server(("127.0.0.1", 0)) for _ in range(2)]
    ports = [probe.getsockname()[1] for probe in probes]
    for probe in probes:
        probe.close()
    return [PeerAddress("127.0.0.1", port) for port in ports]
