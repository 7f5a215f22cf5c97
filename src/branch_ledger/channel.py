"""One outbound request/response exchange between the collector and a branch.

A :class:`PeerChannel` owns a single TCP connection for the duration of one
collector run.  Its lifecycle is::

    UNREACHABLE ──────────────────────────────► DEAD
    PENDING ──► COMPLETE | FAILED ──► DEAD

Branches answer exactly one request per connection and then close, so EOF
right after the reply is the normal end of an exchange.  EOF before any
reply byte is :exc:`~branch_ledger.errors.PeerClosedEarly`.
"""

from __future__ import annotations

import enum
import logging
import socket

from branch_ledger.errors import MalformedReply, PeerClosedEarly, PeerUnreachable
from branch_ledger.peers import PeerAddress
from branch_ledger.protocol import REQUEST, is_complete

logger = logging.getLogger(__name__)


class ChannelState(enum.Enum):
    UNREACHABLE = "unreachable"
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"
    DEAD = "dead"


def open_connection(
    address: PeerAddress,
    *,
    family: socket.AddressFamily = socket.AF_INET,
    timeout: float | None = None,
) -> socket.socket:
    """Resolve ``address`` and connect to the first candidate that accepts.

    Raises:
        OSError: If resolution fails or every candidate refuses.
    """
    candidates = socket.getaddrinfo(address.host, address.port, family, socket.SOCK_STREAM)
    last_error: OSError | None = None
    for af, socktype, proto, _canonname, sockaddr in candidates:
        sock = socket.socket(af, socktype, proto)
        try:
            sock.settimeout(timeout)
            sock.connect(sockaddr)
        except OSError as exc:
            sock.close()
            last_error = exc
            continue
        return sock
    raise last_error or OSError(f"no usable address for {address.label}")


class PeerChannel:
    """A single in-flight request/response exchange with one branch."""

    def __init__(self, address: PeerAddress, sock: socket.socket | None = None) -> None:
        self.address = address
        self._sock = sock
        self._buffer = bytearray()
        self.state = ChannelState.PENDING if sock is not None else ChannelState.UNREACHABLE
        self.error: Exception | None = None

    @classmethod
    def connect(
        cls,
        address: PeerAddress,
        *,
        family: socket.AddressFamily = socket.AF_INET,
        timeout: float | None = None,
    ) -> PeerChannel:
        """Open a channel; a failed connect yields an ``UNREACHABLE`` channel.

        The connect failure is stored on :attr:`error` as a
        :exc:`PeerUnreachable` rather than raised, so the caller can treat
        every peer uniformly.
        """
        try:
            sock = open_connection(address, family=family, timeout=timeout)
        except OSError as exc:
            channel = cls(address)
            channel.error = PeerUnreachable(address, str(exc) or type(exc).__name__)
            return channel
        return cls(address, sock)

    @property
    def is_pending(self) -> bool:
        return self.state is ChannelState.PENDING

    def fileno(self) -> int:
        if self._sock is None:
            raise ValueError(f"{self.address.label}: channel has no socket")
        return self._sock.fileno()

    def send_request(self) -> None:
        """Send the request line.

        Raises:
            OSError: If the connection fails while sending.
        """
        if self._sock is None:
            raise ValueError(f"{self.address.label}: channel has no socket")
        self._sock.sendall(REQUEST)

    def read_reply(self, bufsize: int, max_bytes: int) -> bytes | None:
        """Perform one bounded read and return the reply once it is complete.

        The reply is complete when the ``END`` sentinel has arrived or the
        branch closed the connection after sending some bytes.  Until then
        the partial bytes are kept and ``None`` is returned.

        Raises:
            PeerClosedEarly: EOF before any reply byte.
            MalformedReply: The accumulated reply exceeds ``max_bytes``
                without a sentinel.
            OSError: The read itself failed.
        """
        if self._sock is None:
            raise ValueError(f"{self.address.label}: channel has no socket")

        chunk = self._sock.recv(bufsize)
        if not chunk:
            if not self._buffer:
                raise PeerClosedEarly(self.address, "connection closed before any reply")
            return bytes(self._buffer)

        self._buffer += chunk
        if is_complete(self._buffer):
            return bytes(self._buffer)
        if len(self._buffer) > max_bytes:
            raise MalformedReply(
                f"{self.address.label}: reply exceeds {max_bytes} bytes without END"
            )
        return None

    def mark_complete(self) -> None:
        self.state = ChannelState.COMPLETE

    def mark_failed(self, error: Exception) -> None:
        self.error = error
        self.state = ChannelState.FAILED

    def close(self) -> None:
        """Close the socket locally and retire the channel."""
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                logger.debug("Error closing channel %s", self.address.label, exc_info=True)
            self._sock = None
        self.state = ChannelState.DEAD

    def __repr__(self) -> str:
        return f"PeerChannel({self.address.label}, state={self.state.value})"
