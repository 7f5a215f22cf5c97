"""Branch-side service answering one summary request per connection.

The responder is sequential: it accepts a connection, reads one
request line, answers it and closes, then accepts the next.  A slow summary
provider therefore delays later clients of the same branch; the collector's
shared deadline is what protects the run as a whole.
"""

from __future__ import annotations

import logging
import socket

from branch_ledger.branch.provider import SummaryProvider
from branch_ledger.config import ServerSettings
from branch_ledger.errors import DataUnavailable
from branch_ledger.protocol import (
    REQUEST_LINE,
    BranchResult,
    check_branch_id,
    encode_error,
    encode_reply,
    format_amount,
)

logger = logging.getLogger(__name__)


def bind_listener(
    host: str,
    port: int,
    *,
    family: socket.AddressFamily = socket.AF_INET,
    backlog: int = 5,
) -> socket.socket:
    """Create a listening TCP socket with ``SO_REUSEADDR`` set.

    ``AF_UNSPEC`` asks for a dual-stack IPv6 socket that also accepts IPv4
    clients, falling back to plain IPv4 where the platform cannot do that.

    Raises:
        OSError: If the address cannot be bound.
    """
    if family == socket.AF_UNSPEC:
        if socket.has_dualstack_ipv6():
            return socket.create_server(
                (host, port), family=socket.AF_INET6, backlog=backlog, dualstack_ipv6=True
            )
        family = socket.AF_INET
    return socket.create_server((host, port), family=family, backlog=backlog)


class BranchResponder:
    """Serve ``(record_count, subtotal)`` summaries for a single branch.

    Args:
        branch_id: Identifier sent in every reply.
        provider: Source of the summary, consulted per request.
        settings: Request size and idle-timeout limits.
    """

    def __init__(
        self,
        branch_id: str,
        provider: SummaryProvider,
        settings: ServerSettings | None = None,
    ) -> None:
        self.branch_id = check_branch_id(branch_id)
        self.provider = provider
        self.settings = settings or ServerSettings()

    def serve_forever(self, listener: socket.socket, max_connections: int | None = None) -> int:
        """Accept and answer connections one at a time.

        Args:
            listener: Bound, listening socket.
            max_connections: Stop after this many connections; ``None`` runs
                until the process is killed.

        Returns:
            Number of connections handled.
        """
        handled = 0
        while max_connections is None or handled < max_connections:
            conn, peer = listener.accept()
            logger.debug("Connection from %s", peer)
            try:
                self.handle_connection(conn)
            except OSError as exc:
                logger.warning("Connection from %s failed: %s", peer, exc)
            handled += 1
        return handled

    def handle_connection(self, conn: socket.socket) -> bool:
        """Answer a single request on ``conn`` and close it.

        Returns:
            True if a summary reply was sent, False if the request was
            rejected or the provider failed.

        Raises:
            OSError: If the connection breaks while reading or sending.
        """
        with conn:
            conn.settimeout(self.settings.request_timeout_seconds)
            request = self._read_request(conn)
            if request != REQUEST_LINE:
                logger.warning("Unexpected request %r, closing without reply", request)
                return False

            try:
                record_count, subtotal = self.provider.summarize()
            except DataUnavailable as exc:
                logger.error("Summary unavailable for branch %s: %s", self.branch_id, exc)
                conn.sendall(encode_error("cannot read branch data"))
                return False

            try:
                result = BranchResult(
                    branch_id=self.branch_id, record_count=record_count, subtotal=subtotal
                )
            except ValueError as exc:
                logger.error("Summary for branch %s cannot be sent: %s", self.branch_id, exc)
                conn.sendall(encode_error("summary out of range"))
                return False
            conn.sendall(encode_reply(result))
            logger.info(
                "Sent summary for branch %s: records=%d subtotal=%s",
                self.branch_id,
                result.record_count,
                format_amount(result.subtotal),
            )
            return True

    def _read_request(self, conn: socket.socket) -> str | None:
        """Read up to one line; ``None`` if the client sent nothing."""
        limit = self.settings.request_max_bytes
        buffer = bytearray()
        while b"\n" not in buffer and len(buffer) < limit:
            chunk = conn.recv(limit - len(buffer))
            if not chunk:
                break
            buffer += chunk
        if not buffer:
            return None
        line = bytes(buffer).split(b"\n", 1)[0]
        return line.decode("utf-8", errors="replace").strip()
