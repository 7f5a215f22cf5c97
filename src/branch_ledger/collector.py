"""Collector run: ask every branch for its summary and commit the replies.

A run goes through four phases:

1. **Connect** — one :class:`~branch_ledger.channel.PeerChannel` per peer.
   Unreachable peers are logged and left out; if none connect the run raises
   :exc:`~branch_ledger.errors.NoPeersAvailable` before touching the ledger.
2. **Send** — the request line goes to every connected peer.
3. **Await** — a single ``selectors`` wait multiplexes all pending channels
   against ONE deadline that starts after the last send.  Readable channels
   are read, decoded and committed to the ledger in the order they become
   ready.  Every channel is retired after its reply, whatever the outcome.
4. **Abandon** — channels still pending at the deadline are closed locally
   and reported as timed out.  Nothing is sent to tell the branch to stop.

Per-peer failures are contained: they become a :class:`PeerOutcome` in the
returned :class:`RunSummary` and a log line, never an exception.
"""

from __future__ import annotations

import logging
import selectors
import socket
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from branch_ledger.channel import PeerChannel
from branch_ledger.config import CollectorSettings
from branch_ledger.errors import (
    LedgerWriteError,
    MalformedReply,
    NoPeersAvailable,
    PeerClosedEarly,
    PeerTimedOut,
)
from branch_ledger.ledger import append_result
from branch_ledger.peers import PeerAddress
from branch_ledger.protocol import BranchResult, decode_reply, format_amount

logger = logging.getLogger(__name__)

OutcomeStatus = Literal[
    "committed",
    "unreachable",
    "timed_out",
    "closed_early",
    "malformed",
    "read_error",
    "send_failed",
    "ledger_failed",
]


@dataclass(frozen=True)
class PeerOutcome:
    """How one peer's exchange ended."""

    address: PeerAddress
    status: OutcomeStatus
    result: BranchResult | None = None
    detail: str | None = None


@dataclass
class RunSummary:
    """Everything a collector run produced.

    Attributes:
        outcomes: One entry per configured peer, in peer-list order.
        committed: Results written to the ledger, in commit order.
    """

    outcomes: list[PeerOutcome] = field(default_factory=list)
    committed: list[BranchResult] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        return self._count("committed")

    @property
    def timed_out(self) -> int:
        return self._count("timed_out")

    @property
    def unreachable(self) -> int:
        return self._count("unreachable")

    @property
    def failed(self) -> int:
        """Peers that neither committed nor timed out (unreachable included)."""
        return len(self.outcomes) - self.succeeded - self.timed_out

    @property
    def status(self) -> Literal["success", "partial", "failure"]:
        if self.outcomes and self.succeeded == len(self.outcomes):
            return "success"
        if self.succeeded:
            return "partial"
        return "failure"

    def outcome_for(self, address: PeerAddress) -> PeerOutcome | None:
        return next((o for o in self.outcomes if o.address == address), None)


LedgerAppender = Callable[[Path, BranchResult], object]


class Collector:
    """Runs the connect/send/await protocol against a fixed list of peers.

    Args:
        settings: Deadline and buffer sizes.
        family: Address family used to resolve peers.
        clock: Monotonic clock, injectable for tests.
        appender: Ledger append function; defaults to
            :func:`~branch_ledger.ledger.append_result`.
    """

    def __init__(
        self,
        settings: CollectorSettings | None = None,
        *,
        family: socket.AddressFamily = socket.AF_INET,
        clock: Callable[[], float] = time.monotonic,
        appender: LedgerAppender = append_result,
    ) -> None:
        self._settings = settings or CollectorSettings()
        self._family = family
        self._clock = clock
        self._appender = appender

    def run(self, ledger_path: Path, peers: Sequence[PeerAddress]) -> RunSummary:
        """Collect from ``peers`` and append every valid reply to ``ledger_path``.

        Raises:
            NoPeersAvailable: If not a single peer accepted a connection.
        """
        outcomes: dict[PeerChannel, PeerOutcome] = {}
        summary = RunSummary()

        channels = self._connect_all(peers, outcomes)
        connected = [channel for channel in channels if channel not in outcomes]
        if not connected:
            logger.error("No branches available (%d configured). Exiting.", len(peers))
            raise NoPeersAvailable(f"none of {len(peers)} peers accepted a connection")

        pending = self._send_all(connected, outcomes)
        self._await_replies(ledger_path, pending, outcomes, summary)

        summary.outcomes = [outcomes[channel] for channel in channels]
        logger.info(
            "Collector finished: %d succeeded, %d failed, %d timed out (%s)",
            summary.succeeded,
            summary.failed,
            summary.timed_out,
            summary.status,
        )
        return summary

    # ── Phases ────────────────────────────────────────────────────────────────

    def _connect_all(
        self, peers: Sequence[PeerAddress], outcomes: dict[PeerChannel, PeerOutcome]
    ) -> list[PeerChannel]:
        """Open one channel per peer; unreachable ones get their outcome at once."""
        channels = []
        for peer in peers:
            channel = PeerChannel.connect(
                peer, family=self._family, timeout=self._settings.connect_timeout_seconds
            )
            channels.append(channel)
            if channel.is_pending:
                logger.debug("Connected to branch %s", peer.label)
                continue
            logger.warning("Could not connect to branch %s: %s", peer.label, channel.error)
            outcomes[channel] = PeerOutcome(peer, "unreachable", detail=str(channel.error))
            channel.close()
        return channels

    def _send_all(
        self, channels: list[PeerChannel], outcomes: dict[PeerChannel, PeerOutcome]
    ) -> list[PeerChannel]:
        pending = []
        for channel in channels:
            try:
                channel.send_request()
            except OSError as exc:
                logger.warning("Sending request to %s failed: %s", channel.address.label, exc)
                channel.mark_failed(exc)
                channel.close()
                outcomes[channel] = PeerOutcome(
                    channel.address, "send_failed", detail=str(exc)
                )
                continue
            pending.append(channel)
        return pending

    def _await_replies(
        self,
        ledger_path: Path,
        pending: list[PeerChannel],
        outcomes: dict[PeerChannel, PeerOutcome],
        summary: RunSummary,
    ) -> None:
        deadline = self._clock() + self._settings.timeout_seconds
        waiting = set(pending)

        with selectors.DefaultSelector() as selector:
            for channel in pending:
                selector.register(channel, selectors.EVENT_READ)

            while waiting:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                for key, _events in selector.select(remaining):
                    channel: PeerChannel = key.fileobj  # type: ignore[assignment]
                    outcome = self._service(ledger_path, channel, summary)
                    if outcome is None:
                        continue  # partial reply, keep waiting
                    outcomes[channel] = outcome
                    selector.unregister(channel)
                    channel.close()
                    waiting.discard(channel)

            for channel in pending:
                if channel not in waiting:
                    continue
                logger.warning("Timeout waiting for branch %s", channel.address.label)
                error = PeerTimedOut(
                    channel.address, f"no reply within {self._settings.timeout_seconds}s"
                )
                channel.mark_failed(error)
                selector.unregister(channel)
                channel.close()
                outcomes[channel] = PeerOutcome(
                    channel.address, "timed_out", detail=str(error)
                )

    # ── Per-channel handling ──────────────────────────────────────────────────

    def _service(
        self, ledger_path: Path, channel: PeerChannel, summary: RunSummary
    ) -> PeerOutcome | None:
        """Read from a readable channel; return its outcome once it is retired."""
        address = channel.address
        try:
            reply = channel.read_reply(
                self._settings.recv_buffer_bytes, self._settings.max_reply_bytes
            )
        except PeerClosedEarly as exc:
            logger.warning("Branch %s closed the connection without replying", address.label)
            channel.mark_failed(exc)
            return PeerOutcome(address, "closed_early", detail=str(exc))
        except MalformedReply as exc:
            logger.warning("Malformed reply from %s: %s", address.label, exc)
            channel.mark_failed(exc)
            return PeerOutcome(address, "malformed", detail=str(exc))
        except OSError as exc:
            logger.warning("Reading reply from %s failed: %s", address.label, exc)
            channel.mark_failed(exc)
            return PeerOutcome(address, "read_error", detail=str(exc))

        if reply is None:
            return None

        try:
            result = decode_reply(reply)
        except MalformedReply as exc:
            logger.warning("Malformed reply from %s: %s [%r]", address.label, exc, reply[:200])
            channel.mark_failed(exc)
            return PeerOutcome(address, "malformed", detail=str(exc))

        channel.mark_complete()
        logger.info(
            "Received from %s: records=%d subtotal=%s",
            result.branch_id,
            result.record_count,
            format_amount(result.subtotal),
        )

        try:
            self._appender(ledger_path, result)
        except LedgerWriteError as exc:
            logger.error("Failed to update ledger for branch %s: %s", result.branch_id, exc)
            return PeerOutcome(address, "ledger_failed", result=result, detail=str(exc))

        logger.info("Ledger updated for branch %s", result.branch_id)
        summary.committed.append(result)
        return PeerOutcome(address, "committed", result=result)


def collect(
    ledger_path: Path,
    peers: Sequence[PeerAddress],
    settings: CollectorSettings | None = None,
    *,
    family: socket.AddressFamily = socket.AF_INET,
) -> RunSummary:
    """Convenience wrapper around :meth:`Collector.run`."""
    return Collector(settings, family=family).run(ledger_path, peers)
