"""Exception taxonomy for the collector, the ledger writer and the branch side.

Per-peer failures (:exc:`PeerUnreachable`, :exc:`PeerTimedOut`,
:exc:`PeerClosedEarly`, :exc:`MalformedReply`) are contained by the collector:
they are logged and counted, never propagated out of a run.  Only
:exc:`NoPeersAvailable` ends a run early.

:exc:`LedgerWriteError` is raised by the ledger writer for any lock, temp-file
or rename failure.  The original ledger file is guaranteed unmodified when it
is raised.

:exc:`DataUnavailable` belongs to the branch side; the responder turns it into
an ``ERROR`` reply instead of dropping the connection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from branch_ledger.peers import PeerAddress


class BranchLedgerError(Exception):
    """Base class for every error raised by this package."""


# ── Per-peer errors ───────────────────────────────────────────────────────────


class PeerError(BranchLedgerError):
    """A failure isolated to a single peer.

    Attributes:
        address: The peer the failure belongs to.
    """

    def __init__(self, address: PeerAddress, message: str) -> None:
        super().__init__(f"{address.label}: {message}")
        self.address = address


class PeerUnreachable(PeerError):
    """The TCP connection to the peer could not be established."""


class PeerTimedOut(PeerError):
    """The shared deadline elapsed while the peer was still pending."""


class PeerClosedEarly(PeerError):
    """The peer closed the connection before sending any reply bytes."""


# ── Wire errors ───────────────────────────────────────────────────────────────


class MalformedReply(BranchLedgerError):
    """A reply buffer could not be decoded into a branch result."""


class BranchReportedError(MalformedReply):
    """The branch answered with an ``ERROR:`` reply instead of a summary.

    Attributes:
        branch_message: The text following ``ERROR:`` in the reply.
    """

    def __init__(self, branch_message: str) -> None:
        super().__init__(f"branch reported error: {branch_message}")
        self.branch_message = branch_message


# ── Run-level and storage errors ──────────────────────────────────────────────


class NoPeersAvailable(BranchLedgerError):
    """Not a single peer accepted a connection; the run cannot proceed."""


class LedgerWriteError(BranchLedgerError):
    """Raised when a ledger append fails at the lock, temp-file or rename step.

    The original ledger file is left byte-identical to its pre-write state.
    Callers log the failure and carry on with the remaining results.
    """


# ── Branch side ───────────────────────────────────────────────────────────────


class DataUnavailable(BranchLedgerError):
    """The summary provider could not read its local data source."""
