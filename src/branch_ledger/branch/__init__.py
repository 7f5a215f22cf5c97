"""Branch side of the protocol: the responder and its summary providers."""

from branch_ledger.branch.provider import CsvSummaryProvider, SummaryProvider
from branch_ledger.branch.responder import BranchResponder, bind_listener

__all__ = [
    "BranchResponder",
    "CsvSummaryProvider",
    "SummaryProvider",
    "bind_listener",
]
