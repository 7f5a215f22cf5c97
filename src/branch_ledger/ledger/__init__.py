"""Ledger package — the shared CSV file that accumulates branch results.

Public surface
--------------
- :func:`append_result`  — atomically append one branch result.
- :func:`init_ledger`    — create a ledger holding only its header row.
- :func:`verify_ledger`  — check that every row is complete.
- :exc:`LedgerWriteError` — raised when an append cannot be committed.
- :class:`LedgerVerifyResult` — result object returned by :func:`verify_ledger`.

Usage example
-------------
::

    from branch_ledger.ledger import append_result, LedgerWriteError

    try:
        append_result(Path("main.csv"), result)
    except LedgerWriteError:
        logger.error("Ledger write failed for %s", result.branch_id)

Design notes
------------
- One ledger file per deployment; rows are ordered by commit time.
- Appends rewrite the file through a temp file and ``os.replace`` under an
  exclusive ``fcntl`` lock on ``<ledger>.lock``.
- A failed append leaves the ledger byte-identical; it is never retried.
"""

from branch_ledger.errors import LedgerWriteError
from branch_ledger.ledger.writer import (
    LedgerVerifyResult,
    append_result,
    format_row,
    init_ledger,
    verify_ledger,
)

__all__ = [
    "LedgerWriteError",
    "LedgerVerifyResult",
    "append_result",
    "format_row",
    "init_ledger",
    "verify_ledger",
]
