"""CSV ledger writer for collected branch summaries.

Overview
--------
This module is the single implementation file for the ledger package.  It
exposes :func:`append_result`, :func:`init_ledger` and :func:`verify_ledger`
plus the types they return.

Row format
----------
Each committed branch result becomes one newline-terminated row::

    received_timestamp,branch_id,record_count,subtotal,logged_timestamp

Both timestamps are ISO-8601 UTC with second precision and carry the *same*
value.  The duplication is kept so existing readers of the five-column
layout keep working.  Fields are not escaped; branch identifiers cannot
contain commas or whitespace (see :class:`~branch_ledger.protocol.BranchResult`).

Atomic append
-------------
A reader must never observe a half-written row or a truncated file, even if
the writer crashes.  Every append therefore:

1. Takes an exclusive ``fcntl.flock`` on the sibling ``<ledger>.lock`` file.
2. Reads the whole current ledger.
3. Writes old contents plus the new row to a fresh temp file in the same
   directory, then ``fsync``\\ s it.
4. ``os.replace``\\ s the temp file over the ledger and fsyncs the directory.
5. Releases the lock.

A writer killed outright (SIGKILL, power loss) between steps 3 and 4 leaves
its ``.<ledger>.*.tmp`` file behind.  The ledger itself is untouched, and the
next writer removes such leftovers once it holds the lock.

The lock lives on a separate file because the ledger's own inode is swapped
out by every rename; a writer blocked on the old inode would otherwise wake
up holding a lock on a file nobody reads any more and silently drop the
previous writer's row.

The cost is O(file size) per append.  Ledgers are expected to stay small.

Concurrency
-----------
``flock`` serialises writers in this process and in any other process on the
same host that targets the same ledger path.

**Platform note:** ``fcntl`` is POSIX-only (Darwin + Linux).
"""

from __future__ import annotations

import fcntl
import glob
import logging
import os
import stat
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from branch_ledger.errors import LedgerWriteError
from branch_ledger.protocol import BranchResult, format_amount, parse_amount, parse_record_count

logger = logging.getLogger(__name__)

# ── Row layout ─────────────────────────────────────────────────────────────────
ROW_FIELDS = (
    "received_timestamp",
    "branch_id",
    "record_count",
    "subtotal",
    "logged_timestamp",
)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# ── Result type ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LedgerVerifyResult:
    """Result of a ledger integrity check performed by :func:`verify_ledger`.

    Attributes:
        status: One of:
            - ``"ok"``      — every row after the header is complete.
            - ``"empty"``   — file missing, or holds nothing but a header.
            - ``"corrupt"`` — unterminated last line or a malformed row.
        rows: Number of data rows (header excluded) that were checked.
        error_detail: Description of the first problem, or ``None``.
    """

    status: Literal["ok", "empty", "corrupt"]
    rows: int
    error_detail: str | None


# ── Public API ────────────────────────────────────────────────────────────────


def format_row(result: BranchResult, timestamp: str) -> str:
    """Render one ledger row (without the trailing newline)."""
    return ",".join(
        (
            timestamp,
            result.branch_id,
            str(result.record_count),
            format_amount(result.subtotal),
            timestamp,
        )
    )


def append_result(path: Path, result: BranchResult, *, now: datetime | None = None) -> str:
    """Append one branch result to the ledger at ``path``.

    The ledger must already exist (see :func:`init_ledger`).  On any failure
    the original file is left byte-identical.

    Args:
        path: Ledger file.
        result: Validated branch result to record.
        now: Timestamp to record; defaults to the current UTC time.

    Returns:
        The row that was written, without its newline.

    Raises:
        LedgerWriteError: If the ledger cannot be opened, the lock cannot be
            taken, or the temp file cannot be written or renamed.
    """
    timestamp = (now or datetime.now(UTC)).astimezone(UTC).strftime(_TIMESTAMP_FORMAT)
    row = format_row(result, timestamp)

    if not path.is_file():
        raise LedgerWriteError(f"ledger file does not exist: {path}")

    try:
        with _exclusive_lock(path):
            _remove_stale_temp_files(path)
            contents = path.read_bytes()
            if contents and not contents.endswith(b"\n"):
                contents += b"\n"
            _replace_atomically(path, contents + row.encode("utf-8") + b"\n")
    except OSError as exc:
        raise LedgerWriteError(f"failed to append to ledger {path}: {exc}") from exc

    logger.debug("Ledger row written to %s: %s", path, row)
    return row


def init_ledger(path: Path, header: str, *, force: bool = False) -> None:
    """Create a ledger containing only ``header``.

    Uses the same lock-and-rename discipline as :func:`append_result`.

    Raises:
        FileExistsError: If ``path`` exists and ``force`` is false.
        LedgerWriteError: If the file cannot be written.
    """
    if path.exists() and not force:
        raise FileExistsError(f"ledger already exists: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _exclusive_lock(path):
            _remove_stale_temp_files(path)
            _replace_atomically(path, header.rstrip("\n").encode("utf-8") + b"\n")
    except OSError as exc:
        raise LedgerWriteError(f"failed to initialise ledger {path}: {exc}") from exc


def verify_ledger(path: Path) -> LedgerVerifyResult:
    """Check that the ledger at ``path`` is a sequence of complete rows.

    The first line is treated as a header and not validated.  Every other
    line must have five comma-separated fields with an ASCII integer record
    count and a plain two-decimal subtotal, as :func:`format_row` writes
    them, and the file must end with a newline.
    """
    if not path.exists():
        return LedgerVerifyResult(status="empty", rows=0, error_detail=None)

    try:
        data = path.read_bytes()
    except OSError as exc:
        return LedgerVerifyResult(status="corrupt", rows=0, error_detail=f"unreadable: {exc}")

    if not data:
        return LedgerVerifyResult(status="empty", rows=0, error_detail=None)
    if not data.endswith(b"\n"):
        return LedgerVerifyResult(
            status="corrupt", rows=0, error_detail="last line is not newline-terminated"
        )

    lines = data.decode("utf-8", errors="replace").splitlines()
    body = lines[1:]
    for lineno, line in enumerate(body, start=2):
        problem = _row_problem(line)
        if problem:
            return LedgerVerifyResult(
                status="corrupt", rows=lineno - 2, error_detail=f"line {lineno}: {problem}"
            )

    if not body:
        return LedgerVerifyResult(status="empty", rows=0, error_detail=None)
    return LedgerVerifyResult(status="ok", rows=len(body), error_detail=None)


# ── Internal helpers ──────────────────────────────────────────────────────────


def _lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def _exclusive_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``<path>.lock`` for the block.

    ``LOCK_EX`` blocks until the lock is available; there is no timeout.
    """
    with _lock_path(path).open("a") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            yield
        finally:
            # Always release the lock, even if the write raised.
            fcntl.flock(fh, fcntl.LOCK_UN)


def _remove_stale_temp_files(path: Path) -> None:
    """Delete temp files left next to ``path`` by a writer that was killed.

    Only called with the ledger lock held, when no live writer owns one.
    """
    for stale in path.parent.glob(f".{glob.escape(path.name)}.*.tmp"):
        try:
            stale.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove stale ledger temp file %s: %s", stale, exc)
        else:
            logger.warning("Removed stale ledger temp file %s", stale)


def _replace_atomically(path: Path, data: bytes) -> None:
    """Write ``data`` to a sibling temp file and rename it over ``path``.

    The temp file is removed if anything fails before the rename completes,
    so ``path`` is either the old file or the new one, never a mix.
    """
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        if path.exists():
            os.chmod(tmp_path, stat.S_IMODE(path.stat().st_mode))
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path) -> None:
    """Persist the rename itself.  Failure here does not undo the append."""
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        logger.warning("Could not open %s to fsync the ledger rename", directory)
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        logger.warning("fsync of %s failed after ledger rename", directory, exc_info=True)
    finally:
        os.close(dir_fd)


def _row_problem(line: str) -> str | None:
    fields = line.split(",")
    if len(fields) != len(ROW_FIELDS):
        return f"expected {len(ROW_FIELDS)} fields, found {len(fields)}"
    received, branch_id, records, subtotal, logged = fields
    if not branch_id:
        return "empty branch_id"
    try:
        parse_record_count(records)
    except ValueError:
        return f"record_count is not an integer: {records!r}"
    try:
        amount = parse_amount(subtotal)
    except ValueError:
        return f"subtotal is not a decimal: {subtotal!r}"
    if format_amount(amount) != subtotal:
        return f"subtotal does not have two decimals: {subtotal!r}"
    for name, value in (("received_timestamp", received), ("logged_timestamp", logged)):
        try:
            datetime.strptime(value, _TIMESTAMP_FORMAT)
        except ValueError:
            return f"{name} is not an ISO-8601 UTC timestamp: {value!r}"
    return None
