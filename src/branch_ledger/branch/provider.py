"""Summary providers: turn a branch's local data into ``(record_count, subtotal)``."""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from branch_ledger.errors import DataUnavailable
from branch_ledger.protocol import parse_amount

logger = logging.getLogger(__name__)


class SummaryProvider(Protocol):
    """Anything the branch responder can ask for a summary."""

    def summarize(self) -> tuple[int, Decimal]:
        """Return ``(record_count, subtotal)`` or raise DataUnavailable."""
        ...


class CsvSummaryProvider:
    """Summarise a ``date,amount`` CSV file.

    The first line is a header and is skipped.  Each later line containing a
    comma counts as one record and its second column is added to the
    subtotal.  Lines without a comma are ignored.  An amount that is not a
    plain decimal such as ``12.50`` (exponents, digit separators and special
    values included) still counts as a record but contributes nothing, and
    is logged.

    The file is re-read on every call so a long-running branch always
    reports current data.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def summarize(self) -> tuple[int, Decimal]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                header = handle.readline()
                if not header:
                    raise DataUnavailable(f"{self.path}: file is empty")

                count = 0
                subtotal = Decimal("0")
                for lineno, line in enumerate(handle, start=2):
                    if "," not in line:
                        continue
                    amount_raw = line.split(",")[1].strip()
                    count += 1
                    try:
                        subtotal += parse_amount(amount_raw)
                    except ValueError:
                        logger.warning(
                            "%s:%d: amount %r is not a plain decimal, counted as 0",
                            self.path,
                            lineno,
                            amount_raw,
                        )
        except (OSError, UnicodeDecodeError) as exc:
            raise DataUnavailable(f"cannot read {self.path}: {exc}") from exc

        return count, subtotal
