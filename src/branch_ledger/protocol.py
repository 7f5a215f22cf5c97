"""Plain-text wire protocol spoken between the collector and branch services.

Request
-------
A single literal line::

    REQUEST\\n

Reply
-----
Three labelled lines followed by a sentinel::

    BRANCH_ID: A
    RECORDS: 3
    SUBTOTAL: 12.50
    END

On provider failure the branch sends ``ERROR: <message>`` followed by
``END`` instead.

The decoder looks each label up independently anywhere in the buffer (at the
start of a line), so the field order is not significant to it even though
:func:`encode_reply` always emits the canonical order above.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

from branch_ledger.errors import BranchReportedError, MalformedReply

REQUEST_LINE = "REQUEST"
REQUEST = f"{REQUEST_LINE}\n".encode("ascii")
END_LINE = "END"

_BRANCH_ID_RE = re.compile(r"^[ \t]*BRANCH_ID:[ \t]*(\S*)", re.MULTILINE)
_RECORDS_RE = re.compile(r"^[ \t]*RECORDS:[ \t]*(\S*)", re.MULTILINE)
_SUBTOTAL_RE = re.compile(r"^[ \t]*SUBTOTAL:[ \t]*(\S*)", re.MULTILINE)
_ERROR_RE = re.compile(r"^[ \t]*ERROR:[ \t]*(.*?)[ \t]*\r?$", re.MULTILINE)
_END_RE = re.compile(rb"^[ \t]*END[ \t]*\r?$", re.MULTILINE)
_WHITESPACE_RE = re.compile(r"\s")
_COUNT_RE = re.compile(r"[0-9]{1,18}")
_AMOUNT_RE = re.compile(r"[+-]?[0-9]{1,15}(?:\.[0-9]{1,15})?")

# Amounts are kept to cents and below 10**15 in magnitude.
CENT = Decimal("0.01")
MAX_AMOUNT_DIGITS = 15
MAX_RECORD_COUNT = 10**18 - 1


@dataclass(frozen=True)
class BranchResult:
    """One branch's summary, decoded from a reply and bound for the ledger.

    Attributes:
        branch_id: Opaque identifier chosen by the branch.  Non-empty and free
            of whitespace and commas (the ledger does not escape fields).
        record_count: Number of records the branch summarised.
        subtotal: Monetary subtotal of those records, rounded to cents on
            construction so that encoding loses nothing.
    """

    branch_id: str
    record_count: int
    subtotal: Decimal

    def __post_init__(self) -> None:
        check_branch_id(self.branch_id)
        if isinstance(self.record_count, bool) or self.record_count < 0:
            raise ValueError(f"record_count must be >= 0, got {self.record_count!r}")
        if self.record_count > MAX_RECORD_COUNT:
            raise ValueError(f"record_count is out of range, got {self.record_count!r}")
        if not isinstance(self.subtotal, Decimal) or not self.subtotal.is_finite():
            raise ValueError(f"subtotal must be a finite Decimal, got {self.subtotal!r}")
        object.__setattr__(self, "subtotal", to_cents(self.subtotal))


def check_branch_id(branch_id: str) -> str:
    """Return ``branch_id`` if it can travel on the wire and into the ledger.

    Raises:
        ValueError: If it is empty or contains whitespace or a comma.
    """
    if not branch_id or _WHITESPACE_RE.search(branch_id):
        raise ValueError(f"branch_id must be a non-empty token, got {branch_id!r}")
    if "," in branch_id:
        raise ValueError(f"branch_id must not contain commas, got {branch_id!r}")
    return branch_id


def to_cents(amount: Decimal) -> Decimal:
    """Round ``amount`` half-even to two places.

    Raises:
        ValueError: If the result has more than 15 integer digits.
    """
    if amount and amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise ValueError(f"amount is out of range: {amount}")
    cents = amount.quantize(CENT, rounding=ROUND_HALF_EVEN)
    if cents.adjusted() >= MAX_AMOUNT_DIGITS:
        raise ValueError(f"amount is out of range: {amount}")
    return cents


def parse_record_count(text: str) -> int:
    """Parse an ASCII decimal record count of at most 18 digits.

    Raises:
        ValueError: If ``text`` is anything else.
    """
    if not _COUNT_RE.fullmatch(text):
        raise ValueError(f"not a record count: {text!r}")
    return int(text)


def parse_amount(text: str) -> Decimal:
    """Parse a plain decimal amount such as ``-12.5`` or ``300``.

    Exponents, digit separators, non-ASCII digits and special values are
    refused, as are integer parts longer than 15 digits.

    Raises:
        ValueError: If ``text`` is not such a literal.
    """
    if not _AMOUNT_RE.fullmatch(text):
        raise ValueError(f"not a plain decimal amount: {text!r}")
    return Decimal(text)


def format_amount(amount: Decimal) -> str:
    """Render a monetary amount with exactly two decimals."""
    return f"{amount:.2f}"


def encode_reply(result: BranchResult) -> bytes:
    """Encode a successful summary reply in canonical field order."""
    text = (
        f"BRANCH_ID: {result.branch_id}\n"
        f"RECORDS: {result.record_count}\n"
        f"SUBTOTAL: {format_amount(result.subtotal)}\n"
        f"{END_LINE}\n"
    )
    return text.encode("utf-8")


def encode_error(message: str) -> bytes:
    """Encode an error reply; newlines in ``message`` are flattened."""
    flat = " ".join(message.split())
    return f"ERROR: {flat}\n{END_LINE}\n".encode("utf-8")


def is_complete(buffer: bytes) -> bool:
    """True once ``buffer`` contains the ``END`` sentinel line."""
    return _END_RE.search(buffer) is not None


def decode_reply(buffer: bytes) -> BranchResult:
    """Decode a raw reply buffer into a :class:`BranchResult`.

    All three fields must be present and parse, otherwise the whole reply is
    rejected; there are no partial results.

    Raises:
        BranchReportedError: The buffer is an ``ERROR:`` reply.
        MalformedReply: A label is missing, the identifier is empty, the
            record count is not a non-negative integer of at most 18
            digits, or the subtotal is not a plain decimal amount below
            10**15.
    """
    text = buffer.decode("utf-8", errors="replace")

    error = _ERROR_RE.search(text)
    if error and not _BRANCH_ID_RE.search(text):
        raise BranchReportedError(error.group(1))

    branch_id = _field(_BRANCH_ID_RE, text, "BRANCH_ID")
    records_raw = _field(_RECORDS_RE, text, "RECORDS")
    subtotal_raw = _field(_SUBTOTAL_RE, text, "SUBTOTAL")

    try:
        record_count = parse_record_count(records_raw)
    except ValueError:
        raise MalformedReply(
            f"RECORDS is not a non-negative integer of at most 18 digits: {records_raw[:40]!r}"
        ) from None

    try:
        subtotal = parse_amount(subtotal_raw)
    except ValueError:
        raise MalformedReply(
            f"SUBTOTAL is not a plain decimal amount: {subtotal_raw[:40]!r}"
        ) from None

    try:
        return BranchResult(branch_id=branch_id, record_count=record_count, subtotal=subtotal)
    except ValueError as exc:
        raise MalformedReply(str(exc)) from exc


def _field(pattern: re.Pattern[str], text: str, label: str) -> str:
    match = pattern.search(text)
    if match is None:
        raise MalformedReply(f"reply is missing the {label} field")
    value = match.group(1)
    if not value:
        raise MalformedReply(f"{label} field is empty")
    return value
