"""Branch Ledger: multi-branch summary collection into a shared ledger.

A collector contacts a small, fixed set of branch services over plain TCP,
waits for their summary replies under one shared deadline, and appends every
valid reply to a single CSV ledger file using a lock-and-rename discipline.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# If the package is imported without being installed (running straight from
# a source checkout), fall back to the last released version string.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("branch-ledger")
except PackageNotFoundError:
    __version__ = "0.3.0"
