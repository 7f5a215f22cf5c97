"""Peer addresses and the two ways of supplying them to the collector.

Peers come either from positional ``HOST PORT`` pairs on the command line or
from a YAML peers file::

    peers:
      - host: branch-a.internal
        port: 5001
      - host: 10.0.0.12
        port: 5002
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class PeerAddress:
    """A branch service endpoint."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("peer host must be a non-empty string")
        if isinstance(self.port, bool) or not 0 < self.port < 65536:
            raise ValueError(f"peer port must be in 1-65535, got {self.port!r}")

    @property
    def label(self) -> str:
        """``host:port``, bracketing IPv6 literals."""
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_port(value: str | int) -> int:
    """Parse a TCP port, raising ValueError outside 1-65535."""
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid port {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return port


def peers_from_pairs(tokens: Sequence[str]) -> list[PeerAddress]:
    """Turn a flat ``[host, port, host, port, ...]`` list into peer addresses.

    Raises:
        ValueError: If the list has odd length or a port does not parse.
    """
    if len(tokens) % 2:
        raise ValueError("peers must be given as HOST PORT pairs")
    return [
        PeerAddress(host=host, port=parse_port(port))
        for host, port in zip(tokens[::2], tokens[1::2])
    ]


def load_peers_file(path: Path) -> list[PeerAddress]:
    """Read peer addresses from a YAML peers file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the document does not contain a ``peers`` list of
            ``{host, port}`` mappings.
    """
    with path.open("r", encoding="utf-8") as handle:
        payload: Any = yaml.safe_load(handle) or {}

    if not isinstance(payload, dict) or not isinstance(payload.get("peers"), list):
        raise ValueError(f"{path}: expected a top-level 'peers' list")

    peers = []
    for index, entry in enumerate(payload["peers"]):
        if not isinstance(entry, dict) or "host" not in entry or "port" not in entry:
            raise ValueError(f"{path}: peers[{index}] needs 'host' and 'port'")
        peers.append(PeerAddress(host=str(entry["host"]), port=parse_port(entry["port"])))
    return peers
