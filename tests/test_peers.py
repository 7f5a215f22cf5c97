"""Unit tests for peer addresses and peer list parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from branch_ledger.peers import PeerAddress, load_peers_file, parse_port, peers_from_pairs


@pytest.mark.unit
class TestPeerAddress:
    def test_label(self):
        assert PeerAddress("127.0.0.1", 5001).label == "127.0.0.1:5001"

    def test_ipv6_label_is_bracketed(self):
        assert PeerAddress("::1", 5001).label == "[::1]:5001"

    @pytest.mark.parametrize("port", [0, 65536, -1, True])
    def test_rejects_bad_port(self, port):
        with pytest.raises(ValueError, match="port"):
            PeerAddress("localhost", port)

    def test_rejects_blank_host(self):
        with pytest.raises(ValueError, match="host"):
            PeerAddress("  ", 5001)

    def test_equal_addresses_compare_equal(self):
        assert PeerAddress("h", 1) == PeerAddress("h", 1)


@pytest.mark.unit
class TestParsing:
    def test_parse_port(self):
        assert parse_port("5001") == 5001
        assert parse_port(80) == 80

    @pytest.mark.parametrize("value", ["", "http", "0", "70000", "5.5"])
    def test_parse_port_rejects(self, value):
        with pytest.raises(ValueError):
            parse_port(value)

    def test_pairs(self):
        peers = peers_from_pairs(["a", "1", "b", "2"])
        assert peers == [PeerAddress("a", 1), PeerAddress("b", 2)]

    def test_pairs_keep_duplicates(self):
        assert len(peers_from_pairs(["a", "1", "a", "1"])) == 2

    def test_odd_pairs(self):
        with pytest.raises(ValueError, match="pairs"):
            peers_from_pairs(["a", "1", "b"])

    def test_empty_pairs(self):
        assert peers_from_pairs([]) == []


@pytest.mark.unit
class TestPeersFile:
    """YAML peers files."""

    def _write(self, tmp_path: Path, text: str) -> Path:
        path = tmp_path / "peers.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_loads_peers(self, tmp_path):
        path = self._write(
            tmp_path,
            "peers:\n  - host: branch-a\n    port: 5001\n  - host: 10.0.0.2\n    port: '5002'\n",
        )
        assert load_peers_file(path) == [
            PeerAddress("branch-a", 5001),
            PeerAddress("10.0.0.2", 5002),
        ]

    def test_empty_document(self, tmp_path):
        with pytest.raises(ValueError, match="'peers' list"):
            load_peers_file(self._write(tmp_path, ""))

    def test_peers_not_a_list(self, tmp_path):
        with pytest.raises(ValueError, match="'peers' list"):
            load_peers_file(self._write(tmp_path, "peers: branch-a\n"))

    def test_entry_missing_port(self, tmp_path):
        with pytest.raises(ValueError, match=r"peers\[0\]"):
            load_peers_file(self._write(tmp_path, "peers:\n  - host: branch-a\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_peers_file(tmp_path / "nope.yaml")
