"""Tests for core.parsing helpers."""

from pathlib import Path

import pytest

from esp_serial_flasher.core.parsing import parse_address_file_pairs, parse_offset


class TestParseOffset:
    @pytest.mark.parametrize("value,expected", [
        ("4096", 4096),
        ("0x1000", 0x1000),
        ("0X1000", 0x1000),
        ("1000h", 0x1000),
        ("1000H", 0x1000),
        ("  0x10  ", 0x10),
    ])
    def test_formats(self, value, expected):
        assert parse_offset(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_is_none(self, value):
        assert parse_offset(value) is None

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid offset 'zz'"):
            parse_offset("zz")


class TestAddressFilePairs:
    def test_pairs_sorted_by_address(self, tmp_path):
        app = tmp_path / "app.bin"
        boot = tmp_path / "boot.bin"
        app.write_bytes(b"\x00" * 16)
        boot.write_bytes(b"\x00" * 16)

        pairs = parse_address_file_pairs(["0x10000", str(app), "0x1000", str(boot)])

        assert pairs == [(0x1000, Path(boot)), (0x10000, Path(app))]

    def test_odd_count(self):
        with pytest.raises(ValueError, match="pairs"):
            parse_address_file_pairs(["0x1000"])

    def test_empty(self):
        with pytest.raises(ValueError, match="pairs"):
            parse_address_file_pairs([])

    def test_bad_address(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid offset"):
            parse_address_file_pairs(["nope", str(tmp_path / "a.bin")])

    def test_overlap(self, tmp_path):
        first = tmp_path / "first.bin"
        second = tmp_path / "second.bin"
        first.write_bytes(b"\x00" * 0x2000)
        second.write_bytes(b"\x00" * 16)

        with pytest.raises(ValueError, match="overlap at address 0x1000"):
            parse_address_file_pairs(["0x0", str(first), "0x1000", str(second)])

    def test_adjacent_files_allowed(self, tmp_path):
        first = tmp_path / "first.bin"
        second = tmp_path / "second.bin"
        first.write_bytes(b"\x00" * 0x1000)
        second.write_bytes(b"\x00" * 16)

        pairs = parse_address_file_pairs(["0x0", str(first), "0x1000", str(second)])
        assert [address for address, _ in pairs] == [0, 0x1000]
