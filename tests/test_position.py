"""Tests for the position codec."""

import pytest

from grindlens import LineTokenizer, PositionFormatError, PositionSpec, decode_position


def decode(text, previous=None, has_line=True, has_addr=False, warnings=None):
    tok = LineTokenizer(text)
    warn = warnings.append if warnings is not None else None
    return decode_position(tok, previous or PositionSpec(), has_line, has_addr, warn)


class TestLinePositions:
    """Line-only positions (the default)."""

    def test_absolute(self):
        pos = decode("42 100")
        assert (pos.from_line, pos.to_line) == (42, 42)
        assert pos.line_seeded

    def test_unchanged_after_absolute(self):
        base = decode("42")
        pos = decode("* 5", base)
        assert (pos.from_line, pos.to_line) == (42, 42)

    def test_unchanged_keeps_range(self):
        base = decode("10:20")
        pos = decode("*", base)
        assert (pos.from_line, pos.to_line) == (10, 20)

    def test_delta_round_trip(self):
        base = decode("100")
        up = decode("+7", base)
        down = decode("-7", up)
        assert up.from_line == 107
        assert down.from_line == 100

    def test_negative_delta_saturates(self):
        warnings = []
        base = decode("3")
        pos = decode("-5", base, warnings=warnings)
        assert pos.from_line == 0
        assert pos.to_line == 0
        assert len(warnings) == 1

    def test_range_suffixes(self):
        assert decode("10+3").to_line == 13
        assert decode("10-20").to_line == 20
        assert decode("10:25").to_line == 25

    def test_previous_not_modified(self):
        base = decode("10")
        decode("+5", base)
        assert base.from_line == 10

    def test_rest_of_line_left_for_costs(self):
        tok = LineTokenizer("+2  5 6")
        decode_position(tok, decode("1"), True, False)
        assert tok.rest() == "5 6"


class TestUnseeded:
    """Relative tokens need an absolute base first."""

    @pytest.mark.parametrize("text", ["*", "+1", "-1"])
    def test_relative_without_base(self, text):
        with pytest.raises(PositionFormatError):
            decode(text)

    def test_delta_without_number(self):
        with pytest.raises(PositionFormatError):
            decode("+x", decode("1"))


class TestNoMatch:
    """Lines that are not positions return None."""

    @pytest.mark.parametrize("text", ["fn=main", "events: Ir", ""])
    def test_not_a_position(self, text):
        assert decode(text) is None

    def test_missing_line_after_address(self):
        assert decode("0x10", has_addr=True) is None


class TestAddressPositions:
    """Address first, then line."""

    def test_address_and_line(self):
        pos = decode("0x400 12 9", has_addr=True)
        assert pos.from_addr == 0x400
        assert pos.from_line == 12

    def test_address_delta_and_unchanged_line(self):
        base = decode("0x400 12", has_addr=True)
        pos = decode("+4 * 3", base, has_addr=True)
        assert pos.from_addr == 0x404
        assert pos.from_line == 12

    def test_address_only(self):
        pos = decode("0x10 5", has_line=False, has_addr=True)
        assert pos.from_addr == 0x10
        assert not pos.line_seeded

    def test_address_range(self):
        pos = decode("0x10+8", has_line=False, has_addr=True)
        assert (pos.from_addr, pos.to_addr) == (0x10, 0x18)
        assert pos.is_addr_range
