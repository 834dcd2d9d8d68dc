from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .tokenizer import LineTokenizer


class PositionFormatError(ValueError):
    """A position token could not be applied (bad number or unseeded delta)."""


@dataclass
class PositionSpec:
    from_line: int = 0
    to_line: int = 0
    from_addr: int = 0
    to_addr: int = 0
    # set once an absolute value has been decoded for the component
    line_seeded: bool = False
    addr_seeded: bool = False

    def copy(self) -> "PositionSpec":
        return replace(self)

    @property
    def is_line_range(self) -> bool:
        return self.from_line != self.to_line

    @property
    def is_addr_range(self) -> bool:
        return self.from_addr != self.to_addr


def _decode_component(
    tok: LineTokenizer,
    prev_from: int,
    prev_to: int,
    seeded: bool,
    what: str,
    wide: bool,
    warn: Optional[Callable[[str], None]],
) -> Optional[Tuple[int, int]]:
    strip = tok.strip_uint64 if wide else tok.strip_uint
    c = tok.peek_first()
    if c is None:
        return None

    if c == "*":
        tok.strip_first(c)
        if not seeded:
            raise PositionFormatError(f"'*' {what} without a previous absolute {what}")
        frm, to = prev_from, prev_to
    elif c == "+" or c == "-":
        tok.strip_first(c)
        diff = strip(False)
        if diff is None:
            raise PositionFormatError(f"invalid relative {what} '{c}{tok.rest()}'")
        if not seeded:
            raise PositionFormatError(f"relative {what} '{c}{diff}' without a previous absolute {what}")
        if c == "+":
            frm = prev_from + diff
        elif diff > prev_from:
            if warn is not None:
                warn(f"negative {what} ({prev_from} - {diff}), clamped to 0")
            frm = 0
        else:
            frm = prev_from - diff
        to = frm
    elif "0" <= c <= "9":
        v = strip(False)
        if v is None:
            raise PositionFormatError(f"invalid {what} '{tok.rest()}'")
        frm = to = v
    else:
        return None

    # range suffix
    c = tok.peek_first()
    if c == "+":
        tok.strip_first(c)
        diff = strip()
        if diff is not None:
            to = frm + diff
    elif c == "-" or c == ":":
        tok.strip_first(c)
        v = strip()
        if v is not None:
            to = v
    tok.strip_spaces()
    return frm, to


def decode_position(
    tok: LineTokenizer,
    previous: PositionSpec,
    has_line: bool = True,
    has_addr: bool = False,
    warn: Optional[Callable[[str], None]] = None,
) -> Optional[PositionSpec]:
    """
    Decode the position prefix of a line relative to `previous`.

    Address comes first, then line, each gated by its flag. Returns None when
    the line does not start with a position (the caller then treats it as a
    directive); raises PositionFormatError when it does but cannot be applied.
    `previous` is never modified.
    """
    new = previous.copy()

    if has_addr:
        r = _decode_component(tok, previous.from_addr, previous.to_addr, previous.addr_seeded, "address", True, warn)
        if r is None:
            return None
        new.from_addr, new.to_addr = r
        new.addr_seeded = True

    if has_line:
        r = _decode_component(tok, previous.from_line, previous.to_line, previous.line_seeded, "line", False, warn)
        if r is None:
            return None
        new.from_line, new.to_line = r
        new.line_seeded = True

    return new
