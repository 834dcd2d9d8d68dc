from __future__ import annotations

from typing import Optional

UINT32_MAX = 0xFFFFFFFF
UINT64_MAX = 0xFFFFFFFFFFFFFFFF

_SPACES = " \t\r\n"
_HEX = "0123456789abcdefABCDEF"


def _is_name_start(c: str) -> bool:
    return c == "_" or ("a" <= c <= "z") or ("A" <= c <= "Z")


def _is_name_char(c: str) -> bool:
    return _is_name_start(c) or ("0" <= c <= "9")


class LineTokenizer:
    """
    Cursor over one line of a profile dump.

    Every strip_* call narrows the [pos, end) window of the backing string;
    the string itself is never copied or modified. Numeric strippers return
    None on malformed text and leave the cursor where it was, so callers can
    try the next interpretation of an ambiguous line.
    """

    __slots__ = ("_s", "_pos", "_end")

    def __init__(self, text: str, start: int = 0, end: Optional[int] = None) -> None:
        self._s = text
        self._pos = start
        self._end = len(text) if end is None else end
        # drop the line terminator
        while self._end > self._pos and self._s[self._end - 1] in "\r\n":
            self._end -= 1

    def __len__(self) -> int:
        return self._end - self._pos

    def __str__(self) -> str:
        return self._s[self._pos:self._end]

    def __repr__(self) -> str:
        return f"LineTokenizer({str(self)!r})"

    @property
    def pos(self) -> int:
        return self._pos

    def is_empty(self) -> bool:
        return self._pos >= self._end

    def rest(self) -> str:
        return self._s[self._pos:self._end]

    def peek_first(self) -> Optional[str]:
        if self._pos >= self._end:
            return None
        return self._s[self._pos]

    def strip_first(self, c: str) -> bool:
        if self._pos < self._end and self._s[self._pos] == c:
            self._pos += 1
            return True
        return False

    def strip_prefix(self, literal: str) -> bool:
        n = len(literal)
        if self._end - self._pos < n:
            return False
        if not self._s.startswith(literal, self._pos):
            return False
        self._pos += n
        return True

    def _strip_number(self, limit: Optional[int], strip_spaces: bool) -> Optional[int]:
        s, p, end = self._s, self._pos, self._end
        if p >= end:
            return None
        if s.startswith("0x", p) and p + 2 < end and s[p + 2] in _HEX:
            q = p + 2
            while q < end and s[q] in _HEX:
                q += 1
            v = int(s[p + 2:q], 16)
        else:
            q = p
            while q < end and "0" <= s[q] <= "9":
                q += 1
            if q == p:
                return None
            v = int(s[p:q])
        if limit is not None and v > limit:
            return None
        self._pos = q
        if strip_spaces:
            self.strip_spaces()
        return v

    def strip_uint(self, strip_spaces: bool = True) -> Optional[int]:
        return self._strip_number(UINT32_MAX, strip_spaces)

    def strip_uint64(self, strip_spaces: bool = True) -> Optional[int]:
        return self._strip_number(UINT64_MAX, strip_spaces)

    def strip_counter(self, strip_spaces: bool = True) -> Optional[int]:
        """Unbounded non-negative integer, used for cost values."""
        return self._strip_number(None, strip_spaces)

    def strip_until(self, delimiter: str) -> str:
        """Return text up to `delimiter` and consume it with the delimiter."""
        idx = self._s.find(delimiter, self._pos, self._end)
        if idx < 0:
            out = self._s[self._pos:self._end]
            self._pos = self._end
            return out
        out = self._s[self._pos:idx]
        self._pos = idx + len(delimiter)
        return out

    def strip_name(self) -> Optional[str]:
        s, p, end = self._s, self._pos, self._end
        if p >= end or not _is_name_start(s[p]):
            return None
        q = p + 1
        while q < end and _is_name_char(s[q]):
            q += 1
        self._pos = q
        return s[p:q]

    def strip_spaces(self) -> None:
        while self._pos < self._end and self._s[self._pos] in _SPACES:
            self._pos += 1

    def strip_surrounding_spaces(self) -> None:
        self.strip_spaces()
        while self._end > self._pos and self._s[self._end - 1] in _SPACES:
            self._end -= 1
