from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .tokenizer import LineTokenizer

logger = logging.getLogger(__name__)


# -------------------------- Channels --------------------------

@dataclass
class Channel:
    index: int
    name: str
    formula: str = ""
    display_name: str = ""
    terms: List[Tuple[int, str]] = field(default_factory=list, repr=False)

    @property
    def is_derived(self) -> bool:
        return bool(self.formula)

    @property
    def label(self) -> str:
        return self.display_name or self.name


def parse_formula(text: str) -> List[Tuple[int, str]]:
    """
    Parse a linear event formula such as "Ir + 10 I1mr + 100*ILmr".

    Returns (factor, channel name) terms; a leading '-' negates the factor.
    """
    tok = LineTokenizer(text)
    terms: List[Tuple[int, str]] = []
    sign = 1
    while True:
        tok.strip_spaces()
        if tok.is_empty():
            break
        if tok.strip_first("+"):
            sign = 1
            continue
        if tok.strip_first("-"):
            sign = -1
            continue
        factor = tok.strip_counter()
        tok.strip_first("*")
        tok.strip_spaces()
        name = tok.strip_name()
        if name is None:
            raise ValueError(f"invalid formula term at '{tok.rest()}' in {text!r}")
        terms.append((sign * (1 if factor is None else factor), name))
        sign = 1
    return terms


# -------------------------- Cost Vector --------------------------

class CostVector:
    """
    One counter per raw channel of a registry.

    The length always follows the registry: slots declared after the vector
    was created read as zero until something is added to them.
    """

    __slots__ = ("registry", "_counts")

    def __init__(self, registry: "ChannelRegistry", counts: Optional[Iterable[int]] = None) -> None:
        self.registry = registry
        self._counts: List[int] = list(counts) if counts is not None else []

    def __len__(self) -> int:
        return max(len(self.registry), len(self._counts))

    def __getitem__(self, index: int) -> int:
        n = len(self)
        if index < 0:
            index += n
        if index < 0 or index >= n:
            raise IndexError(index)
        return self._counts[index] if index < len(self._counts) else 0

    def __iter__(self) -> Iterator[int]:
        for i in range(len(self)):
            yield self[i]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CostVector):
            return self.to_list() == other.to_list()
        if isinstance(other, (list, tuple)):
            return self.to_list() == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"CostVector({self.to_list()})"

    def to_list(self) -> List[int]:
        return list(self)

    def copy(self) -> "CostVector":
        return CostVector(self.registry, self._counts)

    def is_zero(self) -> bool:
        return not any(self._counts)

    def clear(self) -> None:
        self._counts = []

    def add_at(self, index: int, value: int) -> None:
        if index >= len(self._counts):
            self._counts.extend([0] * (index + 1 - len(self._counts)))
        self._counts[index] += value

    def add(self, other: Union["CostVector", Sequence[int]]) -> "CostVector":
        counts = other._counts if isinstance(other, CostVector) else list(other)
        if len(counts) > len(self._counts):
            self._counts.extend([0] * (len(counts) - len(self._counts)))
        for i, v in enumerate(counts):
            if v:
                self._counts[i] += v
        return self

    def max_with(self, other: "CostVector") -> "CostVector":
        counts = other._counts
        if len(counts) > len(self._counts):
            self._counts.extend([0] * (len(counts) - len(self._counts)))
        for i, v in enumerate(counts):
            if v > self._counts[i]:
                self._counts[i] = v
        return self

    def value(self, name: str) -> int:
        return self.registry.value(self, name)


# -------------------------- Registry --------------------------

class SubMapping:
    """Maps the positional numbers of a cost line to registry slots."""

    def __init__(self, registry: "ChannelRegistry", names: Sequence[str]) -> None:
        self.registry = registry
        self.names = list(names)
        self.slots = [registry.raw_index(n) for n in self.names]

    def __len__(self) -> int:
        return len(self.slots)

    def __repr__(self) -> str:
        return f"SubMapping({' '.join(self.names)})"

    def parse_costs(self, tok: LineTokenizer) -> Optional[CostVector]:
        """
        Read one number per slot; missing trailing numbers are zero.

        Returns None when a number is malformed ("abc", "5x7"). Numbers past
        the last slot are ignored.
        """
        vec = CostVector(self.registry)
        for slot in self.slots:
            if tok.is_empty():
                break
            v = tok.strip_counter(strip_spaces=False)
            if v is None:
                return None
            c = tok.peek_first()
            if c is not None and c not in " \t":
                return None
            tok.strip_spaces()
            if v:
                vec.add_at(slot, v)
        return vec


class ChannelRegistry:
    """Named cost channels of one session; find-or-create is thread safe."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._raw: List[Channel] = []
        self._derived: List[Channel] = []
        self._by_name: Dict[str, Channel] = {}

    def __len__(self) -> int:
        return len(self._raw)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    @property
    def raw_channels(self) -> List[Channel]:
        return list(self._raw)

    @property
    def derived_channels(self) -> List[Channel]:
        return list(self._derived)

    @property
    def channels(self) -> List[Channel]:
        return self._raw + self._derived

    def channel(self, name: str) -> Optional[Channel]:
        return self._by_name.get(name)

    def add(self, name: str, formula: Optional[str] = None, display_name: Optional[str] = None) -> Channel:
        with self._lock:
            ch = self._by_name.get(name)
            if ch is not None:
                if display_name and ch.display_name in ("", ch.name):
                    ch.display_name = display_name
                if formula and formula != ch.formula:
                    logger.warning("channel %s already declared, ignoring formula %r", name, formula)
                return ch
            if formula:
                ch = Channel(index=len(self._derived), name=name, formula=formula,
                             display_name=display_name or name, terms=parse_formula(formula))
                self._derived.append(ch)
            else:
                ch = Channel(index=len(self._raw), name=name, display_name=display_name or name)
                self._raw.append(ch)
            self._by_name[name] = ch
            logger.debug("channel %s declared (%s)", name, "derived" if formula else f"slot {ch.index}")
            return ch

    def raw_index(self, name: str) -> int:
        ch = self._by_name.get(name)
        if ch is None or ch.is_derived:
            with self._lock:
                ch = self._by_name.get(name)
                if ch is None:
                    ch = self.add(name)
                elif ch.is_derived:
                    raise ValueError(f"channel {name} is a formula channel and cannot carry raw costs")
        return ch.index

    def sub_mapping(self, text: str) -> SubMapping:
        return SubMapping(self, text.split())

    def value(self, vector: CostVector, name: str) -> int:
        return self._value(vector, name, set())

    def _value(self, vector: CostVector, name: str, active: Set[str]) -> int:
        ch = self._by_name.get(name)
        if ch is None:
            return 0
        if not ch.is_derived:
            return vector[ch.index] if ch.index < len(vector) else 0
        if name in active:
            raise ValueError(f"formula channel {name} refers to itself")
        active.add(name)
        try:
            return sum(f * self._value(vector, n, active) for f, n in ch.terms)
        finally:
            active.discard(name)

    def clear(self) -> None:
        with self._lock:
            self._raw.clear()
            self._derived.clear()
            self._by_name.clear()
