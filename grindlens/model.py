from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple, Union

from .costs import ChannelRegistry, CostVector

logger = logging.getLogger(__name__)

SENTINEL_NAME = "???"


def _normalize(name: str) -> str:
    name = (name or "").strip()
    return name or SENTINEL_NAME


# -------------------------- Shared Entities --------------------------

@dataclass(eq=False)
class TraceObject:
    id: int
    name: str
    functions: List[int] = field(default_factory=list, repr=False)

    @property
    def is_sentinel(self) -> bool:
        return self.name == SENTINEL_NAME


@dataclass(eq=False)
class TraceFile:
    id: int
    name: str
    functions: List[int] = field(default_factory=list, repr=False)

    @property
    def is_sentinel(self) -> bool:
        return self.name == SENTINEL_NAME

    @property
    def short_name(self) -> str:
        return Path(self.name).name if self.name != SENTINEL_NAME else self.name


@dataclass(eq=False)
class TraceFunction:
    id: int
    name: str
    file_id: int
    object_id: int
    lines: Dict[Tuple[int, int], int] = field(default_factory=dict, repr=False)  # (file_id, lineno) -> line id
    instrs: Dict[int, int] = field(default_factory=dict, repr=False)  # addr -> instr id
    calls: Dict[int, int] = field(default_factory=dict, repr=False)  # callee id -> call id
    callers: List[int] = field(default_factory=list, repr=False)  # incoming call ids

    @property
    def is_sentinel(self) -> bool:
        return self.name == SENTINEL_NAME


@dataclass(eq=False)
class TraceLine:
    id: int
    function_id: int
    file_id: int
    lineno: int


@dataclass(eq=False)
class TraceInstr:
    id: int
    function_id: int
    addr: int
    line_id: Optional[int] = None


@dataclass(eq=False)
class TraceCall:
    id: int
    caller_id: int
    callee_id: int
    line_calls: Dict[int, int] = field(default_factory=dict, repr=False)  # line id -> line call id
    instr_calls: Dict[int, int] = field(default_factory=dict, repr=False)  # instr id -> instr call id


@dataclass(eq=False)
class LineCall:
    id: int
    call_id: int
    line_id: int


@dataclass(eq=False)
class InstrCall:
    id: int
    call_id: int
    instr_id: int


@dataclass(eq=False)
class TraceJump:
    id: int
    function_id: int
    from_line: int
    from_addr: int
    target_function_id: int
    target_file_id: int
    to_line: int
    to_addr: int
    conditional: bool


Entity = Union[TraceObject, TraceFile, TraceFunction, TraceLine, TraceInstr, TraceCall, LineCall, InstrCall]


# -------------------------- Part Records --------------------------

@dataclass
class Diagnostic:
    file: str
    line: int
    message: str

    def __str__(self) -> str:
        return f"{self.file}:{self.line} - {self.message}"


@dataclass
class CallRecord:
    cost: CostVector
    count: int = 0


@dataclass
class JumpRecord:
    executed: int = 0
    followed: int = 0


@dataclass(eq=False)
class Part:
    """One imported dump: metadata plus the part's cost records, keyed by entity id."""
    name: str
    source: Optional[Path] = None
    content: Optional[bytes] = None

    index: int = 0
    process_id: int = 0
    thread_id: int = 0
    part_number: int = 0
    version: str = ""
    trigger: str = ""
    timeframe: str = ""
    command: str = ""
    creator: str = ""
    events: List[str] = field(default_factory=list)
    descriptions: List[str] = field(default_factory=list)

    totals: Optional[CostVector] = None
    summary: Optional[CostVector] = None
    call_max: Optional[CostVector] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    object_costs: Dict[int, CostVector] = field(default_factory=dict, repr=False)
    file_costs: Dict[int, CostVector] = field(default_factory=dict, repr=False)
    function_costs: Dict[int, CostVector] = field(default_factory=dict, repr=False)
    line_costs: Dict[int, CostVector] = field(default_factory=dict, repr=False)
    instr_costs: Dict[int, CostVector] = field(default_factory=dict, repr=False)
    call_costs: Dict[int, CallRecord] = field(default_factory=dict, repr=False)
    line_call_costs: Dict[int, CallRecord] = field(default_factory=dict, repr=False)
    instr_call_costs: Dict[int, CallRecord] = field(default_factory=dict, repr=False)
    jump_costs: Dict[int, JumpRecord] = field(default_factory=dict, repr=False)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Part":
        p = Path(path)
        return cls(name=str(p), source=p)

    @classmethod
    def from_bytes(cls, content: Union[bytes, str], name: str = "<memory>") -> "Part":
        if isinstance(content, str):
            content = content.encode("utf-8")
        return cls(name=name, content=content)

    def reset(self, registry: ChannelRegistry) -> None:
        """Drop every record and metadata value gathered by a previous import."""
        self.index = self.process_id = self.thread_id = self.part_number = 0
        self.version = self.trigger = self.timeframe = ""
        self.command = self.creator = ""
        self.events = []
        self.descriptions = []
        self.totals = CostVector(registry)
        self.summary = None
        self.call_max = CostVector(registry)
        self.diagnostics = []
        self.object_costs = {}
        self.file_costs = {}
        self.function_costs = {}
        self.line_costs = {}
        self.instr_costs = {}
        self.call_costs = {}
        self.line_call_costs = {}
        self.instr_call_costs = {}
        self.jump_costs = {}


_RECORDS: Dict[type, str] = {
    TraceObject: "object_costs",
    TraceFile: "file_costs",
    TraceFunction: "function_costs",
    TraceLine: "line_costs",
    TraceInstr: "instr_costs",
    TraceCall: "call_costs",
    LineCall: "line_call_costs",
    InstrCall: "instr_call_costs",
}


# -------------------------- Program Data --------------------------

class ProfileData:
    """
    Entity namespace shared by all parts of one profiled program.

    Entities live in per-kind arenas and are referenced everywhere else by
    their integer id. Find-or-create is serialized by a single lock so parts
    can be imported from several threads; per-part costs stay on the Part
    objects and only become visible through `parts` once published.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.registry = ChannelRegistry()
        self._reset()

    def _reset(self) -> None:
        self.objects: List[TraceObject] = []
        self.files: List[TraceFile] = []
        self.functions: List[TraceFunction] = []
        self.lines: List[TraceLine] = []
        self.instrs: List[TraceInstr] = []
        self.calls: List[TraceCall] = []
        self.line_calls: List[LineCall] = []
        self.instr_calls: List[InstrCall] = []
        self.jumps: List[TraceJump] = []

        self._object_index: Dict[str, int] = {}
        self._file_index: Dict[str, int] = {}
        self._function_index: Dict[Tuple[str, int, int], int] = {}
        self._functions_by_name: Dict[str, List[int]] = {}
        self._line_index: Dict[Tuple[int, int, int], int] = {}
        self._instr_index: Dict[Tuple[int, int], int] = {}
        self._call_index: Dict[Tuple[int, int], int] = {}
        self._jump_index: Dict[Tuple[Any, ...], int] = {}

        self.parts: List[Part] = []
        self.command = ""
        self.call_max = CostVector(self.registry)
        self._next_part_index = 1

    def clear(self) -> None:
        """Start a new session: forget every entity, part and channel."""
        with self._lock:
            self.registry.clear()
            self._reset()

    def _find_or_create(self, index: Dict[Hashable, int], key: Hashable, arena: List[Any],
                        make: Callable[[int], Any]) -> Any:
        eid = index.get(key)
        if eid is None:
            with self._lock:
                eid = index.get(key)
                if eid is None:
                    eid = len(arena)
                    arena.append(make(eid))
                    index[key] = eid
        return arena[eid]

    # ----- find-or-create -----

    def object(self, name: str) -> TraceObject:
        key = _normalize(name)
        return self._find_or_create(self._object_index, key, self.objects, lambda i: TraceObject(i, key))

    def file(self, name: str) -> TraceFile:
        key = _normalize(name)
        return self._find_or_create(self._file_index, key, self.files, lambda i: TraceFile(i, key))

    def function(self, name: str, file: Optional[TraceFile] = None, obj: Optional[TraceObject] = None) -> TraceFunction:
        key_name = _normalize(name)
        file = file or self.file(SENTINEL_NAME)
        obj = obj or self.object(SENTINEL_NAME)
        key = (key_name, file.id, obj.id)
        fid = self._function_index.get(key)
        if fid is not None:
            return self.functions[fid]
        with self._lock:
            fid = self._function_index.get(key)
            if fid is None:
                fid = len(self.functions)
                self.functions.append(TraceFunction(fid, key_name, file.id, obj.id))
                self._function_index[key] = fid
                self._functions_by_name.setdefault(key_name, []).append(fid)
                file.functions.append(fid)
                obj.functions.append(fid)
        return self.functions[fid]

    def rebind_object(self, function: TraceFunction, obj: TraceObject) -> bool:
        """Move `function` to `obj`; refused when that identity is already taken."""
        with self._lock:
            new_key = (function.name, function.file_id, obj.id)
            if self._function_index.get(new_key, function.id) != function.id:
                return False
            old = self.objects[function.object_id]
            self._function_index.pop((function.name, function.file_id, old.id), None)
            if function.id in old.functions:
                old.functions.remove(function.id)
            function.object_id = obj.id
            obj.functions.append(function.id)
            self._function_index[new_key] = function.id
            return True

    def line(self, function: TraceFunction, file: Optional[TraceFile], lineno: int) -> TraceLine:
        file_id = function.file_id if file is None else file.id
        key = (function.id, file_id, lineno)

        def make(i: int) -> TraceLine:
            function.lines[(file_id, lineno)] = i
            return TraceLine(i, function.id, file_id, lineno)

        return self._find_or_create(self._line_index, key, self.lines, make)

    def instr(self, function: TraceFunction, addr: int) -> TraceInstr:
        def make(i: int) -> TraceInstr:
            function.instrs[addr] = i
            return TraceInstr(i, function.id, addr)

        return self._find_or_create(self._instr_index, (function.id, addr), self.instrs, make)

    def call(self, caller: TraceFunction, callee: TraceFunction) -> TraceCall:
        def make(i: int) -> TraceCall:
            caller.calls[callee.id] = i
            callee.callers.append(i)
            return TraceCall(i, caller.id, callee.id)

        return self._find_or_create(self._call_index, (caller.id, callee.id), self.calls, make)

    def line_call(self, call: TraceCall, line: TraceLine) -> LineCall:
        lcid = call.line_calls.get(line.id)
        if lcid is None:
            with self._lock:
                lcid = call.line_calls.get(line.id)
                if lcid is None:
                    lcid = len(self.line_calls)
                    self.line_calls.append(LineCall(lcid, call.id, line.id))
                    call.line_calls[line.id] = lcid
        return self.line_calls[lcid]

    def instr_call(self, call: TraceCall, instr: TraceInstr) -> InstrCall:
        icid = call.instr_calls.get(instr.id)
        if icid is None:
            with self._lock:
                icid = call.instr_calls.get(instr.id)
                if icid is None:
                    icid = len(self.instr_calls)
                    self.instr_calls.append(InstrCall(icid, call.id, instr.id))
                    call.instr_calls[instr.id] = icid
        return self.instr_calls[icid]

    def jump(self, function: TraceFunction, from_line: int, from_addr: int, target: TraceFunction,
             target_file: TraceFile, to_line: int, to_addr: int, conditional: bool) -> TraceJump:
        key = (function.id, from_line, from_addr, target.id, target_file.id, to_line, to_addr, conditional)
        return self._find_or_create(
            self._jump_index, key, self.jumps,
            lambda i: TraceJump(i, function.id, from_line, from_addr, target.id, target_file.id,
                                to_line, to_addr, conditional),
        )

    # ----- lookup -----

    def find_object(self, name: str) -> Optional[TraceObject]:
        oid = self._object_index.get(_normalize(name))
        return None if oid is None else self.objects[oid]

    def find_file(self, name: str) -> Optional[TraceFile]:
        fid = self._file_index.get(_normalize(name))
        return None if fid is None else self.files[fid]

    def functions_named(self, name: str) -> List[TraceFunction]:
        return [self.functions[i] for i in self._functions_by_name.get(_normalize(name), [])]

    def find_function(self, name: str, file: Union[None, str, TraceFile] = None,
                      obj: Union[None, str, TraceObject] = None) -> Optional[TraceFunction]:
        if isinstance(file, str):
            file = self.find_file(file)
            if file is None:
                return None
        if isinstance(obj, str):
            obj = self.find_object(obj)
            if obj is None:
                return None
        for fn in self.functions_named(name):
            if file is not None and fn.file_id != file.id:
                continue
            if obj is not None and fn.object_id != obj.id:
                continue
            return fn
        return None

    def find_line(self, function: TraceFunction, lineno: int, file: Optional[TraceFile] = None) -> Optional[TraceLine]:
        file_id = function.file_id if file is None else file.id
        lid = function.lines.get((file_id, lineno))
        return None if lid is None else self.lines[lid]

    def find_instr(self, function: TraceFunction, addr: int) -> Optional[TraceInstr]:
        iid = function.instrs.get(addr)
        return None if iid is None else self.instrs[iid]

    def find_call(self, caller: TraceFunction, callee: TraceFunction) -> Optional[TraceCall]:
        cid = caller.calls.get(callee.id)
        return None if cid is None else self.calls[cid]

    def callees(self, function: TraceFunction) -> List[TraceCall]:
        return [self.calls[i] for i in function.calls.values()]

    def callers(self, function: TraceFunction) -> List[TraceCall]:
        return [self.calls[i] for i in function.callers]

    def jumps_from(self, function: TraceFunction) -> List[TraceJump]:
        return [j for j in self.jumps if j.function_id == function.id]

    # ----- costs -----

    def _selected(self, part: Optional[Part]) -> List[Part]:
        return list(self.parts) if part is None else [part]

    def cost(self, entity: Entity, part: Optional[Part] = None) -> CostVector:
        """Cost of `entity` summed over all published parts, or over `part` only."""
        attr = _RECORDS.get(type(entity))
        if attr is None:
            raise TypeError(f"no cost records for {type(entity).__name__}")
        out = CostVector(self.registry)
        for p in self._selected(part):
            rec = getattr(p, attr).get(entity.id)
            if rec is None:
                continue
            out.add(rec.cost if isinstance(rec, CallRecord) else rec)
        return out

    def call_count(self, entity: Union[TraceCall, LineCall, InstrCall], part: Optional[Part] = None) -> int:
        attr = _RECORDS[type(entity)]
        n = 0
        for p in self._selected(part):
            rec = getattr(p, attr).get(entity.id)
            if rec is not None:
                n += rec.count
        return n

    def jump_counts(self, jump: TraceJump, part: Optional[Part] = None) -> Tuple[int, int]:
        executed = followed = 0
        for p in self._selected(part):
            rec = p.jump_costs.get(jump.id)
            if rec is not None:
                executed += rec.executed
                followed += rec.followed
        return executed, followed

    def value(self, entity: Entity, channel: str, part: Optional[Part] = None) -> int:
        return self.registry.value(self.cost(entity, part), channel)

    def inclusive_cost(self, function: TraceFunction, part: Optional[Part] = None) -> CostVector:
        """Self cost plus the cost of every outgoing non-recursive call."""
        out = self.cost(function, part)
        for call in self.callees(function):
            if call.callee_id != function.id:
                out.add(self.cost(call, part))
        return out

    def totals(self, part: Optional[Part] = None) -> CostVector:
        out = CostVector(self.registry)
        for p in self._selected(part):
            if p.totals is not None:
                out.add(p.totals)
        return out

    # ----- parts -----

    def is_published(self, part: Part) -> bool:
        with self._lock:
            return any(p is part for p in self.parts)

    def add_part(self, part: Part) -> None:
        with self._lock:
            if any(p is part for p in self.parts):
                raise ValueError(f"part {part.index} ({part.name}) is already published")
            part.index = self._next_part_index
            self._next_part_index += 1
            if part.command:
                if not self.command:
                    self.command = part.command
                elif self.command != part.command:
                    logger.warning("%s: command '%s' differs from '%s', keeping the first",
                                   part.name, part.command, self.command)
            if part.call_max is not None:
                self.call_max.max_with(part.call_max)
            self.parts.append(part)
        logger.info("published part %d (%s)", part.index, part.name)

    def remove_part(self, part: Part) -> None:
        with self._lock:
            self.parts.remove(part)
            self.call_max = CostVector(self.registry)
            for p in self.parts:
                if p.call_max is not None:
                    self.call_max.max_with(p.call_max)
