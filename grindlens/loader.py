"""
Import filter for Cachegrind/Callgrind profile dumps.

One `_ImportState` is created per imported part, so several parts can be
loaded in parallel into the same ProfileData: the state owns the tokenizer,
the position cursor and the compression tables, and writes its costs into
the Part, which is published to the data only after the last line.
"""

from __future__ import annotations

import io
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from PySide6.QtCore import QObject, Signal

from .compression import CompressionResolver
from .costs import CostVector, SubMapping
from .model import (
    SENTINEL_NAME,
    CallRecord,
    Diagnostic,
    JumpRecord,
    Part,
    ProfileData,
    TraceFile,
    TraceFunction,
    TraceInstr,
    TraceLine,
    TraceObject,
)
from .position import PositionFormatError, PositionSpec, decode_position
from .settings import LoaderSettings
from .tokenizer import LineTokenizer

logger = logging.getLogger(__name__)

SNIFF_BYTES = 2047
CANCEL_CHECK_LINES = 256


class Cancelled(Exception):
    pass


class TraceImportError(Exception):
    """The part could not be imported at all; nothing was published."""

    def __init__(self, message: str, diagnostics: Optional[List[Diagnostic]] = None) -> None:
        super().__init__(message)
        self.diagnostics: List[Diagnostic] = list(diagnostics or [])


# -------------------------- Format Detection --------------------------

def can_import(head: bytes) -> bool:
    """True if an "events:" line starts within the first 2047 bytes."""
    buf = head[:SNIFF_BYTES]
    return buf.startswith(b"events:") or b"\nevents:" in buf


def can_import_file(path: Union[str, Path]) -> bool:
    try:
        with open(path, "rb") as f:
            return can_import(f.read(SNIFF_BYTES))
    except OSError as e:
        logger.debug("%s: %s", path, e)
        return False


def _natural_key(p: Path) -> List[Union[int, str]]:
    return [int(t) if t.isdigit() else t for t in re.split(r"(\d+)", p.name)]


def find_part_files(path: Union[str, Path]) -> List[Path]:
    """
    Dumps belonging to the same trace as `path`.

    Callgrind writes one file per dump or thread next to the base name:
    callgrind.out.<pid>, callgrind.out.<pid>.<n>, callgrind.out.<pid>-<tid>.
    """
    base = Path(path)
    found = [base] if base.is_file() and can_import_file(base) else []
    siblings = set(base.parent.glob(base.name + ".*")) | set(base.parent.glob(base.name + "-*"))
    for cand in sorted(siblings, key=_natural_key):
        if cand.is_file() and can_import_file(cand):
            found.append(cand)
    return found


# -------------------------- Import State --------------------------

class LineKind(Enum):
    SELF_COST = auto()
    CALL_COST = auto()
    BORING_JUMP = auto()
    COND_JUMP = auto()


@dataclass
class _PendingCall:
    caller: TraceFunction
    line: Optional[TraceLine]
    instr: Optional[TraceInstr]
    count: int
    cost: CostVector


def _vec(records: Dict[int, CostVector], key: int, data: ProfileData) -> CostVector:
    v = records.get(key)
    if v is None:
        v = records[key] = CostVector(data.registry)
    return v


def _call_rec(records: Dict[int, CallRecord], key: int, data: ProfileData) -> CallRecord:
    r = records.get(key)
    if r is None:
        r = records[key] = CallRecord(cost=CostVector(data.registry))
    return r


class _ImportState:
    def __init__(
        self,
        data: ProfileData,
        part: Part,
        settings: LoaderSettings,
        progress: Optional[Callable[[int], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.data = data
        self.part = part
        self.settings = settings
        self.progress = progress
        self.cancel = cancel

        self.filename = part.name
        self.lineno = 0
        self.resolver = CompressionResolver(data, self.warn)
        self.sub_mapping: Optional[SubMapping] = None

        # default if there is no "positions:" line
        self.has_line = True
        self.has_addr = False
        self.pos = PositionSpec()
        self.next_kind = LineKind.SELF_COST

        self.cur_object: Optional[TraceObject] = None
        self.cur_file: Optional[TraceFile] = None
        self.cur_function: Optional[TraceFunction] = None
        self.cur_line: Optional[TraceLine] = None
        self.cur_instr: Optional[TraceInstr] = None

        self.called_object: Optional[TraceObject] = None
        self.called_file: Optional[TraceFile] = None
        self.called_function: Optional[TraceFunction] = None
        self.call_count = 0
        self.pending_call: Optional[_PendingCall] = None

        self.jump_file: Optional[TraceFile] = None
        self.jump_function: Optional[TraceFunction] = None
        self.target_pos = PositionSpec()
        self.jumps_followed = 0
        self.jumps_executed = 0

        self._percent = 0
        self._consumed = 0
        self._total = 0
        self._handlers: Dict[str, Callable[[LineTokenizer], None]] = {
            "ob=": self._set_object,
            "fl=": self._set_file,
            "fi=": self._set_file,
            "fe=": self._set_file,
            "fn=": self._set_function,
            "cob=": self._set_called_object,
            "cfi=": self._set_called_file,
            "cfl=": self._set_called_file,
            "cfn=": self._set_called_function,
            "calls=": self._calls,
            "rcalls=": self._rcalls,
            "jump=": self._jump,
            "jcnd=": self._jcnd,
            "jfi=": self._jump_to_file,
            "jfn=": self._jump_to_function,
            "events:": self._events,
            "event:": self._event,
            "positions:": self._positions,
            "part:": self._part_number,
            "pid:": self._pid,
            "thread:": self._thread,
            "version:": self._version,
            "timeframe (BB):": self._timeframe,
            "desc:": self._desc,
            "cmd:": self._cmd,
            "creator:": self._creator,
            "summary:": self._summary,
            "totals:": self._totals,
        }

    def warn(self, message: str) -> None:
        d = Diagnostic(self.filename, self.lineno, message)
        self.part.diagnostics.append(d)
        logger.warning("%s", d)

    # ----- main loop -----

    def run(self, lines: Iterable[bytes], total_bytes: int) -> None:
        self._total = total_bytes
        for raw in lines:
            self._consumed += len(raw)
            self.lineno += 1
            if self.cancel is not None and self.lineno % CANCEL_CHECK_LINES == 0 and self.cancel.is_set():
                raise Cancelled()
            self._process(raw.decode("utf-8", errors="replace"))
        self._finish()

    def _process(self, text: str) -> None:
        tok = LineTokenizer(text)
        c = tok.peek_first()
        if c is None or c == "#" or not text.strip():
            return

        if c in "*+-" or "0" <= c <= "9":
            try:
                new = decode_position(tok, self.pos, self.has_line, self.has_addr, self.warn)
            except PositionFormatError as e:
                self.warn(str(e))
                return
            if new is None:
                self.warn(f"invalid position line '{text.rstrip()}'")
                return
            self.pos = new
            self._cost_line(tok)
            return

        eq, colon = text.find("="), text.find(":")
        cut = min(i for i in (eq, colon, len(text)) if i >= 0)
        handler = self._handlers.get(text[:cut + 1])
        if handler is None:
            self.warn(f"invalid line '{text.rstrip()}'")
            return
        handler(LineTokenizer(text, cut + 1))

    def _report_progress(self) -> None:
        if self.progress is None or not self._total:
            return
        percent = int(100.0 * self._consumed / self._total + 0.5)
        if percent != self._percent:
            self._percent = percent
            self.progress(percent)

    # ----- entity context -----

    def _sentinel_function(self) -> TraceFunction:
        return self.data.function(SENTINEL_NAME, self.data.file(SENTINEL_NAME), self.data.object(SENTINEL_NAME))

    def _ensure_object(self) -> None:
        if self.cur_object is None:
            self.warn(f"ELF object name not set, using '{SENTINEL_NAME}'")
            self.cur_object = self.data.object(SENTINEL_NAME)

    def _ensure_file(self) -> None:
        if self.cur_file is None:
            self.warn(f"source file name not set, using '{SENTINEL_NAME}'")
            self.cur_file = self.data.file(SENTINEL_NAME)

    def _ensure_function(self) -> None:
        if self.cur_function is not None:
            return
        self.warn(f"function name not set, using '{SENTINEL_NAME}'")
        self.cur_function = self._sentinel_function()
        if self.cur_file is None:
            self.cur_file = self.data.file(SENTINEL_NAME)
        if self.cur_object is None:
            self.cur_object = self.data.object(SENTINEL_NAME)

    def _enter_function(self, fn: TraceFunction) -> None:
        self.cur_function = fn
        self.cur_line = None
        self.cur_instr = None

    def _set_object(self, tok: LineTokenizer) -> None:
        self._flush_pending_call()
        obj = self.resolver.resolve_object(tok.rest())
        if obj is None:
            self.warn(f"invalid object name, using '{SENTINEL_NAME}'")
            obj = self.data.object(SENTINEL_NAME)
        self.cur_object = obj
        self.cur_function = None

    def _set_file(self, tok: LineTokenizer) -> None:
        f = self.resolver.resolve_file(tok.rest())
        if f is None:
            self.warn(f"invalid file name, using '{SENTINEL_NAME}'")
            f = self.data.file(SENTINEL_NAME)
        self.cur_file = f
        self.cur_line = None

    def _set_function(self, tok: LineTokenizer) -> None:
        self._flush_pending_call()
        self._ensure_file()
        self._ensure_object()
        fn = self.resolver.resolve_function(tok.rest(), self.cur_file, self.cur_object)
        if fn is None:
            self.warn(f"invalid function, using '{SENTINEL_NAME}'")
            fn = self._sentinel_function()
        self._enter_function(fn)
        self._report_progress()

    def _set_called_object(self, tok: LineTokenizer) -> None:
        obj = self.resolver.resolve_object(tok.rest())
        if obj is None:
            self.warn(f"invalid called object name, using '{SENTINEL_NAME}'")
            obj = self.data.object(SENTINEL_NAME)
        self.called_object = obj

    def _set_called_file(self, tok: LineTokenizer) -> None:
        f = self.resolver.resolve_file(tok.rest())
        if f is None:
            self.warn(f"invalid called file name, using '{SENTINEL_NAME}'")
            f = self.data.file(SENTINEL_NAME)
        self.called_file = f

    def _set_called_function(self, tok: LineTokenizer) -> None:
        # unset called object/file default to the current ones
        if self.called_object is None:
            self.called_object = self.cur_object
        if self.called_file is None:
            self.called_file = self.cur_file
        fn = self.resolver.resolve_function(tok.rest(), self.called_file, self.called_object)
        if fn is None:
            self.warn(f"invalid called function, using '{SENTINEL_NAME}'")
            fn = self._sentinel_function()
        self.called_function = fn

        if self.pending_call is not None:
            # the call line came before its cfn=: bind it and continue in the callee
            self._bind_pending_call(fn)
            self.cur_object = self.data.objects[fn.object_id]
            self.cur_file = self.data.files[fn.file_id]
            self._enter_function(fn)
            self._clear_call()

    # ----- calls and jumps -----

    def _calls(self, tok: LineTokenizer) -> None:
        count = tok.strip_uint64()
        if count is None:
            self.warn(f"invalid calls line 'calls={tok.rest()}'")
            return
        # the rest of the line is the callee's target position, not needed here
        self.call_count = count
        self.next_kind = LineKind.CALL_COST

    def _rcalls(self, tok: LineTokenizer) -> None:
        logger.debug("%s:%d - deprecated rcalls= line", self.filename, self.lineno)
        self._calls(tok)

    def _jump(self, tok: LineTokenizer) -> None:
        executed = tok.strip_uint64()
        target = self._target_position(tok) if executed is not None else None
        if target is None:
            self.warn("invalid jump line")
            return
        self.jumps_executed, self.jumps_followed = executed, 0
        self.target_pos = target
        self.next_kind = LineKind.BORING_JUMP

    def _jcnd(self, tok: LineTokenizer) -> None:
        followed = tok.strip_uint64()
        executed = tok.strip_uint64() if followed is not None and tok.strip_first("/") else None
        target = self._target_position(tok) if executed is not None else None
        if target is None:
            self.warn("invalid jcnd line")
            return
        self.jumps_executed, self.jumps_followed = executed, followed
        self.target_pos = target
        self.next_kind = LineKind.COND_JUMP

    def _target_position(self, tok: LineTokenizer) -> Optional[PositionSpec]:
        try:
            return decode_position(tok, self.pos, self.has_line, self.has_addr, self.warn)
        except PositionFormatError as e:
            self.warn(str(e))
            return None

    def _jump_to_file(self, tok: LineTokenizer) -> None:
        self.jump_file = self.resolver.resolve_file(tok.rest())

    def _jump_to_function(self, tok: LineTokenizer) -> None:
        if self.jump_file is None:
            self.jump_file = self.cur_file
        self.jump_function = self.resolver.resolve_function(tok.rest(), self.jump_file, self.cur_object)

    def _clear_call(self) -> None:
        self.called_object = None
        self.called_file = None
        self.called_function = None
        self.call_count = 0

    def _record_call(self, caller: TraceFunction, callee: TraceFunction, line: Optional[TraceLine],
                     instr: Optional[TraceInstr], count: int, cost: CostVector) -> None:
        part, data = self.part, self.data
        call = data.call(caller, callee)
        rec = _call_rec(part.call_costs, call.id, data)
        rec.count += count
        rec.cost.add(cost)

        if instr is not None:
            ic = data.instr_call(call, instr)
            r = _call_rec(part.instr_call_costs, ic.id, data)
            r.count += count
            r.cost.add(cost)
            part.call_max.max_with(r.cost)

        if line is not None:
            lc = data.line_call(call, line)
            r = _call_rec(part.line_call_costs, lc.id, data)
            r.count += count
            r.cost.add(cost)
            part.call_max.max_with(r.cost)

    def _bind_pending_call(self, callee: TraceFunction) -> None:
        p = self.pending_call
        self.pending_call = None
        self._record_call(p.caller, callee, p.line, p.instr, p.count, p.cost)

    def _flush_pending_call(self) -> None:
        if self.pending_call is None:
            return
        self.warn(f"call without called function, using '{SENTINEL_NAME}'")
        self._bind_pending_call(self._sentinel_function())

    # ----- metadata -----

    def _events(self, tok: LineTokenizer) -> None:
        try:
            self.sub_mapping = self.data.registry.sub_mapping(tok.rest())
        except ValueError as e:
            self.warn(str(e))
            return
        self.part.events = list(self.sub_mapping.names)

    def _event(self, tok: LineTokenizer) -> None:
        # event:<name>[=<formula>][:<long name>]
        tok.strip_surrounding_spaces()
        name = tok.strip_name()
        if name is None:
            self.warn("invalid event")
            return
        tok.strip_spaces()
        formula = ""
        if tok.strip_first("="):
            formula = tok.strip_until(":").strip()
        else:
            tok.strip_first(":")
        tok.strip_spaces()
        try:
            self.data.registry.add(name, formula or None, tok.rest() or name)
        except ValueError as e:
            self.warn(str(e))

    def _positions(self, tok: LineTokenizer) -> None:
        positions = tok.rest()
        self.has_line = "line" in positions
        self.has_addr = "instr" in positions

    def _int_field(self, tok: LineTokenizer, what: str) -> Optional[int]:
        tok.strip_spaces()
        v = tok.strip_uint()
        if v is None:
            self.warn(f"invalid {what} '{tok.rest()}'")
        return v

    def _part_number(self, tok: LineTokenizer) -> None:
        v = self._int_field(tok, "part number")
        if v is not None:
            self.part.part_number = v

    def _pid(self, tok: LineTokenizer) -> None:
        v = self._int_field(tok, "process id")
        if v is not None:
            self.part.process_id = v

    def _thread(self, tok: LineTokenizer) -> None:
        v = self._int_field(tok, "thread id")
        if v is not None:
            self.part.thread_id = v

    def _version(self, tok: LineTokenizer) -> None:
        self.part.version = tok.rest().strip()

    def _timeframe(self, tok: LineTokenizer) -> None:
        self.part.timeframe = tok.rest().strip()

    def _desc(self, tok: LineTokenizer) -> None:
        tok.strip_surrounding_spaces()
        if tok.strip_prefix("Trigger:"):
            self.part.trigger = tok.rest().strip()
        else:
            self.part.descriptions.append(tok.rest())

    def _cmd(self, tok: LineTokenizer) -> None:
        command = tok.rest().strip()
        known = self.part.command or self.data.command
        if known and known != command:
            self.warn(f"redefined command, was '{known}'")
        if not self.part.command:
            self.part.command = command

    def _creator(self, tok: LineTokenizer) -> None:
        self.part.creator = tok.rest().strip()

    def _summary(self, tok: LineTokenizer) -> None:
        if self.sub_mapping is None:
            raise TraceImportError(f"{self.filename}:{self.lineno}: summary before any events: line")
        self._read_summary(tok, "summary")

    def _totals(self, tok: LineTokenizer) -> None:
        # same payload as summary:, but a misplaced totals: is only skipped
        if self.sub_mapping is None:
            self.warn("totals before any events: line, ignored")
            return
        self._read_summary(tok, "totals")

    def _read_summary(self, tok: LineTokenizer, what: str) -> None:
        tok.strip_spaces()
        costs = self.sub_mapping.parse_costs(tok)
        if costs is None:
            self.warn(f"invalid {what} line '{what}: {tok.rest()}'")
            return
        self.part.summary = costs

    # ----- cost lines -----

    def _cost_line(self, tok: LineTokenizer) -> None:
        if self.sub_mapping is None:
            raise TraceImportError(f"{self.filename}:{self.lineno}: cost line before any events: line")

        kind = self.next_kind
        self.next_kind = LineKind.SELF_COST
        cost: Optional[CostVector] = None
        if kind is LineKind.SELF_COST or kind is LineKind.CALL_COST:
            text = tok.rest()
            cost = self.sub_mapping.parse_costs(tok)
            if cost is None:
                self.warn(f"invalid cost numbers '{text}', line skipped")
                if kind is LineKind.CALL_COST:
                    self._clear_call()
                return

        # for a cost line, we always need a current function
        self._ensure_function()
        fn, data, pos = self.cur_function, self.data, self.pos

        if self.has_addr:
            instr = self.cur_instr
            if instr is None or instr.function_id != fn.id or instr.addr != pos.from_addr:
                self.cur_instr = data.instr(fn, pos.from_addr)

        if self.has_line:
            line = self.cur_line
            if (line is None or line.function_id != fn.id or line.file_id != self.cur_file.id
                    or line.lineno != pos.from_line):
                self.cur_line = data.line(fn, self.cur_file, pos.from_line)
            if self.has_addr:
                self.cur_instr.line_id = self.cur_line.id

        line = self.cur_line if self.has_line else None
        instr = self.cur_instr if self.has_addr else None

        if kind is LineKind.SELF_COST:
            part = self.part
            if instr is not None:
                _vec(part.instr_costs, instr.id, data).add(cost)
            if line is not None:
                _vec(part.line_costs, line.id, data).add(cost)
            _vec(part.function_costs, fn.id, data).add(cost)
            _vec(part.file_costs, self.cur_file.id, data).add(cost)
            _vec(part.object_costs, fn.object_id, data).add(cost)
            part.totals.add(cost)

        elif kind is LineKind.CALL_COST:
            if self.called_function is None:
                self._flush_pending_call()
                self.pending_call = _PendingCall(fn, line, instr, self.call_count, cost)
            else:
                self._record_call(fn, self.called_function, line, instr, self.call_count, cost)
            self._clear_call()

        else:
            target_fn = self.jump_function or fn
            if self.jump_file is not None:
                target_file = self.jump_file
            elif self.jump_function is not None:
                target_file = data.files[target_fn.file_id]
            else:
                target_file = self.cur_file
            jump = data.jump(
                fn,
                pos.from_line if self.has_line else 0,
                pos.from_addr if self.has_addr else 0,
                target_fn,
                target_file,
                self.target_pos.from_line if self.has_line else 0,
                self.target_pos.from_addr if self.has_addr else 0,
                kind is LineKind.COND_JUMP,
            )
            rec = self.part.jump_costs.setdefault(jump.id, JumpRecord())
            rec.executed += self.jumps_executed
            if kind is LineKind.COND_JUMP:
                rec.followed += self.jumps_followed
            self.jump_function = None
            self.jump_file = None

    def _finish(self) -> None:
        self._flush_pending_call()
        part = self.part
        totals = CostVector(self.data.registry)
        for cost in part.function_costs.values():
            totals.add(cost)
        if part.summary is not None and part.summary != totals:
            self.warn(f"summary {part.summary.to_list()} differs from the recomputed totals {totals.to_list()}")
            if self.settings.trust_summary:
                totals = part.summary.copy()
        part.totals = totals


# -------------------------- Loader --------------------------

class CallgrindLoader(QObject):
    """Import filter for Cachegrind/Callgrind generated profile data files."""

    updateStatus = Signal(str, int)  # label, percent

    name = "Callgrind"

    def __init__(self, settings: Optional[LoaderSettings] = None) -> None:
        super().__init__()
        self.settings = settings or LoaderSettings()

    def can_load(self, source: Union[str, Path, bytes]) -> bool:
        if isinstance(source, bytes):
            return can_import(source)
        return can_import_file(source)

    def _open(self, part: Part) -> Tuple[BinaryIO, int]:
        if part.content is not None:
            return io.BytesIO(part.content), len(part.content)
        if part.source is None:
            raise TraceImportError(f"{part.name}: part has no backing content")
        try:
            f = open(part.source, "rb")
            return f, part.source.stat().st_size
        except OSError as e:
            raise TraceImportError(f"cannot read {part.source}: {e}") from e

    def load_part(self, data: ProfileData, part: Part, cancel: Optional[threading.Event] = None) -> Part:
        """
        Import `part` into `data`.

        On success the part is published (data.parts) and returned. Raises
        TraceImportError when the source cannot be read or carries costs
        before any events: line, and Cancelled when `cancel` is set; in both
        cases nothing of the part becomes visible in `data`. A part that is
        already published is refused with TraceImportError and left as is;
        remove it first to import it again.
        """
        if cancel is not None and cancel.is_set():
            raise Cancelled()
        if data.is_published(part):
            raise TraceImportError(f"{part.name}: part {part.index} is already loaded")
        part.reset(data.registry)
        label = f"Loading {part.name}"
        emit: Optional[Callable[[int], None]] = None
        if self.settings.progress:
            def emit(percent: int) -> None:
                self.updateStatus.emit(label, percent)

        fh, size = self._open(part)
        logger.debug("loading %s (%d bytes)", part.name, size)
        if emit is not None:
            emit(0)
        state = _ImportState(data, part, self.settings, emit, cancel)
        try:
            with fh:
                state.run(fh, size)
        except TraceImportError as e:
            e.diagnostics = list(part.diagnostics)
            logger.error("%s", e)
            raise
        except OSError as e:
            raise TraceImportError(f"cannot read {part.name}: {e}", part.diagnostics) from e

        if emit is not None:
            emit(100)
        try:
            data.add_part(part)
        except ValueError as e:
            raise TraceImportError(str(e), part.diagnostics) from e
        return part


def load_parts(
    data: ProfileData,
    sources: Sequence[Union[str, Path, Part]],
    settings: Optional[LoaderSettings] = None,
    cancel: Optional[threading.Event] = None,
    loader: Optional[CallgrindLoader] = None,
) -> Tuple[List[Part], List[Tuple[Part, Exception]]]:
    """Import several parts concurrently; returns (loaded parts, (part, error) failures)."""
    settings = settings or LoaderSettings()
    loader = loader or CallgrindLoader(settings)
    parts = [s if isinstance(s, Part) else Part.from_path(s) for s in sources]

    loaded: List[Part] = []
    failed: List[Tuple[Part, Exception]] = []
    with ThreadPoolExecutor(max_workers=settings.max_workers) as pool:
        futures = [(p, pool.submit(loader.load_part, data, p, cancel)) for p in parts]
        for p, fut in futures:
            try:
                loaded.append(fut.result())
            except (TraceImportError, Cancelled) as e:
                logger.warning("%s: not loaded (%s)", p.name, str(e) or type(e).__name__)
                failed.append((p, e))
    return loaded, failed
