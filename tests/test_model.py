"""Tests for the shared entity namespace and part publishing."""

import threading

import pytest

from grindlens import SENTINEL_NAME, CostVector, Part, ProfileData
from grindlens.model import CallRecord


class TestNamespace:
    """Find-or-create identity."""

    def test_object_and_file_identity(self, data):
        assert data.object("libc.so") is data.object(" libc.so ")
        assert data.file("a.c") is data.file("a.c")
        assert data.object("") is data.object(SENTINEL_NAME)

    def test_function_identity_includes_file_and_object(self, data):
        a = data.function("f", data.file("a.c"), data.object("x"))
        b = data.function("f", data.file("b.c"), data.object("x"))
        assert a is not b
        assert data.function("f", data.file("a.c"), data.object("x")) is a
        assert data.functions_named("f") == [a, b]
        assert data.find_function("f", "b.c") is b
        assert data.find_function("f", obj="nope") is None

    def test_function_always_has_file_and_object(self, data):
        fn = data.function("g")
        assert data.files[fn.file_id].name == SENTINEL_NAME
        assert data.objects[fn.object_id].name == SENTINEL_NAME

    def test_lines_instrs_calls(self, data):
        f = data.file("a.c")
        main = data.function("main", f)
        work = data.function("work", f)
        line = data.line(main, None, 10)
        assert data.line(main, f, 10) is line
        assert data.find_line(main, 10) is line
        instr = data.instr(main, 0x400)
        assert data.find_instr(main, 0x400) is instr
        call = data.call(main, work)
        assert data.call(main, work) is call
        assert data.find_call(main, work) is call
        assert data.callees(main) == [call]
        assert data.callers(work) == [call]
        assert data.line_call(call, line) is data.line_call(call, line)
        assert data.instr_call(call, instr) is data.instr_call(call, instr)

    def test_concurrent_find_or_create(self, data):
        results = []

        def worker():
            results.append(data.function("hot", data.file("h.c"), data.object("h.so")))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len({id(r) for r in results}) == 1
        assert len(data.functions_named("hot")) == 1


def _part_with_costs(data, fn, value):
    part = Part(name="p")
    part.reset(data.registry)
    part.function_costs[fn.id] = CostVector(data.registry, [value])
    part.totals.add([value])
    return part


class TestParts:
    """Publishing and aggregation across parts."""

    def test_costs_aggregate_over_published_parts(self, data):
        data.registry.add("Ir")
        fn = data.function("f")
        p1 = _part_with_costs(data, fn, 3)
        p2 = _part_with_costs(data, fn, 4)
        data.add_part(p1)
        assert data.cost(fn) == [3]
        data.add_part(p2)
        assert data.cost(fn) == [7]
        assert data.cost(fn, p2) == [4]
        assert data.totals() == [7]
        assert (p1.index, p2.index) == (1, 2)

    def test_unpublished_part_is_invisible(self, data):
        data.registry.add("Ir")
        fn = data.function("f")
        _part_with_costs(data, fn, 3)
        assert data.cost(fn) == [0]

    def test_remove_part_recomputes_call_max(self, data):
        data.registry.add("Ir")
        p1 = Part(name="a")
        p1.reset(data.registry)
        p1.call_max.add([10])
        p2 = Part(name="b")
        p2.reset(data.registry)
        p2.call_max.add([4])
        data.add_part(p1)
        data.add_part(p2)
        assert data.call_max == [10]
        data.remove_part(p1)
        assert data.call_max == [4]
        assert data.parts == [p2]

    def test_first_command_wins(self, data):
        a = Part(name="a", command="./prog")
        b = Part(name="b", command="./other")
        data.add_part(a)
        data.add_part(b)
        assert data.command == "./prog"

    def test_inclusive_cost(self, data):
        data.registry.add("Ir")
        main = data.function("main")
        work = data.function("work")
        call = data.call(main, work)
        rec = data.call(main, main)
        part = _part_with_costs(data, main, 5)
        part.call_costs[call.id] = CallRecord(cost=CostVector(data.registry, [20]), count=1)
        part.call_costs[rec.id] = CallRecord(cost=CostVector(data.registry, [99]), count=1)
        data.add_part(part)
        assert data.inclusive_cost(main) == [25]
        assert data.call_count(call) == 1

    def test_part_is_published_once(self, data):
        data.registry.add("Ir")
        fn = data.function("f")
        part = _part_with_costs(data, fn, 3)
        data.add_part(part)
        with pytest.raises(ValueError):
            data.add_part(part)
        assert data.parts == [part]
        assert data.is_published(part)
        assert data.totals() == [3]

    def test_reset_drops_records_keeps_source(self, data):
        data.registry.add("Ir")
        fn = data.function("f")
        part = Part.from_bytes(b"events: Ir\n", name="dump")
        part.reset(data.registry)
        part.function_costs[fn.id] = CostVector(data.registry, [3])
        part.command = "./prog"
        part.events = ["Ir"]
        part.reset(data.registry)
        assert part.function_costs == {}
        assert part.command == ""
        assert part.events == []
        assert part.totals == [0]
        assert part.summary is None
        assert (part.name, part.content) == ("dump", b"events: Ir\n")

    def test_clear_starts_new_session(self, data):
        data.registry.add("Ir")
        data.function("f")
        data.add_part(Part(name="a"))
        data.clear()
        assert data.functions == []
        assert data.parts == []
        assert len(data.registry) == 0


def test_part_constructors(tmp_path):
    p = Part.from_path(tmp_path / "callgrind.out.1")
    assert p.source == tmp_path / "callgrind.out.1"
    assert Part.from_bytes("events: Ir\n").content == b"events: Ir\n"
    assert isinstance(ProfileData().registry.channels, list)
