"""Tests for the background import worker (run() called directly)."""

import pytest

from grindlens import ImportWorker, Part


@pytest.fixture
def signals():
    return {"progress": [], "finished": [], "failed": [], "cancelled": 0}


def make_worker(data, content, signals, name="callgrind.out.w"):
    worker = ImportWorker(data, Part.from_bytes(content, name=name))
    worker.progress.connect(lambda label, percent: signals["progress"].append(percent))
    worker.finished.connect(signals["finished"].append)
    worker.failed.connect(lambda msg, details: signals["failed"].append((msg, details)))

    def on_cancelled():
        signals["cancelled"] += 1

    worker.cancelled.connect(on_cancelled)
    return worker


class TestImportWorker:
    """Each run ends in exactly one of finished, failed or cancelled."""

    def test_finished(self, data, signals):
        worker = make_worker(data, b"events: Ir\nfn=main\n1 3\n", signals)
        worker.run()
        assert len(signals["finished"]) == 1
        part = signals["finished"][0]
        assert part.totals == [3]
        assert data.parts == [part]
        assert signals["progress"][0] == 0
        assert signals["progress"][-1] == 100
        assert signals["failed"] == []

    def test_failed_import(self, data, signals):
        worker = make_worker(data, b"bogus\nfn=main\n1 3\n", signals)
        worker.run()
        assert signals["finished"] == []
        msg, details = signals["failed"][0]
        assert "before any events" in msg
        assert "invalid line 'bogus'" in details
        assert data.parts == []

    def test_unexpected_error(self, data, signals, monkeypatch):
        worker = make_worker(data, b"events: Ir\n", signals)

        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(worker.loader, "load_part", boom)
        worker.run()
        msg, details = signals["failed"][0]
        assert msg == "RuntimeError: boom"
        assert "Traceback" in details

    def test_cancelled(self, data, signals):
        worker = make_worker(data, b"events: Ir\nfn=main\n1 3\n", signals)
        worker.cancel()
        worker.run()
        assert signals["cancelled"] == 1
        assert signals["finished"] == []
        assert data.parts == []
