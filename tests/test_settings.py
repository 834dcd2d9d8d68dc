"""Tests for QSettings-backed loader settings."""

import pytest
from PySide6.QtCore import QSettings

from grindlens import LoaderSettings


@pytest.fixture
def qsettings(tmp_path):
    return QSettings(str(tmp_path / "grindlens.ini"), QSettings.Format.IniFormat)


def test_defaults_when_empty(qsettings):
    s = LoaderSettings.from_qsettings(qsettings)
    assert s == LoaderSettings()
    assert s.trust_summary is False
    assert s.max_workers == 4
    assert s.progress is True


def test_round_trip(tmp_path, qsettings):
    LoaderSettings(trust_summary=True, max_workers=8, progress=False).save(qsettings)
    reopened = QSettings(str(tmp_path / "grindlens.ini"), QSettings.Format.IniFormat)
    s = LoaderSettings.from_qsettings(reopened)
    assert s == LoaderSettings(trust_summary=True, max_workers=8, progress=False)


def test_invalid_values_fall_back(qsettings):
    qsettings.setValue("loader/maxWorkers", "lots")
    qsettings.setValue("loader/trustSummary", "yes")
    s = LoaderSettings.from_qsettings(qsettings)
    assert s.max_workers == 4
    assert s.trust_summary is True


def test_worker_count_is_at_least_one(qsettings):
    qsettings.setValue("loader/maxWorkers", 0)
    assert LoaderSettings.from_qsettings(qsettings).max_workers == 1
