from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from PySide6.QtCore import QSettings

ORGANIZATION = "GrindLens"
APPLICATION = "GrindLens"


def _as_bool(v: Any) -> bool:
    # ini-backed settings hand values back as strings
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


@dataclass
class LoaderSettings:
    trust_summary: bool = False  # take summary:/totals: over the recomputed totals
    max_workers: int = 4
    progress: bool = True

    @classmethod
    def from_qsettings(cls, settings: QSettings) -> "LoaderSettings":
        d = cls()
        return cls(
            trust_summary=_as_bool(settings.value("loader/trustSummary", d.trust_summary)),
            max_workers=max(1, _as_int(settings.value("loader/maxWorkers", d.max_workers), d.max_workers)),
            progress=_as_bool(settings.value("loader/progress", d.progress)),
        )

    def save(self, settings: QSettings) -> None:
        settings.setValue("loader/trustSummary", self.trust_summary)
        settings.setValue("loader/maxWorkers", self.max_workers)
        settings.setValue("loader/progress", self.progress)
        settings.sync()


def default_settings() -> LoaderSettings:
    return LoaderSettings.from_qsettings(QSettings(ORGANIZATION, APPLICATION))
